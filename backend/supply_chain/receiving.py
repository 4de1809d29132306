"""
Receiving Module — Reception voucher (bon de réception) validation.

Called when a store validates a goods-received voucher:
1. Parse and check every line before touching the ledger
2. Append one arrival per received line (costed with the line's unit cost,
   or the cost-map entry when the line has none)
3. Refresh the cost map with each product's new CUMP. A cost-map entry is
   the prior CUMP for products the ledger has never costed (stock that only
   came in by transfer)

Lines are applied one by one, each under its own (store, product) lock.
"""

from typing import Any

import structlog

from ledger.errors import ValidationError
from ledger.movements import Arrival, validate_movement
from ledger.schemas import ReceptionVoucher, parse_payload
from ledger.service import StockLedger

logger = structlog.get_logger()


async def process_reception_voucher(
    ledger: StockLedger,
    voucher: ReceptionVoucher | dict[str, Any],
    cost_map: dict[str, float] | None = None,
) -> dict:
    """
    Apply a validated reception voucher to the ledger.

    `cost_map` (product_id -> unit cost) is updated in place with the new
    CUMP of every received product and returned in the summary.
    """
    voucher = parse_payload(ReceptionVoucher, voucher)
    cost_map = cost_map if cost_map is not None else {}
    recorded_by = voucher.validated_by or voucher.created_by

    arrivals = []
    for i, line in enumerate(voucher.lines):
        if line.received_quantity < 0:
            raise ValidationError(f"lines.{i}.received_quantity", "must not be negative")
        if line.received_quantity == 0:
            continue
        unit_cost = line.unit_cost if line.unit_cost is not None else cost_map.get(line.product_id)
        if unit_cost is None:
            raise ValidationError(f"lines.{i}.unit_cost", "is required when the cost map has no entry")

        arrival = validate_movement(
            Arrival(
                store_id=voucher.store_id,
                product_id=line.product_id,
                quantity=line.received_quantity,
                unit_cost=unit_cost,
                reason=f"Reception voucher {voucher.number}",
                reference_id=voucher.number,
                reference_type="reception_voucher",
                recorded_by=recorded_by,
                recorded_at=voucher.validated_at,
            )
        )
        await ledger.check_references(arrival.store_id, arrival.product_id)
        arrivals.append(arrival)

    movements = []
    for arrival in arrivals:
        prior = cost_map.get(arrival.product_id)
        movements.append(await ledger.append(arrival, prior_cump=prior))
        cost_map[arrival.product_id] = await ledger.get_average_cost(arrival.store_id, arrival.product_id)

    result = {
        "voucher": voucher.number,
        "store_id": voucher.store_id,
        "lines_applied": len(movements),
        "lines_skipped": len(voucher.lines) - len(movements),
    }
    logger.info("receiving.processed", **result)

    result["movements"] = movements
    result["average_costs"] = cost_map
    return result
