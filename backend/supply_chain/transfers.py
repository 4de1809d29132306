"""
Store Transfers — two-sided stock moves between stores.

A transfer is a saga, not a distributed transaction. Each side is local to
its own store and the two are linked only by the transfer number:

  dispatch  source:       transfer_out (−sent)
            destination:  reserved += sent
  receive   destination:  reserved −= sent, transfer_in (+sent),
                          then the shipped/received gap as its own entry:
                            short → loss (damage, −gap)
                            over  → adjustment (+gap)

So the destination's on-hand rises by exactly what was received, and every
unit of in-transit difference is visible in the ledger. If the destination
reservation fails after the source was debited, the source debit is
compensated with an adjustment and the error is re-raised.
"""

from typing import Any

import structlog

from ledger.errors import ValidationError
from ledger.movements import (
    Adjustment,
    Loss,
    LossCategory,
    TransferIn,
    TransferOut,
    validate_movement,
)
from ledger.schemas import TransferDocument, parse_payload
from ledger.service import Reservation, StockLedger

logger = structlog.get_logger()

# Shipped/received gaps at or below this are treated as weighing noise.
TRANSFER_VARIANCE_TOLERANCE = 0.01


def _parse_transfer(transfer: TransferDocument | dict[str, Any]) -> TransferDocument:
    doc = parse_payload(TransferDocument, transfer)
    if doc.source_store_id == doc.destination_store_id:
        raise ValidationError("destination_store_id", "must differ from source_store_id")
    return doc


async def dispatch_transfer(
    ledger: StockLedger,
    transfer: TransferDocument | dict[str, Any],
) -> dict:
    """Debit the source store and reserve the shipped quantity at the destination."""
    doc = _parse_transfer(transfer)

    outbound = []
    for line in doc.lines:
        movement = validate_movement(
            TransferOut(
                store_id=doc.source_store_id,
                product_id=line.product_id,
                quantity=-line.sent_quantity,
                reason=f"Transfer {doc.number} to {doc.destination_store_id}",
                reference_id=doc.number,
                reference_type="transfer",
                recorded_by=doc.created_by,
                recorded_at=doc.created_at,
            )
        )
        await ledger.check_references(doc.source_store_id, line.product_id)
        await ledger.check_references(doc.destination_store_id, line.product_id)
        outbound.append((line, movement))

    movements = []
    for line, movement in outbound:
        saved = await ledger.append(movement)
        movements.append(saved)
        try:
            await ledger.reserve(doc.destination_store_id, line.product_id, line.sent_quantity)
        except Exception:
            logger.error(
                "transfer.reservation_failed",
                transfer=doc.number,
                product_id=line.product_id,
                destination=doc.destination_store_id,
            )
            await ledger.append(
                Adjustment(
                    store_id=doc.source_store_id,
                    product_id=line.product_id,
                    quantity=line.sent_quantity,
                    reason=f"Transfer {doc.number} compensation",
                    reference_id=doc.number,
                    reference_type="transfer",
                    recorded_by=doc.created_by,
                )
            )
            raise

    logger.info(
        "transfer.dispatched",
        transfer=doc.number,
        from_store=doc.source_store_id,
        to_store=doc.destination_store_id,
        lines=len(movements),
    )
    return {
        "transfer": doc.number,
        "source_store_id": doc.source_store_id,
        "destination_store_id": doc.destination_store_id,
        "movements": movements,
    }


def _reception_steps(doc: TransferDocument, line) -> list:
    """Ordered ledger steps for one received line at the destination."""
    meta = dict(
        store_id=doc.destination_store_id,
        product_id=line.product_id,
        reference_id=doc.number,
        reference_type="transfer",
        recorded_by=doc.received_by or doc.created_by,
        recorded_at=doc.received_at,
    )
    steps = [
        Reservation(-line.sent_quantity),
        validate_movement(
            TransferIn(
                quantity=line.sent_quantity,
                reason=f"Transfer {doc.number} from {doc.source_store_id}",
                **meta,
            )
        ),
    ]
    gap = line.received_quantity - line.sent_quantity
    if gap < -TRANSFER_VARIANCE_TOLERANCE:
        steps.append(
            validate_movement(
                Loss(
                    quantity=gap,
                    loss_category=LossCategory.DAMAGE,
                    reason=f"Transfer {doc.number} variance: {line.comment or 'lost in transit'}",
                    **meta,
                )
            )
        )
    elif gap > TRANSFER_VARIANCE_TOLERANCE:
        steps.append(
            validate_movement(
                Adjustment(
                    quantity=gap,
                    reason=f"Transfer {doc.number} variance: {line.comment or 'received over shipped'}",
                    **meta,
                )
            )
        )
    return steps


async def receive_transfer(
    ledger: StockLedger,
    transfer: TransferDocument | dict[str, Any],
) -> dict:
    """
    Confirm receipt at the destination.

    Lines without a received quantity are still in transit and left alone.
    Each received line is applied as one batch under the destination key's lock.
    """
    doc = _parse_transfer(transfer)

    pending = []
    for line in doc.lines:
        if line.received_quantity is None:
            continue
        await ledger.check_references(doc.destination_store_id, line.product_id)
        pending.append((line, _reception_steps(doc, line)))

    movements = []
    variances = []
    for line, steps in pending:
        key = (doc.destination_store_id, line.product_id)
        async with ledger.locks.hold(key):
            movements.extend(await ledger.apply_locked(key, steps))
        gap = line.received_quantity - line.sent_quantity
        if abs(gap) > TRANSFER_VARIANCE_TOLERANCE:
            variances.append({"product_id": line.product_id, "variance": gap})
            logger.warning(
                "transfer.variance",
                transfer=doc.number,
                product_id=line.product_id,
                sent=line.sent_quantity,
                received=line.received_quantity,
            )

    logger.info(
        "transfer.received",
        transfer=doc.number,
        to_store=doc.destination_store_id,
        lines=len(pending),
        variances=len(variances),
    )
    return {
        "transfer": doc.number,
        "destination_store_id": doc.destination_store_id,
        "lines_received": len(pending),
        "movements": movements,
        "variances": variances,
    }
