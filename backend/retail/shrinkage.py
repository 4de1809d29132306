"""
Shrinkage Reports — loss rate per store over a trailing period.

    loss_rate = total losses / total arrivals × 100       (0 when nothing arrived)

Losses are split by category (spoilage, damage, promotion). For a fish
counter spoilage normally dominates; the variance detector flags a period
where it takes more than its usual share.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog

from ledger.costing import loss_value
from ledger.movements import LossCategory, MovementType, StockMovement
from ledger.service import StockLedger

logger = structlog.get_logger()

LOSS_PERIOD_DAYS = {
    "week": 7,
    "month": 30,
}

# Weekly loss rate above which a store is flagged by check_loss_thresholds
DEFAULT_LOSS_THRESHOLD_PCT = 10.0


@dataclass(frozen=True)
class LossRateReport:
    store_id: str
    period: str
    start_date: datetime
    end_date: datetime
    total_losses: float
    total_arrivals: float
    loss_rate: float
    loss_breakdown: dict[str, float] = field(default_factory=dict)
    loss_value: float = 0.0
    generated_at: datetime | None = None

    @property
    def spoilage_share(self) -> float:
        """Spoilage as a percentage of all losses (0 when there were none)."""
        if self.total_losses <= 0:
            return 0.0
        return self.loss_breakdown.get(LossCategory.SPOILAGE.value, 0.0) / self.total_losses * 100


def period_days(period: str) -> int:
    try:
        return LOSS_PERIOD_DAYS[period]
    except KeyError:
        raise ValueError(f"Unknown loss period {period!r}; expected one of {sorted(LOSS_PERIOD_DAYS)}") from None


def summarize_losses(movements: Iterable[StockMovement]) -> tuple[float, dict[str, float]]:
    """Total arrived quantity and lost quantity per category."""
    arrivals = 0.0
    breakdown = {c.value: 0.0 for c in LossCategory}
    for m in movements:
        if m.type is MovementType.ARRIVAL:
            arrivals += m.quantity
        elif m.type is MovementType.LOSS:
            breakdown[LossCategory(m.loss_category).value] += abs(m.quantity)
    return arrivals, breakdown


async def calculate_loss_rates(
    ledger: StockLedger,
    store_id: str,
    period: str = "week",
    *,
    now: datetime | None = None,
) -> LossRateReport:
    end = now or ledger.clock()
    start = end - timedelta(days=period_days(period))
    movements = await ledger.get_stock_movements(store_id, (start, end))

    total_arrivals, breakdown = summarize_losses(movements)
    total_losses = sum(breakdown.values())
    loss_rate = total_losses / total_arrivals * 100 if total_arrivals > 0 else 0.0

    costs = {c.product_id: c.unit_cost for c in await ledger.repository.list_average_costs(store_id)}
    value = sum(
        loss_value(m.quantity, costs.get(m.product_id)) for m in movements if m.type is MovementType.LOSS
    )

    return LossRateReport(
        store_id=store_id,
        period=period,
        start_date=start,
        end_date=end,
        total_losses=total_losses,
        total_arrivals=total_arrivals,
        loss_rate=loss_rate,
        loss_breakdown=breakdown,
        loss_value=value,
        generated_at=ledger.clock(),
    )


async def check_loss_thresholds(
    ledger: StockLedger,
    store_id: str,
    threshold: float = DEFAULT_LOSS_THRESHOLD_PCT,
) -> bool:
    """True when the weekly loss rate exceeds `threshold` percent."""
    report = await calculate_loss_rates(ledger, store_id, "week")
    exceeded = report.loss_rate > threshold
    if exceeded:
        logger.warning("shrinkage.threshold_exceeded", store_id=store_id, loss_rate=round(report.loss_rate, 2))
    return exceeded
