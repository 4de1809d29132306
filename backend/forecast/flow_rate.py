"""
Flow-Rate Forecaster — daily outflow and projected days of stock.

    flow_rate     = Σ |outflow quantity| in [now − window, now) / window_days
    days_of_stock = available_quantity / flow_rate       (inf when flow_rate == 0)

Outflow is any loss plus any other movement with a negative quantity
(transfer_out, negative adjustments). A product with no history simply has
a flow rate of 0; nothing here raises for unknown keys.
"""

import math
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from ledger.movements import StockMovement
from ledger.projector import StockLevel
from ledger.service import StockLedger

DEFAULT_WINDOW_DAYS = 30


@dataclass(frozen=True)
class EnrichedStockLevel:
    level: StockLevel
    flow_rate: float
    days_of_stock: float

    @property
    def store_id(self) -> str:
        return self.level.store_id

    @property
    def product_id(self) -> str:
        return self.level.product_id

    @property
    def quantity(self) -> float:
        return self.level.quantity

    @property
    def available_quantity(self) -> float:
        return self.level.available_quantity


def total_outflow(movements: Iterable[StockMovement]) -> float:
    return sum(abs(m.quantity) for m in movements if m.is_outflow)


def days_of_stock(available_quantity: float, flow_rate: float) -> float:
    if flow_rate <= 0:
        return math.inf
    return available_quantity / flow_rate


def window_bounds(end: datetime, window_days: int, offset_days: int = 0) -> tuple[datetime, datetime]:
    """[start, end) of a `window_days` window ending `offset_days` before `end`."""
    window_end = end - timedelta(days=offset_days)
    return window_end - timedelta(days=window_days), window_end


async def flow_rate(
    ledger: StockLedger,
    store_id: str,
    product_id: str,
    window_days: int = DEFAULT_WINDOW_DAYS,
    *,
    offset_days: int = 0,
    now: datetime | None = None,
) -> float:
    """
    Units/day of outflow for one product.

    `offset_days` shifts the window into the past, which is how the variance
    detector builds its baseline away from the period under evaluation.
    """
    if window_days <= 0:
        raise ValueError("window_days must be positive")
    bounds = window_bounds(now or ledger.clock(), window_days, offset_days)
    outflow = 0.0
    async for movement in ledger.query(store_id, bounds, product_id=product_id):
        if movement.is_outflow:
            outflow += abs(movement.quantity)
    return outflow / window_days


async def store_flow_rates(
    ledger: StockLedger,
    store_id: str,
    window_days: int = DEFAULT_WINDOW_DAYS,
    *,
    offset_days: int = 0,
    now: datetime | None = None,
) -> dict[str, float]:
    """Flow rate of every product with outflow in the window, from one store-wide scan."""
    if window_days <= 0:
        raise ValueError("window_days must be positive")
    bounds = window_bounds(now or ledger.clock(), window_days, offset_days)
    outflow: dict[str, float] = defaultdict(float)
    async for movement in ledger.query(store_id, bounds):
        if movement.is_outflow:
            outflow[movement.product_id] += abs(movement.quantity)
    return {product_id: total / window_days for product_id, total in outflow.items()}


async def get_enriched_stock_levels(
    ledger: StockLedger,
    store_id: str,
    window_days: int = DEFAULT_WINDOW_DAYS,
    *,
    now: datetime | None = None,
) -> list[EnrichedStockLevel]:
    """Current levels of a store with flow rate and days of stock attached."""
    levels = await ledger.get_current_stock(store_id)
    rates = await store_flow_rates(ledger, store_id, window_days, now=now)
    enriched = []
    for level in levels:
        rate = rates.get(level.product_id, 0.0)
        enriched.append(EnrichedStockLevel(level, rate, days_of_stock(level.available_quantity, rate)))
    return enriched
