"""
Alert Engine — days-of-stock classification for every (store, product).

Classification, first match wins:
  days_of_stock ≤ critical   → critical
  days_of_stock ≤ low        → low
  days_of_stock > overstock  → overstock
  otherwise                  → normal

Infinite days of stock (no outflow) falls through to overstock, never to
critical/low. Display order: critical, low, overstock, normal, then
ascending days of stock.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from alerts.store import AlertDetails, AlertType, Severity, VarianceAlert
from core.config import Settings, get_settings
from forecast.flow_rate import DEFAULT_WINDOW_DAYS, EnrichedStockLevel, get_enriched_stock_levels
from ledger.errors import ThresholdConfigError
from ledger.service import StockLedger

# ──────────────────────────────────────────────────────────────────────────
# Thresholds
# ──────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Thresholds:
    """Days-of-stock thresholds. Must satisfy 0 ≤ critical < low < overstock."""

    critical: float = 2
    low: float = 7
    overstock: float = 30

    def __post_init__(self):
        for name in ("critical", "low", "overstock"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise ThresholdConfigError(f"{name} must be a finite number, got {value!r}")
        if self.critical < 0:
            raise ThresholdConfigError(f"critical must be >= 0, got {self.critical}")
        if not self.critical < self.low:
            raise ThresholdConfigError(f"critical ({self.critical}) must be below low ({self.low})")
        if not self.low < self.overstock:
            raise ThresholdConfigError(f"low ({self.low}) must be below overstock ({self.overstock})")

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "Thresholds":
        settings = settings or get_settings()
        return cls(
            critical=settings.stock_critical_days,
            low=settings.stock_low_days,
            overstock=settings.stock_overstock_days,
        )


# ──────────────────────────────────────────────────────────────────────────
# Classification
# ──────────────────────────────────────────────────────────────────────────


class StockStatus(str, Enum):
    CRITICAL = "critical"
    LOW = "low"
    OVERSTOCK = "overstock"
    NORMAL = "normal"


STATUS_PRIORITY = {
    StockStatus.CRITICAL: 0,
    StockStatus.LOW: 1,
    StockStatus.OVERSTOCK: 2,
    StockStatus.NORMAL: 3,
}

# status → (alert type, severity) when a stock status is raised as an alert
STATUS_ALERTS = {
    StockStatus.CRITICAL: (AlertType.CRITICAL_STOCK, Severity.CRITICAL),
    StockStatus.LOW: (AlertType.LOW_STOCK, Severity.MEDIUM),
    StockStatus.OVERSTOCK: (AlertType.OVERSTOCK, Severity.LOW),
}


def classify_stock(days_of_stock: float, thresholds: Thresholds) -> StockStatus:
    """Classify a product's stock position from its projected days of stock."""
    if days_of_stock <= thresholds.critical:
        return StockStatus.CRITICAL
    elif days_of_stock <= thresholds.low:
        return StockStatus.LOW
    elif days_of_stock > thresholds.overstock:
        return StockStatus.OVERSTOCK
    return StockStatus.NORMAL


def status_threshold(status: StockStatus, thresholds: Thresholds) -> float | None:
    return {
        StockStatus.CRITICAL: thresholds.critical,
        StockStatus.LOW: thresholds.low,
        StockStatus.OVERSTOCK: thresholds.overstock,
    }.get(status)


@dataclass(frozen=True)
class StockAlert:
    status: StockStatus
    store_id: str
    product_id: str
    current_stock: float
    available_quantity: float
    flow_rate: float
    days_of_stock: float
    threshold: float

    @property
    def type(self) -> AlertType:
        return STATUS_ALERTS[self.status][0]

    @property
    def severity(self) -> Severity:
        return STATUS_ALERTS[self.status][1]

    def to_variance_alert(self, detected_at: datetime) -> VarianceAlert:
        days = "no outflow" if math.isinf(self.days_of_stock) else f"{self.days_of_stock:.1f} days"
        return VarianceAlert(
            type=self.type,
            severity=self.severity,
            store_id=self.store_id,
            product_id=self.product_id,
            details=AlertDetails.derive(self.days_of_stock, self.threshold, self.threshold),
            detected_at=detected_at,
            title=f"{self.status.value.capitalize()} stock",
            message=(
                f"{self.product_id}: {days} of stock left "
                f"(available {self.available_quantity:g}, flow {self.flow_rate:.2f}/day)"
            ),
        )


def priority_key(status: StockStatus, days_of_stock: float) -> tuple[int, float]:
    return (STATUS_PRIORITY[status], days_of_stock)


# ──────────────────────────────────────────────────────────────────────────
# Store-level checks
# ──────────────────────────────────────────────────────────────────────────


async def check_stock_alerts(
    ledger: StockLedger,
    store_id: str,
    thresholds: Thresholds,
    window_days: int = DEFAULT_WINDOW_DAYS,
) -> list[StockAlert]:
    """Every non-normal product of a store, most urgent first."""
    alerts = []
    for level in await get_enriched_stock_levels(ledger, store_id, window_days):
        status = classify_stock(level.days_of_stock, thresholds)
        if status is StockStatus.NORMAL:
            continue
        alerts.append(_stock_alert(level, status, thresholds))
    alerts.sort(key=lambda a: priority_key(a.status, a.days_of_stock))
    return alerts


def _stock_alert(level: EnrichedStockLevel, status: StockStatus, thresholds: Thresholds) -> StockAlert:
    return StockAlert(
        status=status,
        store_id=level.store_id,
        product_id=level.product_id,
        current_stock=level.quantity,
        available_quantity=level.available_quantity,
        flow_rate=level.flow_rate,
        days_of_stock=level.days_of_stock,
        threshold=status_threshold(status, thresholds),
    )


async def get_stock_summary(
    ledger: StockLedger,
    store_id: str,
    thresholds: Thresholds,
    window_days: int = DEFAULT_WINDOW_DAYS,
) -> dict:
    """Dashboard counts per stock status plus the average flow rate."""
    levels = await get_enriched_stock_levels(ledger, store_id, window_days)
    counts = {status: 0 for status in StockStatus}
    for level in levels:
        counts[classify_stock(level.days_of_stock, thresholds)] += 1
    return {
        "store_id": store_id,
        "total_products": len(levels),
        "critical_stock": counts[StockStatus.CRITICAL],
        "low_stock": counts[StockStatus.LOW],
        "overstock": counts[StockStatus.OVERSTOCK],
        "normal": counts[StockStatus.NORMAL],
        "average_flow_rate": sum(l.flow_rate for l in levels) / len(levels) if levels else 0.0,
        "last_updated": ledger.clock(),
    }
