"""
Variance alerts — model, lifecycle and storage boundary.

Lifecycle: open (is_resolved=False) → resolved (terminal). A resolved alert
is never reopened; a recurring condition creates a new alert. At most one
open alert exists per (type, product_id, store_id); stores enforce that in
`add_if_absent`, which checks and inserts in one step.
"""

import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Protocol

from ledger.errors import AlertAlreadyResolvedError, AlertNotFoundError

# Product key used by store-wide alerts (loss rate, daily loss spikes)
ALL_PRODUCTS = "all"


class AlertType(str, Enum):
    CRITICAL_STOCK = "critical_stock"
    LOW_STOCK = "low_stock"
    OVERSTOCK = "overstock"
    ABNORMAL_LOSS = "abnormal_loss"
    UNUSUAL_FLOW = "unusual_flow"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_ORDER = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
}

NOTIFY_SEVERITIES = frozenset({Severity.HIGH, Severity.CRITICAL})


@dataclass(frozen=True)
class AlertDetails:
    current_value: float
    expected_value: float
    variance: float
    variance_percentage: float
    threshold: float

    @classmethod
    def derive(cls, current: float, expected: float, threshold: float) -> "AlertDetails":
        """Build details from the measured and expected values; nothing is hand-set."""
        variance = current - expected
        if expected:
            pct = variance / expected * 100
        elif variance == 0 or math.isnan(variance):
            pct = 0.0
        else:
            pct = math.copysign(math.inf, variance)
        return cls(
            current_value=current,
            expected_value=expected,
            variance=variance,
            variance_percentage=pct,
            threshold=threshold,
        )

    def as_dict(self) -> dict:
        return {
            "current_value": self.current_value,
            "expected_value": self.expected_value,
            "variance": self.variance,
            "variance_percentage": self.variance_percentage,
            "threshold": self.threshold,
        }


@dataclass(frozen=True)
class VarianceAlert:
    type: AlertType
    severity: Severity
    store_id: str
    product_id: str
    details: AlertDetails
    detected_at: datetime
    title: str = ""
    message: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    is_resolved: bool = False
    resolved_at: datetime | None = None
    resolved_by: str | None = None

    @property
    def dedupe_key(self) -> tuple[AlertType, str, str]:
        return (self.type, self.product_id, self.store_id)

    @property
    def should_notify(self) -> bool:
        return self.severity in NOTIFY_SEVERITIES

    def resolve(self, resolved_by: str, resolved_at: datetime) -> "VarianceAlert":
        if self.is_resolved:
            raise AlertAlreadyResolvedError(self.id)
        return replace(self, is_resolved=True, resolved_at=resolved_at, resolved_by=resolved_by)


class AlertStore(Protocol):
    async def add_if_absent(self, alert: VarianceAlert) -> bool:
        """Insert unless an open alert with the same dedupe key exists. True if inserted."""
        ...

    async def get(self, alert_id: str) -> VarianceAlert | None: ...

    async def find_open(self, alert_type: AlertType, product_id: str, store_id: str) -> VarianceAlert | None: ...

    async def list_alerts(
        self,
        store_id: str,
        *,
        open_only: bool = False,
        since: datetime | None = None,
    ) -> list[VarianceAlert]: ...

    async def resolve(self, alert_id: str, resolved_by: str, resolved_at: datetime) -> VarianceAlert: ...


class InMemoryAlertStore:
    def __init__(self):
        self._alerts: dict[str, VarianceAlert] = {}

    async def add_if_absent(self, alert: VarianceAlert) -> bool:
        if self._open_with_key(alert.dedupe_key) is not None:
            return False
        self._alerts[alert.id] = alert
        return True

    def _open_with_key(self, key) -> VarianceAlert | None:
        for existing in self._alerts.values():
            if not existing.is_resolved and existing.dedupe_key == key:
                return existing
        return None

    async def get(self, alert_id: str) -> VarianceAlert | None:
        return self._alerts.get(alert_id)

    async def find_open(self, alert_type: AlertType, product_id: str, store_id: str) -> VarianceAlert | None:
        return self._open_with_key((AlertType(alert_type), product_id, store_id))

    async def list_alerts(
        self,
        store_id: str,
        *,
        open_only: bool = False,
        since: datetime | None = None,
    ) -> list[VarianceAlert]:
        alerts = [a for a in self._alerts.values() if a.store_id == store_id]
        if open_only:
            alerts = [a for a in alerts if not a.is_resolved]
        if since is not None:
            alerts = [a for a in alerts if a.detected_at >= since]
        return alerts

    async def resolve(self, alert_id: str, resolved_by: str, resolved_at: datetime) -> VarianceAlert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        resolved = alert.resolve(resolved_by, resolved_at)
        self._alerts[alert_id] = resolved
        return resolved
