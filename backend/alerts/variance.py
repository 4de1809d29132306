"""
Variance Detector — periodic per-store anomaly pass with alert lifecycle.

Checks (each compares a current-period metric with its baseline):
  - Loss rate:        trailing-period losses / arrivals × 100 vs warning/critical,
                      plus spoilage share of losses vs its ceiling
  - Flow variance:    30-day flow rate per product vs a prior, non-overlapping
                      30-day baseline that also skips the most recent days
  - Daily loss spike: last 24h losses vs the 30-day average daily loss

A pass runs in two phases. Detection only reads the ledger and can be
cancelled at any await without side effects. The commit phase inserts
alerts (skipping any whose (type, product, store) already has an open
alert) and notifies high/critical ones once; it is shielded so a
cancellation never leaves it half done.
"""

import asyncio
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

import structlog

from alerts.engine import Thresholds, check_stock_alerts
from alerts.notifier import NotificationSender, notification_args
from alerts.store import (
    ALL_PRODUCTS,
    SEVERITY_ORDER,
    AlertDetails,
    AlertStore,
    AlertType,
    Severity,
    VarianceAlert,
)
from core.config import Settings, get_settings
from forecast.flow_rate import store_flow_rates
from ledger.errors import ThresholdConfigError
from ledger.locks import KeyedLocks
from ledger.movements import MovementType
from ledger.service import StockLedger
from retail.shrinkage import calculate_loss_rates

logger = structlog.get_logger()

# Spoilage share of losses considered normal for a fresh-fish counter
EXPECTED_SPOILAGE_SHARE_PCT = 50.0

# A spike this many times over the spike threshold escalates to critical
DAILY_LOSS_CRITICAL_FACTOR = 1.5


# ──────────────────────────────────────────────────────────────────────────
# Thresholds
# ──────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class VarianceThresholds:
    loss_rate_warning: float = 10
    loss_rate_critical: float = 15
    flow_variance_pct: float = 50
    daily_loss_multiplier: float = 3
    spoilage_share_pct: float = 70
    flow_high_variance_pct: float = 80

    def __post_init__(self):
        for name, value in self.__dict__.items():
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise ThresholdConfigError(f"{name} must be a finite number, got {value!r}")
            if value <= 0:
                raise ThresholdConfigError(f"{name} must be positive, got {value}")
        if not self.loss_rate_warning < self.loss_rate_critical:
            raise ThresholdConfigError(
                f"loss_rate_warning ({self.loss_rate_warning}) must be below "
                f"loss_rate_critical ({self.loss_rate_critical})"
            )
        if not self.flow_variance_pct <= self.flow_high_variance_pct:
            raise ThresholdConfigError(
                f"flow_variance_pct ({self.flow_variance_pct}) must not exceed "
                f"flow_high_variance_pct ({self.flow_high_variance_pct})"
            )
        if self.spoilage_share_pct > 100:
            raise ThresholdConfigError(f"spoilage_share_pct must be <= 100, got {self.spoilage_share_pct}")

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "VarianceThresholds":
        settings = settings or get_settings()
        return cls(
            loss_rate_warning=settings.loss_rate_warning_pct,
            loss_rate_critical=settings.loss_rate_critical_pct,
            flow_variance_pct=settings.flow_variance_pct,
            daily_loss_multiplier=settings.daily_loss_multiplier,
            spoilage_share_pct=settings.spoilage_share_pct,
            flow_high_variance_pct=settings.flow_high_variance_pct,
        )


@dataclass
class VarianceRun:
    store_id: str
    started_at: datetime
    created: list[VarianceAlert] = field(default_factory=list)
    suppressed: list[VarianceAlert] = field(default_factory=list)
    notified: int = 0

    @property
    def detected(self) -> list[VarianceAlert]:
        return self.created + self.suppressed


def by_severity(alert: VarianceAlert) -> int:
    return SEVERITY_ORDER[alert.severity]


class VarianceDetector:
    def __init__(
        self,
        ledger: StockLedger,
        alert_store: AlertStore,
        notifier: NotificationSender | None = None,
        *,
        thresholds: VarianceThresholds | None = None,
        loss_period: str = "week",
        flow_window_days: int = 30,
        baseline_exclusion_days: int = 7,
    ):
        self.ledger = ledger
        self.alert_store = alert_store
        self.notifier = notifier
        self._thresholds = thresholds or VarianceThresholds()
        self.loss_period = loss_period
        self.flow_window_days = flow_window_days
        self.baseline_exclusion_days = baseline_exclusion_days
        self._store_locks = KeyedLocks()

    @classmethod
    def from_settings(
        cls,
        ledger: StockLedger,
        alert_store: AlertStore,
        notifier: NotificationSender | None = None,
        settings: Settings | None = None,
    ) -> "VarianceDetector":
        settings = settings or get_settings()
        return cls(
            ledger,
            alert_store,
            notifier,
            thresholds=VarianceThresholds.from_settings(settings),
            loss_period=settings.loss_period,
            flow_window_days=settings.flow_window_days,
            baseline_exclusion_days=settings.baseline_exclusion_days,
        )

    # ── Threshold management ──────────────────────────────────────────

    def get_thresholds(self) -> VarianceThresholds:
        return self._thresholds

    def update_thresholds(self, **changes) -> VarianceThresholds:
        """Replace some thresholds; the result is validated before it takes effect."""
        self._thresholds = replace(self._thresholds, **changes)
        return self._thresholds

    @property
    def baseline_offset_days(self) -> int:
        # Baseline must end before the current window starts, and never inside the exclusion period
        return max(self.flow_window_days, self.baseline_exclusion_days)

    # ── Checks ────────────────────────────────────────────────────────

    async def check_abnormal_loss_rates(self, store_id: str, now: datetime) -> list[VarianceAlert]:
        t = self._thresholds
        report = await calculate_loss_rates(self.ledger, store_id, self.loss_period, now=now)
        alerts = []

        if report.loss_rate > t.loss_rate_critical:
            severity, threshold, title = Severity.CRITICAL, t.loss_rate_critical, "Critical loss rate"
        elif report.loss_rate > t.loss_rate_warning:
            severity, threshold, title = Severity.MEDIUM, t.loss_rate_warning, "High loss rate"
        else:
            severity = None
        if severity is not None:
            alerts.append(
                VarianceAlert(
                    type=AlertType.ABNORMAL_LOSS,
                    severity=severity,
                    store_id=store_id,
                    product_id=ALL_PRODUCTS,
                    details=AlertDetails.derive(report.loss_rate, t.loss_rate_warning, threshold),
                    detected_at=now,
                    title=title,
                    message=f"{self.loss_period.capitalize()} loss rate is {report.loss_rate:.1f}% (threshold {threshold:g}%)",
                )
            )

        share = report.spoilage_share
        if report.total_losses > 0 and share > t.spoilage_share_pct:
            alerts.append(
                VarianceAlert(
                    type=AlertType.ABNORMAL_LOSS,
                    severity=Severity.HIGH,
                    store_id=store_id,
                    product_id=ALL_PRODUCTS,
                    details=AlertDetails.derive(share, EXPECTED_SPOILAGE_SHARE_PCT, t.spoilage_share_pct),
                    detected_at=now,
                    title="High spoilage share",
                    message=f"Spoilage is {share:.1f}% of all losses",
                )
            )
        return alerts

    async def check_unusual_flow_rates(self, store_id: str, now: datetime) -> list[VarianceAlert]:
        t = self._thresholds
        levels = await self.ledger.get_current_stock(store_id)
        current = await store_flow_rates(self.ledger, store_id, self.flow_window_days, now=now)
        baseline = await store_flow_rates(
            self.ledger,
            store_id,
            self.flow_window_days,
            offset_days=self.baseline_offset_days,
            now=now,
        )

        alerts = []
        for level in levels:
            expected = baseline.get(level.product_id, 0.0)
            if expected <= 0:
                continue
            details = AlertDetails.derive(current.get(level.product_id, 0.0), expected, t.flow_variance_pct)
            pct = abs(details.variance_percentage)
            if pct <= t.flow_variance_pct:
                continue
            alerts.append(
                VarianceAlert(
                    type=AlertType.UNUSUAL_FLOW,
                    severity=Severity.HIGH if pct > t.flow_high_variance_pct else Severity.MEDIUM,
                    store_id=store_id,
                    product_id=level.product_id,
                    details=details,
                    detected_at=now,
                    title="Unusual flow rate",
                    message=f"Flow rate moved {details.variance_percentage:+.1f}% against its baseline",
                )
            )
        return alerts

    async def check_daily_loss_spike(self, store_id: str, now: datetime) -> list[VarianceAlert]:
        t = self._thresholds
        day_start = now - timedelta(days=1)
        history_start = day_start - timedelta(days=self.flow_window_days)

        today = 0.0
        history = 0.0
        async for m in self.ledger.query(store_id, (history_start, now)):
            if m.type is not MovementType.LOSS:
                continue
            if m.recorded_at >= day_start:
                today += abs(m.quantity)
            else:
                history += abs(m.quantity)

        average = history / self.flow_window_days
        threshold = average * t.daily_loss_multiplier
        if average <= 0 or today <= threshold:
            return []
        return [
            VarianceAlert(
                type=AlertType.ABNORMAL_LOSS,
                severity=Severity.CRITICAL if today > threshold * DAILY_LOSS_CRITICAL_FACTOR else Severity.HIGH,
                store_id=store_id,
                product_id=ALL_PRODUCTS,
                details=AlertDetails.derive(today, average, threshold),
                detected_at=now,
                title="Excessive daily losses",
                message=f"Losses today ({today:g}) exceed {t.daily_loss_multiplier:g}x the daily average",
            )
        ]

    async def check_stock_levels(
        self,
        store_id: str,
        thresholds: Thresholds,
        now: datetime,
    ) -> list[VarianceAlert]:
        stock_alerts = await check_stock_alerts(self.ledger, store_id, thresholds, self.flow_window_days)
        return [a.to_variance_alert(now) for a in stock_alerts]

    async def detect(
        self,
        store_id: str,
        *,
        stock_thresholds: Thresholds | None = None,
        now: datetime | None = None,
    ) -> list[VarianceAlert]:
        """Candidate alerts for a store. Reads only; nothing is stored or sent."""
        now = now or self.ledger.clock()
        checks = [
            self.check_abnormal_loss_rates(store_id, now),
            self.check_unusual_flow_rates(store_id, now),
            self.check_daily_loss_spike(store_id, now),
        ]
        if stock_thresholds is not None:
            checks.append(self.check_stock_levels(store_id, stock_thresholds, now))
        results = await asyncio.gather(*checks)
        return [alert for batch in results for alert in batch]

    # ── Pass ──────────────────────────────────────────────────────────

    async def run_variance_analysis(
        self,
        store_id: str,
        *,
        stock_thresholds: Thresholds | None = None,
    ) -> VarianceRun:
        async with self._store_locks.hold(store_id):
            run = VarianceRun(store_id=store_id, started_at=self.ledger.clock())
            candidates = await self.detect(store_id, stock_thresholds=stock_thresholds, now=run.started_at)
            # Most severe first, so it wins when two checks share a dedupe key
            candidates.sort(key=by_severity)
            commit = asyncio.ensure_future(self._commit(run, candidates))
            try:
                await asyncio.shield(commit)
            except asyncio.CancelledError:
                # Finish the commit before the store lock is released, then stay cancelled
                await commit
                raise

        logger.info(
            "variance.pass_completed",
            store_id=store_id,
            created=len(run.created),
            suppressed=len(run.suppressed),
            notified=run.notified,
        )
        return run

    async def _commit(self, run: VarianceRun, candidates: list[VarianceAlert]) -> None:
        for alert in candidates:
            if not await self.alert_store.add_if_absent(alert):
                run.suppressed.append(alert)
                logger.debug(
                    "variance.alert_suppressed",
                    store_id=alert.store_id,
                    product_id=alert.product_id,
                    alert_type=alert.type.value,
                )
                continue

            run.created.append(alert)
            logger.info(
                "variance.alert_created",
                alert_id=alert.id,
                store_id=alert.store_id,
                product_id=alert.product_id,
                alert_type=alert.type.value,
                severity=alert.severity.value,
            )
            if alert.should_notify and await self._notify(alert):
                run.notified += 1

    async def _notify(self, alert: VarianceAlert) -> bool:
        if self.notifier is None:
            return False
        try:
            await self.notifier.send(*notification_args(alert))
        except Exception as exc:
            # Alert stays created; it is not re-sent on later passes.
            logger.error("notifier.failed", alert_id=alert.id, store_id=alert.store_id, error=str(exc))
            return False
        return True

    # ── Alert queries & lifecycle ─────────────────────────────────────

    async def get_active_alerts(self, store_id: str) -> list[VarianceAlert]:
        """Open alerts, critical first, newest first within a severity."""
        alerts = await self.alert_store.list_alerts(store_id, open_only=True)
        alerts.sort(key=lambda a: a.detected_at, reverse=True)
        alerts.sort(key=by_severity)
        return alerts

    async def resolve_alert(self, alert_id: str, resolved_by: str) -> VarianceAlert:
        alert = await self.alert_store.resolve(alert_id, resolved_by, self.ledger.clock())
        logger.info("variance.alert_resolved", alert_id=alert_id, resolved_by=resolved_by)
        return alert

    async def get_alert_statistics(self, store_id: str, days: int = 30) -> dict:
        since = self.ledger.clock() - timedelta(days=days)
        alerts = await self.alert_store.list_alerts(store_id, since=since)

        by_sev: dict[str, int] = {}
        by_type: dict[str, int] = {}
        for alert in alerts:
            by_sev[alert.severity.value] = by_sev.get(alert.severity.value, 0) + 1
            by_type[alert.type.value] = by_type.get(alert.type.value, 0) + 1

        resolved = [a for a in alerts if a.is_resolved and a.resolved_at is not None]
        total_hours = sum((a.resolved_at - a.detected_at).total_seconds() / 3600 for a in resolved)
        return {
            "total": len(alerts),
            "by_severity": by_sev,
            "by_type": by_type,
            "resolved": len(resolved),
            "average_resolution_time": total_hours / len(resolved) if resolved else 0.0,
        }
