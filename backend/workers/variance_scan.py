"""
Variance Scan Workers — periodic anomaly passes per store.

Two ways to run the detector on a schedule:
  1. Celery beat → dispatch_variance_scans → run_variance_scan(store_id)
  2. VarianceScanner: an in-process asyncio loop with start()/stop()

Stopping the in-process scanner cancels the pass in flight. Detection is
read-only and the alert commit is shielded, so a cancelled pass leaves no
partial or duplicate alerts.

Schedule: See celery_app.py beat_schedule
"""

import asyncio
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts.engine import Thresholds
from alerts.notifier import EmailAlertSender, FanoutSender, RedisAlertPublisher
from alerts.variance import VarianceDetector
from core.config import Settings, get_settings
from ledger.service import StockLedger
from ledger.sql_repository import SqlAlertStore, SqlLedgerRepository
from workers.celery_app import celery_app

logger = structlog.get_logger()


def build_detector(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings | None = None,
) -> VarianceDetector:
    """Wire a detector over the SQL stores with Redis + email notification."""
    settings = settings or get_settings()
    ledger = StockLedger(SqlLedgerRepository(session_factory))
    notifier = FanoutSender(RedisAlertPublisher(settings.redis_url), EmailAlertSender())
    return VarianceDetector.from_settings(ledger, SqlAlertStore(session_factory), notifier, settings)


class VarianceScanner:
    """Run a variance pass over a fixed set of stores every `interval_seconds`."""

    def __init__(
        self,
        detector: VarianceDetector,
        store_ids: list[str],
        interval_seconds: float = 60,
        stock_thresholds: Thresholds | None = None,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self.detector = detector
        self.store_ids = list(store_ids)
        self.interval_seconds = interval_seconds
        self.stock_thresholds = stock_thresholds
        self.passes = 0
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def scan_once(self) -> dict[str, int]:
        """One pass over every store. A failing store is logged and skipped."""
        created = {}
        for store_id in self.store_ids:
            try:
                run = await self.detector.run_variance_analysis(store_id, stock_thresholds=self.stock_thresholds)
            except Exception as exc:
                logger.error("variance.scan_failed", store_id=store_id, error=str(exc), exc_info=True)
                continue
            created[store_id] = len(run.created)
        self.passes += 1
        return created

    async def run_forever(self) -> None:
        while True:
            await self.scan_once()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        if self.running:
            raise RuntimeError("Variance scanner is already running")
        self._task = asyncio.create_task(self.run_forever(), name="variance-scanner")
        logger.info("variance.scan_started", stores=len(self.store_ids), interval_seconds=self.interval_seconds)
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("variance.scan_cancelled", passes=self.passes)


# ──────────────────────────────────────────────────────────────────────────
# Celery tasks
# ──────────────────────────────────────────────────────────────────────────


@celery_app.task(
    name="workers.variance_scan.run_variance_scan",
    bind=True,
    max_retries=2,
    default_retry_delay=30,
    acks_late=True,
)
def run_variance_scan(self, store_id: str):
    """Run one variance pass (stock + loss + flow checks) for a store."""
    from db.session import create_engine, create_session_factory

    run_id = self.request.id or "manual"
    logger.info("variance.scan_task_started", store_id=store_id, run_id=run_id)

    async def _scan():
        settings = get_settings()
        engine = create_engine(settings)
        try:
            detector = build_detector(create_session_factory(engine), settings)
            run = await detector.run_variance_analysis(store_id, stock_thresholds=Thresholds.from_settings(settings))
            return {
                "status": "success",
                "store_id": store_id,
                "created": len(run.created),
                "suppressed": len(run.suppressed),
                "notified": run.notified,
                "run_id": run_id,
            }
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_scan())
    except Exception as exc:
        logger.error("variance.scan_task_failed", store_id=store_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.variance_scan.dispatch_variance_scans",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def dispatch_variance_scans(self, store_ids: list[str] | None = None):
    """
    Fan a variance pass out to each store.

    Store list: explicit argument, else settings.variance_scan_store_ids,
    else every active store in the database.
    """
    from db.models import Store
    from db.session import create_engine, create_session_factory

    run_id = self.request.id or "manual"
    settings = get_settings()

    async def _active_stores() -> list[str]:
        engine = create_engine(settings)
        try:
            async with create_session_factory(engine)() as db:
                result = await db.execute(
                    select(Store.store_id).where(Store.status == "active").order_by(Store.store_id)
                )
                return [row.store_id for row in result.all()]
        finally:
            await engine.dispose()

    try:
        stores = list(store_ids or settings.variance_scan_store_ids) or asyncio.run(_active_stores())
    except Exception as exc:
        logger.error("variance.dispatch_failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

    for store_id in stores:
        celery_app.send_task("workers.variance_scan.run_variance_scan", kwargs={"store_id": store_id})

    summary = {
        "status": "success",
        "store_count": len(stores),
        "triggered_at": datetime.now(timezone.utc).isoformat(),
        "run_id": run_id,
    }
    logger.info("variance.dispatch_complete", **summary)
    return summary
