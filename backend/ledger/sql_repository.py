"""
SQLAlchemy-backed ledger and alert stores.

Each operation opens its own session from the factory, so concurrent
coroutines never share an AsyncSession. `save` writes a whole LedgerBatch
inside one transaction; the autoincrement primary key of stock_movements
is the movement's sequence.
"""

from datetime import datetime

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts.store import AlertDetails, AlertType, Severity, VarianceAlert
from db.models import Alert, CostAverage, InventoryLevel, LedgerEntry, Product, StockClamp, Store
from ledger.costing import AverageCost
from ledger.errors import AlertAlreadyResolvedError, AlertNotFoundError
from ledger.movements import MOVEMENT_CLASSES, Arrival, Loss, LossCategory, MovementType, StockMovement
from ledger.projector import StockDiscrepancy, StockLevel
from ledger.repository import LedgerBatch, MovementCursor

# ──────────────────────────────────────────────────────────────────────────
# Row ↔ domain mapping
# ──────────────────────────────────────────────────────────────────────────


def _entry_row(movement: StockMovement) -> LedgerEntry:
    return LedgerEntry(
        movement_id=movement.id,
        store_id=movement.store_id,
        product_id=movement.product_id,
        movement_type=movement.type.value,
        quantity=movement.quantity,
        unit_cost=movement.unit_cost if isinstance(movement, Arrival) else None,
        loss_category=LossCategory(movement.loss_category).value if isinstance(movement, Loss) else None,
        reason=movement.reason,
        reference_id=movement.reference_id,
        reference_type=movement.reference_type,
        recorded_by=movement.recorded_by,
        recorded_at=movement.recorded_at,
    )


def _to_movement(row: LedgerEntry) -> StockMovement:
    movement_type = MovementType(row.movement_type)
    extra = {}
    if movement_type is MovementType.ARRIVAL:
        extra["unit_cost"] = row.unit_cost
    elif movement_type is MovementType.LOSS:
        extra["loss_category"] = LossCategory(row.loss_category)
    return MOVEMENT_CLASSES[movement_type](
        store_id=row.store_id,
        product_id=row.product_id,
        quantity=row.quantity,
        reason=row.reason,
        reference_id=row.reference_id,
        reference_type=row.reference_type,
        recorded_by=row.recorded_by,
        recorded_at=row.recorded_at,
        id=row.movement_id,
        sequence=row.sequence,
        **extra,
    )


def _to_level(row: InventoryLevel) -> StockLevel:
    return StockLevel(
        store_id=row.store_id,
        product_id=row.product_id,
        quantity=row.quantity,
        reserved_quantity=row.reserved_quantity,
        last_updated=row.last_updated,
    )


def _to_cost(row: CostAverage) -> AverageCost:
    return AverageCost(
        store_id=row.store_id,
        product_id=row.product_id,
        unit_cost=row.unit_cost,
        updated_at=row.updated_at,
    )


def _to_discrepancy(row: StockClamp) -> StockDiscrepancy:
    return StockDiscrepancy(
        store_id=row.store_id,
        product_id=row.product_id,
        field=row.field,
        attempted_value=row.attempted_value,
        detected_at=row.detected_at,
        movement_id=row.movement_id,
        clamped_to=row.clamped_to,
    )


def _alert_row(alert: VarianceAlert) -> Alert:
    return Alert(
        alert_id=alert.id,
        alert_type=alert.type.value,
        severity=alert.severity.value,
        store_id=alert.store_id,
        product_id=alert.product_id,
        title=alert.title,
        message=alert.message,
        current_value=alert.details.current_value,
        expected_value=alert.details.expected_value,
        variance=alert.details.variance,
        variance_percentage=alert.details.variance_percentage,
        threshold=alert.details.threshold,
        detected_at=alert.detected_at,
        is_resolved=alert.is_resolved,
        resolved_at=alert.resolved_at,
        resolved_by=alert.resolved_by,
    )


def _to_alert(row: Alert) -> VarianceAlert:
    return VarianceAlert(
        id=row.alert_id,
        type=AlertType(row.alert_type),
        severity=Severity(row.severity),
        store_id=row.store_id,
        product_id=row.product_id,
        title=row.title,
        message=row.message,
        details=AlertDetails(
            current_value=row.current_value,
            expected_value=row.expected_value,
            variance=row.variance,
            variance_percentage=row.variance_percentage,
            threshold=row.threshold,
        ),
        detected_at=row.detected_at,
        is_resolved=row.is_resolved,
        resolved_at=row.resolved_at,
        resolved_by=row.resolved_by,
    )


# ──────────────────────────────────────────────────────────────────────────
# Ledger repository
# ──────────────────────────────────────────────────────────────────────────


class SqlLedgerRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def save(self, batch: LedgerBatch) -> list[StockMovement]:
        async with self.session_factory() as session, session.begin():
            rows = [_entry_row(m) for m in batch.movements]
            session.add_all(rows)
            for level in batch.levels:
                await session.merge(
                    InventoryLevel(
                        store_id=level.store_id,
                        product_id=level.product_id,
                        quantity=level.quantity,
                        reserved_quantity=level.reserved_quantity,
                        last_updated=level.last_updated,
                    )
                )
            for cost in batch.costs:
                await session.merge(
                    CostAverage(
                        store_id=cost.store_id,
                        product_id=cost.product_id,
                        unit_cost=cost.unit_cost,
                        updated_at=cost.updated_at,
                    )
                )
            session.add_all(
                StockClamp(
                    store_id=d.store_id,
                    product_id=d.product_id,
                    field=d.field,
                    attempted_value=d.attempted_value,
                    clamped_to=d.clamped_to,
                    movement_id=d.movement_id,
                    detected_at=d.detected_at,
                )
                for d in batch.discrepancies
            )
            await session.flush()
            return [_to_movement(row) for row in rows]

    async def append(self, movement: StockMovement) -> StockMovement:
        saved = await self.save(LedgerBatch(movements=[movement]))
        return saved[0]

    async def set_level(self, level: StockLevel) -> None:
        await self.save(LedgerBatch(levels=[level]))

    async def get_level(self, store_id: str, product_id: str) -> StockLevel | None:
        async with self.session_factory() as session:
            row = await session.get(InventoryLevel, (store_id, product_id))
            return _to_level(row) if row else None

    async def list_levels(self, store_id: str) -> list[StockLevel]:
        async with self.session_factory() as session:
            result = await session.scalars(
                select(InventoryLevel)
                .where(InventoryLevel.store_id == store_id)
                .order_by(InventoryLevel.product_id)
            )
            return [_to_level(row) for row in result]

    async def query_movements(
        self,
        store_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        product_id: str | None = None,
        before: MovementCursor | None = None,
        limit: int | None = None,
    ) -> list[StockMovement]:
        query = select(LedgerEntry).where(LedgerEntry.store_id == store_id)
        if product_id is not None:
            query = query.where(LedgerEntry.product_id == product_id)
        if start is not None:
            query = query.where(LedgerEntry.recorded_at >= start)
        if end is not None:
            query = query.where(LedgerEntry.recorded_at < end)
        if before is not None:
            query = query.where(
                or_(
                    LedgerEntry.recorded_at < before.recorded_at,
                    and_(
                        LedgerEntry.recorded_at == before.recorded_at,
                        LedgerEntry.sequence < before.sequence,
                    ),
                )
            )
        query = query.order_by(LedgerEntry.recorded_at.desc(), LedgerEntry.sequence.desc())
        if limit is not None:
            query = query.limit(limit)

        async with self.session_factory() as session:
            result = await session.scalars(query)
            return [_to_movement(row) for row in result]

    async def get_average_cost(self, store_id: str, product_id: str) -> AverageCost | None:
        async with self.session_factory() as session:
            row = await session.get(CostAverage, (store_id, product_id))
            return _to_cost(row) if row else None

    async def list_average_costs(self, store_id: str) -> list[AverageCost]:
        async with self.session_factory() as session:
            result = await session.scalars(
                select(CostAverage).where(CostAverage.store_id == store_id).order_by(CostAverage.product_id)
            )
            return [_to_cost(row) for row in result]

    async def list_discrepancies(self, store_id: str) -> list[StockDiscrepancy]:
        async with self.session_factory() as session:
            result = await session.scalars(
                select(StockClamp).where(StockClamp.store_id == store_id).order_by(StockClamp.id)
            )
            return [_to_discrepancy(row) for row in result]

    async def store_exists(self, store_id: str) -> bool:
        async with self.session_factory() as session:
            return await session.scalar(select(Store.store_id).where(Store.store_id == store_id)) is not None

    async def product_exists(self, product_id: str) -> bool:
        async with self.session_factory() as session:
            found = await session.scalar(select(Product.product_id).where(Product.product_id == product_id))
            return found is not None


# ──────────────────────────────────────────────────────────────────────────
# Alert store
# ──────────────────────────────────────────────────────────────────────────


def _open_key(alert_type: AlertType, product_id: str, store_id: str):
    return and_(
        Alert.alert_type == AlertType(alert_type).value,
        Alert.product_id == product_id,
        Alert.store_id == store_id,
        Alert.is_resolved.is_(False),
    )


class SqlAlertStore:
    """Open-alert uniqueness is backed by the partial unique index uq_alerts_open_key."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def add_if_absent(self, alert: VarianceAlert) -> bool:
        try:
            async with self.session_factory() as session, session.begin():
                existing = await session.scalar(select(Alert.alert_id).where(_open_key(*alert.dedupe_key)).limit(1))
                if existing is not None:
                    return False
                session.add(_alert_row(alert))
        except IntegrityError:
            # Lost the race to another writer with the same key
            return False
        return True

    async def get(self, alert_id: str) -> VarianceAlert | None:
        async with self.session_factory() as session:
            row = await session.get(Alert, alert_id)
            return _to_alert(row) if row else None

    async def find_open(self, alert_type: AlertType, product_id: str, store_id: str) -> VarianceAlert | None:
        async with self.session_factory() as session:
            row = await session.scalar(select(Alert).where(_open_key(alert_type, product_id, store_id)).limit(1))
            return _to_alert(row) if row else None

    async def list_alerts(
        self,
        store_id: str,
        *,
        open_only: bool = False,
        since: datetime | None = None,
    ) -> list[VarianceAlert]:
        query = select(Alert).where(Alert.store_id == store_id)
        if open_only:
            query = query.where(Alert.is_resolved.is_(False))
        if since is not None:
            query = query.where(Alert.detected_at >= since)
        async with self.session_factory() as session:
            result = await session.scalars(query.order_by(Alert.detected_at))
            return [_to_alert(row) for row in result]

    async def resolve(self, alert_id: str, resolved_by: str, resolved_at: datetime) -> VarianceAlert:
        async with self.session_factory() as session, session.begin():
            row = await session.get(Alert, alert_id, with_for_update=True)
            if row is None:
                raise AlertNotFoundError(alert_id)
            if row.is_resolved:
                raise AlertAlreadyResolvedError(alert_id)
            row.is_resolved = True
            row.resolved_at = resolved_at
            row.resolved_by = resolved_by
            return _to_alert(row)
