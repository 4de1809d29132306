"""
Stock Ledger — append-only movements, projected levels, running CUMP.

Every write follows the same path:
1. Validate the movement (sign + field rules, known store/product)
2. Take the (store, product) lock
3. Read the current level and CUMP
4. Cost arrivals against the pre-movement quantity, then project
5. Save movements, level, cost and clamp records as one batch

Reads never take the lock; they see the last saved snapshot.
"""

import math
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime

import structlog

from ledger.costing import AverageCost, calculate_cump, stock_value
from ledger.errors import ValidationError
from ledger.locks import KeyedLocks
from ledger.movements import (
    Adjustment,
    Arrival,
    Loss,
    LossCategory,
    StockMovement,
    stamp,
    validate_movement,
)
from ledger.projector import (
    StockDiscrepancy,
    StockLevel,
    apply_movement,
    empty_level,
    reserve,
)
from ledger.repository import LedgerBatch, LedgerRepository, MovementCursor
from ledger.schemas import parse_movement

logger = structlog.get_logger()

DEFAULT_PAGE_SIZE = 200


@dataclass(frozen=True)
class Reservation:
    """Reserved-quantity step inside a unit of work (positive commits, negative releases)."""

    delta: float


class MovementQuery:
    """
    Lazy, restartable view over a store's movements, most recent first.

    Each `async for` starts a fresh keyset-paged scan, so iterating twice
    re-reads the ledger rather than replaying a cached list.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        store_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        product_id: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self._repository = repository
        self.store_id = store_id
        self.start = start
        self.end = end
        self.product_id = product_id
        self.page_size = page_size

    def __aiter__(self) -> AsyncIterator[StockMovement]:
        return self._scan()

    async def _scan(self) -> AsyncIterator[StockMovement]:
        cursor = None
        while True:
            page = await self._repository.query_movements(
                self.store_id,
                start=self.start,
                end=self.end,
                product_id=self.product_id,
                before=cursor,
                limit=self.page_size,
            )
            for movement in page:
                yield movement
            if len(page) < self.page_size:
                return
            last = page[-1]
            cursor = MovementCursor(last.recorded_at, last.sequence)

    async def all(self) -> list[StockMovement]:
        return [m async for m in self]


class StockLedger:
    def __init__(
        self,
        repository: LedgerRepository,
        *,
        clock: Callable[[], datetime] = datetime.utcnow,
        locks: KeyedLocks | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self.repository = repository
        self.clock = clock
        self.locks = locks or KeyedLocks()
        self.page_size = page_size

    # ── Writes ──────────────────────────────────────────────────────────

    async def append(self, movement: StockMovement, *, prior_cump: float | None = None) -> StockMovement:
        """
        Validate, store and project one movement. Returns it with its id assigned.

        `prior_cump` is the average cost to build on when the key has none stored yet.
        """
        movement = await self._validate(movement)
        async with self.locks.hold(movement.key):
            saved = await self.apply_locked(movement.key, [movement], prior_cump=prior_cump)
        return saved[0]

    async def ingest(self, payload: dict) -> StockMovement:
        """Append a movement given as a loosely typed dict (camelCase or snake_case keys)."""
        return await self.append(parse_movement(payload))

    async def record_arrival(
        self,
        *,
        store_id: str,
        product_id: str,
        quantity: float,
        unit_cost: float,
        **meta,
    ) -> StockMovement:
        return await self.append(
            Arrival(store_id=store_id, product_id=product_id, quantity=quantity, unit_cost=unit_cost, **meta)
        )

    async def record_loss(
        self,
        *,
        store_id: str,
        product_id: str,
        quantity: float,
        category: LossCategory | str,
        **meta,
    ) -> StockMovement:
        """Record a loss. The quantity may be given as a magnitude; it is always stored negative."""
        if isinstance(quantity, (int, float)) and not isinstance(quantity, bool):
            quantity = -abs(quantity)
        return await self.append(
            Loss(store_id=store_id, product_id=product_id, quantity=quantity, loss_category=category, **meta)
        )

    async def record_adjustment(
        self,
        *,
        store_id: str,
        product_id: str,
        quantity: float,
        **meta,
    ) -> StockMovement:
        """Compensating entry; the only way to correct a posted movement."""
        return await self.append(Adjustment(store_id=store_id, product_id=product_id, quantity=quantity, **meta))

    async def reserve(self, store_id: str, product_id: str, delta: float) -> StockLevel:
        """Adjust reserved quantity for a key (clamped at zero)."""
        await self.check_references(store_id, product_id)
        check_delta(delta)
        async with self.locks.hold((store_id, product_id)):
            await self.apply_locked((store_id, product_id), [Reservation(delta)])
        return await self.get_level(store_id, product_id)

    async def apply_locked(
        self,
        key: tuple[str, str],
        steps: list[StockMovement | Reservation],
        *,
        prior_cump: float | None = None,
    ) -> list[StockMovement]:
        """
        Apply validated steps for one key as a single batch.

        Caller must hold `self.locks.hold(key)` and have validated every movement.
        """
        store_id, product_id = key
        now = self.clock()
        level = await self.repository.get_level(store_id, product_id) or empty_level(store_id, product_id)
        cost = await self.repository.get_average_cost(store_id, product_id)
        if cost is None and prior_cump is not None:
            cost = AverageCost(store_id=store_id, product_id=product_id, unit_cost=prior_cump)

        batch = LedgerBatch()
        cost_changed = False
        for step in steps:
            if isinstance(step, Reservation):
                transition = reserve(level, step.delta, now)
            else:
                movement = stamp(step, now)
                if isinstance(movement, Arrival):
                    cost = AverageCost(
                        store_id=store_id,
                        product_id=product_id,
                        unit_cost=calculate_cump(
                            level.quantity,
                            cost.unit_cost if cost else None,
                            movement.quantity,
                            movement.unit_cost,
                        ),
                        updated_at=movement.recorded_at,
                    )
                    cost_changed = True
                transition = apply_movement(level, movement)
                batch.movements.append(movement)
            level = transition.level
            batch.discrepancies.extend(transition.discrepancies)

        batch.levels.append(level)
        if cost_changed:
            batch.costs.append(cost)

        saved = await self.repository.save(batch)
        for movement in saved:
            logger.info(
                "ledger.appended",
                movement_id=movement.id,
                movement_type=movement.type.value,
                store_id=store_id,
                product_id=product_id,
                quantity=movement.quantity,
            )
        for discrepancy in batch.discrepancies:
            _log_clamp(discrepancy)
        return saved

    # ── Validation ──────────────────────────────────────────────────────

    async def _validate(self, movement: StockMovement) -> StockMovement:
        movement = validate_movement(movement)
        await self.check_references(movement.store_id, movement.product_id)
        return movement

    async def check_references(self, store_id: str, product_id: str) -> None:
        if not await self.repository.store_exists(store_id):
            raise ValidationError("store_id", f"references unknown store {store_id!r}")
        if not await self.repository.product_exists(product_id):
            raise ValidationError("product_id", f"references unknown product {product_id!r}")

    # ── Reads ───────────────────────────────────────────────────────────

    def query(
        self,
        store_id: str,
        date_range: tuple[datetime, datetime] | None = None,
        *,
        product_id: str | None = None,
    ) -> MovementQuery:
        start, end = date_range if date_range else (None, None)
        return MovementQuery(
            self.repository,
            store_id,
            start=start,
            end=end,
            product_id=product_id,
            page_size=self.page_size,
        )

    async def get_stock_movements(
        self,
        store_id: str,
        date_range: tuple[datetime, datetime] | None = None,
        *,
        product_id: str | None = None,
    ) -> list[StockMovement]:
        return await self.query(store_id, date_range, product_id=product_id).all()

    async def get_recent_movements(self, store_id: str, limit: int = 10) -> list[StockMovement]:
        return await self.repository.query_movements(store_id, limit=limit)

    async def get_current_stock(self, store_id: str) -> list[StockLevel]:
        return await self.repository.list_levels(store_id)

    async def get_level(self, store_id: str, product_id: str) -> StockLevel:
        """Level for a key; a key with no history reads as an empty level."""
        return await self.repository.get_level(store_id, product_id) or empty_level(store_id, product_id)

    async def get_average_cost(self, store_id: str, product_id: str) -> float | None:
        cost = await self.repository.get_average_cost(store_id, product_id)
        return cost.unit_cost if cost else None

    async def get_discrepancies(self, store_id: str) -> list[StockDiscrepancy]:
        return await self.repository.list_discrepancies(store_id)

    async def get_stock_valuation(self, store_id: str) -> dict:
        """On-hand value per product at CUMP, plus the store total."""
        levels = await self.get_current_stock(store_id)
        costs = {c.product_id: c.unit_cost for c in await self.repository.list_average_costs(store_id)}
        products = []
        for level in levels:
            average_cost = costs.get(level.product_id)
            products.append(
                {
                    "product_id": level.product_id,
                    "quantity": level.quantity,
                    "average_cost": average_cost,
                    "value": stock_value(level.quantity, average_cost),
                }
            )
        return {
            "store_id": store_id,
            "products": products,
            "total_value": sum(p["value"] for p in products),
            "generated_at": self.clock(),
        }


def check_delta(delta: float) -> None:
    if isinstance(delta, bool) or not isinstance(delta, (int, float)) or not math.isfinite(delta):
        raise ValidationError("delta", "must be a finite number")


def _log_clamp(discrepancy: StockDiscrepancy) -> None:
    logger.warning(
        "ledger.clamped",
        store_id=discrepancy.store_id,
        product_id=discrepancy.product_id,
        field=discrepancy.field,
        attempted_value=discrepancy.attempted_value,
        movement_id=discrepancy.movement_id,
    )
