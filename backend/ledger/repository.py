"""
Ledger storage boundary.

StockLedger only talks to a LedgerRepository, so an in-memory store (tests,
demos) and the SQLAlchemy store (production) are interchangeable. Writes go
through `save(batch)`, which persists one unit of work atomically: the new
movements, the levels they produced, any CUMP update and clamp records.
Reads return snapshots; nothing handed out is shared with the store.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Protocol

from ledger.costing import AverageCost
from ledger.movements import StockMovement, ordering_key
from ledger.projector import StockDiscrepancy, StockLevel


@dataclass
class LedgerBatch:
    movements: list[StockMovement] = field(default_factory=list)
    levels: list[StockLevel] = field(default_factory=list)
    costs: list[AverageCost] = field(default_factory=list)
    discrepancies: list[StockDiscrepancy] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.movements or self.levels or self.costs or self.discrepancies)


@dataclass(frozen=True)
class MovementCursor:
    """Keyset position: only movements strictly older than this are returned."""

    recorded_at: datetime
    sequence: int


class LedgerRepository(Protocol):
    async def save(self, batch: LedgerBatch) -> list[StockMovement]:
        """Persist a batch atomically; returns the movements with their sequence assigned."""
        ...

    async def get_level(self, store_id: str, product_id: str) -> StockLevel | None: ...

    async def list_levels(self, store_id: str) -> list[StockLevel]: ...

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
        """Movements for a store in [start, end), most recent first."""
        ...

    async def get_average_cost(self, store_id: str, product_id: str) -> AverageCost | None: ...

    async def list_average_costs(self, store_id: str) -> list[AverageCost]: ...

    async def list_discrepancies(self, store_id: str) -> list[StockDiscrepancy]: ...

    async def store_exists(self, store_id: str) -> bool: ...

    async def product_exists(self, product_id: str) -> bool: ...

    # Single-item conveniences over save()

    async def append(self, movement: StockMovement) -> StockMovement: ...

    async def set_level(self, level: StockLevel) -> None: ...


class InMemoryLedgerRepository:
    """
    Dict/list backed repository.

    `stores` / `products` restrict which references are accepted; leave
    them as None to accept any identifier.
    """

    def __init__(self, stores: set[str] | None = None, products: set[str] | None = None):
        self.stores = set(stores) if stores is not None else None
        self.products = set(products) if products is not None else None
        self._movements: list[StockMovement] = []
        self._levels: dict[tuple[str, str], StockLevel] = {}
        self._costs: dict[tuple[str, str], AverageCost] = {}
        self._discrepancies: list[StockDiscrepancy] = []
        self._sequence = 0

    async def save(self, batch: LedgerBatch) -> list[StockMovement]:
        saved = []
        for movement in batch.movements:
            self._sequence += 1
            stored = replace(movement, sequence=self._sequence)
            self._movements.append(stored)
            saved.append(stored)
        for level in batch.levels:
            self._levels[level.key] = level
        for cost in batch.costs:
            self._costs[(cost.store_id, cost.product_id)] = cost
        self._discrepancies.extend(batch.discrepancies)
        return saved

    async def append(self, movement: StockMovement) -> StockMovement:
        saved = await self.save(LedgerBatch(movements=[movement]))
        return saved[0]

    async def set_level(self, level: StockLevel) -> None:
        await self.save(LedgerBatch(levels=[level]))

    async def get_level(self, store_id: str, product_id: str) -> StockLevel | None:
        return self._levels.get((store_id, product_id))

    async def list_levels(self, store_id: str) -> list[StockLevel]:
        return sorted(
            (lvl for lvl in self._levels.values() if lvl.store_id == store_id),
            key=lambda lvl: lvl.product_id,
        )

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
        rows = [m for m in self._movements if m.store_id == store_id]
        if product_id is not None:
            rows = [m for m in rows if m.product_id == product_id]
        if start is not None:
            rows = [m for m in rows if m.recorded_at >= start]
        if end is not None:
            rows = [m for m in rows if m.recorded_at < end]
        if before is not None:
            edge = (before.recorded_at, before.sequence)
            rows = [m for m in rows if ordering_key(m) < edge]
        rows.sort(key=ordering_key, reverse=True)
        return rows[:limit] if limit is not None else rows

    async def get_average_cost(self, store_id: str, product_id: str) -> AverageCost | None:
        return self._costs.get((store_id, product_id))

    async def list_average_costs(self, store_id: str) -> list[AverageCost]:
        return [c for (s, _), c in sorted(self._costs.items()) if s == store_id]

    async def list_discrepancies(self, store_id: str) -> list[StockDiscrepancy]:
        return [d for d in self._discrepancies if d.store_id == store_id]

    async def store_exists(self, store_id: str) -> bool:
        return self.stores is None or store_id in self.stores

    async def product_exists(self, product_id: str) -> bool:
        return self.products is None or product_id in self.products
