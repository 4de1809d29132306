"""
Tests for the Stock Ledger — movements, projection, CUMP and queries.

Covers:
  - Movement validation (sign rules, per-kind fields, payload parsing)
  - Level projection and clamp-to-zero discrepancies
  - Weighted-average cost on arrivals
  - Reservations and available quantity
  - Lazy, restartable movement queries
  - Per-key locking
"""

import asyncio
import math
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest
from conftest import COD, NOW, SALMON, STORE_ID, days_ago

from forecast.flow_rate import flow_rate
from ledger.costing import calculate_cump, loss_value, stock_value
from ledger.errors import ValidationError
from ledger.locks import KeyedLocks
from ledger.movements import (
    Adjustment,
    Arrival,
    Loss,
    LossCategory,
    MovementType,
    TransferIn,
    TransferOut,
    validate_movement,
)
from ledger.projector import apply_movement, empty_level, reserve
from ledger.repository import InMemoryLedgerRepository
from ledger.schemas import parse_movement
from ledger.service import StockLedger

# ── Validation ─────────────────────────────────────────────────────────


class TestMovementValidation:
    def test_arrival_must_be_positive(self):
        with pytest.raises(ValidationError) as exc:
            validate_movement(Arrival(store_id=STORE_ID, product_id=SALMON, quantity=-5, unit_cost=10))
        assert exc.value.field == "quantity"

    def test_loss_must_be_negative(self):
        with pytest.raises(ValidationError) as exc:
            validate_movement(Loss(store_id=STORE_ID, product_id=SALMON, quantity=3, loss_category="spoilage"))
        assert exc.value.field == "quantity"

    def test_transfer_signs(self):
        with pytest.raises(ValidationError):
            validate_movement(TransferOut(store_id=STORE_ID, product_id=SALMON, quantity=2))
        with pytest.raises(ValidationError):
            validate_movement(TransferIn(store_id=STORE_ID, product_id=SALMON, quantity=-2))

    def test_adjustment_cannot_be_zero(self):
        with pytest.raises(ValidationError):
            validate_movement(Adjustment(store_id=STORE_ID, product_id=SALMON, quantity=0))

    def test_non_finite_quantity_rejected(self):
        with pytest.raises(ValidationError) as exc:
            validate_movement(Adjustment(store_id=STORE_ID, product_id=SALMON, quantity=math.nan))
        assert exc.value.field == "quantity"

    def test_negative_unit_cost_rejected(self):
        with pytest.raises(ValidationError) as exc:
            validate_movement(Arrival(store_id=STORE_ID, product_id=SALMON, quantity=5, unit_cost=-1))
        assert exc.value.field == "unit_cost"

    def test_unknown_loss_category_rejected(self):
        with pytest.raises(ValidationError) as exc:
            validate_movement(Loss(store_id=STORE_ID, product_id=SALMON, quantity=-1, loss_category="theft"))
        assert exc.value.field == "loss_category"

    def test_loss_category_normalized(self):
        m = validate_movement(Loss(store_id=STORE_ID, product_id=SALMON, quantity=-1, loss_category="damage"))
        assert m.loss_category is LossCategory.DAMAGE

    def test_empty_store_id_rejected(self):
        with pytest.raises(ValidationError) as exc:
            validate_movement(Adjustment(store_id="  ", product_id=SALMON, quantity=1))
        assert exc.value.field == "store_id"


class TestMovementPayloads:
    def test_camel_case_arrival(self):
        m = parse_movement(
            {"type": "arrival", "storeId": STORE_ID, "productId": SALMON, "quantity": 5, "unitCost": 12.5}
        )
        assert isinstance(m, Arrival)
        assert m.unit_cost == 12.5

    def test_arrival_without_cost_rejected(self):
        with pytest.raises(ValidationError) as exc:
            parse_movement({"type": "arrival", "store_id": STORE_ID, "product_id": SALMON, "quantity": 5})
        assert exc.value.field == "unit_cost"

    def test_loss_without_category_rejected(self):
        with pytest.raises(ValidationError) as exc:
            parse_movement({"type": "loss", "store_id": STORE_ID, "product_id": SALMON, "quantity": -2})
        assert exc.value.field == "loss_category"

    def test_cost_on_loss_rejected(self):
        with pytest.raises(ValidationError) as exc:
            parse_movement(
                {
                    "type": "loss",
                    "store_id": STORE_ID,
                    "product_id": SALMON,
                    "quantity": -2,
                    "loss_category": "spoilage",
                    "unit_cost": 4,
                }
            )
        assert exc.value.field == "unit_cost"

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            parse_movement({"type": "sale", "store_id": STORE_ID, "product_id": SALMON, "quantity": -2})

    def test_offset_timestamp_stored_as_naive_utc(self):
        m = parse_movement(
            {
                "type": "adjustment",
                "storeId": STORE_ID,
                "productId": SALMON,
                "quantity": 1,
                "recordedAt": "2024-06-10T02:00:00+02:00",
            }
        )
        assert m.recorded_at == datetime(2024, 6, 10)
        assert m.recorded_at.tzinfo is None

    def test_aware_recorded_at_normalized_on_validation(self):
        aware = datetime(2024, 6, 10, 9, 30, tzinfo=timezone(timedelta(hours=-5)))
        m = validate_movement(Adjustment(store_id=STORE_ID, product_id=SALMON, quantity=1, recorded_at=aware))
        assert m.recorded_at == datetime(2024, 6, 10, 14, 30)


# ── Projection & costing (pure) ────────────────────────────────────────


class TestProjector:
    def test_arrival_on_empty_level(self):
        m = Arrival(store_id=STORE_ID, product_id=SALMON, quantity=10, unit_cost=5, recorded_at=NOW)
        result = apply_movement(empty_level(STORE_ID, SALMON), m)
        assert result.level.quantity == 10
        assert result.level.last_updated == NOW
        assert result.discrepancies == []

    def test_overdraw_clamps_and_reports(self):
        level = empty_level(STORE_ID, SALMON)
        level = apply_movement(level, Arrival(store_id=STORE_ID, product_id=SALMON, quantity=5, unit_cost=1)).level
        result = apply_movement(
            level, Loss(store_id=STORE_ID, product_id=SALMON, quantity=-8, loss_category="spoilage", id="m-1")
        )
        assert result.level.quantity == 0
        [d] = result.discrepancies
        assert d.field == "quantity"
        assert d.attempted_value == -3
        assert d.movement_id == "m-1"

    def test_release_more_than_reserved_clamps(self):
        level = reserve(empty_level(STORE_ID, SALMON), 4, NOW).level
        result = reserve(level, -6, NOW)
        assert result.level.reserved_quantity == 0
        assert result.discrepancies[0].field == "reserved_quantity"

    def test_available_never_negative(self):
        level = reserve(empty_level(STORE_ID, SALMON), 3, NOW).level
        assert level.quantity == 0
        assert level.available_quantity == 0


class TestCump:
    def test_weighted_average(self):
        """10 units at 100 + 5 units at 130 → 110."""
        assert calculate_cump(10, 100, 5, 130) == pytest.approx(110)

    def test_first_receipt_takes_unit_cost(self):
        assert calculate_cump(0, None, 5, 42) == 42

    def test_after_stock_ran_out_takes_unit_cost(self):
        assert calculate_cump(0, 100, 5, 80) == 80

    def test_values(self):
        assert stock_value(15, 110) == 1650
        assert stock_value(4, None) == 0
        assert loss_value(-3, 10) == 30


# ── Ledger service ─────────────────────────────────────────────────────


class YieldingRepository(InMemoryLedgerRepository):
    """Gives up the event loop between reading a level and saving it."""

    async def get_level(self, store_id, product_id):
        level = await super().get_level(store_id, product_id)
        await asyncio.sleep(0)
        return level

    async def save(self, batch):
        await asyncio.sleep(0)
        return await super().save(batch)


class UnlockedKeys(KeyedLocks):
    @asynccontextmanager
    async def hold(self, key):
        yield


@pytest.mark.asyncio
class TestStockLedger:
    async def test_arrivals_update_level_and_cump(self, ledger):
        await ledger.record_arrival(store_id=STORE_ID, product_id=SALMON, quantity=10, unit_cost=100)
        await ledger.record_arrival(store_id=STORE_ID, product_id=SALMON, quantity=5, unit_cost=130)

        level = await ledger.get_level(STORE_ID, SALMON)
        assert level.quantity == 15
        assert await ledger.get_average_cost(STORE_ID, SALMON) == pytest.approx(110)

    async def test_append_assigns_identity(self, ledger, clock):
        m = await ledger.record_adjustment(store_id=STORE_ID, product_id=SALMON, quantity=2)
        assert m.id
        assert m.sequence == 1
        assert m.recorded_at == clock.now

    async def test_loss_given_as_magnitude_is_stored_negative(self, ledger):
        await ledger.record_arrival(store_id=STORE_ID, product_id=SALMON, quantity=10, unit_cost=5)
        m = await ledger.record_loss(store_id=STORE_ID, product_id=SALMON, quantity=3, category="spoilage")
        assert m.quantity == -3
        assert (await ledger.get_level(STORE_ID, SALMON)).quantity == 7

    async def test_overdraw_records_discrepancy(self, ledger):
        await ledger.record_arrival(store_id=STORE_ID, product_id=SALMON, quantity=2, unit_cost=5)
        loss = await ledger.record_loss(store_id=STORE_ID, product_id=SALMON, quantity=5, category="damage")

        assert (await ledger.get_level(STORE_ID, SALMON)).quantity == 0
        [d] = await ledger.get_discrepancies(STORE_ID)
        assert d.attempted_value == -3
        assert d.movement_id == loss.id

    async def test_arrival_after_clamp_resets_cump(self, ledger):
        await ledger.record_arrival(store_id=STORE_ID, product_id=SALMON, quantity=2, unit_cost=100)
        await ledger.record_loss(store_id=STORE_ID, product_id=SALMON, quantity=5, category="spoilage")
        await ledger.record_arrival(store_id=STORE_ID, product_id=SALMON, quantity=4, unit_cost=60)
        assert await ledger.get_average_cost(STORE_ID, SALMON) == 60

    async def test_invalid_movement_leaves_ledger_untouched(self, ledger, repository):
        with pytest.raises(ValidationError):
            await ledger.append(Arrival(store_id=STORE_ID, product_id=SALMON, quantity=0, unit_cost=5))
        assert await ledger.get_stock_movements(STORE_ID) == []
        assert await repository.get_level(STORE_ID, SALMON) is None

    async def test_unknown_references_rejected(self, clock):
        ledger = StockLedger(InMemoryLedgerRepository(stores={STORE_ID}, products={SALMON}), clock=clock)
        with pytest.raises(ValidationError) as exc:
            await ledger.record_adjustment(store_id="nowhere", product_id=SALMON, quantity=1)
        assert exc.value.field == "store_id"
        with pytest.raises(ValidationError) as exc:
            await ledger.record_adjustment(store_id=STORE_ID, product_id="tuna", quantity=1)
        assert exc.value.field == "product_id"

    async def test_ingest_dict_payload(self, ledger):
        m = await ledger.ingest(
            {"type": "loss", "storeId": STORE_ID, "productId": COD, "quantity": -1, "lossCategory": "promotion"}
        )
        assert m.type is MovementType.LOSS
        assert m.loss_category is LossCategory.PROMOTION

    async def test_ingest_utc_timestamp_keeps_store_readable(self, ledger):
        """JSON timestamps ending in Z mix with clock-stamped movements."""
        await ledger.record_arrival(
            store_id=STORE_ID, product_id=COD, quantity=10, unit_cost=8, recorded_at=days_ago(20)
        )
        await ledger.ingest(
            {
                "type": "loss",
                "storeId": STORE_ID,
                "productId": COD,
                "quantity": -3,
                "lossCategory": "spoilage",
                "recordedAt": "2024-06-10T00:00:00Z",
            }
        )
        await ledger.record_adjustment(store_id=STORE_ID, product_id=COD, quantity=1)

        movements = await ledger.get_stock_movements(STORE_ID)
        assert [m.type for m in movements] == [MovementType.ADJUSTMENT, MovementType.LOSS, MovementType.ARRIVAL]
        assert movements[1].recorded_at == datetime(2024, 6, 10)
        assert await flow_rate(ledger, STORE_ID, COD, 30) == pytest.approx(3 / 30)

    async def test_level_is_fold_of_movements(self, ledger):
        await ledger.record_arrival(store_id=STORE_ID, product_id=SALMON, quantity=20, unit_cost=5)
        await ledger.record_loss(store_id=STORE_ID, product_id=SALMON, quantity=3, category="spoilage")
        await ledger.append(TransferOut(store_id=STORE_ID, product_id=SALMON, quantity=-4))
        await ledger.record_adjustment(store_id=STORE_ID, product_id=SALMON, quantity=1.5)

        movements = await ledger.get_stock_movements(STORE_ID, product_id=SALMON)
        level = await ledger.get_level(STORE_ID, SALMON)
        assert level.quantity == pytest.approx(sum(m.quantity for m in movements))

    async def test_reserve_and_release(self, ledger):
        await ledger.record_arrival(store_id=STORE_ID, product_id=SALMON, quantity=10, unit_cost=5)
        level = await ledger.reserve(STORE_ID, SALMON, 4)
        assert level.available_quantity == 6
        level = await ledger.reserve(STORE_ID, SALMON, -10)
        assert level.reserved_quantity == 0
        assert [d.field for d in await ledger.get_discrepancies(STORE_ID)] == ["reserved_quantity"]

    async def test_reserve_rejects_nan(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.reserve(STORE_ID, SALMON, math.nan)

    async def test_missing_key_reads_as_empty_level(self, ledger):
        level = await ledger.get_level(STORE_ID, "unknown")
        assert level.quantity == 0
        assert level.available_quantity == 0
        assert await ledger.get_average_cost(STORE_ID, "unknown") is None

    async def test_concurrent_appends_do_not_lose_updates(self, clock):
        ledger = StockLedger(YieldingRepository(), clock=clock)
        await asyncio.gather(*(self._arrive(ledger, i) for i in range(50)))
        assert (await ledger.get_level(STORE_ID, SALMON)).quantity == 50
        assert len(ledger.locks) == 0

    async def test_unlocked_appends_lose_updates(self, clock):
        """Without the per-key lock, interleaved read-modify-writes overwrite each other."""
        ledger = StockLedger(YieldingRepository(), clock=clock, locks=UnlockedKeys())
        await asyncio.gather(*(self._arrive(ledger, i) for i in range(50)))
        assert (await ledger.get_level(STORE_ID, SALMON)).quantity < 50

    async def _arrive(self, ledger, i):
        await ledger.record_arrival(store_id=STORE_ID, product_id=SALMON, quantity=1, unit_cost=10 + i)

    async def test_current_stock_reads_are_stable(self, ledger):
        await ledger.record_arrival(store_id=STORE_ID, product_id=SALMON, quantity=3, unit_cost=5)
        await ledger.reserve(STORE_ID, SALMON, 1)
        assert await ledger.get_current_stock(STORE_ID) == await ledger.get_current_stock(STORE_ID)

    async def test_stock_valuation(self, ledger):
        await ledger.record_arrival(store_id=STORE_ID, product_id=SALMON, quantity=10, unit_cost=100)
        await ledger.record_arrival(store_id=STORE_ID, product_id=SALMON, quantity=5, unit_cost=130)
        await ledger.record_arrival(store_id=STORE_ID, product_id=COD, quantity=2, unit_cost=20)

        valuation = await ledger.get_stock_valuation(STORE_ID)
        assert valuation["total_value"] == pytest.approx(1690)
        assert [p["product_id"] for p in valuation["products"]] == [COD, SALMON]


@pytest.mark.asyncio
class TestMovementQueries:
    async def _seed(self, ledger, count):
        for i in range(count):
            await ledger.append(
                Adjustment(store_id=STORE_ID, product_id=SALMON, quantity=i + 1, recorded_at=days_ago(count - i))
            )

    async def test_most_recent_first_across_pages(self, repository, clock):
        ledger = StockLedger(repository, clock=clock, page_size=3)
        await self._seed(ledger, 7)
        quantities = [m.quantity async for m in ledger.query(STORE_ID)]
        assert quantities == [7, 6, 5, 4, 3, 2, 1]

    async def test_query_is_restartable(self, repository, clock):
        ledger = StockLedger(repository, clock=clock, page_size=2)
        await self._seed(ledger, 3)
        query = ledger.query(STORE_ID)
        first = await query.all()
        await ledger.record_adjustment(store_id=STORE_ID, product_id=SALMON, quantity=9)
        second = await query.all()
        assert len(first) == 3
        assert len(second) == 4
        assert second[0].quantity == 9

    async def test_range_is_half_open(self, ledger):
        await self._seed(ledger, 5)
        start, end = days_ago(4), days_ago(2)
        movements = await ledger.get_stock_movements(STORE_ID, (start, end))
        assert [m.recorded_at for m in movements] == [days_ago(3), days_ago(4)]

    async def test_ties_ordered_by_sequence(self, ledger):
        for q in (1, 2, 3):
            await ledger.append(Adjustment(store_id=STORE_ID, product_id=SALMON, quantity=q, recorded_at=NOW))
        assert [m.quantity for m in await ledger.get_stock_movements(STORE_ID)] == [3, 2, 1]

    async def test_filters_by_store_and_product(self, ledger):
        await ledger.record_adjustment(store_id=STORE_ID, product_id=SALMON, quantity=1)
        await ledger.record_adjustment(store_id=STORE_ID, product_id=COD, quantity=1)
        await ledger.record_adjustment(store_id="elsewhere", product_id=SALMON, quantity=1)
        movements = await ledger.get_stock_movements(STORE_ID, product_id=COD)
        assert [(m.store_id, m.product_id) for m in movements] == [(STORE_ID, COD)]

    async def test_recent_movements(self, ledger):
        await self._seed(ledger, 12)
        recent = await ledger.get_recent_movements(STORE_ID, limit=10)
        assert len(recent) == 10
        assert recent[0].quantity == 12


@pytest.mark.asyncio
class TestKeyedLocks:
    async def test_lock_released_and_dropped(self):
        locks = KeyedLocks()
        async with locks.hold(("s", "p")):
            assert locks.locked(("s", "p"))
            assert not locks.locked(("s", "other"))
        assert len(locks) == 0

    async def test_same_key_serializes(self):
        locks = KeyedLocks()
        order = []

        async def worker(name):
            async with locks.hold("k"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]
