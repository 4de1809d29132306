"""
Stock Level Projector — pure transitions of the per-(store, product) level.

    quantity'  = max(0, quantity + movement.quantity)
    reserved'  = max(0, reserved + delta)
    available  = max(0, quantity - reserved)      (always derived)

Clamping to zero is lossy: a loss larger than on-hand stock leaves 0, not a
negative balance. Every clamp that actually fires is reported back as a
StockDiscrepancy so the caller can persist and log it.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime

from ledger.movements import StockMovement


@dataclass(frozen=True)
class StockLevel:
    store_id: str
    product_id: str
    quantity: float = 0.0
    reserved_quantity: float = 0.0
    last_updated: datetime | None = None

    @property
    def available_quantity(self) -> float:
        return max(0.0, self.quantity - self.reserved_quantity)

    @property
    def key(self) -> tuple[str, str]:
        return (self.store_id, self.product_id)

    def as_dict(self) -> dict:
        return {
            "store_id": self.store_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "reserved_quantity": self.reserved_quantity,
            "available_quantity": self.available_quantity,
            "last_updated": self.last_updated,
        }


@dataclass(frozen=True)
class StockDiscrepancy:
    """A clamp that fired: the ledger wanted `attempted_value`, the level holds 0."""

    store_id: str
    product_id: str
    field: str
    attempted_value: float
    detected_at: datetime
    movement_id: str | None = None
    clamped_to: float = 0.0


@dataclass(frozen=True)
class Transition:
    level: StockLevel
    discrepancies: list[StockDiscrepancy] = field(default_factory=list)


def empty_level(store_id: str, product_id: str) -> StockLevel:
    return StockLevel(store_id=store_id, product_id=product_id)


def apply_movement(level: StockLevel, movement: StockMovement) -> Transition:
    """Fold one movement into a level. transfer_out quantities already arrive negative."""
    at = movement.recorded_at
    attempted = level.quantity + movement.quantity
    discrepancies = []
    if attempted < 0:
        discrepancies.append(
            StockDiscrepancy(
                store_id=level.store_id,
                product_id=level.product_id,
                field="quantity",
                attempted_value=attempted,
                detected_at=at,
                movement_id=movement.id,
            )
        )
    new_level = replace(level, quantity=max(0.0, attempted), last_updated=at)
    return Transition(new_level, discrepancies)


def reserve(level: StockLevel, delta: float, at: datetime) -> Transition:
    """Move reserved quantity by `delta` (positive commits, negative releases)."""
    attempted = level.reserved_quantity + delta
    discrepancies = []
    if attempted < 0:
        discrepancies.append(
            StockDiscrepancy(
                store_id=level.store_id,
                product_id=level.product_id,
                field="reserved_quantity",
                attempted_value=attempted,
                detected_at=at,
            )
        )
    new_level = replace(level, reserved_quantity=max(0.0, attempted), last_updated=at)
    return Transition(new_level, discrepancies)
