"""
Stock Movements — the immutable entries of the ledger.

Each movement kind is its own frozen dataclass and carries only the fields
valid for it: arrivals have a unit cost, losses have a loss category, the
other kinds have neither. Quantity signs are fixed per kind:

  arrival       > 0   (unit_cost required, >= 0)
  loss          < 0   (loss_category required)
  transfer_out  < 0
  transfer_in   > 0
  adjustment    != 0

Corrections never edit an entry; they append an offsetting Adjustment.
"""

import math
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar

from ledger.errors import ValidationError


class MovementType(str, Enum):
    ARRIVAL = "arrival"
    LOSS = "loss"
    TRANSFER_OUT = "transfer_out"
    TRANSFER_IN = "transfer_in"
    ADJUSTMENT = "adjustment"


class LossCategory(str, Enum):
    SPOILAGE = "spoilage"
    DAMAGE = "damage"
    PROMOTION = "promotion"


@dataclass(frozen=True, kw_only=True)
class _Movement:
    store_id: str
    product_id: str
    quantity: float
    reason: str | None = None
    reference_id: str | None = None
    reference_type: str | None = None
    recorded_by: str | None = None
    recorded_at: datetime | None = None
    id: str | None = None
    sequence: int | None = None

    type: ClassVar[MovementType]

    @property
    def key(self) -> tuple[str, str]:
        return (self.store_id, self.product_id)

    @property
    def is_outflow(self) -> bool:
        """Losses and any negative movement count as outflow for flow-rate purposes."""
        return self.type is MovementType.LOSS or self.quantity < 0


@dataclass(frozen=True, kw_only=True)
class Arrival(_Movement):
    unit_cost: float

    type: ClassVar[MovementType] = MovementType.ARRIVAL


@dataclass(frozen=True, kw_only=True)
class Loss(_Movement):
    loss_category: LossCategory

    type: ClassVar[MovementType] = MovementType.LOSS


@dataclass(frozen=True, kw_only=True)
class TransferOut(_Movement):
    type: ClassVar[MovementType] = MovementType.TRANSFER_OUT


@dataclass(frozen=True, kw_only=True)
class TransferIn(_Movement):
    type: ClassVar[MovementType] = MovementType.TRANSFER_IN


@dataclass(frozen=True, kw_only=True)
class Adjustment(_Movement):
    type: ClassVar[MovementType] = MovementType.ADJUSTMENT


StockMovement = Arrival | Loss | TransferOut | TransferIn | Adjustment

MOVEMENT_CLASSES: dict[MovementType, type] = {
    MovementType.ARRIVAL: Arrival,
    MovementType.LOSS: Loss,
    MovementType.TRANSFER_OUT: TransferOut,
    MovementType.TRANSFER_IN: TransferIn,
    MovementType.ADJUSTMENT: Adjustment,
}

# (predicate, rule text) on quantity, per kind
_SIGN_RULES = {
    MovementType.ARRIVAL: (lambda q: q > 0, "must be positive for arrival"),
    MovementType.LOSS: (lambda q: q < 0, "must be negative for loss"),
    MovementType.TRANSFER_OUT: (lambda q: q < 0, "must be negative for transfer_out"),
    MovementType.TRANSFER_IN: (lambda q: q > 0, "must be positive for transfer_in"),
    MovementType.ADJUSTMENT: (lambda q: q != 0, "must be non-zero for adjustment"),
}


def to_naive_utc(value: datetime) -> datetime:
    """Ledger timestamps are naive UTC; aware values are converted."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def validate_movement(movement: StockMovement) -> StockMovement:
    """
    Check a movement against its kind's sign and field rules.

    Returns the movement with its loss category normalized to LossCategory.
    Raises ValidationError naming the first violated field.
    """
    if type(movement) not in MOVEMENT_CLASSES.values():
        raise ValidationError("type", f"unsupported movement class {type(movement).__name__}")

    for field_name in ("store_id", "product_id"):
        value = getattr(movement, field_name)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(field_name, "must be a non-empty identifier")

    if not _is_number(movement.quantity):
        raise ValidationError("quantity", "must be a finite number")
    check, rule = _SIGN_RULES[movement.type]
    if not check(movement.quantity):
        raise ValidationError("quantity", rule)

    if movement.recorded_at is not None and not isinstance(movement.recorded_at, datetime):
        raise ValidationError("recorded_at", "must be a datetime")
    if movement.recorded_at is not None and movement.recorded_at.tzinfo is not None:
        movement = replace(movement, recorded_at=to_naive_utc(movement.recorded_at))

    if isinstance(movement, Arrival):
        if movement.unit_cost is None:
            raise ValidationError("unit_cost", "is required for arrival")
        if not _is_number(movement.unit_cost) or movement.unit_cost < 0:
            raise ValidationError("unit_cost", "must be a non-negative finite number")

    if isinstance(movement, Loss):
        if movement.loss_category is None:
            raise ValidationError("loss_category", "is required for loss")
        try:
            category = LossCategory(movement.loss_category)
        except ValueError:
            allowed = ", ".join(c.value for c in LossCategory)
            raise ValidationError("loss_category", f"must be one of: {allowed}") from None
        if category is not movement.loss_category:
            movement = replace(movement, loss_category=category)

    return movement


def stamp(movement: StockMovement, recorded_at: datetime) -> StockMovement:
    """Assign the ledger identity: a fresh id, and recorded_at when the caller left it unset."""
    return replace(
        movement,
        id=str(uuid.uuid4()),
        recorded_at=movement.recorded_at or recorded_at,
    )


def ordering_key(movement: StockMovement) -> tuple[datetime, int]:
    """Sort key for most-recent-first listings (descending on this tuple)."""
    return (movement.recorded_at, movement.sequence or 0)
