"""
Ingestion payloads — what collaborators (forms, importers, workers) hand in.

Payloads arrive as loosely typed dicts, camelCase or snake_case. They are
parsed with pydantic and turned into the tagged movement variants, so a
loss without a category or an arrival without a cost fails here with a
ValidationError naming the field.
"""

from datetime import datetime
from typing import Any, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ledger.errors import ValidationError
from ledger.movements import (
    Adjustment,
    Arrival,
    Loss,
    MovementType,
    StockMovement,
    TransferIn,
    TransferOut,
    to_naive_utc,
    validate_movement,
)

_P = TypeVar("_P", bound=BaseModel)


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    @field_validator("*")
    @classmethod
    def _naive_utc(cls, value):
        if isinstance(value, datetime):
            return to_naive_utc(value)
        return value


class MovementPayload(_Payload):
    type: MovementType
    store_id: str
    product_id: str
    quantity: float
    unit_cost: float | None = None
    loss_category: str | None = None
    reason: str | None = None
    reference_id: str | None = None
    reference_type: str | None = None
    recorded_by: str | None = None
    recorded_at: datetime | None = None

    def to_movement(self) -> StockMovement:
        common = dict(
            store_id=self.store_id,
            product_id=self.product_id,
            quantity=self.quantity,
            reason=self.reason,
            reference_id=self.reference_id,
            reference_type=self.reference_type,
            recorded_by=self.recorded_by,
            recorded_at=self.recorded_at,
        )
        if self.type is not MovementType.ARRIVAL and self.unit_cost is not None:
            raise ValidationError("unit_cost", f"is only allowed on arrival, not {self.type.value}")
        if self.type is not MovementType.LOSS and self.loss_category is not None:
            raise ValidationError("loss_category", f"is only allowed on loss, not {self.type.value}")

        if self.type is MovementType.ARRIVAL:
            movement = Arrival(unit_cost=self.unit_cost, **common)
        elif self.type is MovementType.LOSS:
            movement = Loss(loss_category=self.loss_category, **common)
        elif self.type is MovementType.TRANSFER_OUT:
            movement = TransferOut(**common)
        elif self.type is MovementType.TRANSFER_IN:
            movement = TransferIn(**common)
        else:
            movement = Adjustment(**common)
        return validate_movement(movement)


class ReceptionLine(_Payload):
    product_id: str
    received_quantity: float
    unit_cost: float | None = None


class ReceptionVoucher(_Payload):
    """A validated goods-received voucher (bon de réception)."""

    number: str
    store_id: str
    lines: list[ReceptionLine] = Field(min_length=1)
    created_by: str | None = None
    validated_by: str | None = None
    validated_at: datetime | None = None


class TransferLine(_Payload):
    product_id: str
    sent_quantity: float = Field(gt=0)
    received_quantity: float | None = Field(default=None, ge=0)
    comment: str | None = None


class TransferDocument(_Payload):
    """A store-to-store transfer (transfert) with one line per product."""

    number: str
    source_store_id: str
    destination_store_id: str
    lines: list[TransferLine] = Field(min_length=1)
    created_by: str | None = None
    created_at: datetime | None = None
    received_by: str | None = None
    received_at: datetime | None = None


def parse_payload(model: type[_P], data: Any) -> _P:
    """Validate raw input into `model`, translating pydantic errors to ValidationError."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or model.__name__
        raise ValidationError(field, first["msg"]) from exc


def parse_movement(data: Any) -> StockMovement:
    return parse_payload(MovementPayload, data).to_movement()
