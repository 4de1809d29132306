"""
Costing Engine — weighted-average unit cost (CUMP).

    new_cump = (old_qty × old_cump + received_qty × unit_cost) / (old_qty + received_qty)

old_qty is the on-hand quantity captured *before* the arrival is projected.
When old_qty is 0 (first receipt, or stock clamped to zero) the new CUMP is
the arrival's unit cost, which also covers the zero-denominator case.
"""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class AverageCost:
    store_id: str
    product_id: str
    unit_cost: float
    updated_at: datetime | None = None


def calculate_cump(
    old_quantity: float,
    old_cump: float | None,
    received_quantity: float,
    unit_cost: float,
) -> float:
    """
    Example: 10 units at 100 + 5 units at 130
    → (10×100 + 5×130) / 15 = 110
    """
    if old_quantity <= 0 or old_cump is None:
        return unit_cost
    total_quantity = old_quantity + received_quantity
    if total_quantity <= 0:
        return unit_cost
    return (old_quantity * old_cump + received_quantity * unit_cost) / total_quantity


def stock_value(quantity: float, average_cost: float | None) -> float:
    """On-hand value at CUMP; products never costed are valued at 0."""
    return quantity * (average_cost or 0.0)


def loss_value(quantity: float, average_cost: float | None) -> float:
    """Value of a lost quantity (sign ignored) at CUMP."""
    return abs(quantity) * (average_cost or 0.0)
