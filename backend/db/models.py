"""
Database Models

Tables:
  Reference:
  1. stores               - Fish counters / shops
  2. products             - Species and cuts sold by weight or piece

  Ledger:
  3. stock_movements      - Append-only movement log (sequence = insertion order)
  4. inventory_levels     - Projected level per (store, product)
  5. average_costs        - Running CUMP per (store, product)
  6. stock_discrepancies  - Clamp-to-zero events kept for audit

  Alerts:
  7. variance_alerts      - Stock/variance alerts; at most one open per (type, product, store)
"""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)

from db.session import Base

# ─── 1. Stores ──────────────────────────────────────────────────────────────


class Store(Base):
    __tablename__ = "stores"

    store_id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    city = Column(String(100))
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (CheckConstraint("status IN ('active', 'inactive')", name="ck_store_status"),)


# ─── 2. Products ────────────────────────────────────────────────────────────


class Product(Base):
    __tablename__ = "products"

    product_id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    category = Column(String(100))  # fish, shellfish, prepared...
    unit = Column(String(10), nullable=False, default="kg")
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


# ─── 3. Stock Movements ─────────────────────────────────────────────────────


class LedgerEntry(Base):
    __tablename__ = "stock_movements"

    sequence = Column(Integer, primary_key=True, autoincrement=True)
    movement_id = Column(String(36), nullable=False, unique=True)
    store_id = Column(String(64), ForeignKey("stores.store_id"), nullable=False)
    product_id = Column(String(64), ForeignKey("products.product_id"), nullable=False)
    movement_type = Column(String(20), nullable=False)
    quantity = Column(Float, nullable=False)
    unit_cost = Column(Float)  # arrivals only
    loss_category = Column(String(20))  # losses only
    reason = Column(Text)
    reference_id = Column(String(100))
    reference_type = Column(String(50))  # reception_voucher, transfer_document...
    recorded_by = Column(String(100))
    recorded_at = Column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "movement_type IN ('arrival', 'loss', 'transfer_out', 'transfer_in', 'adjustment')",
            name="ck_movement_type",
        ),
        CheckConstraint(
            "loss_category IS NULL OR loss_category IN ('spoilage', 'damage', 'promotion')",
            name="ck_movement_loss_category",
        ),
        Index("ix_movements_store_time", "store_id", "recorded_at", "sequence"),
        Index("ix_movements_store_product_time", "store_id", "product_id", "recorded_at"),
    )


# ─── 4. Inventory Levels ────────────────────────────────────────────────────


class InventoryLevel(Base):
    __tablename__ = "inventory_levels"

    store_id = Column(String(64), ForeignKey("stores.store_id"), primary_key=True)
    product_id = Column(String(64), ForeignKey("products.product_id"), primary_key=True)
    quantity = Column(Float, nullable=False, default=0.0)
    reserved_quantity = Column(Float, nullable=False, default=0.0)
    last_updated = Column(DateTime)

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_level_quantity"),
        CheckConstraint("reserved_quantity >= 0", name="ck_level_reserved"),
    )


# ─── 5. Average Costs ───────────────────────────────────────────────────────


class CostAverage(Base):
    __tablename__ = "average_costs"

    store_id = Column(String(64), ForeignKey("stores.store_id"), primary_key=True)
    product_id = Column(String(64), ForeignKey("products.product_id"), primary_key=True)
    unit_cost = Column(Float, nullable=False)
    updated_at = Column(DateTime)


# ─── 6. Stock Discrepancies ─────────────────────────────────────────────────


class StockClamp(Base):
    __tablename__ = "stock_discrepancies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(String(64), ForeignKey("stores.store_id"), nullable=False)
    product_id = Column(String(64), ForeignKey("products.product_id"), nullable=False)
    field = Column(String(30), nullable=False)  # quantity | reserved_quantity
    attempted_value = Column(Float, nullable=False)
    clamped_to = Column(Float, nullable=False, default=0.0)
    movement_id = Column(String(36))
    detected_at = Column(DateTime, nullable=False)

    __table_args__ = (Index("ix_discrepancies_store", "store_id", "detected_at"),)


# ─── 7. Variance Alerts ─────────────────────────────────────────────────────


class Alert(Base):
    __tablename__ = "variance_alerts"

    alert_id = Column(String(36), primary_key=True)
    alert_type = Column(String(30), nullable=False)
    severity = Column(String(20), nullable=False)
    store_id = Column(String(64), nullable=False)
    product_id = Column(String(64), nullable=False)  # "all" for store-wide alerts
    title = Column(String(255), nullable=False, default="")
    message = Column(Text, nullable=False, default="")
    # Float, not Numeric: variance_percentage is ±inf when the expected value is 0
    current_value = Column(Float, nullable=False)
    expected_value = Column(Float, nullable=False)
    variance = Column(Float, nullable=False)
    variance_percentage = Column(Float, nullable=False)
    threshold = Column(Float, nullable=False)
    detected_at = Column(DateTime, nullable=False)
    is_resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime)
    resolved_by = Column(String(100))

    __table_args__ = (
        CheckConstraint("severity IN ('low', 'medium', 'high', 'critical')", name="ck_alert_severity"),
        Index("ix_alerts_store_detected", "store_id", "detected_at"),
        Index(
            "uq_alerts_open_key",
            "alert_type",
            "product_id",
            "store_id",
            unique=True,
            postgresql_where=text("NOT is_resolved"),
            sqlite_where=text("is_resolved = 0"),
        ),
    )
