"""Database models for the Inventory Ledger."""
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)

from shared.database import Base, utcnow

DEFAULT_VARIANT = "default"


class StockCounter(str, Enum):
    """Counters an adjustment may target."""
    AVAILABLE = "available"
    RESERVED = "reserved"


class AdjustOperation(str, Enum):
    """How an adjustment's delta is applied."""
    INCREMENT = "increment"
    DECREMENT = "decrement"
    SET = "set"


class InventoryRecord(Base):
    """Stock for one product variant (or the default variant of a variant-less product)."""

    __tablename__ = "inventory_records"

    id = Column(Uuid, primary_key=True, default=uuid4)
    product_id = Column(String(64), nullable=False)
    variant_id = Column(String(64), nullable=False, default=DEFAULT_VARIANT)
    sku = Column(String(64), nullable=True)

    available = Column(Integer, nullable=False, default=0)
    reserved = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("product_id", "variant_id", name="uq_inventory_product_variant"),
        CheckConstraint("available >= 0", name="ck_inventory_available_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_inventory_reserved_non_negative"),
    )


class InventoryAdjustment(Base):
    """Append-only audit trail of committed stock adjustments."""

    __tablename__ = "inventory_adjustments"

    id = Column(Uuid, primary_key=True, default=uuid4)
    inventory_record_id = Column(Uuid, nullable=False, index=True)
    product_id = Column(String(64), nullable=False)
    variant_id = Column(String(64), nullable=False)

    counter = Column(String(20), nullable=False)
    operation = Column(String(20), nullable=False)
    delta = Column(Integer, nullable=False)
    previous_quantity = Column(Integer, nullable=False)
    new_quantity = Column(Integer, nullable=False)
    version = Column(Integer, nullable=False)

    reason = Column(Text, nullable=True)
    reference = Column(String(255), nullable=True)  # order id or webhook event id

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_inventory_adjustments_product_variant", "product_id", "variant_id"),
    )
