"""Database models for Order Service."""
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Float, Index, Integer, String, Uuid

from shared.database import Base, JSONType, utcnow


class OrderStatus(str, Enum):
    """Order lifecycle status."""
    PENDING = "pending"
    PENDING_INVENTORY = "pending_inventory"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class Order(Base):
    """Order aggregate root."""

    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_number = Column(String(32), nullable=False, unique=True)
    status = Column(String(30), default=OrderStatus.PENDING.value, nullable=False, index=True)
    version = Column(Integer, nullable=False, default=0)

    # Payment gateway references
    external_session_id = Column(String(255), nullable=False, unique=True)
    payment_intent_id = Column(String(255), nullable=True, index=True)
    webhook_event_id = Column(String(255), nullable=True)

    # Customer
    user_id = Column(String(64), nullable=True, index=True)
    email = Column(String(255), nullable=True)

    # Order details
    line_items = Column(JSONType, nullable=False)  # [{"product_id", "variant_id", "quantity", "unit_price"}]
    currency = Column(String(3), default="usd", nullable=False)
    total_amount = Column(Float, nullable=False)
    subtotal = Column(Float, nullable=True)
    tax = Column(Float, nullable=True)
    shipping = Column(Float, nullable=True)
    discount = Column(Float, nullable=True)
    original_amount = Column(Float, nullable=True)
    coupon_code = Column(String(64), nullable=True)
    shipping_address = Column(JSONType, nullable=True)
    billing_address = Column(JSONType, nullable=True)

    # [{"product_id", "variant_id", "requested", "available"}], only when stock fell short
    inventory_issues = Column(JSONType, nullable=True)

    # Append-only [{"from", "to", "timestamp", "actor", "reason"}]
    status_history = Column(JSONType, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_orders_status_created", "status", "created_at"),
    )
