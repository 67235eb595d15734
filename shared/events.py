"""Integration event definitions published by the fulfillment core."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event types emitted by the fulfillment core."""

    ORDER_CREATED = "order.created"
    ORDER_STATUS_CHANGED = "order.status_changed"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    aggregate_id: str  # ID of the main entity (order_id)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = Field(default=1)
    correlation_id: str  # Webhook event id or admin request id, for tracing
    causation_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class OrderCreatedEvent(BaseEvent):
    """Event emitted when fulfillment commits a new order."""
    event_type: EventType = EventType.ORDER_CREATED
    order_id: str
    order_number: str
    status: str
    email: Optional[str] = None
    user_id: Optional[str] = None
    total_amount: float
    currency: str = "usd"
    line_items: list[Dict[str, Any]]
    inventory_issues: Optional[list[Dict[str, Any]]] = None


class OrderStatusChangedEvent(BaseEvent):
    """Event emitted when an accepted status transition is persisted."""
    event_type: EventType = EventType.ORDER_STATUS_CHANGED
    order_id: str
    order_number: str
    email: Optional[str] = None
    from_status: str
    to_status: str
    actor: Optional[str] = None
    reason: Optional[str] = None


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, type[BaseEvent]] = {
    EventType.ORDER_CREATED: OrderCreatedEvent,
    EventType.ORDER_STATUS_CHANGED: OrderStatusChangedEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize event from dictionary."""
    event_type = EventType(event_data["event_type"])
    event_class = EVENT_REGISTRY.get(event_type, BaseEvent)
    return event_class(**event_data)
