"""Order Service FastAPI application.

Administrative surface over orders: listing, lookup, status history and
status changes. Orders themselves are created by the fulfillment service.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from shared.config import Settings
from shared.database import Database
from shared.errors import (
    ConcurrencyExhausted,
    InvalidStatusTransition,
    OrderNotFound,
    StorageError,
)
from shared.message_broker import MessageBroker
from shared.outbox import OutboxPublisher

from .models import Order, OrderStatus
from .service import BulkUpdateResult, OrderService
from .state_machine import get_valid_next_statuses

# Settings
settings = Settings(
    service_name="order-service",
    service_port=8001,
)

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Database and message broker
database = Database(settings.database_url)
message_broker = MessageBroker(settings.rabbitmq_url)
outbox_publisher: Optional[OutboxPublisher] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global outbox_publisher

    # Startup
    logger.info("Starting Order Service...")

    await database.create_tables()
    await message_broker.connect()

    outbox_publisher = OutboxPublisher(
        session_factory=database.session_factory,
        message_broker=message_broker,
        poll_interval=settings.outbox_poll_interval,
        batch_size=settings.outbox_batch_size,
    )
    await outbox_publisher.start()

    logger.info("Order Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Order Service...")
    if outbox_publisher:
        await outbox_publisher.stop()
    await message_broker.disconnect()
    await database.close()


app = FastAPI(title="Order Service", lifespan=lifespan)


def get_order_service() -> OrderService:
    """Get the order service bound to the application database."""
    return OrderService(database.session_factory)


# Request/Response models
class StatusUpdateRequest(BaseModel):
    """Request to change an order's status."""
    status: OrderStatus
    actor: Optional[str] = None
    reason: Optional[str] = None


class BulkStatusUpdateRequest(BaseModel):
    """Request to change the status of several orders."""
    order_ids: List[UUID] = Field(min_length=1)
    status: OrderStatus
    actor: Optional[str] = None
    reason: Optional[str] = None


class OrderResponse(BaseModel):
    """Order response."""
    id: UUID
    order_number: str
    status: str
    version: int
    external_session_id: str
    payment_intent_id: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    line_items: List[Dict[str, Any]]
    currency: str
    total_amount: float
    subtotal: Optional[float] = None
    tax: Optional[float] = None
    shipping: Optional[float] = None
    discount: Optional[float] = None
    original_amount: Optional[float] = None
    coupon_code: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    inventory_issues: Optional[List[Dict[str, Any]]] = None
    valid_next_statuses: List[str] = Field(default_factory=list)
    created_at: datetime

    class Config:
        from_attributes = True

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        response = cls.model_validate(order)
        response.valid_next_statuses = [s.value for s in get_valid_next_statuses(order.status)]
        return response


class StatusHistoryResponse(BaseModel):
    """Status history of an order, oldest entry first."""
    order_id: UUID
    status: str
    history: List[Dict[str, Any]]


def _raise_http(error: Exception):
    """Translate a domain error into an HTTP error."""
    if isinstance(error, OrderNotFound):
        raise HTTPException(status_code=404, detail=error.message)
    if isinstance(error, InvalidStatusTransition):
        raise HTTPException(status_code=422, detail=error.message)
    if isinstance(error, (ConcurrencyExhausted, StorageError)):
        raise HTTPException(status_code=503, detail=error.message)
    raise error


# API Endpoints
@app.get("/orders", response_model=List[OrderResponse])
async def list_orders(
    status: Optional[OrderStatus] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    service: OrderService = Depends(get_order_service),
):
    """List orders, newest first."""
    try:
        orders = await service.list_orders(status=status, limit=limit, offset=offset)
    except StorageError as e:
        _raise_http(e)

    return [OrderResponse.from_order(order) for order in orders]


@app.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(order_id: UUID, service: OrderService = Depends(get_order_service)):
    """Get order by ID."""
    try:
        order = await service.get_order(order_id)
    except (OrderNotFound, StorageError) as e:
        _raise_http(e)

    return OrderResponse.from_order(order)


@app.get("/orders/{order_id}/status-history", response_model=StatusHistoryResponse)
async def get_status_history(order_id: UUID, service: OrderService = Depends(get_order_service)):
    """Get the audit trail of status transitions for an order."""
    try:
        order = await service.get_order(order_id)
    except (OrderNotFound, StorageError) as e:
        _raise_http(e)

    return StatusHistoryResponse(order_id=order.id, status=order.status, history=order.status_history)


@app.patch("/orders/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: UUID,
    request: StatusUpdateRequest,
    service: OrderService = Depends(get_order_service),
):
    """
    Change the status of an order.

    Rejected transitions return 422 with the reason the state machine gave.
    """
    try:
        order = await service.update_status(
            order_id,
            request.status,
            actor=request.actor,
            reason=request.reason,
        )
    except (OrderNotFound, InvalidStatusTransition, ConcurrencyExhausted, StorageError) as e:
        _raise_http(e)

    return OrderResponse.from_order(order)


@app.post("/orders/status/bulk", response_model=BulkUpdateResult)
async def bulk_update_order_status(
    request: BulkStatusUpdateRequest,
    service: OrderService = Depends(get_order_service),
):
    """Change the status of several orders, skipping those that cannot make the transition."""
    try:
        return await service.bulk_update_status(
            request.order_ids,
            request.status,
            actor=request.actor,
            reason=request.reason,
        )
    except (OrderNotFound, InvalidStatusTransition, StorageError) as e:
        _raise_http(e)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "order-service"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
