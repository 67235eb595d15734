"""Inventory Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from shared.config import Settings
from shared.database import Database
from shared.errors import (
    ConcurrencyExhausted,
    FulfillmentError,
    InsufficientStock,
    InventoryLimitExceeded,
    InventoryRecordExists,
    InventoryRecordNotFound,
    StorageError,
)

from .ledger import InventoryLedger, InventorySnapshot, VariantRef
from .models import AdjustOperation, StockCounter

# Settings
settings = Settings(
    service_name="inventory-service",
    service_port=8002,
)

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

database = Database(settings.database_url)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    logger.info("Starting Inventory Service...")
    await database.create_tables()
    logger.info("Inventory Service started successfully")

    yield

    logger.info("Shutting down Inventory Service...")
    await database.close()


app = FastAPI(title="Inventory Service", lifespan=lifespan)


def get_ledger() -> InventoryLedger:
    """Get the inventory ledger bound to the application database."""
    return InventoryLedger(
        database.session_factory,
        max_retries=settings.inventory_max_retries,
        retry_base_delay=settings.inventory_retry_base_delay,
        retry_max_delay=settings.inventory_retry_max_delay,
        max_inventory=settings.max_inventory,
    )


# Request/Response models
class CreateRecordRequest(BaseModel):
    """Request to define stock for a variant."""
    product_id: str
    variant_id: Optional[str] = None
    sku: Optional[str] = None
    available: int = Field(default=0, ge=0)


class AdjustRequest(BaseModel):
    """Request to adjust a stock counter."""
    variant_id: Optional[str] = None
    delta: int
    operation: AdjustOperation
    counter: StockCounter = StockCounter.AVAILABLE
    reason: Optional[str] = None
    reference: Optional[str] = None


class ReservationRequest(BaseModel):
    """Request to place or drop a provisional hold."""
    variant_id: Optional[str] = None
    quantity: int = Field(gt=0)
    reference: Optional[str] = None


class AvailabilityResponse(BaseModel):
    product_id: str
    variant_id: str
    quantity: int
    free: int
    is_available: bool


class AdjustmentResponse(BaseModel):
    """One committed adjustment from the audit trail."""
    id: UUID
    counter: str
    operation: str
    delta: int
    previous_quantity: int
    new_quantity: int
    version: int
    reason: Optional[str] = None
    reference: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


def _raise_http(error: FulfillmentError):
    """Translate a ledger error into an HTTP error."""
    if isinstance(error, InventoryRecordNotFound):
        raise HTTPException(status_code=404, detail=error.message)
    if isinstance(error, (InsufficientStock, InventoryRecordExists)):
        raise HTTPException(status_code=409, detail=error.message)
    if isinstance(error, InventoryLimitExceeded):
        raise HTTPException(status_code=422, detail=error.message)
    if isinstance(error, (ConcurrencyExhausted, StorageError)):
        raise HTTPException(status_code=503, detail=error.message)
    raise error


# API Endpoints
@app.post("/inventory", response_model=InventorySnapshot, status_code=201)
async def create_record(request: CreateRecordRequest, ledger: InventoryLedger = Depends(get_ledger)):
    """Define stock for a new variant."""
    try:
        return await ledger.create_record(
            VariantRef(request.product_id, request.variant_id),
            available=request.available,
            sku=request.sku,
        )
    except FulfillmentError as e:
        _raise_http(e)


@app.get("/inventory/{product_id}", response_model=InventorySnapshot)
async def get_record(
    product_id: str,
    variant_id: Optional[str] = None,
    ledger: InventoryLedger = Depends(get_ledger),
):
    """Get the current stock record of a variant."""
    try:
        return await ledger.get_record(VariantRef(product_id, variant_id))
    except FulfillmentError as e:
        _raise_http(e)


@app.get("/inventory/{product_id}/availability", response_model=AvailabilityResponse)
async def check_availability(
    product_id: str,
    quantity: int = Query(default=1, gt=0),
    variant_id: Optional[str] = None,
    ledger: InventoryLedger = Depends(get_ledger),
):
    """Point-in-time availability check; not a reservation."""
    ref = VariantRef(product_id, variant_id)
    try:
        free = await ledger.get_available(ref)
    except InventoryRecordNotFound:
        free = 0
    except FulfillmentError as e:
        _raise_http(e)

    return AvailabilityResponse(
        product_id=product_id,
        variant_id=ref.variant_key,
        quantity=quantity,
        free=free,
        is_available=free >= quantity,
    )


@app.post("/inventory/{product_id}/adjust", response_model=InventorySnapshot)
async def adjust_stock(
    product_id: str,
    request: AdjustRequest,
    ledger: InventoryLedger = Depends(get_ledger),
):
    """Adjust a stock counter under optimistic concurrency."""
    try:
        return await ledger.adjust(
            VariantRef(product_id, request.variant_id),
            request.delta,
            request.operation,
            counter=request.counter,
            reason=request.reason,
            reference=request.reference,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except FulfillmentError as e:
        _raise_http(e)


@app.post("/inventory/{product_id}/reserve", response_model=InventorySnapshot)
async def reserve_stock(
    product_id: str,
    request: ReservationRequest,
    ledger: InventoryLedger = Depends(get_ledger),
):
    """Place a provisional hold on stock."""
    try:
        return await ledger.reserve(
            VariantRef(product_id, request.variant_id),
            request.quantity,
            reference=request.reference,
        )
    except FulfillmentError as e:
        _raise_http(e)


@app.post("/inventory/{product_id}/release", response_model=InventorySnapshot)
async def release_stock(
    product_id: str,
    request: ReservationRequest,
    ledger: InventoryLedger = Depends(get_ledger),
):
    """Drop a provisional hold on stock."""
    try:
        return await ledger.release(
            VariantRef(product_id, request.variant_id),
            request.quantity,
            reference=request.reference,
        )
    except FulfillmentError as e:
        _raise_http(e)


@app.get("/inventory/{product_id}/adjustments", response_model=List[AdjustmentResponse])
async def list_adjustments(
    product_id: str,
    variant_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    ledger: InventoryLedger = Depends(get_ledger),
):
    """Audit trail of committed adjustments, oldest first."""
    try:
        return await ledger.list_adjustments(VariantRef(product_id, variant_id), limit=limit)
    except FulfillmentError as e:
        _raise_http(e)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "inventory-service"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
