"""Fulfillment Service FastAPI application.

Receives payment gateway webhooks and turns paid checkout sessions into
orders. Signature verification happens here, before the orchestrator runs.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from services.inventory_service.ledger import InventoryLedger
from services.order_service.service import OrderService
from shared.config import Settings
from shared.database import Database
from shared.errors import WebhookEventNotFound, WebhookSignatureError
from shared.message_broker import MessageBroker
from shared.outbox import OutboxPublisher

from .catalog import CatalogClient
from .gateway.port import PaymentGateway
from .gateway.stripe_adapter import StripeGateway
from .idempotency import WebhookEventSnapshot, WebhookIdempotencyLedger
from .orchestrator import FulfillmentOrchestrator, FulfillmentResult, RetrySummary

# Settings
settings = Settings(
    service_name="fulfillment-service",
    service_port=8003,
)

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Database, message broker and collaborators
database = Database(settings.database_url)
message_broker = MessageBroker(settings.rabbitmq_url)
catalog_client = CatalogClient(settings.catalog_service_url, timeout=settings.catalog_timeout)
outbox_publisher: Optional[OutboxPublisher] = None
payment_gateway: Optional[PaymentGateway] = None


def build_gateway(config: Settings) -> StripeGateway:
    """Build the Stripe gateway, refusing to start without credentials."""
    missing = []
    if not config.stripe_api_key:
        missing.append("STRIPE_API_KEY")
    if not config.stripe_webhook_secret:
        missing.append("STRIPE_WEBHOOK_SECRET")
    if missing:
        raise RuntimeError(f"Fulfillment Service requires {', '.join(missing)} to be set")
    return StripeGateway(config.stripe_api_key, config.stripe_webhook_secret)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global outbox_publisher, payment_gateway

    # Startup
    logger.info("Starting Fulfillment Service...")

    payment_gateway = build_gateway(settings)

    await database.create_tables()
    await message_broker.connect()

    outbox_publisher = OutboxPublisher(
        session_factory=database.session_factory,
        message_broker=message_broker,
        poll_interval=settings.outbox_poll_interval,
        batch_size=settings.outbox_batch_size,
    )
    await outbox_publisher.start()

    logger.info("Fulfillment Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Fulfillment Service...")
    if outbox_publisher:
        await outbox_publisher.stop()
    await catalog_client.close()
    await message_broker.disconnect()
    await database.close()


app = FastAPI(title="Fulfillment Service", lifespan=lifespan)


def get_gateway() -> PaymentGateway:
    if payment_gateway is None:
        raise HTTPException(status_code=503, detail="Payment gateway is not configured")
    return payment_gateway


def get_webhook_ledger() -> WebhookIdempotencyLedger:
    return WebhookIdempotencyLedger(database.session_factory)


def get_orchestrator(
    gateway: PaymentGateway = Depends(get_gateway),
    webhook_ledger: WebhookIdempotencyLedger = Depends(get_webhook_ledger),
) -> FulfillmentOrchestrator:
    """Build the orchestrator over the application database."""
    return FulfillmentOrchestrator(
        gateway=gateway,
        webhook_ledger=webhook_ledger,
        inventory=InventoryLedger(
            database.session_factory,
            max_retries=settings.inventory_max_retries,
            retry_base_delay=settings.inventory_retry_base_delay,
            retry_max_delay=settings.inventory_retry_max_delay,
            max_inventory=settings.max_inventory,
        ),
        orders=OrderService(database.session_factory),
        catalog=catalog_client,
        inventory_max_retries=settings.inventory_max_retries,
        claim_ttl_seconds=settings.webhook_claim_ttl_seconds,
        retry_max_attempts=settings.webhook_retry_max_attempts,
    )


# API Endpoints
@app.post(
    "/webhooks/stripe",
    response_model=FulfillmentResult,
    response_model_exclude_none=True,
    response_model_by_alias=True,
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    gateway: PaymentGateway = Depends(get_gateway),
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    """
    Receive a payment gateway webhook.

    Duplicates, missing sessions and short stock all answer 200 with a
    descriptive body. Only infrastructure failures answer 500, which makes
    the gateway redeliver the event later.
    """
    if not stripe_signature:
        logger.warning("Webhook rejected: missing signature header")
        return JSONResponse(status_code=401, content={"error": "Missing stripe-signature header"})

    payload = await request.body()
    try:
        event = await gateway.verify_event(payload, stripe_signature)
    except WebhookSignatureError:
        logger.warning("Webhook rejected: invalid signature")
        return JSONResponse(status_code=401, content={"error": "Invalid webhook signature"})

    try:
        return await orchestrator.process_event(event)
    except Exception as e:
        logger.error(f"Webhook processing failed for event {event.id}: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": str(e)})


@app.post("/webhooks/retry", response_model=RetrySummary)
async def retry_failed_webhooks(
    max_attempts: Optional[int] = None,
    limit: int = 50,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    """Replay unprocessed webhook events that still have attempts left."""
    return await orchestrator.retry_failed_events(max_attempts=max_attempts, limit=limit)


@app.get("/webhooks/{event_id}", response_model=WebhookEventSnapshot)
async def get_webhook_event(
    event_id: str,
    webhook_ledger: WebhookIdempotencyLedger = Depends(get_webhook_ledger),
):
    """Get the processing record of a webhook event."""
    try:
        return await webhook_ledger.get(event_id)
    except WebhookEventNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "fulfillment-service"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
