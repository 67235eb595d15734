"""Notification Service FastAPI application.

Consumes order events from the broker and emails the customer. Nothing in
here is on the fulfillment path: an undeliverable email is logged and
dropped, never retried into the order flow.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from shared.config import Settings
from shared.events import EventType, OrderCreatedEvent, OrderStatusChangedEvent
from shared.message_broker import MessageBroker

# Settings
settings = Settings(
    service_name="notification-service",
    service_port=8005,
)

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Message broker
message_broker = MessageBroker(settings.rabbitmq_url)

STATUS_SUBJECTS = {
    "completed": "Your order is confirmed",
    "cancelled": "Your order has been cancelled",
    "refunded": "Your order has been refunded",
    "pending": "Your order has been reopened",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""

    # Startup
    logger.info("Starting Notification Service...")

    await message_broker.connect()
    await subscribe_to_events()

    logger.info("Notification Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Notification Service...")
    await message_broker.disconnect()


app = FastAPI(title="Notification Service", lifespan=lifespan)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "notification-service"}


# Notification Logic
async def send_email(recipient: str, subject: str, body: str):
    """
    Send email notification.

    In a real system, this would integrate with SendGrid, SES, or similar.
    """
    logger.info(f"[EMAIL] To: {recipient}")
    logger.info(f"[EMAIL] Subject: {subject}")
    logger.info(f"[EMAIL] Body: {body}")
    logger.info("-" * 60)


async def handle_order_created(event: OrderCreatedEvent) -> bool:
    """Send the order confirmation. Returns whether an email went out."""
    if not event.email:
        logger.info(f"Order {event.order_number} has no email address, skipping confirmation")
        return False

    if event.inventory_issues:
        body = (
            f"Thank you for your order {event.order_number}. Payment of "
            f"{event.total_amount:.2f} {event.currency.upper()} was received, but some items "
            "are currently out of stock. We will contact you about the remaining items."
        )
    else:
        body = (
            f"Thank you for your order {event.order_number}. Payment of "
            f"{event.total_amount:.2f} {event.currency.upper()} was received and your order "
            "is being prepared."
        )

    try:
        await send_email(
            recipient=event.email,
            subject=f"Order Confirmation - #{event.order_number}",
            body=body,
        )
    except Exception as e:
        logger.error(f"Failed to send confirmation for order {event.order_number}: {e}", exc_info=True)
        return False
    return True


async def handle_order_status_changed(event: OrderStatusChangedEvent) -> bool:
    """Tell the customer their order moved. Returns whether an email went out."""
    subject = STATUS_SUBJECTS.get(event.to_status)
    if not event.email or subject is None:
        return False

    body = f"The status of order {event.order_number} changed from {event.from_status} to {event.to_status}."
    if event.reason:
        body += f" Reason: {event.reason}"

    try:
        await send_email(recipient=event.email, subject=subject, body=body)
    except Exception as e:
        logger.error(f"Failed to send status update for order {event.order_number}: {e}", exc_info=True)
        return False
    return True


# Event Handlers
async def subscribe_to_events():
    """Subscribe to order events for notifications."""
    await message_broker.subscribe_to_event(
        EventType.ORDER_CREATED,
        "notification_service_order_created",
        handle_order_created,
    )

    await message_broker.subscribe_to_event(
        EventType.ORDER_STATUS_CHANGED,
        "notification_service_order_status_changed",
        handle_order_status_changed,
    )

    logger.info("Subscribed to notification events")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
