import pytest

from services.fulfillment_service.catalog import CatalogClient
from services.fulfillment_service.gateway.fake_adapter import FakeGateway
from services.fulfillment_service.gateway.port import CheckoutSession, SessionLineItem
from services.fulfillment_service.idempotency import WebhookIdempotencyLedger
from services.fulfillment_service.orchestrator import FulfillmentOrchestrator
from services.inventory_service.ledger import InventoryLedger
from services.order_service.service import OrderService
from shared.database import Database


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}")
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
def session_factory(database):
    return database.session_factory


@pytest.fixture
def inventory(session_factory):
    return InventoryLedger(session_factory, max_retries=3, retry_base_delay=0.01, retry_max_delay=0.05)


@pytest.fixture
def order_service(session_factory):
    return OrderService(session_factory, retry_base_delay=0.01, retry_max_delay=0.05)


@pytest.fixture
def webhook_ledger(session_factory):
    return WebhookIdempotencyLedger(session_factory)


@pytest.fixture
def gateway():
    return FakeGateway(webhook_secret="whsec_test")


@pytest.fixture
def orchestrator(gateway, webhook_ledger, inventory, order_service):
    return FulfillmentOrchestrator(
        gateway=gateway,
        webhook_ledger=webhook_ledger,
        inventory=inventory,
        orders=order_service,
        catalog=CatalogClient(None),
    )


@pytest.fixture
def paid_session(gateway):
    """Register a paid checkout session with the fake gateway."""

    def _make(session_id="cs_test_1", items=None, payment_status="paid", **fields):
        items = items if items is not None else [{"product_id": "prod_1", "quantity": 1, "unit_price": 25.0}]
        total = sum(item["quantity"] * item["unit_price"] for item in items)
        session = CheckoutSession(
            id=session_id,
            payment_status=payment_status,
            payment_intent_id=f"pi_{session_id}",
            amount_total=fields.pop("amount_total", total),
            amount_subtotal=fields.pop("amount_subtotal", total),
            email=fields.pop("email", "buyer@example.com"),
            user_id=fields.pop("user_id", "user_1"),
            line_items=[SessionLineItem(**item) for item in items],
            **fields,
        )
        return gateway.add_session(session)

    return _make


@pytest.fixture
def checkout_event():
    """Build a checkout.session.completed webhook payload."""

    def _make(event_id="evt_123", session_id="cs_test_1", event_type="checkout.session.completed"):
        return {
            "id": event_id,
            "type": event_type,
            "created": 1700000000,
            "data": {"object": {"id": session_id, "object": "checkout.session"}},
        }

    return _make
