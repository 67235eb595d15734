import json

import httpx
import pytest

from services.fulfillment_service.app import app, build_gateway, get_gateway, get_orchestrator, get_webhook_ledger
from services.fulfillment_service.gateway.fake_adapter import FakeGateway
from services.fulfillment_service.gateway.stripe_adapter import StripeGateway
from services.inventory_service.ledger import VariantRef
from shared.concurrency import VersionConflict
from shared.config import Settings
from shared.errors import StorageError, WebhookEventNotFound


@pytest.fixture
async def client(gateway, webhook_ledger, orchestrator):
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_webhook_ledger] = lambda: webhook_ledger
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def post_event(client, gateway, payload, signature=None):
    body = json.dumps(payload).encode()
    headers = {"content-type": "application/json"}
    headers["stripe-signature"] = signature if signature is not None else gateway.sign(body)
    return await client.post("/webhooks/stripe", content=body, headers=headers)


class TestSignature:
    async def test_missing_header(self, client, checkout_event):
        response = await client.post("/webhooks/stripe", content=json.dumps(checkout_event()).encode())

        assert response.status_code == 401
        assert response.json() == {"error": "Missing stripe-signature header"}

    async def test_invalid_signature(self, client, gateway, checkout_event):
        response = await post_event(client, gateway, checkout_event(), signature="t=1,v1=deadbeef")

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid webhook signature"}

    async def test_rejected_delivery_is_not_recorded(self, client, gateway, webhook_ledger, checkout_event):
        await post_event(client, gateway, checkout_event("evt_1"), signature="t=1,v1=deadbeef")

        assert await webhook_ledger.is_processed("evt_1") is False


class TestDelivery:
    async def test_creates_order_then_reports_duplicate(
        self, client, gateway, inventory, paid_session, checkout_event
    ):
        await inventory.create_record(VariantRef("prod_1"), available=5)
        paid_session("cs_1")
        payload = checkout_event("evt_123", "cs_1")

        first = await post_event(client, gateway, payload)
        second = await post_event(client, gateway, payload)

        assert first.status_code == 200
        body = first.json()
        assert body["received"] is True
        assert body["processed"] is True
        assert body["orderId"]

        assert second.status_code == 200
        assert second.json() == {"received": True, "processed": False}

    async def test_missing_session(self, client, gateway, checkout_event):
        response = await post_event(client, gateway, checkout_event("evt_1", "cs_gone"))

        assert response.status_code == 200
        assert response.json() == {
            "received": True,
            "processed": False,
            "error": "Session not found",
            "code": "SESSION_NOT_FOUND",
        }

    async def test_infrastructure_failure_answers_500(self, client, gateway, checkout_event):
        gateway.session_error = StorageError("connection reset")

        response = await post_event(client, gateway, checkout_event("evt_1", "cs_1"))

        assert response.status_code == 500
        assert response.json() == {"error": "connection reset"}

    async def test_exhausted_concurrency_answers_500(
        self, client, gateway, inventory, webhook_ledger, order_service, paid_session, checkout_event, monkeypatch
    ):
        await inventory.create_record(VariantRef("prod_1"), available=5)
        paid_session("cs_1")

        async def always_outraced(ref, *args, **kwargs):
            raise VersionConflict(f"inventory record {ref}", 0)

        monkeypatch.setattr(inventory, "_adjust_once", always_outraced)

        response = await post_event(client, gateway, checkout_event("evt_1", "cs_1"))

        assert response.status_code == 500
        assert "could not be resolved" in response.json()["error"]
        assert (await webhook_ledger.get("evt_1")).last_error == response.json()["error"]
        assert await order_service.get_by_session("cs_1") is None


class TestEventLookup:
    async def test_get_recorded_event(self, client, gateway, checkout_event):
        await post_event(client, gateway, checkout_event("evt_1", "cs_gone"))

        response = await client.get("/webhooks/evt_1")

        assert response.status_code == 200
        assert response.json()["processed"] is True
        assert response.json()["attempts"] == 1

    async def test_unknown_event(self, client):
        response = await client.get("/webhooks/evt_missing")

        assert response.status_code == 404

    async def test_retry_endpoint(self, client, gateway, paid_session, checkout_event):
        payload = checkout_event("evt_1", "cs_1")
        gateway.add_event(payload)
        gateway.session_error = StorageError("connection reset")
        await post_event(client, gateway, payload)
        gateway.session_error = None
        paid_session("cs_1")

        response = await client.post("/webhooks/retry")

        assert response.status_code == 200
        assert response.json() == {"processed": 1, "failed": 0, "skipped": 0}


class TestGatewayConfiguration:
    def test_credentials_are_required(self):
        with pytest.raises(RuntimeError, match="STRIPE_API_KEY, STRIPE_WEBHOOK_SECRET"):
            build_gateway(Settings(stripe_api_key="", stripe_webhook_secret=""))

    def test_webhook_secret_is_required(self):
        with pytest.raises(RuntimeError, match="STRIPE_WEBHOOK_SECRET"):
            build_gateway(Settings(stripe_api_key="sk_test_123", stripe_webhook_secret=""))

    def test_builds_stripe_gateway(self):
        gateway = build_gateway(Settings(stripe_api_key="sk_test_123", stripe_webhook_secret="whsec_live"))

        assert isinstance(gateway, StripeGateway)
        assert gateway.webhook_secret == "whsec_live"

    async def test_unconfigured_app_rejects_signed_webhooks(self, webhook_ledger, checkout_event):
        forger = FakeGateway("whsec_test")
        body = json.dumps(checkout_event("evt_forged", "cs_1")).encode()
        app.dependency_overrides[get_webhook_ledger] = lambda: webhook_ledger
        try:
            async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
                response = await client.post(
                    "/webhooks/stripe",
                    content=body,
                    headers={"stripe-signature": forger.sign(body)},
                )
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 503
        with pytest.raises(WebhookEventNotFound):
            await webhook_ledger.get("evt_forged")
