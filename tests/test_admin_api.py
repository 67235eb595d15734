from uuid import uuid4

import httpx
import pytest

from services.inventory_service.app import app as inventory_app
from services.inventory_service.app import get_ledger
from services.order_service.app import app as order_app
from services.order_service.app import get_order_service
from services.order_service.models import OrderStatus
from services.order_service.service import OrderDraft


@pytest.fixture
async def order_client(order_service):
    order_app.dependency_overrides[get_order_service] = lambda: order_service
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=order_app), base_url="http://test") as client:
        yield client
    order_app.dependency_overrides.clear()


@pytest.fixture
async def inventory_client(inventory):
    inventory_app.dependency_overrides[get_ledger] = lambda: inventory
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=inventory_app), base_url="http://test") as client:
        yield client
    inventory_app.dependency_overrides.clear()


@pytest.fixture
def create_order(order_service):
    async def _create(session_id="cs_1", status=OrderStatus.COMPLETED):
        order, _ = await order_service.create_from_checkout(
            OrderDraft(
                external_session_id=session_id,
                line_items=[{"product_id": "prod_1", "quantity": 1, "unit_price": 10.0}],
                total_amount=10.0,
            ),
            status,
        )
        return order

    return _create


class TestOrderApi:
    async def test_get_order(self, order_client, create_order):
        order = await create_order()

        response = await order_client.get(f"/orders/{order.id}")

        assert response.status_code == 200
        body = response.json()
        assert body["order_number"] == order.order_number
        assert body["valid_next_statuses"] == ["refunded"]

    async def test_missing_order(self, order_client):
        response = await order_client.get(f"/orders/{uuid4()}")

        assert response.status_code == 404

    async def test_list_orders(self, order_client, create_order):
        await create_order("cs_1")
        await create_order("cs_2", OrderStatus.PENDING_INVENTORY)

        response = await order_client.get("/orders", params={"status": "pending_inventory"})

        assert response.status_code == 200
        assert [o["external_session_id"] for o in response.json()] == ["cs_2"]

    async def test_status_change_and_history(self, order_client, create_order):
        order = await create_order()

        response = await order_client.patch(
            f"/orders/{order.id}/status",
            json={"status": "refunded", "actor": "admin_1", "reason": "customer request"},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "refunded"

        history = (await order_client.get(f"/orders/{order.id}/status-history")).json()
        assert [(e["from"], e["to"]) for e in history["history"]] == [
            ("pending", "completed"),
            ("completed", "refunded"),
        ]

    async def test_invalid_status_change(self, order_client, create_order):
        order = await create_order()
        await order_client.patch(f"/orders/{order.id}/status", json={"status": "refunded"})

        response = await order_client.patch(f"/orders/{order.id}/status", json={"status": "completed"})

        assert response.status_code == 422
        assert response.json()["detail"] == "Cannot mark a refunded order as completed"

    async def test_bulk_status_change(self, order_client, create_order):
        first = await create_order("cs_1", OrderStatus.PENDING_INVENTORY)
        second = await create_order("cs_2", OrderStatus.PENDING_INVENTORY)

        response = await order_client.post(
            "/orders/status/bulk",
            json={"order_ids": [str(first.id), str(second.id)], "status": "completed"},
        )

        assert response.status_code == 200
        assert response.json()["modified_count"] == 2
        assert response.json()["message"] == "Successfully updated 2 orders"


class TestInventoryApi:
    async def test_create_adjust_and_read(self, inventory_client):
        created = await inventory_client.post(
            "/inventory", json={"product_id": "prod_1", "variant_id": "red", "available": 10}
        )
        assert created.status_code == 201

        adjusted = await inventory_client.post(
            "/inventory/prod_1/adjust",
            json={"variant_id": "red", "delta": -4, "operation": "decrement"},
        )
        assert adjusted.status_code == 200
        assert adjusted.json()["available"] == 6
        assert adjusted.json()["version"] == 1

        record = await inventory_client.get("/inventory/prod_1", params={"variant_id": "red"})
        assert record.json()["available"] == 6

    async def test_duplicate_record_conflicts(self, inventory_client):
        await inventory_client.post("/inventory", json={"product_id": "prod_1", "available": 1})

        response = await inventory_client.post("/inventory", json={"product_id": "prod_1", "available": 1})

        assert response.status_code == 409

    async def test_oversell_conflicts(self, inventory_client):
        await inventory_client.post("/inventory", json={"product_id": "prod_1", "available": 1})

        response = await inventory_client.post(
            "/inventory/prod_1/adjust", json={"delta": -3, "operation": "decrement"}
        )

        assert response.status_code == 409

    async def test_missing_record(self, inventory_client):
        response = await inventory_client.get("/inventory/prod_missing")

        assert response.status_code == 404

    async def test_availability_and_reservations(self, inventory_client):
        await inventory_client.post("/inventory", json={"product_id": "prod_1", "available": 5})
        await inventory_client.post("/inventory/prod_1/reserve", json={"quantity": 3})

        response = await inventory_client.get("/inventory/prod_1/availability", params={"quantity": 3})

        assert response.json() == {
            "product_id": "prod_1",
            "variant_id": "default",
            "quantity": 3,
            "free": 2,
            "is_available": False,
        }

        released = await inventory_client.post("/inventory/prod_1/release", json={"quantity": 3})
        assert released.json()["reserved"] == 0

    async def test_adjustment_history(self, inventory_client):
        await inventory_client.post("/inventory", json={"product_id": "prod_1", "available": 5})
        await inventory_client.post("/inventory/prod_1/adjust", json={"delta": 2, "operation": "increment"})

        response = await inventory_client.get("/inventory/prod_1/adjustments")

        assert [a["new_quantity"] for a in response.json()] == [7]
