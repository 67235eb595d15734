import asyncio
import json
import re
from uuid import uuid4

import pytest
from sqlalchemy import select

from services.order_service.models import OrderStatus
from services.order_service.service import OrderDraft
from shared.errors import InvalidStatusTransition, OrderNotFound
from shared.outbox import OutboxMessage


def make_draft(session_id="cs_1", **overrides):
    fields = {
        "external_session_id": session_id,
        "line_items": [{"product_id": "prod_1", "variant_id": None, "quantity": 2, "unit_price": 10.0}],
        "total_amount": 20.0,
        "email": "buyer@example.com",
        "webhook_event_id": "evt_1",
    }
    fields.update(overrides)
    return OrderDraft(**fields)


async def outbox_events(session_factory, event_type):
    async with session_factory() as session:
        result = await session.execute(
            select(OutboxMessage).where(OutboxMessage.event_type == event_type).order_by(OutboxMessage.created_at)
        )
        return [json.loads(m.event_data) for m in result.scalars().all()]


class TestCreateFromCheckout:
    async def test_creates_order_with_initial_transition(self, order_service, session_factory):
        order, created = await order_service.create_from_checkout(
            make_draft(), OrderStatus.COMPLETED, reason="Payment received"
        )

        assert created is True
        assert re.fullmatch(r"ORD-\d{8}-[0-9A-F]{6}", order.order_number)
        assert order.status == "completed"
        assert order.version == 0
        assert len(order.status_history) == 1
        assert order.status_history[0]["from"] == "pending"
        assert order.status_history[0]["to"] == "completed"
        assert order.status_history[0]["reason"] == "Payment received"

        events = await outbox_events(session_factory, "order.created")
        assert len(events) == 1
        assert events[0]["order_id"] == str(order.id)
        assert events[0]["email"] == "buyer@example.com"
        assert events[0]["correlation_id"] == "evt_1"

    async def test_one_order_per_session(self, order_service, session_factory):
        first, _ = await order_service.create_from_checkout(make_draft(), OrderStatus.COMPLETED)
        second, created = await order_service.create_from_checkout(make_draft(), OrderStatus.COMPLETED)

        assert created is False
        assert second.id == first.id
        assert len(await outbox_events(session_factory, "order.created")) == 1

    async def test_rejects_invalid_initial_status(self, order_service):
        with pytest.raises(InvalidStatusTransition):
            await order_service.create_from_checkout(make_draft(), OrderStatus.REFUNDED)

        assert await order_service.get_by_session("cs_1") is None


class TestUpdateStatus:
    async def test_appends_history_and_bumps_version(self, order_service, session_factory):
        order, _ = await order_service.create_from_checkout(make_draft(), OrderStatus.COMPLETED)

        updated = await order_service.update_status(order.id, OrderStatus.REFUNDED, actor="admin_1", reason="damaged")

        assert updated.status == "refunded"
        assert updated.version == 1
        assert [(e["from"], e["to"]) for e in updated.status_history] == [
            ("pending", "completed"),
            ("completed", "refunded"),
        ]
        assert updated.status_history[-1]["actor"] == "admin_1"

        events = await outbox_events(session_factory, "order.status_changed")
        assert [(e["from_status"], e["to_status"]) for e in events] == [("completed", "refunded")]

    async def test_rejected_transition_leaves_order_untouched(self, order_service):
        order, _ = await order_service.create_from_checkout(make_draft(), OrderStatus.COMPLETED)
        await order_service.update_status(order.id, OrderStatus.REFUNDED)

        with pytest.raises(InvalidStatusTransition) as exc_info:
            await order_service.update_status(order.id, OrderStatus.COMPLETED)

        assert exc_info.value.message == "Cannot mark a refunded order as completed"
        reloaded = await order_service.get_order(order.id)
        assert reloaded.status == "refunded"
        assert len(reloaded.status_history) == 2

    async def test_history_grows_by_one_per_transition(self, order_service):
        order, _ = await order_service.create_from_checkout(make_draft(), OrderStatus.PENDING_INVENTORY)

        for status in (OrderStatus.CANCELLED, OrderStatus.PENDING, OrderStatus.COMPLETED, OrderStatus.REFUNDED):
            order = await order_service.update_status(order.id, status)

        assert len(order.status_history) == 5
        assert order.version == 4

    async def test_concurrent_changes_do_not_lose_history(self, order_service):
        order, _ = await order_service.create_from_checkout(make_draft(), OrderStatus.PENDING_INVENTORY)

        results = await asyncio.gather(
            order_service.update_status(order.id, OrderStatus.COMPLETED, actor="a"),
            order_service.update_status(order.id, OrderStatus.CANCELLED, actor="b"),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        reloaded = await order_service.get_order(order.id)

        assert len(winners) + len(losers) == 2
        assert all(isinstance(e, InvalidStatusTransition) for e in losers)
        assert len(reloaded.status_history) == 1 + len(winners)
        assert reloaded.version == len(winners)

    async def test_unknown_order(self, order_service):
        with pytest.raises(OrderNotFound):
            await order_service.update_status(uuid4(), OrderStatus.COMPLETED)


class TestBulkUpdate:
    async def test_applies_valid_and_reports_invalid(self, order_service):
        completed, _ = await order_service.create_from_checkout(make_draft("cs_1"), OrderStatus.COMPLETED)
        pending, _ = await order_service.create_from_checkout(make_draft("cs_2"), OrderStatus.PENDING_INVENTORY)

        result = await order_service.bulk_update_status(
            [completed.id, pending.id], OrderStatus.CANCELLED, actor="admin"
        )

        assert result.matched_count == 2
        assert result.modified_count == 1
        assert result.success is True
        assert result.message == (
            "Successfully updated 1 orders (1 orders were not updated - "
            "Cannot cancel an order that has already been completed)"
        )
        assert result.invalid[0]["order_id"] == str(completed.id)
        assert (await order_service.get_order(pending.id)).status == "cancelled"

    async def test_no_valid_transitions(self, order_service):
        completed, _ = await order_service.create_from_checkout(make_draft(), OrderStatus.COMPLETED)

        with pytest.raises(InvalidStatusTransition) as exc_info:
            await order_service.bulk_update_status([completed.id], OrderStatus.CANCELLED)

        assert exc_info.value.message == "No valid status transitions found"

    async def test_no_orders(self, order_service):
        with pytest.raises(OrderNotFound):
            await order_service.bulk_update_status([uuid4()], OrderStatus.CANCELLED)


class TestQueries:
    async def test_list_orders_filters_by_status(self, order_service):
        await order_service.create_from_checkout(make_draft("cs_1"), OrderStatus.COMPLETED)
        await order_service.create_from_checkout(make_draft("cs_2"), OrderStatus.PENDING_INVENTORY)

        pending = await order_service.list_orders(status="pending_inventory")
        everything = await order_service.list_orders()

        assert [o.external_session_id for o in pending] == ["cs_2"]
        assert len(everything) == 2
