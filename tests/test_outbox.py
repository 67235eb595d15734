from sqlalchemy import select

from services.order_service.models import OrderStatus
from services.order_service.service import OrderDraft
from shared.events import EventType, OrderCreatedEvent
from shared.outbox import OutboxMessage, OutboxPublisher, OutboxStatus


class RecordingBroker:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    async def publish_event(self, event, routing_key=None):
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.published.append(event)


async def statuses(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(OutboxMessage))
        return [(m.status, m.retry_count) for m in result.scalars().all()]


class TestOutboxPublisher:
    async def test_publishes_events_committed_with_the_order(self, order_service, session_factory):
        await order_service.create_from_checkout(
            OrderDraft(
                external_session_id="cs_1",
                line_items=[{"product_id": "prod_1", "quantity": 1, "unit_price": 5.0}],
                total_amount=5.0,
                email="buyer@example.com",
            ),
            OrderStatus.COMPLETED,
        )
        broker = RecordingBroker()
        publisher = OutboxPublisher(session_factory, broker)

        assert await publisher.publish_pending_messages() == 1
        assert await publisher.publish_pending_messages() == 0

        assert len(broker.published) == 1
        event = broker.published[0]
        assert isinstance(event, OrderCreatedEvent)
        assert event.event_type == EventType.ORDER_CREATED
        assert event.email == "buyer@example.com"
        assert await statuses(session_factory) == [(OutboxStatus.PUBLISHED.value, 0)]

    async def test_failed_publishes_are_retried_then_parked(self, order_service, session_factory):
        await order_service.create_from_checkout(
            OrderDraft(
                external_session_id="cs_1",
                line_items=[{"product_id": "prod_1", "quantity": 1, "unit_price": 5.0}],
                total_amount=5.0,
            ),
            OrderStatus.COMPLETED,
        )
        publisher = OutboxPublisher(session_factory, RecordingBroker(fail=True), max_retries=2)

        await publisher.publish_pending_messages()
        assert await statuses(session_factory) == [(OutboxStatus.PENDING.value, 1)]

        await publisher.publish_pending_messages()
        assert await statuses(session_factory) == [(OutboxStatus.FAILED.value, 2)]

        assert await publisher.retry_failed_messages() == 1
        publisher.message_broker = RecordingBroker()
        assert await publisher.publish_pending_messages() == 1
