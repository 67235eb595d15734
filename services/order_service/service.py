"""Order persistence and status changes.

Orders are only ever written through this service. Status changes are
validated by the state machine, appended to ``status_history`` and
committed with a conditional update on ``version`` so that two admins (or
an admin and the fulfillment path) changing the same order cannot
interleave their history entries. Every committed change stages an
integration event in the outbox within the same transaction.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from shared.concurrency import VersionConflict, run_optimistic
from shared.database import utcnow
from shared.errors import (
    ConcurrencyExhausted,
    InvalidStatusTransition,
    OrderNotFound,
    StorageError,
)
from shared.events import OrderCreatedEvent, OrderStatusChangedEvent
from shared.outbox import save_event_to_outbox

from .models import Order, OrderStatus
from .state_machine import (
    INITIAL_FROM_STATUS,
    StatusTransition,
    validate_bulk_transitions,
    validate_initial_status,
    validate_transition,
)

logger = logging.getLogger(__name__)


class OrderDraft(BaseModel):
    """Everything known about an order before it is persisted."""
    external_session_id: str
    line_items: List[Dict[str, Any]]
    total_amount: float
    currency: str = "usd"
    email: Optional[str] = None
    user_id: Optional[str] = None
    subtotal: Optional[float] = None
    tax: Optional[float] = None
    shipping: Optional[float] = None
    discount: Optional[float] = None
    original_amount: Optional[float] = None
    coupon_code: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None
    payment_intent_id: Optional[str] = None
    webhook_event_id: Optional[str] = None
    inventory_issues: Optional[List[Dict[str, Any]]] = None


class BulkUpdateResult(BaseModel):
    """Outcome of a bulk status change."""
    success: bool
    message: str
    matched_count: int
    modified_count: int
    invalid: List[Dict[str, Any]] = Field(default_factory=list)


def generate_order_number() -> str:
    """Human-facing order reference, e.g. ORD-20240115-3F9A1C."""
    return f"ORD-{utcnow():%Y%m%d}-{uuid4().hex[:6].upper()}"


def history_entry(
    from_status: Union[OrderStatus, str],
    to_status: Union[OrderStatus, str],
    actor: Optional[str] = None,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "from": OrderStatus(from_status).value,
        "to": OrderStatus(to_status).value,
        "timestamp": utcnow().isoformat(),
        "actor": actor,
        "reason": reason,
    }


class OrderService:
    """Creates orders and moves them through their lifecycle."""

    def __init__(
        self,
        session_factory,
        max_retries: int = 3,
        retry_base_delay: float = 0.1,
        retry_max_delay: float = 2.0,
    ):
        self.session_factory = session_factory
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

    async def create_from_checkout(
        self,
        draft: OrderDraft,
        status: Union[OrderStatus, str],
        actor: str = "system",
        reason: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Tuple[Order, bool]:
        """
        Persist a new order born from a paid checkout session.

        The order enters ``status`` through a recorded transition out of the
        implicit pending state. At most one order exists per checkout
        session: if another writer already created it, that order is
        returned instead.

        Returns:
            (order, created) where ``created`` is False for an existing order
        """
        target = validate_initial_status(status)

        order = Order(
            id=uuid4(),
            order_number=generate_order_number(),
            status=target.value,
            version=0,
            status_history=[history_entry(INITIAL_FROM_STATUS, target, actor, reason)],
            **draft.model_dump(),
        )

        event = OrderCreatedEvent(
            aggregate_id=str(order.id),
            correlation_id=correlation_id or draft.webhook_event_id or str(uuid4()),
            order_id=str(order.id),
            order_number=order.order_number,
            status=target.value,
            email=draft.email,
            user_id=draft.user_id,
            total_amount=draft.total_amount,
            currency=draft.currency,
            line_items=draft.line_items,
            inventory_issues=draft.inventory_issues,
        )

        async with self.session_factory() as session:
            session.add(order)
            await save_event_to_outbox(session, event)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.warning(
                    f"Order for session {draft.external_session_id} already exists, "
                    "returning the existing order"
                )
                existing = await self.get_by_session(draft.external_session_id)
                if existing is None:
                    raise StorageError(
                        f"Order insert for session {draft.external_session_id} conflicted "
                        "but no existing order was found"
                    )
                return existing, False
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to create order: {e}") from e

        logger.info(f"Created order {order.order_number} ({order.id}) in status {target.value}")
        return order, True

    async def get_order(self, order_id: UUID) -> Order:
        try:
            async with self.session_factory() as session:
                order = await session.get(Order, order_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read order {order_id}: {e}") from e

        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    async def get_by_session(self, external_session_id: str) -> Optional[Order]:
        """Order created for a checkout session, if any."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Order).where(Order.external_session_id == external_session_id)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read order for session {external_session_id}: {e}") from e

    async def list_orders(
        self,
        status: Optional[Union[OrderStatus, str]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Order]:
        query = select(Order).order_by(Order.created_at.desc()).limit(limit).offset(offset)
        if status is not None:
            query = query.where(Order.status == OrderStatus(status).value)

        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list orders: {e}") from e

    async def update_status(
        self,
        order_id: UUID,
        status: Union[OrderStatus, str],
        actor: Optional[str] = None,
        reason: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Order:
        """
        Move an order to ``status``.

        Raises:
            OrderNotFound: no such order
            InvalidStatusTransition: the state machine rejects the change
            ConcurrencyExhausted: the order kept changing underneath us
            StorageError: the store failed
        """

        async def attempt() -> Order:
            return await self._update_status_once(order_id, status, actor, reason, correlation_id)

        order = await run_optimistic(
            attempt,
            resource=f"order {order_id}",
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )

        logger.info(f"Order {order.order_number} moved to {order.status} by {actor or 'unknown'}")
        return order

    async def bulk_update_status(
        self,
        order_ids: Sequence[UUID],
        status: Union[OrderStatus, str],
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> BulkUpdateResult:
        """
        Apply one target status to many orders.

        Orders whose transition is invalid are skipped and reported; the
        rest are updated one by one with the same guarantees as
        ``update_status``.
        """
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(Order).where(Order.id.in_(list(order_ids))))
                orders = list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load orders for bulk update: {e}") from e

        if not orders:
            raise OrderNotFound("No orders found")

        validation = validate_bulk_transitions([
            StatusTransition(
                from_status=order.status,
                to_status=status,
                actor=actor,
                reason=reason,
                metadata={"order_id": order.id},
            )
            for order in orders
        ])

        if not validation.valid:
            raise InvalidStatusTransition("No valid status transitions found", to_status=str(status))

        invalid = [
            {
                "order_id": str(rejected.transition.metadata["order_id"]),
                "from": rejected.transition.from_status,
                "error": rejected.error,
            }
            for rejected in validation.invalid
        ]

        modified_count = 0
        for transition in validation.valid:
            order_id = transition.metadata["order_id"]
            try:
                await self.update_status(order_id, status, actor=transition.actor, reason=transition.reason)
                modified_count += 1
            except (InvalidStatusTransition, ConcurrencyExhausted) as e:
                # The order changed between validation and write
                logger.warning(f"Bulk update skipped order {order_id}: {e.message}")
                invalid.append({"order_id": str(order_id), "from": transition.from_status, "error": e.message})

        message = f"Successfully updated {modified_count} orders"
        if invalid:
            message += f" ({len(invalid)} orders were not updated - {invalid[0]['error']})"

        return BulkUpdateResult(
            success=modified_count > 0,
            message=message,
            matched_count=len(orders),
            modified_count=modified_count,
            invalid=invalid,
        )

    async def _update_status_once(
        self,
        order_id: UUID,
        status: Union[OrderStatus, str],
        actor: Optional[str],
        reason: Optional[str],
        correlation_id: Optional[str],
    ) -> Order:
        try:
            async with self.session_factory() as session:
                order = await session.get(Order, order_id)
                if order is None:
                    raise OrderNotFound(f"Order {order_id} not found")

                validate_transition(order.status, status)

                from_status = order.status
                to_status = OrderStatus(status).value
                read_version = order.version
                history = list(order.status_history or []) + [
                    history_entry(from_status, to_status, actor, reason)
                ]

                result = await session.execute(
                    update(Order)
                    .where(Order.id == order.id, Order.version == read_version)
                    .values(
                        status=to_status,
                        status_history=history,
                        version=read_version + 1,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )

                if result.rowcount != 1:
                    await session.rollback()
                    raise VersionConflict(f"order {order_id}", read_version)

                await save_event_to_outbox(
                    session,
                    OrderStatusChangedEvent(
                        aggregate_id=str(order.id),
                        correlation_id=correlation_id or str(uuid4()),
                        order_id=str(order.id),
                        order_number=order.order_number,
                        email=order.email,
                        from_status=from_status,
                        to_status=to_status,
                        actor=actor,
                        reason=reason,
                    ),
                )
                await session.commit()
                await session.refresh(order)
                return order
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to update order {order_id}: {e}") from e
