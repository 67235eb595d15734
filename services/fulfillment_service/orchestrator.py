"""Fulfillment Orchestrator.

Turns one verified payment event into exactly one committed order:

1. Record the event id in the idempotency ledger. Only the first delivery
   (or a redelivery of an event whose attempt failed) goes further.
2. Resolve the checkout session and its line items from the gateway.
3. Decrement stock for every line item. Lines that cannot be satisfied are
   left untouched and reported as inventory issues.
4. Create the order, ``completed`` when every line was satisfied and
   ``pending_inventory`` otherwise.
5. Record the attempt outcome back in the idempotency ledger.

Business-expected conditions (duplicate event, missing session, short
stock) are resolved here and reported as handled. Infrastructure failures
are recorded as failed attempts and re-raised so the gateway redelivers.

Stock decrements and the order insert are separate transactions. If a
storage failure interrupts the line-item loop, decrements already applied
are not compensated; only a lost race on the order insert (another worker
created the order for the same session) triggers compensation.

Two events for one session (checkout completion and payment intent success)
can still both reach the decrement loop. The loser of the order insert hands
its stock back, but the winner may already have been stored as
``pending_inventory`` because of the loser's temporary decrements; such an
order can be moved to ``completed`` through the order admin API.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from pydantic import BaseModel, Field

from services.inventory_service.ledger import InventoryLedger, VariantRef
from services.inventory_service.models import AdjustOperation
from services.order_service.models import OrderStatus
from services.order_service.service import OrderDraft, OrderService
from shared.errors import FulfillmentError, InsufficientStock, InventoryRecordNotFound

from .catalog import CatalogClient
from .gateway.port import (
    CHECKOUT_ASYNC_PAYMENT_SUCCEEDED,
    CHECKOUT_COMPLETED,
    PAYMENT_INTENT_FAILED,
    PAYMENT_INTENT_SUCCEEDED,
    CheckoutSession,
    GatewayEvent,
    PaymentGateway,
    SessionLineItem,
)
from .idempotency import AttemptOutcome, WebhookIdempotencyLedger

logger = logging.getLogger(__name__)

PRICE_TOLERANCE = 0.005


class FulfillmentResult(BaseModel):
    """What the webhook endpoint reports back to the gateway."""
    received: bool = True
    processed: bool
    order_id: Optional[str] = Field(default=None, alias="orderId")
    error: Optional[str] = None
    code: Optional[str] = None

    class Config:
        populate_by_name = True


class RetrySummary(BaseModel):
    """Outcome of a batch replay of failed events."""
    processed: int = 0
    failed: int = 0
    skipped: int = 0


class FulfillmentOrchestrator:
    """Processes payment events into orders, at most once per event."""

    def __init__(
        self,
        gateway: PaymentGateway,
        webhook_ledger: WebhookIdempotencyLedger,
        inventory: InventoryLedger,
        orders: OrderService,
        catalog: Optional[CatalogClient] = None,
        inventory_max_retries: int = 3,
        claim_ttl_seconds: int = 300,
        retry_max_attempts: int = 3,
    ):
        self.gateway = gateway
        self.webhook_ledger = webhook_ledger
        self.inventory = inventory
        self.orders = orders
        self.catalog = catalog
        self.inventory_max_retries = inventory_max_retries
        self.claim_ttl_seconds = claim_ttl_seconds
        self.retry_max_attempts = retry_max_attempts

    async def process_event(self, event: GatewayEvent) -> FulfillmentResult:
        """
        Handle one verified webhook delivery.

        Returns:
            The outcome to report; ``processed=False`` with no error marks a
            duplicate delivery

        Raises:
            FulfillmentError: retryable infrastructure failure; the attempt
                has been recorded as failed
        """
        logger.info(f"Received webhook event {event.id} ({event.type})")

        seen = await self.webhook_ledger.record_seen(event.id, event.type)
        if not seen.is_new and not await self.webhook_ledger.claim_retry(event.id, self.claim_ttl_seconds):
            logger.warning(
                f"Duplicate webhook event {event.id} "
                f"(processed={seen.record.processed}, attempts={seen.record.attempts})"
            )
            return FulfillmentResult(processed=False)

        return await self._run_attempt(event.id, lambda: self._dispatch(event))

    async def retry_failed_events(self, max_attempts: Optional[int] = None, limit: int = 50) -> RetrySummary:
        """
        Replay unprocessed events that still have attempts left.

        Each event is re-fetched from the gateway and processed exactly like
        a redelivery. Events another worker currently holds are skipped.
        """
        max_attempts = self.retry_max_attempts if max_attempts is None else max_attempts
        summary = RetrySummary()

        for record in await self.webhook_ledger.list_retryable(max_attempts=max_attempts, limit=limit):
            event_id = record.external_event_id
            if not await self.webhook_ledger.claim_retry(event_id, self.claim_ttl_seconds):
                summary.skipped += 1
                continue

            try:
                await self._run_attempt(event_id, lambda: self._replay(event_id))
                summary.processed += 1
            except Exception:
                summary.failed += 1

        logger.info(
            f"Webhook retry run finished: {summary.processed} processed, "
            f"{summary.failed} failed, {summary.skipped} skipped"
        )
        return summary

    async def _replay(self, event_id: str) -> FulfillmentResult:
        event = await self.gateway.retrieve_event(event_id)
        return await self._dispatch(event)

    async def _run_attempt(
        self,
        event_id: str,
        handler: Callable[[], Awaitable[FulfillmentResult]],
    ) -> FulfillmentResult:
        """Run one attempt for a claimed event and record how it went."""
        try:
            result = await handler()
        except Exception as e:
            logger.error(f"Processing webhook event {event_id} failed: {e}", exc_info=True)
            try:
                await self.webhook_ledger.mark_attempt(event_id, AttemptOutcome.FAILURE, error=str(e))
            except FulfillmentError as mark_error:
                logger.error(f"Could not record failed attempt for webhook event {event_id}: {mark_error}")
            raise

        await self.webhook_ledger.mark_attempt(
            event_id,
            AttemptOutcome.SUCCESS,
            order_id=UUID(result.order_id) if result.order_id else None,
        )
        return result

    async def _dispatch(self, event: GatewayEvent) -> FulfillmentResult:
        if event.type in (CHECKOUT_COMPLETED, CHECKOUT_ASYNC_PAYMENT_SUCCEEDED):
            return await self._fulfill_session(event.data_object.get("id"), event)

        if event.type == PAYMENT_INTENT_SUCCEEDED:
            session_ref = event.metadata.get("checkoutSessionId")
            if not session_ref:
                logger.info(f"Payment intent {event.data_object.get('id')} has no checkout session, nothing to fulfill")
                return FulfillmentResult(processed=True)
            return await self._fulfill_session(session_ref, event, payment_intent_id=event.data_object.get("id"))

        if event.type == PAYMENT_INTENT_FAILED:
            last_error = event.data_object.get("last_payment_error") or {}
            logger.warning(
                f"Payment intent {event.data_object.get('id')} failed: "
                f"{last_error.get('message', 'unknown reason')}"
            )
            return FulfillmentResult(processed=True)

        logger.info(f"Ignoring unhandled webhook event type {event.type}")
        return FulfillmentResult(processed=True)

    async def _fulfill_session(
        self,
        session_ref: Optional[str],
        event: GatewayEvent,
        payment_intent_id: Optional[str] = None,
    ) -> FulfillmentResult:
        if not session_ref:
            return FulfillmentResult(processed=False, error="Session not found", code="SESSION_NOT_FOUND")

        existing = await self.orders.get_by_session(session_ref)
        if existing is not None:
            logger.info(f"Order {existing.order_number} already exists for session {session_ref}")
            return FulfillmentResult(processed=True, order_id=str(existing.id))

        session = await self.gateway.retrieve_session(session_ref)
        if session is None:
            logger.warning(f"Checkout session {session_ref} not found for event {event.id}")
            return FulfillmentResult(processed=False, error="Session not found", code="SESSION_NOT_FOUND")

        if not session.is_paid:
            logger.info(f"Checkout session {session_ref} is {session.payment_status}, waiting for payment")
            return FulfillmentResult(processed=True)

        if not session.line_items:
            logger.warning(f"Checkout session {session_ref} carries no line items")
            return FulfillmentResult(
                processed=False,
                error="Missing required metadata in checkout session",
                code="INVALID_SESSION_METADATA",
            )

        line_items = await self._reconcile_line_items(session.line_items)

        # Another event for the same session may have finished while the
        # session and catalog were being resolved
        existing = await self.orders.get_by_session(session_ref)
        if existing is not None:
            logger.info(f"Order {existing.order_number} was created for session {session_ref} meanwhile")
            return FulfillmentResult(processed=True, order_id=str(existing.id))

        applied, issues = await self._decrement_stock(session)

        status = OrderStatus.PENDING_INVENTORY if issues else OrderStatus.COMPLETED
        reason = (
            f"Insufficient inventory for {len(issues)} line item(s)"
            if issues
            else "Payment received"
        )

        order, created = await self.orders.create_from_checkout(
            self._draft(session, event, line_items, issues, payment_intent_id),
            status,
            actor="system",
            reason=reason,
            correlation_id=event.id,
        )

        if not created:
            await self._compensate(applied, session_ref)
            return FulfillmentResult(processed=True, order_id=str(order.id))

        if issues:
            logger.warning(f"Order {order.order_number} created pending inventory: {issues}")
        return FulfillmentResult(processed=True, order_id=str(order.id))

    async def _decrement_stock(
        self,
        session: CheckoutSession,
    ) -> Tuple[List[Tuple[VariantRef, int]], List[Dict[str, Any]]]:
        """
        Decrement stock for each line item, one after another.

        Returns:
            (applied decrements, inventory issues for the lines left untouched)
        """
        applied: List[Tuple[VariantRef, int]] = []
        issues: List[Dict[str, Any]] = []

        for item in session.line_items:
            ref = VariantRef(item.product_id, item.variant_id)
            try:
                await self.inventory.adjust(
                    ref,
                    -item.quantity,
                    AdjustOperation.DECREMENT,
                    max_retries=self.inventory_max_retries,
                    reason="order fulfillment",
                    reference=session.id,
                )
            except InsufficientStock as e:
                logger.warning(f"Insufficient stock for {ref}: requested {item.quantity}, available {e.available}")
                issues.append(self._issue(item, e.available))
                continue
            except InventoryRecordNotFound:
                logger.warning(f"No inventory record for {ref}, treating as out of stock")
                issues.append(self._issue(item, 0))
                continue

            applied.append((ref, item.quantity))

        return applied, issues

    async def _compensate(self, applied: List[Tuple[VariantRef, int]], session_ref: str):
        """Give back stock taken for an order another worker created first."""
        logger.warning(
            f"Order for session {session_ref} was created concurrently, "
            f"returning {len(applied)} decrement(s)"
        )
        for ref, quantity in applied:
            try:
                await self.inventory.adjust(
                    ref,
                    quantity,
                    AdjustOperation.INCREMENT,
                    max_retries=self.inventory_max_retries,
                    reason="compensation for duplicate fulfillment",
                    reference=session_ref,
                )
            except FulfillmentError as e:
                logger.error(f"Failed to return {quantity} of {ref} for session {session_ref}: {e}", exc_info=True)

    async def _reconcile_line_items(self, items: List[SessionLineItem]) -> List[Dict[str, Any]]:
        """Order line items, with SKUs filled from the catalog and price drift logged."""
        line_items = []
        for item in items:
            sku = item.sku
            if self.catalog is not None and self.catalog.enabled:
                ref = VariantRef(item.product_id, item.variant_id)
                entry = await self.catalog.get_entry(ref)
                if entry is not None:
                    sku = sku or entry.sku
                    if abs(entry.price - item.unit_price) > PRICE_TOLERANCE:
                        logger.warning(
                            f"Price mismatch for {ref}: charged {item.unit_price}, catalog {entry.price}"
                        )

            line_items.append({
                "product_id": item.product_id,
                "variant_id": item.variant_id,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "sku": sku,
                "variant_label": item.variant_label,
            })
        return line_items

    @staticmethod
    def _issue(item: SessionLineItem, available: int) -> Dict[str, Any]:
        return {
            "product_id": item.product_id,
            "variant_id": item.variant_id,
            "requested": item.quantity,
            "available": available,
        }

    @staticmethod
    def _draft(
        session: CheckoutSession,
        event: GatewayEvent,
        line_items: List[Dict[str, Any]],
        issues: List[Dict[str, Any]],
        payment_intent_id: Optional[str],
    ) -> OrderDraft:
        subtotal = session.amount_subtotal if session.amount_subtotal is not None else session.amount_total
        return OrderDraft(
            external_session_id=session.id,
            line_items=line_items,
            total_amount=session.amount_total,
            currency=session.currency,
            email=session.email,
            user_id=session.user_id,
            subtotal=subtotal,
            tax=session.amount_tax,
            shipping=session.amount_shipping,
            discount=session.amount_discount,
            original_amount=subtotal if session.coupon_code else None,
            coupon_code=session.coupon_code,
            shipping_address=session.shipping_address,
            billing_address=session.billing_address,
            payment_intent_id=session.payment_intent_id or payment_intent_id,
            webhook_event_id=event.id,
            inventory_issues=issues or None,
        )
