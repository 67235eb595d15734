"""In-memory payment gateway for local development and tests.

Signatures use the same scheme as Stripe webhooks: the header is
``t=<unix timestamp>,v1=<hex HMAC-SHA256 of "<timestamp>.<payload>">``.
"""
import asyncio
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Mapping, Optional

from shared.errors import GatewayError, WebhookSignatureError

from .port import CheckoutSession, GatewayEvent, PaymentGateway

logger = logging.getLogger(__name__)


class FakeGateway(PaymentGateway):
    """Serves checkout sessions and events from memory."""

    def __init__(self, webhook_secret: str = "whsec_test", tolerance: int = 300):
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        self.sessions: Dict[str, CheckoutSession] = {}
        self.events: Dict[str, GatewayEvent] = {}

        # Failure injection
        self.session_error: Optional[Exception] = None
        self.session_delay: float = 0.0
        self.session_lookups = 0

    def add_session(self, session: CheckoutSession) -> CheckoutSession:
        self.sessions[session.id] = session
        return session

    def add_event(self, payload: Mapping[str, Any]) -> GatewayEvent:
        event = GatewayEvent.from_payload(payload)
        self.events[event.id] = event
        return event

    def sign(self, payload: bytes, timestamp: Optional[int] = None) -> str:
        """Signature header for ``payload``."""
        timestamp = int(time.time()) if timestamp is None else timestamp
        return f"t={timestamp},v1={self._digest(payload, timestamp)}"

    async def verify_event(self, payload: bytes, signature: str) -> GatewayEvent:
        parts: Dict[str, list] = {}
        for item in signature.split(","):
            key, _, value = item.strip().partition("=")
            parts.setdefault(key, []).append(value)

        try:
            timestamp = int(parts["t"][0])
        except (KeyError, ValueError):
            raise WebhookSignatureError("Invalid webhook signature")

        if abs(time.time() - timestamp) > self.tolerance:
            raise WebhookSignatureError("Invalid webhook signature")

        expected = self._digest(payload, timestamp)
        if not any(hmac.compare_digest(expected, candidate) for candidate in parts.get("v1", [])):
            raise WebhookSignatureError("Invalid webhook signature")

        try:
            return GatewayEvent.from_payload(json.loads(payload))
        except (ValueError, KeyError) as e:
            raise WebhookSignatureError("Invalid webhook signature") from e

    async def retrieve_session(self, session_ref: str) -> Optional[CheckoutSession]:
        self.session_lookups += 1
        if self.session_delay:
            await asyncio.sleep(self.session_delay)
        if self.session_error is not None:
            raise self.session_error
        return self.sessions.get(session_ref)

    async def retrieve_event(self, event_id: str) -> GatewayEvent:
        event = self.events.get(event_id)
        if event is None:
            raise GatewayError(f"Event {event_id} is unknown to the gateway")
        return event

    def _digest(self, payload: bytes, timestamp: int) -> str:
        signed = f"{timestamp}.".encode() + payload
        return hmac.new(self.webhook_secret.encode(), signed, hashlib.sha256).hexdigest()
