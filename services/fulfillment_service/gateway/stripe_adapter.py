"""Stripe implementation of the payment gateway collaborator."""
import asyncio
import json
import logging
from typing import Optional

import stripe

from shared.errors import GatewayError, WebhookSignatureError

from .port import CheckoutSession, GatewayEvent, PaymentGateway

logger = logging.getLogger(__name__)


class StripeGateway(PaymentGateway):
    """
    Payment gateway backed by the Stripe SDK.

    The SDK is synchronous, so network calls run in a worker thread to keep
    the event loop free. The API key is passed per request rather than set
    globally.
    """

    def __init__(self, api_key: str, webhook_secret: str):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    async def verify_event(self, payload: bytes, signature: str) -> GatewayEvent:
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise WebhookSignatureError("Invalid webhook signature") from e
        except ValueError as e:
            logger.warning(f"Webhook payload is not valid JSON: {e}")
            raise WebhookSignatureError("Invalid webhook signature") from e

        return GatewayEvent.from_payload(json.loads(payload))

    async def retrieve_session(self, session_ref: str) -> Optional[CheckoutSession]:
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.retrieve,
                session_ref,
                api_key=self.api_key,
            )
        except stripe.InvalidRequestError as e:
            if e.http_status == 404:
                logger.warning(f"Checkout session {session_ref} not found at Stripe")
                return None
            raise GatewayError(f"Stripe rejected session lookup for {session_ref}: {e}") from e
        except stripe.StripeError as e:
            raise GatewayError(f"Failed to retrieve checkout session {session_ref}: {e}") from e

        return CheckoutSession.from_payload(session.to_dict())

    async def retrieve_event(self, event_id: str) -> GatewayEvent:
        try:
            event = await asyncio.to_thread(stripe.Event.retrieve, event_id, api_key=self.api_key)
        except stripe.StripeError as e:
            raise GatewayError(f"Failed to retrieve event {event_id}: {e}") from e

        return GatewayEvent.from_payload(event.to_dict())
