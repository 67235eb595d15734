"""Payment gateway collaborator interface.

The fulfillment core only needs three things from a payment gateway:
authenticate an incoming webhook, look up a checkout session with its line
items, and re-fetch an event for replay. Gateway payloads are translated
into the models below at this boundary so nothing downstream depends on a
particular SDK's object shapes.
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"


def _from_minor_units(amount: Optional[int]) -> Optional[float]:
    return None if amount is None else amount / 100


class GatewayEvent(BaseModel):
    """A verified webhook event."""
    id: str
    type: str
    data_object: Dict[str, Any] = Field(default_factory=dict)
    created: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "GatewayEvent":
        data = payload.get("data") or {}
        return cls(
            id=payload["id"],
            type=payload["type"],
            data_object=dict(data.get("object") or {}),
            created=payload.get("created"),
        )

    @property
    def metadata(self) -> Dict[str, Any]:
        return dict(self.data_object.get("metadata") or {})


class SessionLineItem(BaseModel):
    """One purchased product as recorded in the checkout session."""
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(gt=0)
    unit_price: float
    sku: Optional[str] = None
    variant_label: Optional[str] = None


class CheckoutSession(BaseModel):
    """A checkout session resolved to concrete line items and totals."""
    id: str
    payment_status: str
    payment_intent_id: Optional[str] = None
    currency: str = "usd"
    amount_total: float = 0.0
    amount_subtotal: Optional[float] = None
    amount_tax: float = 0.0
    amount_shipping: float = 0.0
    amount_discount: float = 0.0
    email: Optional[str] = None
    user_id: Optional[str] = None
    coupon_code: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None
    line_items: List[SessionLineItem] = Field(default_factory=list)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CheckoutSession":
        """
        Build a session from a Stripe-shaped checkout session object.

        Line items come from ``metadata.products``, a JSON array written at
        checkout time. Amounts are converted from minor units.
        """
        metadata = dict(payload.get("metadata") or {})
        total_details = payload.get("total_details") or {}
        customer_details = payload.get("customer_details") or {}
        shipping_details = (
            payload.get("shipping_details")
            or (payload.get("collected_information") or {}).get("shipping_details")
            or {}
        )

        amount_total = _from_minor_units(payload.get("amount_total")) or 0.0
        amount_subtotal = _from_minor_units(payload.get("amount_subtotal"))

        return cls(
            id=payload["id"],
            payment_status=payload.get("payment_status") or "unpaid",
            payment_intent_id=_payment_intent_id(payload.get("payment_intent")),
            currency=payload.get("currency") or "usd",
            amount_total=amount_total,
            amount_subtotal=amount_subtotal,
            amount_tax=_from_minor_units(total_details.get("amount_tax")) or 0.0,
            amount_shipping=_from_minor_units(total_details.get("amount_shipping")) or 0.0,
            amount_discount=_from_minor_units(total_details.get("amount_discount")) or 0.0,
            email=customer_details.get("email") or payload.get("customer_email"),
            user_id=metadata.get("userId") or None,
            coupon_code=metadata.get("couponCode") or None,
            shipping_address=_address(shipping_details.get("name"), shipping_details.get("address"), None),
            billing_address=_address(
                customer_details.get("name"),
                customer_details.get("address"),
                customer_details.get("phone"),
            ),
            line_items=_line_items(metadata.get("products")),
        )


def _payment_intent_id(value: Any) -> Optional[str]:
    if isinstance(value, Mapping):
        return value.get("id")
    return value or None


def _address(name: Optional[str], address: Optional[Mapping[str, Any]], phone: Optional[str]) -> Optional[Dict[str, Any]]:
    if not address:
        return None
    return {
        "full_name": name or "Customer",
        "line1": address.get("line1") or "",
        "line2": address.get("line2"),
        "city": address.get("city") or "",
        "state": address.get("state") or "",
        "postal_code": address.get("postal_code") or "",
        "country": address.get("country") or "US",
        "phone": phone,
    }


def _line_items(raw: Any) -> List[SessionLineItem]:
    if not raw:
        return []
    try:
        products = json.loads(raw) if isinstance(raw, str) else list(raw)
    except (TypeError, ValueError):
        logger.warning("Checkout session carries unreadable products metadata")
        return []

    items = []
    try:
        for product in products:
            details = product.get("variantDetails") or {}
            items.append(
                SessionLineItem(
                    product_id=str(product["id"]),
                    variant_id=product.get("variantId") or None,
                    quantity=int(product["quantity"]),
                    unit_price=float(product.get("price", 0)),
                    sku=details.get("sku"),
                    variant_label=product.get("variantLabel"),
                )
            )
    except (AttributeError, KeyError, TypeError, ValueError, ValidationError) as e:
        # One bad entry makes the whole cart unusable
        logger.warning(f"Checkout session carries invalid products metadata: {e}")
        return []
    return items


class PaymentGateway(ABC):
    """Payment gateway as seen by the fulfillment core."""

    @abstractmethod
    async def verify_event(self, payload: bytes, signature: str) -> GatewayEvent:
        """
        Authenticate a webhook delivery.

        Raises:
            WebhookSignatureError: the signature does not match the payload
        """

    @abstractmethod
    async def retrieve_session(self, session_ref: str) -> Optional[CheckoutSession]:
        """
        Look up a checkout session; ``None`` when the gateway does not know it.

        Raises:
            GatewayError: the gateway could not be reached
        """

    @abstractmethod
    async def retrieve_event(self, event_id: str) -> GatewayEvent:
        """
        Re-fetch a previously delivered event.

        Raises:
            GatewayError: the gateway could not be reached
        """
