"""
Stripe event parsing boundary.

Turns a verified webhook payload into a StripeEvent, and Stripe objects
(webhook data objects or API responses) into flat input structs for the
upsert handlers. Nothing past this module looks at Stripe's nested
object shapes.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from shared.constants import ORG_ID_METADATA_KEYS, USER_ID_METADATA_KEYS

# Event types with default handling; everything else parses as "unknown"
CUSTOMER_EVENTS = ("customer.created", "customer.updated")
SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)
CHECKOUT_EVENTS = ("checkout.session.completed",)
INVOICE_EVENTS = (
    "invoice.created",
    "invoice.finalized",
    "invoice.paid",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
)
PAYMENT_INTENT_EVENTS = ("payment_intent.succeeded",)

EVENT_KINDS = {
    **{t: "customer" for t in CUSTOMER_EVENTS},
    **{t: "subscription" for t in SUBSCRIPTION_EVENTS},
    **{t: "checkout_session" for t in CHECKOUT_EVENTS},
    **{t: "invoice" for t in INVOICE_EVENTS},
    **{t: "payment_intent" for t in PAYMENT_INTENT_EVENTS},
}


@dataclass
class StripeEvent:
    """A verified Stripe webhook event."""

    id: str
    type: str
    data_object: dict
    created: Optional[int] = None
    livemode: Optional[bool] = None
    payload: dict = field(default_factory=dict, repr=False)

    @property
    def kind(self) -> str:
        """Entity family this event concerns, or "unknown"."""
        return EVENT_KINDS.get(self.type, "unknown")

    @property
    def customer_id(self) -> Optional[str]:
        if self.kind == "customer":
            return self.data_object.get("id")
        return object_id(self.data_object.get("customer"))


@dataclass
class CustomerInput:
    stripe_customer_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    metadata: Optional[dict] = None


@dataclass
class SubscriptionInput:
    stripe_subscription_id: str
    stripe_customer_id: str
    status: str
    current_period_end: int
    cancel_at_period_end: bool
    quantity: Optional[int]
    price_id: str
    metadata: Optional[dict] = None


@dataclass
class SubscriptionUpdate:
    """Fields Stripe reports on a subscription change.

    metadata=None means "not supplied": stored metadata and linkage stay.
    """

    stripe_subscription_id: str
    status: str
    current_period_end: int
    cancel_at_period_end: bool
    quantity: Optional[int] = None
    metadata: Optional[dict] = None


@dataclass
class CheckoutSessionInput:
    stripe_checkout_session_id: str
    mode: str
    stripe_customer_id: Optional[str] = None
    status: Optional[str] = None
    metadata: Optional[dict] = None
    payment_intent_id: Optional[str] = None
    subscription_id: Optional[str] = None
    url: Optional[str] = None


@dataclass
class InvoiceInput:
    stripe_invoice_id: str
    stripe_customer_id: str
    status: str
    amount_due: int
    amount_paid: int
    created: int
    stripe_subscription_id: Optional[str] = None


@dataclass
class PaymentIntentInput:
    stripe_payment_intent_id: str
    amount: int
    currency: str
    status: str
    created: int
    stripe_customer_id: Optional[str] = None
    metadata: Optional[dict] = None
    invoice_id: Optional[str] = None


def to_plain(obj: Any) -> Any:
    """Normalize a Stripe SDK object (or a plain dict) into a plain dict."""
    if obj is None or type(obj) is dict:
        return obj
    for attr in ("to_dict", "to_dict_recursive"):
        converter = getattr(obj, attr, None)
        if callable(converter):
            return converter()
    return dict(obj)


def object_id(value: Any) -> Optional[str]:
    """Reduce an ID-or-expanded-object reference to its ID."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value
    value = to_plain(value)
    return value.get("id") if isinstance(value, dict) else None


def linkage_from_metadata(metadata: Optional[dict]) -> tuple[Optional[str], Optional[str]]:
    """Return (org_id, user_id) carried in a metadata bag."""
    metadata = metadata or {}
    org_id = next((metadata[k] for k in ORG_ID_METADATA_KEYS if metadata.get(k)), None)
    user_id = next((metadata[k] for k in USER_ID_METADATA_KEYS if metadata.get(k)), None)
    return org_id, user_id


def parse_event(payload: Any) -> StripeEvent:
    """
    Build a StripeEvent from a decoded webhook body.

    Raises:
        ValueError: payload is not a Stripe event envelope
    """
    if not isinstance(payload, dict):
        raise ValueError("Event payload must be a JSON object")

    event_id = payload.get("id")
    event_type = payload.get("type")
    data = payload.get("data")
    if not event_id or not event_type:
        raise ValueError("Event payload is missing id or type")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise ValueError("Event payload is missing data.object")

    return StripeEvent(
        id=event_id,
        type=event_type,
        data_object=data["object"],
        created=payload.get("created"),
        livemode=payload.get("livemode"),
        payload=payload,
    )


def _first_item(subscription: dict) -> dict:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def customer_input(customer: Any) -> CustomerInput:
    customer = to_plain(customer)
    return CustomerInput(
        stripe_customer_id=customer["id"],
        # Stripe sends null or "" for unset fields; both mean absent here
        email=customer.get("email") or None,
        name=customer.get("name") or None,
        metadata=customer.get("metadata"),
    )


def subscription_input(subscription: Any) -> SubscriptionInput:
    """Flatten a subscription; period end and quantity live on the first item."""
    subscription = to_plain(subscription)
    item = _first_item(subscription)
    quantity = item.get("quantity")
    return SubscriptionInput(
        stripe_subscription_id=subscription["id"],
        stripe_customer_id=object_id(subscription.get("customer")) or "",
        status=subscription.get("status") or "",
        current_period_end=item.get("current_period_end") or 0,
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        quantity=1 if quantity is None else quantity,
        price_id=object_id(item.get("price")) or "",
        metadata=subscription.get("metadata") or {},
    )


def subscription_update(subscription: Any) -> SubscriptionUpdate:
    subscription = to_plain(subscription)
    sub = subscription_input(subscription)
    return SubscriptionUpdate(
        stripe_subscription_id=sub.stripe_subscription_id,
        status=sub.status,
        current_period_end=sub.current_period_end,
        cancel_at_period_end=sub.cancel_at_period_end,
        quantity=sub.quantity,
        # A payload without a metadata key supplies nothing to overwrite
        metadata=subscription.get("metadata"),
    )


def checkout_session_input(session: Any) -> CheckoutSessionInput:
    session = to_plain(session)
    return CheckoutSessionInput(
        stripe_checkout_session_id=session["id"],
        mode=session.get("mode") or "payment",
        stripe_customer_id=object_id(session.get("customer")),
        status=session.get("status"),
        metadata=session.get("metadata") or None,
        payment_intent_id=object_id(session.get("payment_intent")),
        subscription_id=object_id(session.get("subscription")),
        url=session.get("url"),
    )


def invoice_subscription_id(invoice: Any) -> Optional[str]:
    """Parent subscription of an invoice, across Stripe API versions."""
    invoice = to_plain(invoice) or {}
    subscription = object_id(invoice.get("subscription"))
    if subscription:
        return subscription
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return object_id(details.get("subscription"))


def invoice_input(invoice: Any, default_status: str = "open") -> InvoiceInput:
    invoice = to_plain(invoice)
    return InvoiceInput(
        stripe_invoice_id=invoice["id"],
        stripe_customer_id=object_id(invoice.get("customer")) or "",
        status=invoice.get("status") or default_status,
        amount_due=invoice.get("amount_due") or 0,
        amount_paid=invoice.get("amount_paid") or 0,
        created=invoice.get("created") or 0,
        stripe_subscription_id=invoice_subscription_id(invoice),
    )


def payment_intent_input(payment_intent: Any) -> PaymentIntentInput:
    payment_intent = to_plain(payment_intent)
    return PaymentIntentInput(
        stripe_payment_intent_id=payment_intent["id"],
        amount=payment_intent.get("amount") or 0,
        currency=payment_intent.get("currency") or "",
        status=payment_intent.get("status") or "succeeded",
        created=payment_intent.get("created") or 0,
        stripe_customer_id=object_id(payment_intent.get("customer")),
        metadata=payment_intent.get("metadata") or {},
        invoice_id=object_id(payment_intent.get("invoice")),
    )
