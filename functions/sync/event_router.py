"""
Default handling for verified Stripe events.

Maps each supported event type onto the upsert handlers. A few events need
data that is not in the payload (the invoice behind a subscription checkout,
the invoice behind a payment intent); those lookups go to the Stripe API and
are best-effort: failures are logged and the conservative branch is taken.
"""

import logging
import time
from typing import Optional

import stripe

from shared.constants import (
    CHECKOUT_MODE_PAYMENT,
    CHECKOUT_MODE_SUBSCRIPTION,
    RECENT_SUBSCRIPTION_WINDOW_SECONDS,
)
from shared.logging_utils import log_external_call
from sync import upserts
from sync.events import (
    StripeEvent,
    checkout_session_input,
    customer_input,
    invoice_input,
    invoice_subscription_id,
    object_id,
    payment_intent_input,
    subscription_input,
    subscription_update,
    to_plain,
)
from sync.queries import list_subscriptions

logger = logging.getLogger(__name__)


def process_event(
    event: StripeEvent,
    stripe_client: stripe.StripeClient,
    *,
    recent_window_seconds: int = RECENT_SUBSCRIPTION_WINDOW_SECONDS,
) -> None:
    """
    Apply the default mirror update for one event.

    Unknown event types are accepted and ignored. Store errors propagate so
    the webhook answers 500 and Stripe redelivers.
    """
    event_type = event.type
    data = event.data_object

    if event_type == "customer.created":
        upserts.handle_customer_created(customer_input(data))

    elif event_type == "customer.updated":
        upserts.handle_customer_updated(customer_input(data))

    elif event_type == "customer.subscription.created":
        upserts.handle_subscription_created(subscription_input(data))

    elif event_type == "customer.subscription.updated":
        upserts.handle_subscription_updated(subscription_update(data))

    elif event_type == "customer.subscription.deleted":
        upserts.handle_subscription_deleted(data["id"])

    elif event_type == "checkout.session.completed":
        _handle_checkout_completed(data, stripe_client)

    elif event_type in ("invoice.created", "invoice.finalized"):
        upserts.handle_invoice_created(invoice_input(data))

    elif event_type in ("invoice.paid", "invoice.payment_succeeded"):
        upserts.handle_invoice_paid(data["id"], data.get("amount_paid") or 0)

    elif event_type == "invoice.payment_failed":
        upserts.handle_invoice_payment_failed(data["id"])

    elif event_type == "payment_intent.succeeded":
        _handle_payment_intent_succeeded(data, stripe_client, recent_window_seconds)

    else:
        logger.info(f"Unhandled event type: {event_type}")


def _handle_checkout_completed(data: dict, stripe_client: stripe.StripeClient):
    session = checkout_session_input(data)
    upserts.handle_checkout_session_completed(session)

    # One-time payments: the payment intent may have been mirrored before
    # Stripe attached the customer
    if session.mode == CHECKOUT_MODE_PAYMENT and session.stripe_customer_id and session.payment_intent_id:
        upserts.update_payment_customer(session.payment_intent_id, session.stripe_customer_id)

    if session.mode == CHECKOUT_MODE_SUBSCRIPTION and session.subscription_id:
        _store_latest_invoice(session.subscription_id, stripe_client)


def _store_latest_invoice(subscription_id: str, stripe_client: stripe.StripeClient):
    """Mirror the first invoice of a new subscription (best-effort)."""
    start = time.time()
    try:
        subscription = to_plain(stripe_client.v1.subscriptions.retrieve(subscription_id))
        latest_invoice_id = object_id(subscription.get("latest_invoice"))
        if not latest_invoice_id:
            log_external_call(logger, "stripe", "subscriptions.retrieve", True, (time.time() - start) * 1000)
            return
        invoice = stripe_client.v1.invoices.retrieve(latest_invoice_id)
    except stripe.StripeError as e:
        log_external_call(
            logger, "stripe", "fetch_latest_invoice", False, (time.time() - start) * 1000, error=str(e)
        )
        logger.error(f"Error fetching invoice for subscription {subscription_id}: {e}")
        return

    log_external_call(logger, "stripe", "fetch_latest_invoice", True, (time.time() - start) * 1000)
    try:
        invoice_data = invoice_input(invoice, default_status="paid")
        invoice_data.stripe_subscription_id = subscription_id
        upserts.handle_invoice_created(invoice_data)
    except Exception as e:
        # Checkout session is already mirrored; the invoice webhooks fill this in
        logger.error(f"Error storing invoice for subscription {subscription_id}: {e}", exc_info=True)


def _handle_payment_intent_succeeded(
    data: dict,
    stripe_client: stripe.StripeClient,
    recent_window_seconds: int,
):
    payment = payment_intent_input(data)

    if payment.invoice_id and _is_subscription_invoice(payment.invoice_id, stripe_client):
        logger.info(f"Skipping payment_intent.succeeded {payment.stripe_payment_intent_id} - subscription payment")
        return

    if payment.stripe_customer_id and _has_recent_subscription(payment.stripe_customer_id, recent_window_seconds):
        logger.info(f"Skipping payment_intent.succeeded {payment.stripe_payment_intent_id} - recent subscription")
        return

    upserts.handle_payment_intent_succeeded(payment)


def _is_subscription_invoice(invoice_id: str, stripe_client: stripe.StripeClient) -> bool:
    """True if the invoice belongs to a subscription. Lookup failure counts as False."""
    start = time.time()
    try:
        invoice = stripe_client.v1.invoices.retrieve(invoice_id)
    except stripe.StripeError as e:
        log_external_call(logger, "stripe", "invoices.retrieve", False, (time.time() - start) * 1000, error=str(e))
        logger.error(f"Error checking invoice {invoice_id}: {e}")
        return False

    log_external_call(logger, "stripe", "invoices.retrieve", True, (time.time() - start) * 1000)
    return invoice_subscription_id(invoice) is not None


def _has_recent_subscription(stripe_customer_id: str, window_seconds: int, now: Optional[float] = None) -> bool:
    """True if the customer got a subscription mirrored within the trailing window."""
    # created_at is stored in whole seconds
    now = time.time() if now is None else now
    window_start = int(now) - window_seconds
    return any(
        sub.get("created_at", 0) >= window_start
        for sub in list_subscriptions(stripe_customer_id)
    )
