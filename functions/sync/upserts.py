"""
Idempotent upsert handlers for the mirrored Stripe entities.

Both the webhook path and the reconciling actions write through these
functions. Each handler keys on the Stripe ID and guarantees at most one
record per key:

- create handlers insert with a conditional put and no-op if the record exists
- update handlers patch with a conditional update and no-op if it does not
- backfills only fill attributes that are currently empty

Handlers return True when they wrote something and False on a no-op.
Only update_subscription_metadata raises for a missing record.
"""

import logging
from typing import Optional

from shared.constants import (
    CHECKOUT_STATUS_COMPLETE,
    INVOICE_STATUS_OPEN,
    INVOICE_STATUS_PAID,
    SUBSCRIPTION_STATUS_CANCELED,
)
from shared.dynamo import (
    CHECKOUT_SESSION_KEY,
    CHECKOUT_SESSIONS_TABLE,
    CUSTOMER_KEY,
    CUSTOMERS_TABLE,
    INVOICE_KEY,
    INVOICES_TABLE,
    PAYMENT_KEY,
    PAYMENTS_TABLE,
    SUBSCRIPTION_KEY,
    SUBSCRIPTIONS_TABLE,
    get_record,
    put_if_absent,
    update_record,
)
from shared.errors import SubscriptionNotFoundError
from sync.events import (
    CheckoutSessionInput,
    CustomerInput,
    InvoiceInput,
    PaymentIntentInput,
    SubscriptionInput,
    SubscriptionUpdate,
    linkage_from_metadata,
)

logger = logging.getLogger(__name__)


# ===========================================
# Customers
# ===========================================


def handle_customer_created(customer: CustomerInput) -> bool:
    """Insert a customer on first sighting. Never overwrites an existing one."""
    inserted = put_if_absent(
        CUSTOMERS_TABLE,
        CUSTOMER_KEY,
        {
            CUSTOMER_KEY: customer.stripe_customer_id,
            "email": customer.email,
            "name": customer.name,
            "metadata": customer.metadata or {},
        },
    )
    if inserted:
        logger.info(f"Created customer {customer.stripe_customer_id}")
    else:
        logger.info(f"Customer {customer.stripe_customer_id} already exists, skipping create")
    return inserted


def handle_customer_updated(customer: CustomerInput) -> bool:
    """Patch an existing customer.

    Stripe sends the full customer on update, so a missing email or name
    means it was cleared and is removed here. Unknown customers are ignored.
    """
    patched = update_record(
        CUSTOMERS_TABLE,
        CUSTOMER_KEY,
        customer.stripe_customer_id,
        set_fields={
            "email": customer.email,
            "name": customer.name,
            "metadata": customer.metadata,
        },
        remove_fields=[f for f in ("email", "name") if getattr(customer, f) is None],
    )
    if not patched:
        logger.info(f"Customer {customer.stripe_customer_id} not mirrored, ignoring update")
    return patched


def create_or_update_customer(customer: CustomerInput) -> str:
    """Public mutation: upsert a customer. Returns the Stripe customer ID."""
    if not handle_customer_created(customer):
        update_record(
            CUSTOMERS_TABLE,
            CUSTOMER_KEY,
            customer.stripe_customer_id,
            set_fields={
                "email": customer.email,
                "name": customer.name,
                "metadata": customer.metadata,
            },
        )
    return customer.stripe_customer_id


# ===========================================
# Subscriptions
# ===========================================


def handle_subscription_created(subscription: SubscriptionInput) -> bool:
    """Insert a subscription, extracting org/user linkage from its metadata.

    Linkage is read from metadata only here; later changes go through
    handle_subscription_updated or update_subscription_metadata.
    """
    metadata = subscription.metadata or {}
    org_id, user_id = linkage_from_metadata(metadata)

    inserted = put_if_absent(
        SUBSCRIPTIONS_TABLE,
        SUBSCRIPTION_KEY,
        {
            SUBSCRIPTION_KEY: subscription.stripe_subscription_id,
            "stripe_customer_id": subscription.stripe_customer_id,
            "status": subscription.status,
            "current_period_end": subscription.current_period_end,
            "cancel_at_period_end": subscription.cancel_at_period_end,
            "quantity": subscription.quantity,
            "price_id": subscription.price_id,
            "metadata": metadata,
            "org_id": org_id,
            "user_id": user_id,
        },
    )
    if inserted:
        logger.info(
            f"Created subscription {subscription.stripe_subscription_id} "
            f"for customer {subscription.stripe_customer_id}: status={subscription.status}"
        )
    return inserted


def handle_subscription_updated(update: SubscriptionUpdate) -> bool:
    """Patch a subscription with Stripe's latest state.

    metadata, org_id and user_id are written only when the update carries
    them. An update without linkage never clears stored linkage.
    """
    fields = {
        "status": update.status,
        "current_period_end": update.current_period_end,
        "cancel_at_period_end": update.cancel_at_period_end,
        "quantity": update.quantity,
    }
    if update.metadata is not None:
        org_id, user_id = linkage_from_metadata(update.metadata)
        fields["metadata"] = update.metadata
        fields["org_id"] = org_id
        fields["user_id"] = user_id

    patched = update_record(SUBSCRIPTIONS_TABLE, SUBSCRIPTION_KEY, update.stripe_subscription_id, set_fields=fields)
    if patched:
        logger.info(
            f"Updated subscription {update.stripe_subscription_id}: status={update.status}, "
            f"cancel_at_period_end={update.cancel_at_period_end}"
        )
    else:
        logger.info(f"Subscription {update.stripe_subscription_id} not mirrored, ignoring update")
    return patched


def handle_subscription_deleted(stripe_subscription_id: str) -> bool:
    """Mark a subscription canceled. Records are never deleted."""
    patched = update_record(
        SUBSCRIPTIONS_TABLE,
        SUBSCRIPTION_KEY,
        stripe_subscription_id,
        set_fields={"status": SUBSCRIPTION_STATUS_CANCELED},
    )
    if patched:
        logger.info(f"Subscription {stripe_subscription_id} canceled")
    return patched


def update_subscription_quantity_local(stripe_subscription_id: str, quantity: int) -> bool:
    """Patch the seat count of a mirrored subscription."""
    return update_record(
        SUBSCRIPTIONS_TABLE,
        SUBSCRIPTION_KEY,
        stripe_subscription_id,
        set_fields={"quantity": quantity},
    )


def update_subscription_metadata(
    stripe_subscription_id: str,
    metadata: dict,
    org_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> None:
    """Public mutation: attach application metadata and linkage to a subscription.

    org_id / user_id overwrite stored values only when given.

    Raises:
        SubscriptionNotFoundError: subscription is not in the mirror
    """
    patched = update_record(
        SUBSCRIPTIONS_TABLE,
        SUBSCRIPTION_KEY,
        stripe_subscription_id,
        set_fields={"metadata": metadata or {}, "org_id": org_id, "user_id": user_id},
    )
    if not patched:
        raise SubscriptionNotFoundError(stripe_subscription_id)
    logger.info(f"Updated metadata for subscription {stripe_subscription_id} (org={org_id}, user={user_id})")


# ===========================================
# Checkout sessions
# ===========================================


def handle_checkout_session_created(session: CheckoutSessionInput) -> bool:
    """Record a checkout session we just opened, before Stripe completes it."""
    return put_if_absent(
        CHECKOUT_SESSIONS_TABLE,
        CHECKOUT_SESSION_KEY,
        {
            CHECKOUT_SESSION_KEY: session.stripe_checkout_session_id,
            "stripe_customer_id": session.stripe_customer_id,
            "status": session.status or "open",
            "mode": session.mode,
            "metadata": session.metadata or {},
        },
    )


def handle_checkout_session_completed(session: CheckoutSessionInput) -> bool:
    """Upsert a completed checkout session.

    Side effects on payments and invoices belong to the caller (the event
    router), not to this handler.
    """
    inserted = put_if_absent(
        CHECKOUT_SESSIONS_TABLE,
        CHECKOUT_SESSION_KEY,
        {
            CHECKOUT_SESSION_KEY: session.stripe_checkout_session_id,
            "stripe_customer_id": session.stripe_customer_id,
            "status": CHECKOUT_STATUS_COMPLETE,
            "mode": session.mode,
            "metadata": session.metadata or {},
        },
    )
    if inserted:
        logger.info(f"Recorded completed checkout session {session.stripe_checkout_session_id}")
        return True

    return update_record(
        CHECKOUT_SESSIONS_TABLE,
        CHECKOUT_SESSION_KEY,
        session.stripe_checkout_session_id,
        set_fields={
            "status": CHECKOUT_STATUS_COMPLETE,
            "stripe_customer_id": session.stripe_customer_id,
        },
    )


# ===========================================
# Invoices
# ===========================================


def handle_invoice_created(invoice: InvoiceInput) -> bool:
    """Insert an invoice, copying org/user linkage from its subscription."""
    org_id = user_id = None
    if invoice.stripe_subscription_id:
        subscription = get_record(SUBSCRIPTIONS_TABLE, SUBSCRIPTION_KEY, invoice.stripe_subscription_id)
        if subscription:
            org_id = subscription.get("org_id")
            user_id = subscription.get("user_id")

    inserted = put_if_absent(
        INVOICES_TABLE,
        INVOICE_KEY,
        {
            INVOICE_KEY: invoice.stripe_invoice_id,
            "stripe_customer_id": invoice.stripe_customer_id,
            "stripe_subscription_id": invoice.stripe_subscription_id,
            "status": invoice.status,
            "amount_due": invoice.amount_due,
            "amount_paid": invoice.amount_paid,
            "created": invoice.created,
            "org_id": org_id,
            "user_id": user_id,
        },
    )
    if inserted:
        logger.info(
            f"Created invoice {invoice.stripe_invoice_id} for customer {invoice.stripe_customer_id} "
            f"(subscription={invoice.stripe_subscription_id})"
        )
    return inserted


def handle_invoice_paid(stripe_invoice_id: str, amount_paid: int) -> bool:
    patched = update_record(
        INVOICES_TABLE,
        INVOICE_KEY,
        stripe_invoice_id,
        set_fields={"status": INVOICE_STATUS_PAID, "amount_paid": amount_paid},
    )
    if not patched:
        logger.info(f"Invoice {stripe_invoice_id} not mirrored, ignoring paid event")
    return patched


def handle_invoice_payment_failed(stripe_invoice_id: str) -> bool:
    patched = update_record(
        INVOICES_TABLE,
        INVOICE_KEY,
        stripe_invoice_id,
        set_fields={"status": INVOICE_STATUS_OPEN},
    )
    if patched:
        logger.warning(f"Payment failed for invoice {stripe_invoice_id}")
    return patched


# ===========================================
# Payments
# ===========================================


def handle_payment_intent_succeeded(payment: PaymentIntentInput) -> bool:
    """Insert a one-time payment, or backfill its customer if it already exists."""
    metadata = payment.metadata or {}
    org_id, user_id = linkage_from_metadata(metadata)

    inserted = put_if_absent(
        PAYMENTS_TABLE,
        PAYMENT_KEY,
        {
            PAYMENT_KEY: payment.stripe_payment_intent_id,
            "stripe_customer_id": payment.stripe_customer_id,
            "amount": payment.amount,
            "currency": payment.currency,
            "status": payment.status,
            "created": payment.created,
            "metadata": metadata,
            "org_id": org_id,
            "user_id": user_id,
        },
    )
    if inserted:
        logger.info(
            f"Recorded payment {payment.stripe_payment_intent_id}: "
            f"{payment.amount} {payment.currency} (customer={payment.stripe_customer_id})"
        )
        return True

    if payment.stripe_customer_id:
        return update_payment_customer(payment.stripe_payment_intent_id, payment.stripe_customer_id)
    return False


def update_payment_customer(stripe_payment_intent_id: str, stripe_customer_id: str) -> bool:
    """Fill in a payment's customer if it has none yet.

    The payment intent webhook can land before checkout completion links the
    customer. The conditional write makes the fill first-write-wins.
    """
    patched = update_record(
        PAYMENTS_TABLE,
        PAYMENT_KEY,
        stripe_payment_intent_id,
        set_fields={"stripe_customer_id": stripe_customer_id},
        only_if_missing="stripe_customer_id",
    )
    if patched:
        logger.info(f"Linked payment {stripe_payment_intent_id} to customer {stripe_customer_id}")
    return patched
