"""
Read-only lookups over the mirrored billing tables.

Point reads go to the hash key; list reads go through the sparse GSIs and
come back oldest first. GSI reads are eventually consistent.
"""

from typing import Optional

from shared.dynamo import (
    CHECKOUT_SESSION_KEY,
    CHECKOUT_SESSIONS_TABLE,
    CUSTOMER_INDEX,
    CUSTOMER_KEY,
    CUSTOMERS_TABLE,
    INVOICE_KEY,
    INVOICES_TABLE,
    ORG_INDEX,
    PAYMENT_KEY,
    PAYMENTS_TABLE,
    SUBSCRIPTION_KEY,
    SUBSCRIPTIONS_TABLE,
    USER_INDEX,
    get_record,
    query_index,
)
from shared.types import (
    CheckoutSessionRecord,
    CustomerRecord,
    InvoiceRecord,
    PaymentRecord,
    SubscriptionRecord,
)


def _oldest_first(records: list[dict]) -> list[dict]:
    return sorted(records, key=lambda r: r.get("created_at", 0))


def get_customer(stripe_customer_id: str) -> Optional[CustomerRecord]:
    return get_record(CUSTOMERS_TABLE, CUSTOMER_KEY, stripe_customer_id)


def get_subscription(stripe_subscription_id: str) -> Optional[SubscriptionRecord]:
    return get_record(SUBSCRIPTIONS_TABLE, SUBSCRIPTION_KEY, stripe_subscription_id)


def list_subscriptions(stripe_customer_id: str) -> list[SubscriptionRecord]:
    """All subscriptions of a customer."""
    return _oldest_first(query_index(SUBSCRIPTIONS_TABLE, CUSTOMER_INDEX, "stripe_customer_id", stripe_customer_id))


def get_subscription_by_org_id(org_id: str) -> Optional[SubscriptionRecord]:
    """The first subscription linked to an organization, if any."""
    subscriptions = _oldest_first(query_index(SUBSCRIPTIONS_TABLE, ORG_INDEX, "org_id", org_id))
    return subscriptions[0] if subscriptions else None


def list_subscriptions_by_user_id(user_id: str) -> list[SubscriptionRecord]:
    return _oldest_first(query_index(SUBSCRIPTIONS_TABLE, USER_INDEX, "user_id", user_id))


def get_checkout_session(stripe_checkout_session_id: str) -> Optional[CheckoutSessionRecord]:
    return get_record(CHECKOUT_SESSIONS_TABLE, CHECKOUT_SESSION_KEY, stripe_checkout_session_id)


def get_payment(stripe_payment_intent_id: str) -> Optional[PaymentRecord]:
    return get_record(PAYMENTS_TABLE, PAYMENT_KEY, stripe_payment_intent_id)


def list_payments(stripe_customer_id: str) -> list[PaymentRecord]:
    """Payments linked to a customer. Payments not yet backfilled are not included."""
    return _oldest_first(query_index(PAYMENTS_TABLE, CUSTOMER_INDEX, "stripe_customer_id", stripe_customer_id))


def list_payments_by_user_id(user_id: str) -> list[PaymentRecord]:
    return _oldest_first(query_index(PAYMENTS_TABLE, USER_INDEX, "user_id", user_id))


def list_payments_by_org_id(org_id: str) -> list[PaymentRecord]:
    return _oldest_first(query_index(PAYMENTS_TABLE, ORG_INDEX, "org_id", org_id))


def get_invoice(stripe_invoice_id: str) -> Optional[InvoiceRecord]:
    return get_record(INVOICES_TABLE, INVOICE_KEY, stripe_invoice_id)


def list_invoices(stripe_customer_id: str) -> list[InvoiceRecord]:
    return _oldest_first(query_index(INVOICES_TABLE, CUSTOMER_INDEX, "stripe_customer_id", stripe_customer_id))


def list_invoices_by_org_id(org_id: str) -> list[InvoiceRecord]:
    return _oldest_first(query_index(INVOICES_TABLE, ORG_INDEX, "org_id", org_id))


def list_invoices_by_user_id(user_id: str) -> list[InvoiceRecord]:
    return _oldest_first(query_index(INVOICES_TABLE, USER_INDEX, "user_id", user_id))
