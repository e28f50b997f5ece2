"""
Shared constants for the Stripe billing mirror.
"""

import os

# Default webhook route registered with API Gateway
DEFAULT_WEBHOOK_PATH = "/stripe/webhook"

# payment_intent.succeeded is skipped when the same customer got a
# subscription within this many seconds (checkout completion races the
# payment intent webhook for the same purchase).
RECENT_SUBSCRIPTION_WINDOW_SECONDS = int(
    os.environ.get("RECENT_SUBSCRIPTION_WINDOW_SECONDS") or 10 * 60
)

# Statuses the mirror writes itself. Everything else comes from Stripe verbatim.
SUBSCRIPTION_STATUS_CANCELED = "canceled"
CHECKOUT_STATUS_COMPLETE = "complete"
INVOICE_STATUS_PAID = "paid"
INVOICE_STATUS_OPEN = "open"

# Checkout session modes
CHECKOUT_MODE_PAYMENT = "payment"
CHECKOUT_MODE_SUBSCRIPTION = "subscription"
CHECKOUT_MODE_SETUP = "setup"
CHECKOUT_MODES = (CHECKOUT_MODE_PAYMENT, CHECKOUT_MODE_SUBSCRIPTION, CHECKOUT_MODE_SETUP)

# Metadata keys that carry tenant linkage, in lookup order
ORG_ID_METADATA_KEYS = ("orgId", "org_id")
USER_ID_METADATA_KEYS = ("userId", "user_id")

# Prefix for Stripe idempotency keys on customer creation
CUSTOMER_IDEMPOTENCY_PREFIX = "create_customer_"

# Billing event audit records expire after this many days
BILLING_EVENT_TTL_DAYS = 90

# DynamoDB throttling error codes that should trigger retry
THROTTLING_ERRORS = (
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ThrottlingException",
    "InternalServerError",
)
