"""
Shared Type Definitions for Lambda Handlers.

Provides TypedDict definitions for API Gateway events, Lambda responses
and the mirrored billing records as they are stored in DynamoDB.
"""

from typing import TypedDict, Optional, Any


class APIGatewayEvent(TypedDict, total=False):
    """API Gateway proxy event structure."""

    httpMethod: str
    headers: dict[str, str]
    pathParameters: Optional[dict[str, str]]
    queryStringParameters: Optional[dict[str, str]]
    body: Optional[str]
    requestContext: dict[str, Any]
    resource: str
    path: str
    isBase64Encoded: bool


class LambdaResponse(TypedDict):
    """Standard Lambda response structure."""

    statusCode: int
    headers: dict[str, str]
    body: str


class CustomerRecord(TypedDict, total=False):
    """Row in the customers table."""

    stripe_customer_id: str
    email: str
    name: str
    metadata: dict[str, Any]
    created_at: int


class SubscriptionRecord(TypedDict, total=False):
    """Row in the subscriptions table."""

    stripe_subscription_id: str
    stripe_customer_id: str
    status: str  # active, past_due, canceled, trialing, unpaid, ...
    current_period_end: int
    cancel_at_period_end: bool
    quantity: int
    price_id: str
    metadata: dict[str, Any]
    org_id: str
    user_id: str
    created_at: int


class CheckoutSessionRecord(TypedDict, total=False):
    """Row in the checkout sessions table."""

    stripe_checkout_session_id: str
    stripe_customer_id: str
    status: str
    mode: str
    metadata: dict[str, Any]
    created_at: int


class PaymentRecord(TypedDict, total=False):
    """Row in the payments table (one-time payment intents)."""

    stripe_payment_intent_id: str
    stripe_customer_id: str
    amount: int
    currency: str
    status: str
    created: int
    metadata: dict[str, Any]
    org_id: str
    user_id: str
    created_at: int


class InvoiceRecord(TypedDict, total=False):
    """Row in the invoices table."""

    stripe_invoice_id: str
    stripe_customer_id: str
    stripe_subscription_id: str
    status: str
    amount_due: int
    amount_paid: int
    created: int
    org_id: str
    user_id: str
    created_at: int
