"""
Shared pytest fixtures for the Stripe billing mirror tests.
"""

import hashlib
import hmac
import json
import os
import sys
import time
from unittest.mock import MagicMock

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

WEBHOOK_SECRET = "whsec_test_secret"
STRIPE_API_KEY = "sk_test_123"

_STRIPE_ENV_VARS = (
    "STRIPE_SECRET_KEY",
    "STRIPE_SECRET_ARN",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_WEBHOOK_SECRET_ARN",
    "STRIPE_WEBHOOK_PATH",
)


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Reset shared AWS client singletons between tests."""
    yield
    from shared.aws_clients import reset_clients
    reset_clients()


@pytest.fixture(autouse=True)
def reset_stripe_config(monkeypatch):
    """Start every test without Stripe secrets or a cached Stripe client."""
    for name in _STRIPE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)

    from shared.billing_config import reset_stripe_config as _reset
    _reset()
    yield
    _reset()


def create_dynamodb_tables(dynamodb):
    """Create all mirror tables with their GSIs.

    Args:
        dynamodb: boto3 DynamoDB resource
    """
    linkage_indexes = [
        {
            "IndexName": "customer-index",
            "KeySchema": [{"AttributeName": "stripe_customer_id", "KeyType": "HASH"}],
            "Projection": {"ProjectionType": "ALL"},
        },
        {
            "IndexName": "org-index",
            "KeySchema": [{"AttributeName": "org_id", "KeyType": "HASH"}],
            "Projection": {"ProjectionType": "ALL"},
        },
        {
            "IndexName": "user-index",
            "KeySchema": [{"AttributeName": "user_id", "KeyType": "HASH"}],
            "Projection": {"ProjectionType": "ALL"},
        },
    ]
    linkage_attributes = [
        {"AttributeName": "stripe_customer_id", "AttributeType": "S"},
        {"AttributeName": "org_id", "AttributeType": "S"},
        {"AttributeName": "user_id", "AttributeType": "S"},
    ]

    dynamodb.create_table(
        TableName="stripe-sync-customers",
        KeySchema=[{"AttributeName": "stripe_customer_id", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "stripe_customer_id", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )

    for table_name, key in (
        ("stripe-sync-subscriptions", "stripe_subscription_id"),
        ("stripe-sync-payments", "stripe_payment_intent_id"),
        ("stripe-sync-invoices", "stripe_invoice_id"),
    ):
        dynamodb.create_table(
            TableName=table_name,
            KeySchema=[{"AttributeName": key, "KeyType": "HASH"}],
            AttributeDefinitions=[{"AttributeName": key, "AttributeType": "S"}, *linkage_attributes],
            GlobalSecondaryIndexes=linkage_indexes,
            BillingMode="PAY_PER_REQUEST",
        )

    dynamodb.create_table(
        TableName="stripe-sync-checkout-sessions",
        KeySchema=[{"AttributeName": "stripe_checkout_session_id", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "stripe_checkout_session_id", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )

    # Billing events table for webhook audit trail
    dynamodb.create_table(
        TableName="stripe-sync-billing-events",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # event_id
            {"AttributeName": "sk", "KeyType": "RANGE"},  # event_type
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def stripe_client():
    """Stand-in for stripe.StripeClient; configure v1.* return values per test."""
    return MagicMock()


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for the webhook handler."""
    return {
        "httpMethod": "POST",
        "path": "/stripe/webhook",
        "headers": {},
        "pathParameters": {},
        "queryStringParameters": {},
        "body": None,
        "isBase64Encoded": False,
        "requestContext": {
            "requestId": "req-test-123",
            "identity": {"sourceIp": "127.0.0.1"},
        },
    }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, data_object: dict, event_id: str = "evt_test_1") -> dict:
    """Stripe event envelope as delivered to the webhook."""
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": 1700000000,
        "livemode": False,
        "data": {"object": data_object},
    }


def signed_webhook_event(api_gateway_event: dict, payload: dict, secret: str = WEBHOOK_SECRET) -> dict:
    """API Gateway event carrying a correctly signed Stripe payload."""
    body = json.dumps(payload)
    api_gateway_event["body"] = body
    api_gateway_event["headers"] = {"Stripe-Signature": sign_payload(body, secret)}
    return api_gateway_event


def subscription_object(
    subscription_id: str = "sub_123",
    customer_id: str = "cus_123",
    status: str = "active",
    metadata: dict = None,
    quantity: int = 1,
    current_period_end: int = 1700600000,
    cancel_at_period_end: bool = False,
    price_id: str = "price_123",
    **extra,
) -> dict:
    """Stripe subscription object with one line item."""
    obj = {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "items": {
            "object": "list",
            "data": [
                {
                    "id": f"si_{subscription_id}",
                    "quantity": quantity,
                    "current_period_end": current_period_end,
                    "price": {"id": price_id, "object": "price"},
                }
            ],
        },
        "metadata": {} if metadata is None else metadata,
    }
    obj.update(extra)
    return obj


def payment_intent_object(
    payment_intent_id: str = "pi_123",
    customer_id: str = None,
    amount: int = 2000,
    metadata: dict = None,
    invoice: str = None,
) -> dict:
    return {
        "id": payment_intent_id,
        "object": "payment_intent",
        "amount": amount,
        "currency": "usd",
        "status": "succeeded",
        "created": 1700000000,
        "customer": customer_id,
        "invoice": invoice,
        "metadata": metadata or {},
    }


def invoice_object(
    invoice_id: str = "in_123",
    customer_id: str = "cus_123",
    subscription_id: str = None,
    status: str = "open",
    amount_due: int = 2000,
    amount_paid: int = 0,
) -> dict:
    return {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer_id,
        "subscription": subscription_id,
        "status": status,
        "amount_due": amount_due,
        "amount_paid": amount_paid,
        "created": 1700000000,
    }
