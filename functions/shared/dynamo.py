"""
DynamoDB helpers for the mirrored billing tables.

Every table is keyed on the Stripe-assigned ID, so the natural key is
physically unique. Inserts are conditional puts and patches are conditional
updates, which lets concurrent webhook deliveries for the same key converge
on one record without a transaction.
"""

import logging
import os
import random
import time
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional, TypeVar

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from .aws_clients import get_dynamodb
from .constants import THROTTLING_ERRORS

logger = logging.getLogger(__name__)

T = TypeVar("T")

CUSTOMERS_TABLE = os.environ.get("CUSTOMERS_TABLE", "stripe-sync-customers")
SUBSCRIPTIONS_TABLE = os.environ.get("SUBSCRIPTIONS_TABLE", "stripe-sync-subscriptions")
CHECKOUT_SESSIONS_TABLE = os.environ.get("CHECKOUT_SESSIONS_TABLE", "stripe-sync-checkout-sessions")
PAYMENTS_TABLE = os.environ.get("PAYMENTS_TABLE", "stripe-sync-payments")
INVOICES_TABLE = os.environ.get("INVOICES_TABLE", "stripe-sync-invoices")

# Hash key attribute of each table
CUSTOMER_KEY = "stripe_customer_id"
SUBSCRIPTION_KEY = "stripe_subscription_id"
CHECKOUT_SESSION_KEY = "stripe_checkout_session_id"
PAYMENT_KEY = "stripe_payment_intent_id"
INVOICE_KEY = "stripe_invoice_id"

# GSI names shared by the subscriptions, payments and invoices tables
CUSTOMER_INDEX = "customer-index"
ORG_INDEX = "org-index"
USER_INDEX = "user-index"


def from_dynamo(value: Any) -> Any:
    """Convert DynamoDB Decimals back to int/float, recursively."""
    if isinstance(value, Decimal):
        return int(value) if value % 1 == 0 else float(value)
    if isinstance(value, dict):
        return {k: from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_dynamo(v) for v in value]
    return value


def _strip_none(fields: dict) -> dict:
    # DynamoDB rejects NULL for GSI key attributes; absent is the same as unset
    return {k: v for k, v in fields.items() if v is not None}


def _with_throttle_retry(operation: Callable[[], T], description: str, max_retries: int = 3) -> T:
    """Run a DynamoDB call, retrying throttling errors with backoff and jitter.

    Non-throttling ClientErrors are raised immediately.
    """
    for attempt in range(max_retries):
        try:
            return operation()
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code not in THROTTLING_ERRORS or attempt == max_retries - 1:
                raise
            base_delay = min(0.1 * (2 ** attempt), 2.0)
            jitter = random.uniform(0, base_delay * 0.5)
            delay = base_delay + jitter
            logger.warning(
                f"DynamoDB throttled during {description}, "
                f"retry {attempt + 1}/{max_retries} in {delay:.2f}s"
            )
            time.sleep(delay)
    raise RuntimeError(f"Max retries exceeded for {description}")  # pragma: no cover


def _is_condition_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def get_record(table_name: str, key_name: str, key_value: str) -> Optional[dict]:
    """
    Get a single record by its Stripe ID.

    Args:
        table_name: DynamoDB table name
        key_name: Hash key attribute (e.g. "stripe_subscription_id")
        key_value: Stripe ID to look up

    Returns:
        Record dict with Decimals normalized, or None if not found
    """
    table = get_dynamodb().Table(table_name)
    response = _with_throttle_retry(
        lambda: table.get_item(Key={key_name: key_value}, ConsistentRead=True),
        f"get {table_name}/{key_value}",
    )
    item = response.get("Item")
    return from_dynamo(item) if item else None


def put_if_absent(table_name: str, key_name: str, item: dict) -> bool:
    """
    Insert a record only if no record with the same key exists.

    Stamps created_at (epoch seconds) on the new record. None values are
    dropped before writing.

    Returns:
        True if inserted, False if a record already existed
    """
    table = get_dynamodb().Table(table_name)
    record = _strip_none({**item, "created_at": int(time.time())})

    try:
        _with_throttle_retry(
            lambda: table.put_item(
                Item=record,
                ConditionExpression=f"attribute_not_exists({key_name})",
            ),
            f"insert {table_name}/{record.get(key_name)}",
        )
        return True
    except ClientError as e:
        if _is_condition_failure(e):
            return False
        raise


def update_record(
    table_name: str,
    key_name: str,
    key_value: str,
    *,
    set_fields: Optional[dict] = None,
    remove_fields: Iterable[str] = (),
    only_if_missing: Optional[str] = None,
) -> bool:
    """
    Patch an existing record in place.

    The update is conditional on the record existing, so a patch never
    creates a record. None values in set_fields are ignored; list them in
    remove_fields to clear an attribute.

    Args:
        table_name: DynamoDB table name
        key_name: Hash key attribute
        key_value: Stripe ID of the record
        set_fields: Attributes to SET
        remove_fields: Attributes to REMOVE
        only_if_missing: Additionally require this attribute to be absent
            (used for monotonic backfills)

    Returns:
        True if the record was patched, False if the condition failed
    """
    set_fields = _strip_none(set_fields or {})
    remove_fields = [f for f in remove_fields if f not in set_fields]
    if not set_fields and not remove_fields:
        return False

    names = {"#key": key_name}
    values = {}
    set_parts = []
    for i, (field, value) in enumerate(set_fields.items()):
        names[f"#s{i}"] = field
        values[f":s{i}"] = value
        set_parts.append(f"#s{i} = :s{i}")

    remove_parts = []
    for i, field in enumerate(remove_fields):
        names[f"#r{i}"] = field
        remove_parts.append(f"#r{i}")

    expr_parts = []
    if set_parts:
        expr_parts.append("SET " + ", ".join(set_parts))
    if remove_parts:
        expr_parts.append("REMOVE " + ", ".join(remove_parts))

    condition = "attribute_exists(#key)"
    if only_if_missing:
        names["#missing"] = only_if_missing
        condition += " AND attribute_not_exists(#missing)"

    params = {
        "Key": {key_name: key_value},
        "UpdateExpression": " ".join(expr_parts),
        "ConditionExpression": condition,
        "ExpressionAttributeNames": names,
    }
    if values:
        params["ExpressionAttributeValues"] = values

    table = get_dynamodb().Table(table_name)
    try:
        _with_throttle_retry(lambda: table.update_item(**params), f"update {table_name}/{key_value}")
        return True
    except ClientError as e:
        if _is_condition_failure(e):
            return False
        raise


def query_index(table_name: str, index_name: str, attribute: str, value: str) -> list[dict]:
    """
    Query a GSI for all records whose attribute equals value.

    Handles pagination. GSIs are sparse, so records without the attribute
    are never returned.
    """
    table = get_dynamodb().Table(table_name)
    condition = Key(attribute).eq(value)

    response = _with_throttle_retry(
        lambda: table.query(IndexName=index_name, KeyConditionExpression=condition),
        f"query {table_name}/{index_name}",
    )
    items = list(response.get("Items", []))

    while "LastEvaluatedKey" in response:
        start_key = response["LastEvaluatedKey"]
        response = _with_throttle_retry(
            lambda: table.query(
                IndexName=index_name,
                KeyConditionExpression=condition,
                ExclusiveStartKey=start_key,
            ),
            f"query {table_name}/{index_name}",
        )
        items.extend(response.get("Items", []))

    return [from_dynamo(item) for item in items]
