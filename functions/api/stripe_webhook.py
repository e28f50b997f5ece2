"""
Stripe Webhook Endpoint - POST /stripe/webhook

Verifies the Stripe-Signature header against the raw request body, applies
the default mirror update for the event, then runs any application hooks.
Uses Stripe signature verification instead of API key auth.

Stripe retries anything that is not a 2xx, so processing failures answer
500 and every handler downstream is idempotent.
"""

import base64
import binascii
import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import stripe

from shared.aws_clients import get_dynamodb
from shared.billing_config import get_stripe_client, get_webhook_secret
from shared.constants import BILLING_EVENT_TTL_DAYS, DEFAULT_WEBHOOK_PATH
from shared.errors import StripeNotConfiguredError
from shared.logging_utils import (
    configure_structured_logging,
    log_webhook_result,
    set_request_id,
    set_stripe_event_id,
)
from shared.response_utils import error_response, success_response
from shared.types import APIGatewayEvent, LambdaResponse
from sync.event_router import process_event
from sync.events import StripeEvent, parse_event

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

BILLING_EVENTS_TABLE = os.environ.get("BILLING_EVENTS_TABLE", "stripe-sync-billing-events")

EventHook = Callable[[StripeEvent], None]


@dataclass
class WebhookConfig:
    """Per-deployment webhook settings.

    Hooks run after the default mirror update: on_event for every event,
    then events[event.type] if registered. A hook that raises fails the
    delivery with 500 so Stripe retries it.
    """

    webhook_path: str = field(
        default_factory=lambda: os.environ.get("STRIPE_WEBHOOK_PATH") or DEFAULT_WEBHOOK_PATH
    )
    on_event: Optional[EventHook] = None
    events: dict[str, EventHook] = field(default_factory=dict)
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None


# ===========================================
# Billing Event Audit Trail
# ===========================================


def _record_billing_event(event: StripeEvent, status: str, error: str = None):
    """Record webhook event for audit trail (best-effort).

    Uses event_id as PK (some events lack a customer).
    Failures are logged but do not affect webhook response.

    Args:
        event: Verified Stripe event
        status: "success" or "failed"
        error: Error message if status is "failed"
    """
    try:
        table = get_dynamodb().Table(BILLING_EVENTS_TABLE)
        now = datetime.now(timezone.utc)
        item = {
            "pk": event.id,
            "sk": event.type,
            "customer_id": event.customer_id or "unknown",
            "processed_at": now.isoformat(),
            "event_created_at": event.created,  # Stripe's event timestamp
            "livemode": event.livemode,  # Distinguish test vs production
            "status": status,
            "error": error,
            "ttl": int((now + timedelta(days=BILLING_EVENT_TTL_DAYS)).timestamp()),
        }
        table.put_item(Item={k: v for k, v in item.items() if v is not None})
    except Exception as e:
        # Audit recording should not block webhook response
        logger.error(f"Failed to record billing event {event.id}: {e}")


# ===========================================
# Request helpers
# ===========================================


def _get_header(event: dict, name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    headers = event.get("headers") or {}
    name = name.lower()
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def _get_method(event: dict) -> str:
    method = event.get("httpMethod")
    if not method:
        # HTTP API (payload v2) and function URLs
        method = ((event.get("requestContext") or {}).get("http") or {}).get("method", "")
    return method.upper()


def _get_path(event: dict) -> Optional[str]:
    return event.get("path") or event.get("rawPath")


def _get_raw_body(event: dict) -> str:
    """Body exactly as Stripe sent it. The signature covers these bytes."""
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        return base64.b64decode(body).decode("utf-8")
    return body


# ===========================================
# Handler
# ===========================================


def create_webhook_handler(
    config: Optional[WebhookConfig] = None,
    stripe_client: Optional[stripe.StripeClient] = None,
):
    """
    Build a Lambda handler for Stripe webhooks.

    Args:
        config: Path, hooks and secret overrides. Defaults to environment.
        stripe_client: Client for enrichment calls. When omitted it is
            resolved per request from STRIPE_SECRET_KEY / STRIPE_SECRET_ARN.

    Returns:
        handler(event, context) for API Gateway proxy events
    """
    config = config or WebhookConfig()

    def handler(event: APIGatewayEvent, context) -> LambdaResponse:
        configure_structured_logging()
        set_request_id(event)
        start = time.time()

        method = _get_method(event)
        if method != "POST":
            return error_response(405, "method_not_allowed", f"Method {method or 'unknown'} not allowed")

        path = _get_path(event)
        if path and path.rstrip("/") != config.webhook_path.rstrip("/"):
            return error_response(404, "not_found", "Not found")

        webhook_secret = get_webhook_secret(config.stripe_webhook_secret)
        if not webhook_secret:
            logger.error("Stripe webhook secret not configured")
            return error_response(500, "stripe_not_configured", "Stripe not configured")

        sig_header = _get_header(event, "Stripe-Signature")
        if not sig_header:
            logger.warning("Missing Stripe signature")
            return error_response(400, "missing_signature", "Missing Stripe signature")

        client = stripe_client
        if client is None:
            try:
                client = get_stripe_client(config.stripe_secret_key)
            except StripeNotConfiguredError as e:
                logger.error("Stripe secret key not configured")
                return e.to_response()

        # Verify webhook signature
        try:
            payload = _get_raw_body(event)
            stripe.WebhookSignature.verify_header(payload, sig_header, webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Invalid Stripe signature: {e}")
            return error_response(400, "invalid_signature", "Invalid signature")
        except (binascii.Error, UnicodeDecodeError) as e:
            logger.warning(f"Undecodable webhook body: {e}")
            return error_response(400, "invalid_signature", "Invalid signature")

        try:
            stripe_event = parse_event(json.loads(payload))
        except ValueError as e:
            # json.JSONDecodeError is a ValueError
            logger.error(f"Webhook error: {e}")
            return error_response(400, "invalid_webhook_payload", "Invalid webhook payload")

        set_stripe_event_id(stripe_event.id)
        logger.info(f"Processing Stripe event: {stripe_event.type} (id={stripe_event.id})")

        try:
            process_event(stripe_event, client)

            if config.on_event:
                config.on_event(stripe_event)

            type_hook = config.events.get(stripe_event.type)
            if type_hook:
                type_hook(stripe_event)

        except Exception as e:
            _record_billing_event(stripe_event, "failed", str(e))
            logger.error(f"Error handling {stripe_event.type}: {e}", exc_info=True)
            log_webhook_result(logger, stripe_event.type, 500, (time.time() - start) * 1000)
            return error_response(500, "processing_failed", "Processing failed")

        _record_billing_event(stripe_event, "success")
        log_webhook_result(logger, stripe_event.type, 200, (time.time() - start) * 1000)
        return success_response({"received": True})

    return handler


handler = create_webhook_handler()
