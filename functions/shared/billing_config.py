"""Stripe configuration: secret resolution and the per-process API client.

Secrets resolve in order: explicit override, environment variable, then
AWS Secrets Manager (JSON {"key": ...} / {"secret": ...} or a plain string).
Secrets Manager lookups are cached with a TTL so warm Lambdas do not pay
for them on every request.
"""

import json
import logging
import os
import time
from typing import Optional

import stripe
from botocore.exceptions import ClientError

from shared.aws_clients import get_secretsmanager
from shared.errors import StripeNotConfiguredError

logger = logging.getLogger(__name__)

STRIPE_SECRETS_CACHE_TTL = 300  # 5 minutes

# secret ARN -> (value, fetched_at)
_secret_cache: dict[str, tuple[Optional[str], float]] = {}

_stripe_client: Optional[stripe.StripeClient] = None
_stripe_client_key: Optional[str] = None


def _read_secret_arn(secret_arn: str, json_field: str) -> Optional[str]:
    cached = _secret_cache.get(secret_arn)
    if cached and cached[0] and (time.time() - cached[1]) < STRIPE_SECRETS_CACHE_TTL:
        return cached[0]

    try:
        response = get_secretsmanager().get_secret_value(SecretId=secret_arn)
    except ClientError as e:
        logger.error(f"Failed to retrieve secret {json_field} from Secrets Manager: {e}")
        return None

    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
        value = secret_json.get(json_field) if isinstance(secret_json, dict) else None
        value = value or secret_value
    except json.JSONDecodeError:
        value = secret_value

    _secret_cache[secret_arn] = (value or None, time.time())
    return value or None


def _resolve(override: Optional[str], env_var: str, arn_env_var: str, json_field: str) -> Optional[str]:
    if override:
        return override
    value = os.environ.get(env_var)
    if value:
        return value
    secret_arn = os.environ.get(arn_env_var)
    if secret_arn:
        return _read_secret_arn(secret_arn, json_field)
    return None


def get_stripe_api_key(override: Optional[str] = None) -> Optional[str]:
    """Resolve the Stripe secret API key, or None if not configured."""
    return _resolve(override, "STRIPE_SECRET_KEY", "STRIPE_SECRET_ARN", "key")


def get_webhook_secret(override: Optional[str] = None) -> Optional[str]:
    """Resolve the webhook signing secret (whsec_...), or None if not configured."""
    return _resolve(override, "STRIPE_WEBHOOK_SECRET", "STRIPE_WEBHOOK_SECRET_ARN", "secret")


def get_stripe_client(api_key: Optional[str] = None) -> stripe.StripeClient:
    """
    Return the process-wide Stripe client, building it on first use.

    The client is rebuilt only if the resolved API key changes (rotation).

    Raises:
        StripeNotConfiguredError: no API key could be resolved
    """
    global _stripe_client, _stripe_client_key

    resolved = get_stripe_api_key(api_key)
    if not resolved:
        raise StripeNotConfiguredError("STRIPE_SECRET_KEY")

    if _stripe_client is None or _stripe_client_key != resolved:
        _stripe_client = stripe.StripeClient(resolved)
        _stripe_client_key = resolved
    return _stripe_client


def reset_stripe_config():
    """Drop cached secrets and the cached client. Used in tests."""
    global _stripe_client, _stripe_client_key
    _secret_cache.clear()
    _stripe_client = None
    _stripe_client_key = None
