# Shared utilities package
from .constants import DEFAULT_WEBHOOK_PATH, RECENT_SUBSCRIPTION_WINDOW_SECONDS
from .dynamo import get_record, put_if_absent, query_index, update_record
from .errors import APIError, StripeNotConfiguredError, SubscriptionNotFoundError
from .response_utils import error_response, success_response

__all__ = [
    "DEFAULT_WEBHOOK_PATH",
    "RECENT_SUBSCRIPTION_WINDOW_SECONDS",
    "get_record",
    "put_if_absent",
    "update_record",
    "query_index",
    "error_response",
    "success_response",
    "APIError",
    "StripeNotConfiguredError",
    "SubscriptionNotFoundError",
]
