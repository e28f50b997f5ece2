"""
Standardized errors for the billing mirror.
"""

import json
from typing import Optional


class APIError(Exception):
    """Base class for API errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API Gateway response format."""
        body = {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }
        if self.details:
            body["error"]["details"] = self.details

        return {
            "statusCode": self.status_code,
            "headers": {"Content-Type": "application/json"},
            "body": json.dumps(body),
        }


class SubscriptionNotFoundError(APIError):
    """Raised when an operation requires a subscription that is not mirrored."""

    def __init__(self, stripe_subscription_id: str):
        super().__init__(
            code="subscription_not_found",
            message=f"Subscription {stripe_subscription_id} not found in database",
            status_code=404,
            details={"stripe_subscription_id": stripe_subscription_id},
        )
        self.stripe_subscription_id = stripe_subscription_id


class StripeNotConfiguredError(APIError):
    """Raised when a Stripe secret is needed but was never configured."""

    def __init__(self, setting: str):
        super().__init__(
            code="stripe_not_configured",
            message=f"{setting} is not configured",
            status_code=500,
        )
        self.setting = setting


class InvalidRequestError(APIError):
    """Raised for general invalid request errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            code="invalid_request",
            message=message,
            status_code=400,
            details=details,
        )
