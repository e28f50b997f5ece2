"""
Reconciling actions: change something in Stripe, then mirror the result.

Every action calls Stripe first. On success the matching upsert is applied
with the fields Stripe returned, so the mirror is current without waiting
for the webhook. On failure the Stripe error propagates unchanged and
nothing is written locally. The webhook that follows is idempotent with
the local write.
"""

import logging
import time
from typing import Any, Callable, Optional

import stripe

from shared.billing_config import get_stripe_client
from shared.constants import (
    CHECKOUT_MODE_PAYMENT,
    CHECKOUT_MODE_SUBSCRIPTION,
    CHECKOUT_MODES,
    CUSTOMER_IDEMPOTENCY_PREFIX,
)
from shared.errors import InvalidRequestError
from shared.logging_utils import log_external_call
from sync import upserts
from sync.events import (
    CustomerInput,
    checkout_session_input,
    subscription_update,
    to_plain,
)
from sync.queries import list_payments_by_user_id, list_subscriptions_by_user_id

logger = logging.getLogger(__name__)


class StripeSync:
    """Stripe operations that keep the local mirror in step.

    Args:
        stripe_client: Client to call Stripe with. Defaults to the
            process-wide client from shared.billing_config.
    """

    def __init__(self, stripe_client: Optional[stripe.StripeClient] = None):
        self.stripe = stripe_client or get_stripe_client()

    def _call(self, operation: str, fn: Callable[[], Any]) -> Any:
        start = time.time()
        try:
            result = fn()
        except stripe.StripeError as e:
            log_external_call(logger, "stripe", operation, False, (time.time() - start) * 1000, error=str(e))
            raise
        log_external_call(logger, "stripe", operation, True, (time.time() - start) * 1000)
        return result

    # ===========================================
    # Subscriptions
    # ===========================================

    def update_subscription_quantity(self, stripe_subscription_id: str, quantity: int) -> None:
        """Change the seat count of a subscription's first item."""
        subscription = to_plain(
            self._call("subscriptions.retrieve", lambda: self.stripe.v1.subscriptions.retrieve(stripe_subscription_id))
        )
        items = (subscription.get("items") or {}).get("data") or []
        if not items:
            raise InvalidRequestError(
                "Subscription has no items",
                details={"stripe_subscription_id": stripe_subscription_id},
            )

        self._call(
            "subscription_items.update",
            lambda: self.stripe.v1.subscription_items.update(items[0]["id"], params={"quantity": quantity}),
        )
        upserts.update_subscription_quantity_local(stripe_subscription_id, quantity)

    def cancel_subscription(self, stripe_subscription_id: str, cancel_at_period_end: bool = True) -> None:
        """Cancel at period end (default) or immediately."""
        if cancel_at_period_end:
            subscription = self._call(
                "subscriptions.update",
                lambda: self.stripe.v1.subscriptions.update(
                    stripe_subscription_id, params={"cancel_at_period_end": True}
                ),
            )
        else:
            subscription = self._call(
                "subscriptions.cancel",
                lambda: self.stripe.v1.subscriptions.cancel(stripe_subscription_id),
            )

        upserts.handle_subscription_updated(subscription_update(subscription))
        logger.info(
            f"Canceled subscription {stripe_subscription_id} "
            f"({'at period end' if cancel_at_period_end else 'immediately'})"
        )

    def reactivate_subscription(self, stripe_subscription_id: str) -> None:
        """Undo a pending cancel-at-period-end."""
        subscription = self._call(
            "subscriptions.update",
            lambda: self.stripe.v1.subscriptions.update(
                stripe_subscription_id, params={"cancel_at_period_end": False}
            ),
        )
        upserts.handle_subscription_updated(subscription_update(subscription))
        logger.info(f"Reactivated subscription {stripe_subscription_id}")

    # ===========================================
    # Checkout and portal
    # ===========================================

    def create_checkout_session(
        self,
        price_id: str,
        mode: str,
        success_url: str,
        cancel_url: str,
        customer_id: Optional[str] = None,
        quantity: int = 1,
        metadata: Optional[dict] = None,
        subscription_metadata: Optional[dict] = None,
        payment_intent_metadata: Optional[dict] = None,
    ) -> dict:
        """
        Open a Stripe Checkout session.

        subscription_metadata is attached to the resulting subscription in
        subscription mode, payment_intent_metadata to the payment intent in
        payment mode. Put orgId / userId there to link the purchase.

        Returns:
            {"session_id": ..., "url": ...}
        """
        if mode not in CHECKOUT_MODES:
            raise InvalidRequestError(f"Invalid checkout mode: {mode}", details={"mode": mode})

        params = {
            "mode": mode,
            "line_items": [{"price": price_id, "quantity": quantity}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata or {},
        }
        if customer_id:
            params["customer"] = customer_id
        if mode == CHECKOUT_MODE_SUBSCRIPTION and subscription_metadata:
            params["subscription_data"] = {"metadata": subscription_metadata}
        if mode == CHECKOUT_MODE_PAYMENT and payment_intent_metadata:
            params["payment_intent_data"] = {"metadata": payment_intent_metadata}

        session = self._call("checkout.sessions.create", lambda: self.stripe.v1.checkout.sessions.create(params=params))
        session_input = checkout_session_input(session)
        upserts.handle_checkout_session_created(session_input)

        return {"session_id": session_input.stripe_checkout_session_id, "url": session_input.url}

    def create_customer_portal_session(self, customer_id: str, return_url: str) -> dict:
        session = self._call(
            "billing_portal.sessions.create",
            lambda: self.stripe.v1.billing_portal.sessions.create(
                params={"customer": customer_id, "return_url": return_url}
            ),
        )
        return {"url": to_plain(session).get("url")}

    # ===========================================
    # Customers
    # ===========================================

    def create_customer(
        self,
        email: Optional[str] = None,
        name: Optional[str] = None,
        metadata: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        """
        Create a Stripe customer and mirror it.

        Two calls with the same idempotency_key get the same Stripe customer
        back, so concurrent callers converge on one record.
        """
        params = {k: v for k, v in (("email", email), ("name", name), ("metadata", metadata)) if v is not None}
        options = {"idempotency_key": f"{CUSTOMER_IDEMPOTENCY_PREFIX}{idempotency_key}"} if idempotency_key else {}

        customer = to_plain(
            self._call("customers.create", lambda: self.stripe.v1.customers.create(params=params, options=options))
        )
        customer_id = upserts.create_or_update_customer(
            CustomerInput(stripe_customer_id=customer["id"], email=email, name=name, metadata=metadata)
        )
        return {"customer_id": customer_id}

    def get_or_create_customer(
        self,
        user_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> dict:
        """
        Find the Stripe customer already linked to user_id, or create one.

        Returns:
            {"customer_id": ..., "is_new": bool}
        """
        subscriptions = list_subscriptions_by_user_id(user_id)
        if subscriptions:
            return {"customer_id": subscriptions[0]["stripe_customer_id"], "is_new": False}

        payments = list_payments_by_user_id(user_id)
        if payments and payments[0].get("stripe_customer_id"):
            return {"customer_id": payments[0]["stripe_customer_id"], "is_new": False}

        result = self.create_customer(
            email=email,
            name=name,
            metadata={"userId": user_id},
            idempotency_key=user_id,
        )
        return {"customer_id": result["customer_id"], "is_new": True}
