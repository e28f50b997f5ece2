"""
Tests for the reconciling StripeSync actions.
"""

import pytest
import stripe
from moto import mock_aws

from conftest import subscription_object


def _seed_subscription(**kwargs):
    from sync.events import subscription_input
    from sync.upserts import handle_subscription_created

    handle_subscription_created(subscription_input(subscription_object(**kwargs)))


class TestStripeSyncConstruction:
    """Tests for client resolution."""

    def test_requires_api_key_without_client(self):
        from shared.errors import StripeNotConfiguredError
        from sync.actions import StripeSync

        with pytest.raises(StripeNotConfiguredError) as exc_info:
            StripeSync()

        assert exc_info.value.code == "stripe_not_configured"

    def test_uses_process_client_from_environment(self, monkeypatch):
        from shared.billing_config import get_stripe_client
        from sync.actions import StripeSync

        monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_env")

        assert StripeSync().stripe is get_stripe_client()


class TestSubscriptionActions:
    """Tests for quantity, cancel and reactivate."""

    @mock_aws
    def test_update_quantity(self, mock_dynamodb, stripe_client):
        from sync.actions import StripeSync
        from sync.queries import get_subscription

        _seed_subscription(quantity=1)
        stripe_client.v1.subscriptions.retrieve.return_value = subscription_object(quantity=1)

        StripeSync(stripe_client).update_subscription_quantity("sub_123", 5)

        stripe_client.v1.subscription_items.update.assert_called_once_with("si_sub_123", params={"quantity": 5})
        assert get_subscription("sub_123")["quantity"] == 5

    @mock_aws
    def test_update_quantity_without_items(self, mock_dynamodb, stripe_client):
        from shared.errors import InvalidRequestError
        from sync.actions import StripeSync
        from sync.queries import get_subscription

        _seed_subscription(quantity=1)
        obj = subscription_object()
        obj["items"]["data"] = []
        stripe_client.v1.subscriptions.retrieve.return_value = obj

        with pytest.raises(InvalidRequestError, match="Subscription has no items"):
            StripeSync(stripe_client).update_subscription_quantity("sub_123", 5)

        stripe_client.v1.subscription_items.update.assert_not_called()
        assert get_subscription("sub_123")["quantity"] == 1

    @mock_aws
    def test_stripe_failure_skips_local_write(self, mock_dynamodb, stripe_client):
        from sync.actions import StripeSync
        from sync.queries import get_subscription

        _seed_subscription(quantity=1)
        stripe_client.v1.subscriptions.retrieve.return_value = subscription_object(quantity=1)
        error = stripe.CardError("Card declined", "quantity", "card_declined")
        stripe_client.v1.subscription_items.update.side_effect = error

        with pytest.raises(stripe.CardError) as exc_info:
            StripeSync(stripe_client).update_subscription_quantity("sub_123", 5)

        assert exc_info.value is error
        assert get_subscription("sub_123")["quantity"] == 1

    @mock_aws
    def test_cancel_at_period_end(self, mock_dynamodb, stripe_client):
        from sync.actions import StripeSync
        from sync.queries import get_subscription

        _seed_subscription(metadata={"orgId": "org_1"})
        stripe_client.v1.subscriptions.update.return_value = subscription_object(
            cancel_at_period_end=True, metadata={"orgId": "org_1"}
        )

        StripeSync(stripe_client).cancel_subscription("sub_123")

        stripe_client.v1.subscriptions.update.assert_called_once_with(
            "sub_123", params={"cancel_at_period_end": True}
        )
        stripe_client.v1.subscriptions.cancel.assert_not_called()
        sub = get_subscription("sub_123")
        assert sub["cancel_at_period_end"] is True
        assert sub["status"] == "active"
        assert sub["org_id"] == "org_1"

    @mock_aws
    def test_cancel_immediately(self, mock_dynamodb, stripe_client):
        from sync.actions import StripeSync
        from sync.queries import get_subscription

        _seed_subscription()
        stripe_client.v1.subscriptions.cancel.return_value = subscription_object(status="canceled")

        StripeSync(stripe_client).cancel_subscription("sub_123", cancel_at_period_end=False)

        stripe_client.v1.subscriptions.cancel.assert_called_once_with("sub_123")
        assert get_subscription("sub_123")["status"] == "canceled"

    @mock_aws
    def test_reactivate(self, mock_dynamodb, stripe_client):
        from sync.actions import StripeSync
        from sync.queries import get_subscription

        _seed_subscription(cancel_at_period_end=True)
        stripe_client.v1.subscriptions.update.return_value = subscription_object(cancel_at_period_end=False)

        StripeSync(stripe_client).reactivate_subscription("sub_123")

        stripe_client.v1.subscriptions.update.assert_called_once_with(
            "sub_123", params={"cancel_at_period_end": False}
        )
        assert get_subscription("sub_123")["cancel_at_period_end"] is False


class TestCheckoutActions:
    """Tests for checkout and portal sessions."""

    @mock_aws
    def test_subscription_checkout(self, mock_dynamodb, stripe_client):
        from sync.actions import StripeSync
        from sync.queries import get_checkout_session

        stripe_client.v1.checkout.sessions.create.return_value = {
            "id": "cs_1",
            "url": "https://checkout.stripe.com/c/cs_1",
            "status": "open",
            "mode": "subscription",
            "customer": "cus_1",
            "metadata": {"source": "pricing"},
        }

        result = StripeSync(stripe_client).create_checkout_session(
            price_id="price_pro",
            mode="subscription",
            success_url="https://app.example.com/ok",
            cancel_url="https://app.example.com/cancel",
            customer_id="cus_1",
            quantity=3,
            metadata={"source": "pricing"},
            subscription_metadata={"orgId": "org_1"},
            payment_intent_metadata={"ignored": "yes"},
        )

        assert result == {"session_id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1"}
        params = stripe_client.v1.checkout.sessions.create.call_args.kwargs["params"]
        assert params == {
            "mode": "subscription",
            "line_items": [{"price": "price_pro", "quantity": 3}],
            "success_url": "https://app.example.com/ok",
            "cancel_url": "https://app.example.com/cancel",
            "metadata": {"source": "pricing"},
            "customer": "cus_1",
            "subscription_data": {"metadata": {"orgId": "org_1"}},
        }

        session = get_checkout_session("cs_1")
        assert session["status"] == "open"
        assert session["mode"] == "subscription"

    @mock_aws
    def test_payment_checkout_without_customer(self, mock_dynamodb, stripe_client):
        from sync.actions import StripeSync

        stripe_client.v1.checkout.sessions.create.return_value = {
            "id": "cs_2",
            "url": "https://checkout.stripe.com/c/cs_2",
            "status": "open",
            "mode": "payment",
        }

        StripeSync(stripe_client).create_checkout_session(
            price_id="price_once",
            mode="payment",
            success_url="https://app.example.com/ok",
            cancel_url="https://app.example.com/cancel",
            payment_intent_metadata={"userId": "user_1"},
        )

        params = stripe_client.v1.checkout.sessions.create.call_args.kwargs["params"]
        assert "customer" not in params
        assert "subscription_data" not in params
        assert params["payment_intent_data"] == {"metadata": {"userId": "user_1"}}
        assert params["line_items"] == [{"price": "price_once", "quantity": 1}]
        assert params["metadata"] == {}

    def test_invalid_mode(self, stripe_client):
        from shared.errors import InvalidRequestError
        from sync.actions import StripeSync

        with pytest.raises(InvalidRequestError):
            StripeSync(stripe_client).create_checkout_session("price_1", "rental", "https://a", "https://b")

        stripe_client.v1.checkout.sessions.create.assert_not_called()

    def test_portal_session(self, stripe_client):
        from sync.actions import StripeSync

        stripe_client.v1.billing_portal.sessions.create.return_value = {
            "id": "bps_1",
            "url": "https://billing.stripe.com/p/session/bps_1",
        }

        result = StripeSync(stripe_client).create_customer_portal_session("cus_1", "https://app.example.com")

        assert result == {"url": "https://billing.stripe.com/p/session/bps_1"}
        stripe_client.v1.billing_portal.sessions.create.assert_called_once_with(
            params={"customer": "cus_1", "return_url": "https://app.example.com"}
        )


class TestCustomerActions:
    """Tests for create_customer and get_or_create_customer."""

    @mock_aws
    def test_create_customer_with_idempotency_key(self, mock_dynamodb, stripe_client):
        from sync.actions import StripeSync
        from sync.queries import get_customer

        stripe_client.v1.customers.create.return_value = {"id": "cus_new", "email": "a@example.com"}

        result = StripeSync(stripe_client).create_customer(
            email="a@example.com", metadata={"userId": "user_1"}, idempotency_key="user_1"
        )

        assert result == {"customer_id": "cus_new"}
        stripe_client.v1.customers.create.assert_called_once_with(
            params={"email": "a@example.com", "metadata": {"userId": "user_1"}},
            options={"idempotency_key": "create_customer_user_1"},
        )
        customer = get_customer("cus_new")
        assert customer["email"] == "a@example.com"
        assert customer["metadata"] == {"userId": "user_1"}

    @mock_aws
    def test_create_customer_without_idempotency_key(self, mock_dynamodb, stripe_client):
        from sync.actions import StripeSync

        stripe_client.v1.customers.create.return_value = {"id": "cus_new"}

        StripeSync(stripe_client).create_customer(name="Ann")

        stripe_client.v1.customers.create.assert_called_once_with(params={"name": "Ann"}, options={})

    @mock_aws
    def test_create_customer_failure_writes_nothing(self, mock_dynamodb, stripe_client):
        from sync.actions import StripeSync

        stripe_client.v1.customers.create.side_effect = stripe.AuthenticationError("bad key")

        with pytest.raises(stripe.AuthenticationError):
            StripeSync(stripe_client).create_customer(email="a@example.com")

        assert mock_dynamodb.Table("stripe-sync-customers").scan()["Count"] == 0

    @mock_aws
    def test_get_or_create_finds_subscription(self, mock_dynamodb, stripe_client):
        from sync.actions import StripeSync

        _seed_subscription(customer_id="cus_existing", metadata={"userId": "user_1"})

        result = StripeSync(stripe_client).get_or_create_customer("user_1", email="a@example.com")

        assert result == {"customer_id": "cus_existing", "is_new": False}
        stripe_client.v1.customers.create.assert_not_called()

    @mock_aws
    def test_get_or_create_finds_payment(self, mock_dynamodb, stripe_client):
        from sync.actions import StripeSync
        from sync.events import payment_intent_input
        from sync.upserts import handle_payment_intent_succeeded

        from conftest import payment_intent_object

        handle_payment_intent_succeeded(
            payment_intent_input(payment_intent_object(customer_id="cus_paid", metadata={"userId": "user_1"}))
        )

        result = StripeSync(stripe_client).get_or_create_customer("user_1")

        assert result == {"customer_id": "cus_paid", "is_new": False}
        stripe_client.v1.customers.create.assert_not_called()

    @mock_aws
    def test_get_or_create_creates_when_payment_has_no_customer(self, mock_dynamodb, stripe_client):
        from sync.actions import StripeSync
        from sync.events import payment_intent_input
        from sync.upserts import handle_payment_intent_succeeded

        from conftest import payment_intent_object

        handle_payment_intent_succeeded(
            payment_intent_input(payment_intent_object(metadata={"userId": "user_1"}))
        )
        stripe_client.v1.customers.create.return_value = {"id": "cus_new"}

        result = StripeSync(stripe_client).get_or_create_customer("user_1", email="a@example.com", name="Ann")

        assert result == {"customer_id": "cus_new", "is_new": True}
        stripe_client.v1.customers.create.assert_called_once_with(
            params={"email": "a@example.com", "name": "Ann", "metadata": {"userId": "user_1"}},
            options={"idempotency_key": "create_customer_user_1"},
        )
