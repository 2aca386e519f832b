"""Tests for Stripe payment integration."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import stripe

from tests.conftest import STUDENT_EMAIL


def _webhook(client, body=None):
    return client.post(
        "/api/stripe-webhook",
        data=json.dumps(body or {"id": "evt_test"}),
        headers={"Stripe-Signature": "t=1,v1=fake", "Content-Type": "application/json"},
    )


class TestStripeAvailability:
    """Test Stripe availability detection."""

    def test_stripe_available_with_key(self, app):
        with app.app_context():
            from stripe_integration import is_stripe_available
            assert is_stripe_available() is True

    def test_stripe_not_available_without_key(self, app):
        app.config["STRIPE_SECRET_KEY"] = ""
        with app.app_context():
            from stripe_integration import is_stripe_available
            assert is_stripe_available() is False

    def test_unconfigured_customer_call_is_503(self, app, student_client):
        app.config["STRIPE_SECRET_KEY"] = ""
        resp = student_client.post("/api/stripe-create-customer", json={})
        assert resp.status_code == 503
        assert resp.get_json()["error"] == "Payments not configured"


class TestCustomerManagement:
    """Test Stripe customer creation and retrieval."""

    @patch("stripe_integration._get_stripe")
    def test_create_new_customer(self, mock_get_stripe, app, student_client):
        mock_stripe = MagicMock()
        mock_stripe.Customer.list.return_value = {"data": []}
        mock_stripe.Customer.create.return_value = {"id": "cus_new"}
        mock_get_stripe.return_value = mock_stripe

        resp = student_client.post("/api/stripe-create-customer", json={})
        assert resp.get_json() == {"success": True, "customerId": "cus_new"}
        kwargs = mock_stripe.Customer.create.call_args.kwargs
        assert kwargs["email"] == STUDENT_EMAIL
        assert kwargs["api_key"] == "sk_test_fake"

        with app.app_context():
            from db_stores import UserStoreDB
            assert UserStoreDB().get(STUDENT_EMAIL)["stripeCustomerId"] == "cus_new"

    @patch("stripe_integration._get_stripe")
    def test_existing_customer_reused(self, mock_get_stripe, student_client, seed_user):
        mock_stripe = MagicMock()
        mock_get_stripe.return_value = mock_stripe
        seed_user(STUDENT_EMAIL, roles=["student"], stripeCustomerId="cus_existing")

        resp = student_client.post("/api/stripe-create-customer", json={})
        assert resp.get_json()["customerId"] == "cus_existing"
        mock_stripe.Customer.create.assert_not_called()
        mock_stripe.Customer.list.assert_not_called()


class TestSubscriptions:

    @patch("stripe_integration._get_stripe")
    def test_requires_action_returns_client_secret(self, mock_get_stripe, app, student_client):
        mock_stripe = MagicMock()
        mock_stripe.Customer.list.return_value = {"data": [{"id": "cus_1"}]}
        mock_stripe.Subscription.create.return_value = {
            "id": "sub_1",
            "status": "incomplete",
            "latest_invoice": {"payment_intent": {"status": "requires_action", "client_secret": "pi_secret"}},
        }
        mock_get_stripe.return_value = mock_stripe

        resp = student_client.post("/api/stripe-create-subscription", json={
            "priceId": "price_monthly", "paymentMethodId": "pm_card",
        })
        data = resp.get_json()
        assert data["requires_action"] is True
        assert data["client_secret"] == "pi_secret"
        assert data["message"] == "Additional authentication required"
        mock_stripe.PaymentMethod.attach.assert_called_once_with("pm_card", customer="cus_1", api_key="sk_test_fake")

        with app.app_context():
            from db_stores import UserStoreDB
            from subscription_store import SubscriptionStoreDB
            user = UserStoreDB().get(STUDENT_EMAIL)
            record = SubscriptionStoreDB().get("sub_1")
        assert user["hasSubscription"] is False
        assert user["subscriptionStatus"] == "incomplete"
        assert record["userId"] == STUDENT_EMAIL
        assert [e["type"] for e in record["events"]] == ["created"]

    def test_create_requires_price_and_method(self, student_client):
        resp = student_client.post("/api/stripe-create-subscription", json={"priceId": "price_monthly"})
        assert resp.status_code == 400

    @patch("stripe_integration._get_stripe")
    def test_card_error_is_402(self, mock_get_stripe, student_client):
        mock_stripe = MagicMock()
        mock_stripe.Customer.list.return_value = {"data": [{"id": "cus_1"}]}
        mock_stripe.PaymentMethod.attach.side_effect = stripe.CardError("Your card was declined.", None, "card_declined")
        mock_get_stripe.return_value = mock_stripe

        resp = student_client.post("/api/stripe-create-subscription", json={
            "priceId": "price_monthly", "paymentMethodId": "pm_bad",
        })
        assert resp.status_code == 402
        data = resp.get_json()
        assert data["error"] == "Payment failed"
        assert data["details"]["code"] == "card_declined"

    def test_get_subscription_for_someone_else_is_403(self, student_client):
        resp = student_client.post("/api/stripe-get-subscription", json={"email": "other@example.com"})
        assert resp.status_code == 403

    @patch("stripe_integration._get_stripe")
    def test_get_subscription_details(self, mock_get_stripe, student_client):
        mock_stripe = MagicMock()
        mock_stripe.Customer.list.return_value = {"data": [{"id": "cus_1", "invoice_settings": {}}]}
        mock_stripe.Subscription.list.return_value = {"data": [
            {"id": "sub_old", "status": "canceled"},
            {
                "id": "sub_live", "status": "active", "current_period_end": 1767225600,
                "items": {"data": [{"price": {"id": "price_monthly", "unit_amount": 4500, "currency": "gbp",
                                               "recurring": {"interval": "month"}}}]},
            },
        ]}
        mock_get_stripe.return_value = mock_stripe

        data = student_client.get("/api/stripe-get-subscription").get_json()
        assert data["hasActiveSubscription"] is True
        assert data["subscription"]["id"] == "sub_live"
        assert data["subscription"]["current_period_end"].startswith("2026-01-01")
        assert data["subscription"]["plan"]["interval"] == "month"


class TestCancellation:

    @patch("stripe_integration._get_stripe")
    def test_cannot_cancel_someone_elses(self, mock_get_stripe, student_client):
        mock_stripe = MagicMock()
        mock_stripe.Subscription.retrieve.return_value = {"id": "sub_1", "customer": "cus_other"}
        mock_stripe.Customer.retrieve.return_value = {"email": "someone@else.com"}
        mock_get_stripe.return_value = mock_stripe

        resp = student_client.post("/api/stripe-cancel-subscription", json={"subscriptionId": "sub_1"})
        assert resp.status_code == 403
        mock_stripe.Subscription.modify.assert_not_called()
        mock_stripe.Subscription.cancel.assert_not_called()

    @patch("stripe_integration._get_stripe")
    def test_cancel_at_period_end(self, mock_get_stripe, app, student_client, seed_user):
        seed_user(STUDENT_EMAIL, roles=["student"], stripeCustomerId="cus_1", hasSubscription=True)
        mock_stripe = MagicMock()
        mock_stripe.Subscription.retrieve.return_value = {"id": "sub_1", "customer": "cus_1"}
        mock_stripe.Subscription.modify.return_value = {
            "id": "sub_1", "customer": "cus_1", "status": "active",
            "cancel_at_period_end": True, "current_period_end": 1767225600,
        }
        mock_get_stripe.return_value = mock_stripe

        resp = student_client.post("/api/stripe-cancel-subscription", json={"subscriptionId": "sub_1"})
        data = resp.get_json()
        assert resp.status_code == 200
        assert "(2026-01-01)" in data["message"]
        mock_stripe.Subscription.cancel.assert_not_called()

        with app.app_context():
            from db_stores import UserStoreDB
            user = UserStoreDB().get(STUDENT_EMAIL)
        assert user["hasSubscription"] is False
        assert user["cancelAtPeriodEnd"] is True

    def test_cancel_requires_id(self, student_client):
        resp = student_client.post("/api/stripe-cancel-subscription", json={})
        assert resp.status_code == 400


class TestWebhook:
    """Webhook verification and mirroring."""

    def test_missing_secret_is_500(self, app, client):
        app.config["STRIPE_WEBHOOK_SECRET"] = ""
        assert _webhook(client).status_code == 500

    @patch("stripe_integration._get_stripe")
    def test_bad_signature_is_400(self, mock_get_stripe, client):
        mock_stripe = MagicMock()
        mock_stripe.Webhook.construct_event.side_effect = stripe.SignatureVerificationError("bad", "sig")
        mock_get_stripe.return_value = mock_stripe

        resp = _webhook(client)
        assert resp.status_code == 400
        assert resp.get_json()["error"].startswith("Webhook Error")

    @patch("stripe_integration._get_stripe")
    def test_subscription_deleted_is_mirrored(self, mock_get_stripe, app, client, seed_user):
        seed_user(STUDENT_EMAIL, stripeCustomerId="cus_1", hasSubscription=True, subscriptionStatus="active")
        mock_stripe = MagicMock()
        mock_stripe.Webhook.construct_event.return_value = {
            "type": "customer.subscription.deleted",
            "data": {"object": {"id": "sub_1", "customer": "cus_1"}},
        }
        mock_get_stripe.return_value = mock_stripe

        resp = _webhook(client)
        assert resp.get_json() == {"received": True, "type": "customer.subscription.deleted"}
        payload, sig, secret = mock_stripe.Webhook.construct_event.call_args.args
        assert sig == "t=1,v1=fake"
        assert secret == "whsec_test"

        with app.app_context():
            from db_stores import UserStoreDB
            from subscription_store import SubscriptionStoreDB
            user = UserStoreDB().get(STUDENT_EMAIL)
            record = SubscriptionStoreDB().get("sub_1")
        assert user["hasSubscription"] is False
        assert user["subscriptionStatus"] == "canceled"
        assert record["status"] == "canceled"
        assert record["events"][-1]["type"] == "deleted"

    @patch("stripe_integration._get_stripe")
    def test_mirror_failure_still_acknowledged(self, mock_get_stripe, client, seed_user):
        from errors import UpstreamFailure

        seed_user(STUDENT_EMAIL, stripeCustomerId="cus_1")
        mock_stripe = MagicMock()
        mock_stripe.Webhook.construct_event.return_value = {
            "type": "customer.subscription.updated",
            "data": {"object": {"id": "sub_1", "customer": "cus_1", "status": "past_due"}},
        }
        mock_get_stripe.return_value = mock_stripe

        with patch("stripe_integration.mirror_user", side_effect=UpstreamFailure("Database operation failed")):
            resp = _webhook(client)
        assert resp.status_code == 200
        assert resp.get_json()["received"] is True

    @patch("stripe_integration._get_stripe")
    def test_payment_failed_notifies_customer(self, mock_get_stripe, app, client, seed_user):
        seed_user(STUDENT_EMAIL, stripeCustomerId="cus_1")
        mock_stripe = MagicMock()
        mock_stripe.Webhook.construct_event.return_value = {
            "type": "invoice.payment_failed",
            "data": {"object": {"id": "in_1", "customer": "cus_1", "subscription": "sub_1",
                                "amount_due": 4500, "currency": "gbp"}},
        }
        mock_get_stripe.return_value = mock_stripe

        with patch("stripe_integration.send_payment_failed_email", return_value=True) as send:
            resp = _webhook(client)
        assert resp.status_code == 200
        send.assert_called_once()
        assert send.call_args.args[0] == STUDENT_EMAIL

        with app.app_context():
            from db_stores import UserStoreDB
            assert UserStoreDB().get(STUDENT_EMAIL)["paymentStatus"] == "failed"

    @patch("stripe_integration._get_stripe")
    def test_unknown_event_ignored(self, mock_get_stripe, client):
        mock_stripe = MagicMock()
        mock_stripe.Webhook.construct_event.return_value = {"type": "charge.refunded", "data": {"object": {}}}
        mock_get_stripe.return_value = mock_stripe

        resp = _webhook(client)
        assert resp.status_code == 200
        assert resp.get_json()["type"] == "charge.refunded"


class TestWebhookEvents:
    """Each handled event type mirrors onto the user and the subscription log."""

    def _deliver(self, client, mock_get_stripe, event_type, obj):
        mock_stripe = MagicMock()
        mock_stripe.Webhook.construct_event.return_value = {"type": event_type, "data": {"object": obj}}
        mock_get_stripe.return_value = mock_stripe
        resp = _webhook(client)
        assert resp.status_code == 200
        assert resp.get_json() == {"received": True, "type": event_type}
        return mock_stripe

    def _stored(self, app, subscription_id):
        with app.app_context():
            from db_stores import UserStoreDB
            from subscription_store import SubscriptionStoreDB
            return UserStoreDB().get(STUDENT_EMAIL), SubscriptionStoreDB().get(subscription_id)

    @patch("stripe_integration._get_stripe")
    def test_subscription_created(self, mock_get_stripe, app, client, seed_user):
        seed_user(STUDENT_EMAIL, stripeCustomerId="cus_1")
        self._deliver(client, mock_get_stripe, "customer.subscription.created", {
            "id": "sub_new", "customer": "cus_1", "status": "active", "created": 1767225600,
        })

        user, record = self._stored(app, "sub_new")
        assert user["hasSubscription"] is True
        assert user["subscriptionStatus"] == "active"
        assert user["stripeSubscriptionId"] == "sub_new"
        assert user["subscriptionStartDate"].startswith("2026-01-01")
        assert record["userId"] == STUDENT_EMAIL
        assert record["status"] == "active"
        assert [e["type"] for e in record["events"]] == ["created"]

    @patch("stripe_integration._get_stripe")
    def test_subscription_updated_to_cancel_at_period_end(self, mock_get_stripe, app, client, seed_user):
        seed_user(STUDENT_EMAIL, stripeCustomerId="cus_1", hasSubscription=True)
        self._deliver(client, mock_get_stripe, "customer.subscription.updated", {
            "id": "sub_1", "customer": "cus_1", "status": "active", "cancel_at_period_end": True,
        })

        user, record = self._stored(app, "sub_1")
        assert user["hasSubscription"] is False
        assert user["cancelAtPeriodEnd"] is True
        assert user["subscriptionStatus"] == "active"
        event = record["events"][-1]
        assert event["type"] == "updated"
        assert event["cancel_at_period_end"] is True

    @patch("stripe_integration._get_stripe")
    def test_subscription_updated_active(self, mock_get_stripe, app, client, seed_user):
        seed_user(STUDENT_EMAIL, stripeCustomerId="cus_1")
        self._deliver(client, mock_get_stripe, "customer.subscription.updated", {
            "id": "sub_1", "customer": "cus_1", "status": "active", "cancel_at_period_end": False,
        })

        user, _ = self._stored(app, "sub_1")
        assert user["hasSubscription"] is True
        assert user["cancelAtPeriodEnd"] is False

    @patch("stripe_integration._get_stripe")
    def test_payment_succeeded(self, mock_get_stripe, app, client, seed_user):
        seed_user(STUDENT_EMAIL, stripeCustomerId="cus_1", paymentStatus="failed")
        self._deliver(client, mock_get_stripe, "invoice.payment_succeeded", {
            "id": "in_1", "customer": "cus_1", "subscription": "sub_1",
            "amount_paid": 4500, "currency": "gbp", "created": 1767225600,
        })

        user, record = self._stored(app, "sub_1")
        assert user["paymentStatus"] == "paid"
        assert user["lastPaymentDate"].startswith("2026-01-01")
        event = record["events"][-1]
        assert event["type"] == "payment_succeeded"
        assert event["amount"] == 4500
        assert event["invoice_id"] == "in_1"

    @patch("stripe_integration._get_stripe")
    def test_payment_failed_logs_event(self, mock_get_stripe, app, client, seed_user):
        seed_user(STUDENT_EMAIL, stripeCustomerId="cus_1")
        with patch("stripe_integration.send_payment_failed_email", return_value=True):
            self._deliver(client, mock_get_stripe, "invoice.payment_failed", {
                "id": "in_2", "customer": "cus_1", "subscription": "sub_1",
                "amount_due": 4500, "currency": "gbp",
            })

        user, record = self._stored(app, "sub_1")
        assert user["lastPaymentFailure"]
        event = record["events"][-1]
        assert event["type"] == "payment_failed"
        assert event["amount"] == 4500

    @patch("stripe_integration._get_stripe")
    def test_upcoming_invoice_notifies(self, mock_get_stripe, app, client, seed_user):
        seed_user(STUDENT_EMAIL, stripeCustomerId="cus_1")
        with patch("stripe_integration.send_upcoming_invoice_email", return_value=True) as send:
            self._deliver(client, mock_get_stripe, "invoice.upcoming", {
                "customer": "cus_1", "amount_due": 4500, "currency": "gbp",
                "next_payment_attempt": 1767225600,
            })

        to, invoice = send.call_args.args
        assert to == STUDENT_EMAIL
        assert invoice == {"amount_due": 4500, "currency": "gbp"}
        assert send.call_args.kwargs["due"] == "2026-01-01"

        user, record = self._stored(app, "sub_1")
        assert "paymentStatus" not in user
        assert record is None

    @patch("stripe_integration._get_stripe")
    def test_unknown_customer_resolved_through_stripe(self, mock_get_stripe, app, client, seed_user):
        seed_user(STUDENT_EMAIL)
        mock_stripe = MagicMock()
        mock_stripe.Customer.retrieve.return_value = {"id": "cus_9", "email": "Student@BrightStars.test"}
        mock_stripe.Webhook.construct_event.return_value = {
            "type": "customer.subscription.deleted",
            "data": {"object": {"id": "sub_9", "customer": "cus_9"}},
        }
        mock_get_stripe.return_value = mock_stripe

        assert _webhook(client).status_code == 200
        assert mock_stripe.Customer.retrieve.call_args.args == ("cus_9",)

        user, record = self._stored(app, "sub_9")
        assert user["subscriptionStatus"] == "canceled"
        assert record["userId"] == STUDENT_EMAIL
