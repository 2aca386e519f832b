"""Stripe Payment Integration.

Handles customers, subscriptions, payment methods and webhook processing.
Stripe owns billing state; webhook events are mirrored into the Users and
Subscriptions collections on a best-effort basis.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

import stripe
from flask import current_app

from db_stores import UserStoreDB
from email_service import send_payment_failed_email, send_upcoming_invoice_email
from errors import (
    AccessDenied,
    NotFound,
    PaymentRequired,
    ServiceError,
    UpstreamFailure,
    ValidationError,
)
from helpers import normalize_email, now_iso
from subscription_store import SubscriptionStoreDB, mirror_user

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("active", "trialing")


def _get_stripe():
    """Return the stripe module (patched in tests)."""
    return stripe


def is_stripe_available() -> bool:
    """Check if Stripe is configured."""
    return bool(current_app.config.get("STRIPE_SECRET_KEY", ""))


def _opts() -> dict[str, str]:
    """Per-request API key, so no process-wide Stripe state is mutated."""
    key = current_app.config.get("STRIPE_SECRET_KEY", "")
    if not key:
        raise UpstreamFailure("Payments not configured", status_code=503)
    return {"api_key": key}


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a Stripe object or plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _ts(value: Any) -> str | None:
    if not value:
        return None
    return now_iso(datetime.fromtimestamp(int(value), timezone.utc))


@contextmanager
def _stripe_call(action: str) -> Iterator[None]:
    """Translate Stripe SDK errors into service errors."""
    try:
        yield
    except stripe.StripeError as e:
        message = getattr(e, "user_message", None) or str(e)
        code = getattr(e, "code", None)
        if isinstance(e, stripe.CardError):
            raise PaymentRequired("Payment failed", details={"message": message, "code": code}) from e
        if code == "resource_missing":
            raise NotFound("Resource not found", details=message) from e
        logger.warning("Stripe call failed (%s): %s", action, message)
        raise UpstreamFailure(f"Failed to {action}", details=message) from e


def _card_summary(payment_method: Any) -> dict[str, Any] | None:
    if payment_method is None:
        return None
    card = _field(payment_method, "card")
    return {
        "id": _field(payment_method, "id"),
        "type": _field(payment_method, "type"),
        "card": {
            "brand": _field(card, "brand"),
            "last4": _field(card, "last4"),
            "exp_month": _field(card, "exp_month"),
            "exp_year": _field(card, "exp_year"),
        } if card else None,
    }


# ---------------------------------------------------------------------------
# Customer management
# ---------------------------------------------------------------------------

def get_or_create_customer(email: str, name: str = "") -> str:
    """Get existing Stripe customer ID or create a new one.

    Stores the id as ``stripeCustomerId`` on the user record.
    """
    stripe_api = _get_stripe()
    email = normalize_email(email)
    users = UserStoreDB()
    user = users.get(email)
    if user and user.get("stripeCustomerId"):
        return user["stripeCustomerId"]

    with _stripe_call("create customer"):
        existing = stripe_api.Customer.list(email=email, limit=1, **_opts())
        matches = _field(existing, "data") or []
        if matches:
            customer_id = _field(matches[0], "id")
        else:
            customer = stripe_api.Customer.create(
                email=email,
                name=name or email,
                metadata={"portal_email": email},
                **_opts(),
            )
            customer_id = _field(customer, "id")

    if user is not None:
        users.patch(email, {"stripeCustomerId": customer_id}, if_match=user["_etag"])
    return customer_id


def _customer_email(customer_id: str) -> str:
    """Resolve a Stripe customer to an application user email."""
    user = UserStoreDB().by_customer_id(customer_id)
    if user is not None:
        return user["email"]
    with _stripe_call("retrieve customer"):
        customer = _get_stripe().Customer.retrieve(customer_id, **_opts())
    email = normalize_email(_field(customer, "email"))
    if not email:
        raise NotFound(f"No email on Stripe customer {customer_id}")
    return email


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

def create_subscription(email: str, price_id: str, payment_method_id: str, name: str = "") -> dict[str, Any]:
    """Attach the payment method, make it default and subscribe to ``price_id``."""
    if not price_id or not payment_method_id:
        raise ValidationError("priceId and paymentMethodId are required")
    stripe_api = _get_stripe()
    customer_id = get_or_create_customer(email, name)

    with _stripe_call("create subscription"):
        stripe_api.PaymentMethod.attach(payment_method_id, customer=customer_id, **_opts())
        stripe_api.Customer.modify(
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
            **_opts(),
        )
        subscription = stripe_api.Subscription.create(
            customer=customer_id,
            items=[{"price": price_id}],
            default_payment_method=payment_method_id,
            expand=["latest_invoice.payment_intent"],
            metadata={"portal_email": normalize_email(email), "created_via": "tutor_portal"},
            **_opts(),
        )

    sub_id = _field(subscription, "id")
    status = _field(subscription, "status")
    _mirror_safely("create subscription", lambda: (
        mirror_user(email, {
            "subscriptionStatus": status,
            "stripeSubscriptionId": sub_id,
            "hasSubscription": status == "active",
            "subscriptionStartDate": now_iso(),
        }),
        SubscriptionStoreDB().record_event(
            sub_id,
            {"type": "created", "status": status},
            changes={"status": status},
            seed={"userId": normalize_email(email), "stripeCustomerId": customer_id, "priceId": price_id},
        ),
    ))

    result: dict[str, Any] = {
        "success": True,
        "subscriptionId": sub_id,
        "status": status,
        "message": "Subscription created successfully",
    }
    payment_intent = _field(_field(subscription, "latest_invoice"), "payment_intent")
    intent_status = _field(payment_intent, "status")
    if intent_status == "requires_action":
        result["requires_action"] = True
        result["client_secret"] = _field(payment_intent, "client_secret")
        result["message"] = "Additional authentication required"
    elif intent_status == "succeeded":
        result["message"] = "Subscription activated successfully"
    return result


def get_subscription_details(email: str) -> dict[str, Any]:
    """The customer's active (or trialing) subscription, if any."""
    stripe_api = _get_stripe()
    email = normalize_email(email)
    details = None

    with _stripe_call("retrieve subscription"):
        customers = _field(stripe_api.Customer.list(email=email, limit=1, **_opts()), "data") or []
        if customers:
            customer = customers[0]
            subs = stripe_api.Subscription.list(
                customer=_field(customer, "id"), status="all", limit=10, **_opts(),
            )
            active = next(
                (s for s in _field(subs, "data") or [] if _field(s, "status") in ACTIVE_STATUSES),
                None,
            )
            if active is not None:
                items = _field(_field(active, "items"), "data") or []
                price = _field(items[0], "price") if items else None
                details = {
                    "id": _field(active, "id"),
                    "status": _field(active, "status"),
                    "current_period_start": _ts(_field(active, "current_period_start")),
                    "current_period_end": _ts(_field(active, "current_period_end")),
                    "cancel_at_period_end": bool(_field(active, "cancel_at_period_end")),
                    "canceled_at": _ts(_field(active, "canceled_at")),
                    "plan": {
                        "id": _field(price, "id"),
                        "amount": _field(price, "unit_amount"),
                        "currency": _field(price, "currency"),
                        "interval": _field(_field(price, "recurring"), "interval"),
                        "product": _field(price, "product"),
                    } if price else None,
                }
                default_pm = _field(_field(customer, "invoice_settings"), "default_payment_method")
                if default_pm:
                    details["payment_method"] = _card_summary(
                        stripe_api.PaymentMethod.retrieve(default_pm, **_opts())
                    )

    return {
        "subscription": details,
        "hasActiveSubscription": details is not None,
        "message": "Active subscription found" if details else "No active subscription",
    }


def cancel_subscription(subscription_id: str, requested_by: str, immediate: bool = False,
                        is_admin: bool = False) -> dict[str, Any]:
    """Cancel now, or at the end of the paid period."""
    if not subscription_id:
        raise ValidationError("SubscriptionId is required")
    stripe_api = _get_stripe()

    with _stripe_call("cancel subscription"):
        current = stripe_api.Subscription.retrieve(subscription_id, **_opts())
    owner = _customer_email(_field(current, "customer"))
    if not is_admin and owner != normalize_email(requested_by):
        raise AccessDenied("You can only cancel your own subscription")

    with _stripe_call("cancel subscription"):
        if immediate:
            updated = stripe_api.Subscription.cancel(subscription_id, **_opts())
        else:
            updated = stripe_api.Subscription.modify(subscription_id, cancel_at_period_end=True, **_opts())

    status = _field(updated, "status")
    at_period_end = bool(_field(updated, "cancel_at_period_end"))
    _mirror_safely("cancel subscription", lambda: (
        mirror_user(owner, {
            "subscriptionStatus": status,
            "hasSubscription": status == "active" and not at_period_end,
            "cancelationDate": now_iso(),
            "cancelAtPeriodEnd": at_period_end,
        }),
        SubscriptionStoreDB().record_event(
            subscription_id,
            {"type": "canceled_immediately" if immediate else "canceled_at_period_end", "status": status},
            changes={"status": status, "canceledDate": now_iso(), "cancelAtPeriodEnd": at_period_end},
            seed={"userId": owner, "stripeCustomerId": _field(updated, "customer")},
        ),
    ))

    period_end = _ts(_field(updated, "current_period_end"))
    if immediate:
        message = "Subscription canceled immediately. Access has been revoked."
    elif at_period_end:
        message = (
            f"Subscription will be canceled at the end of the current billing period "
            f"({(period_end or '')[:10]}). You will continue to have access until then."
        )
    else:
        message = "Subscription cancellation processed."

    return {
        "success": True,
        "subscription": {
            "id": _field(updated, "id"),
            "status": status,
            "cancel_at_period_end": at_period_end,
            "current_period_end": period_end,
            "canceled_at": _ts(_field(updated, "canceled_at")),
        },
        "message": message,
    }


def update_payment_method(email: str, payment_method_id: str) -> dict[str, Any]:
    """Make ``payment_method_id`` the default and move active subscriptions onto it."""
    if not payment_method_id:
        raise ValidationError("paymentMethodId is required")
    stripe_api = _get_stripe()
    customer_id = get_or_create_customer(email)

    with _stripe_call("update payment method"):
        stripe_api.PaymentMethod.attach(payment_method_id, customer=customer_id, **_opts())
        stripe_api.Customer.modify(
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
            **_opts(),
        )
        subs = _field(
            stripe_api.Subscription.list(customer=customer_id, status="active", **_opts()), "data",
        ) or []
        for sub in subs:
            stripe_api.Subscription.modify(
                _field(sub, "id"), default_payment_method=payment_method_id, **_opts(),
            )
        payment_method = stripe_api.PaymentMethod.retrieve(payment_method_id, **_opts())

    return {
        "success": True,
        "message": "Payment method updated successfully",
        "payment_method": _card_summary(payment_method),
        "subscriptions_updated": len(subs),
    }


# ---------------------------------------------------------------------------
# Webhook handling
# ---------------------------------------------------------------------------

def verify_webhook_signature(payload: bytes, sig_header: str, secret: str) -> Any:
    """Verify the Stripe-Signature header and return the event."""
    stripe_api = _get_stripe()
    try:
        return stripe_api.Webhook.construct_event(payload, sig_header, secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        raise ValidationError(f"Webhook Error: {e}") from e


def _mirror_safely(label: str, write) -> bool:
    """Run a mirror write; failures are logged and swallowed."""
    try:
        write()
        return True
    except (ServiceError, stripe.StripeError):
        logger.exception("Subscription mirror write failed (%s)", label)
        return False


def handle_webhook_event(event: Any) -> dict[str, Any]:
    """Process a verified Stripe webhook event.

    Returns a dict describing the action taken. Never raises for mirror
    failures, so the webhook is always acknowledged.
    """
    event_type = _field(event, "type", "")
    data_obj = _field(_field(event, "data"), "object") or {}

    handlers = {
        "customer.subscription.created": _handle_subscription_created,
        "customer.subscription.updated": _handle_subscription_updated,
        "customer.subscription.deleted": _handle_subscription_deleted,
        "invoice.payment_succeeded": _handle_payment_succeeded,
        "invoice.payment_failed": _handle_payment_failed,
        "invoice.upcoming": _handle_upcoming_invoice,
    }

    handler = handlers.get(event_type)
    if handler is None:
        logger.info("Unhandled Stripe event type: %s", event_type)
        return {"action": "ignored", "event_type": event_type}

    customer_id = _field(data_obj, "customer")
    try:
        email = _customer_email(customer_id) if customer_id else ""
    except (ServiceError, stripe.StripeError):
        logger.exception("Could not resolve Stripe customer %s", customer_id)
        email = ""
    if not email:
        return {"action": "skipped", "reason": "customer not resolved", "event_type": event_type}
    return {**handler(data_obj, email), "event_type": event_type}


def _invoice_subscription(invoice: Any) -> str | None:
    sub = _field(invoice, "subscription")
    if sub:
        return sub if isinstance(sub, str) else _field(sub, "id")
    details = _field(_field(invoice, "parent"), "subscription_details")
    return _field(details, "subscription")


def _handle_subscription_created(subscription: Any, email: str) -> dict[str, Any]:
    sub_id = _field(subscription, "id")
    status = _field(subscription, "status")
    started = _ts(_field(subscription, "created")) or now_iso()
    mirrored = _mirror_safely("subscription created", lambda: mirror_user(email, {
        "subscriptionStatus": status,
        "stripeSubscriptionId": sub_id,
        "hasSubscription": status == "active",
        "subscriptionStartDate": started,
    }))
    mirrored &= _mirror_safely("subscription created", lambda: SubscriptionStoreDB().record_event(
        sub_id,
        {"type": "created", "status": status},
        changes={"status": status},
        seed={"userId": email, "stripeCustomerId": _field(subscription, "customer"), "createdDate": started},
    ))
    logger.info("Subscription created: %s user=%s", sub_id, email)
    return {"action": "subscription_created", "user": email, "mirrored": mirrored}


def _handle_subscription_updated(subscription: Any, email: str) -> dict[str, Any]:
    sub_id = _field(subscription, "id")
    status = _field(subscription, "status")
    at_period_end = bool(_field(subscription, "cancel_at_period_end"))
    mirrored = _mirror_safely("subscription updated", lambda: mirror_user(email, {
        "subscriptionStatus": status,
        "hasSubscription": status == "active" and not at_period_end,
        "cancelAtPeriodEnd": at_period_end,
    }))
    mirrored &= _mirror_safely("subscription updated", lambda: SubscriptionStoreDB().record_event(
        sub_id,
        {"type": "updated", "status": status, "cancel_at_period_end": at_period_end},
        changes={"status": status},
        seed={"userId": email, "stripeCustomerId": _field(subscription, "customer")},
    ))
    return {"action": "subscription_updated", "user": email, "mirrored": mirrored}


def _handle_subscription_deleted(subscription: Any, email: str) -> dict[str, Any]:
    sub_id = _field(subscription, "id")
    ended = now_iso()
    mirrored = _mirror_safely("subscription deleted", lambda: mirror_user(email, {
        "subscriptionStatus": "canceled",
        "hasSubscription": False,
        "subscriptionEndDate": ended,
    }))
    mirrored &= _mirror_safely("subscription deleted", lambda: SubscriptionStoreDB().record_event(
        sub_id,
        {"type": "deleted", "status": "canceled"},
        changes={"status": "canceled", "endDate": ended},
        seed={"userId": email, "stripeCustomerId": _field(subscription, "customer")},
    ))
    logger.info("Subscription cancelled: %s user=%s", sub_id, email)
    return {"action": "subscription_cancelled", "user": email, "mirrored": mirrored}


def _handle_payment_succeeded(invoice: Any, email: str) -> dict[str, Any]:
    paid_at = _ts(_field(invoice, "created")) or now_iso()
    mirrored = _mirror_safely("payment succeeded", lambda: mirror_user(email, {
        "lastPaymentDate": paid_at,
        "paymentStatus": "paid",
    }))
    sub_id = _invoice_subscription(invoice)
    if sub_id:
        mirrored &= _mirror_safely("payment succeeded", lambda: SubscriptionStoreDB().record_event(
            sub_id,
            {
                "type": "payment_succeeded",
                "amount": _field(invoice, "amount_paid"),
                "currency": _field(invoice, "currency"),
                "invoice_id": _field(invoice, "id"),
            },
            seed={"userId": email, "stripeCustomerId": _field(invoice, "customer")},
        ))
    return {"action": "payment_recorded", "user": email, "mirrored": mirrored}


def _handle_payment_failed(invoice: Any, email: str) -> dict[str, Any]:
    mirrored = _mirror_safely("payment failed", lambda: mirror_user(email, {
        "paymentStatus": "failed",
        "lastPaymentFailure": now_iso(),
    }))
    sub_id = _invoice_subscription(invoice)
    if sub_id:
        mirrored &= _mirror_safely("payment failed", lambda: SubscriptionStoreDB().record_event(
            sub_id,
            {
                "type": "payment_failed",
                "amount": _field(invoice, "amount_due"),
                "currency": _field(invoice, "currency"),
                "invoice_id": _field(invoice, "id"),
            },
            seed={"userId": email, "stripeCustomerId": _field(invoice, "customer")},
        ))
    notified = send_payment_failed_email(email, {
        "amount_due": _field(invoice, "amount_due"),
        "currency": _field(invoice, "currency"),
    })
    logger.warning("Payment failed: user=%s invoice=%s", email, _field(invoice, "id"))
    return {"action": "payment_failed_notified", "user": email, "mirrored": mirrored, "notified": notified}


def _handle_upcoming_invoice(invoice: Any, email: str) -> dict[str, Any]:
    due = _ts(_field(invoice, "next_payment_attempt") or _field(invoice, "period_end"))
    notified = send_upcoming_invoice_email(
        email,
        {"amount_due": _field(invoice, "amount_due"), "currency": _field(invoice, "currency")},
        due=(due or "")[:10],
    )
    return {"action": "upcoming_invoice_notified", "user": email, "notified": notified}
