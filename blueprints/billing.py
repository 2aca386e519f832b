"""Stripe customer, subscription and webhook routes."""

from __future__ import annotations

import logging
from typing import Any

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from errors import ValidationError
from extensions import limiter
from helpers import json_body, self_or_admin
from stripe_integration import (
    cancel_subscription,
    create_subscription,
    get_or_create_customer,
    get_subscription_details,
    handle_webhook_event,
    update_payment_method,
    verify_webhook_signature,
)

logger = logging.getLogger(__name__)

bp = Blueprint("billing", __name__)


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------

@bp.route("/api/stripe-webhook", methods=["POST"])
@limiter.exempt
def api_stripe_webhook() -> tuple[Any, int] | Any:
    """Stripe webhook. Authenticated by the Stripe-Signature header only."""
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET", "")
    if not secret:
        logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not set")
        return jsonify({"success": False, "error": "Webhook secret not configured"}), 500

    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature", "")
    try:
        event = verify_webhook_signature(payload, sig_header, secret)
    except ValidationError as e:
        logger.warning("Rejected Stripe webhook: %s", e.message)
        return jsonify({"success": False, "error": e.message}), 400

    result = handle_webhook_event(event)
    logger.info("Stripe webhook %s -> %s", result["event_type"], result["action"])
    return jsonify({"received": True, "type": result["event_type"]})


# ---------------------------------------------------------------------------
# Customer & subscription endpoints
# ---------------------------------------------------------------------------

@bp.route("/api/stripe-create-customer", methods=["POST"])
@login_required
def api_stripe_create_customer() -> Any:
    data = json_body()
    customer_id = get_or_create_customer(current_user.email, data.get("name") or current_user.name)
    return jsonify({"success": True, "customerId": customer_id})


@bp.route("/api/stripe-create-subscription", methods=["POST"])
@login_required
def api_stripe_create_subscription() -> Any:
    data = json_body()
    result = create_subscription(
        current_user.email,
        data.get("priceId", ""),
        data.get("paymentMethodId", ""),
        name=data.get("name") or current_user.name,
    )
    return jsonify(result)


@bp.route("/api/stripe-get-subscription", methods=["GET", "POST"])
@login_required
def api_stripe_get_subscription() -> Any:
    data = json_body()
    email = self_or_admin(data.get("email") or request.args.get("email", ""))
    return jsonify(get_subscription_details(email))


@bp.route("/api/stripe-cancel-subscription", methods=["POST"])
@login_required
def api_stripe_cancel_subscription() -> Any:
    data = json_body()
    result = cancel_subscription(
        data.get("subscriptionId", ""),
        current_user.email,
        immediate=bool(data.get("immediate")),
        is_admin=current_user.is_admin,
    )
    return jsonify(result)


@bp.route("/api/stripe-update-payment-method", methods=["POST"])
@login_required
def api_stripe_update_payment_method() -> Any:
    data = json_body()
    return jsonify(update_payment_method(current_user.email, data.get("paymentMethodId", "")))
