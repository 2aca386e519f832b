"""Subscription mirror records & subscription gating.

Stripe is the source of truth for billing. The Subscriptions collection keeps
a local copy of each subscription with an append-only ``events`` log, and the
user's record carries the mirrored status fields. Both are a cache that may
lag or miss updates.

Provides @requires_subscription decorator for endpoint gating.
"""

from __future__ import annotations

from functools import wraps
from typing import Any

from flask import current_app
from flask_login import current_user

from db_stores import DocumentExists, DocumentStore, UserStoreDB
from errors import AccessDenied, ConcurrencyConflict
from helpers import now_iso


class SubscriptionStoreDB(DocumentStore):
    """Subscriptions keyed by the Stripe subscription id."""

    collection = "Subscriptions"

    def record_event(
        self,
        subscription_id: str,
        event: dict[str, Any],
        changes: dict[str, Any] | None = None,
        seed: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Append ``event`` to the subscription's log, creating the record if needed."""
        event = {"date": now_iso(), **event}
        for _ in range(3):
            existing = self.get(subscription_id)
            if existing is None:
                record = {
                    "stripeSubscriptionId": subscription_id,
                    "createdDate": now_iso(),
                    **(seed or {}),
                    **(changes or {}),
                    "events": [event],
                }
                try:
                    return self.create(record, doc_id=subscription_id)
                except DocumentExists:
                    continue
            events = list(existing.get("events") or [])
            events.append(event)
            try:
                return self.replace(
                    subscription_id,
                    {**existing, **(changes or {}), "events": events},
                    if_match=existing["_etag"],
                )
            except ConcurrencyConflict:
                continue
        raise ConcurrencyConflict("Subscription record kept changing; retry")


def mirror_user(email: str, changes: dict[str, Any]) -> dict[str, Any]:
    """Patch the mirrored subscription fields on a user record."""
    return UserStoreDB().patch(email, {**changes, "subscriptionUpdatedDate": now_iso()})


def requires_subscription(f):
    """Decorator: admins, tutors and users with a mirrored active subscription."""
    @wraps(f)
    def decorated(*args, **kwargs):
        if not current_user.is_authenticated:
            return current_app.login_manager.unauthorized()
        if not (current_user.is_admin or current_user.is_tutor or current_user.has_subscription):
            raise AccessDenied(
                "Active subscription required",
                reason=f"{current_user.email} has no active subscription",
            )
        return f(*args, **kwargs)
    return decorated
