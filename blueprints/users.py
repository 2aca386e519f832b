"""Signup, admin approval, consent and user-management routes."""

from __future__ import annotations

import logging
from typing import Any

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from audit import log_event
from db_stores import DocumentExists, UserStoreDB
from email_service import send_approval_email, send_rejection_email, send_signup_notice
from errors import AccessDenied, NotFound, ValidationError
from extensions import get_services
from helpers import admin_required, json_body, normalize_email, now_iso, require_fields, self_or_admin

logger = logging.getLogger(__name__)

bp = Blueprint("users", __name__)

# Fields an admin may edit through update-user-field
EDITABLE_FIELDS = {
    "name", "phone", "organization", "roles", "yearGroup", "assignedTutor", "children",
    "status", "isActive", "isAdmin", "userType",
    "dataProcessingConsent", "progressTrackingConsent", "parentAccessConsent",
}
CONSENT_FIELDS = ("dataProcessingConsent", "progressTrackingConsent", "parentAccessConsent")


def _pending_record(email: str, name: str | None = None) -> dict[str, Any]:
    return {
        "email": email,
        "name": name,
        "status": "pending",
        "signupDate": now_iso(),
        "hasSubscription": False,
        "roles": [],
    }


def _status_view(user: dict[str, Any]) -> dict[str, Any]:
    roles = user.get("roles") or []
    return {
        "email": user["email"],
        "status": user.get("status"),
        "isApproved": user.get("status") == "approved",
        "hasSubscription": bool(user.get("hasSubscription")),
        "approvedDate": user.get("approvedDate"),
        "isAdmin": bool(user.get("isAdmin")) or "admin" in roles,
        "roles": roles,
    }


def _get_or_create(email: str, name: str | None = None) -> tuple[dict[str, Any], bool]:
    """Idempotent create of a pending record. Returns (user, created)."""
    store = UserStoreDB()
    user = store.get(email)
    if user is not None:
        return user, False
    try:
        return store.create(_pending_record(email, name), doc_id=email), True
    except DocumentExists:
        return store.require(email), False


@bp.route("/api/checkuserstatus", methods=["GET", "POST"])
@login_required
def check_user_status() -> Any:
    data = json_body()
    email = self_or_admin(data.get("email") or request.args.get("email", ""))
    user, created = _get_or_create(email, current_user.name if email == current_user.email else None)
    if created:
        logger.info("Created pending user record for %s", email)
    elif email == current_user.email:
        user = UserStoreDB().patch(email, {"lastLoginDate": now_iso()}, if_match=user["_etag"])
    return jsonify(_status_view(user))


@bp.route("/api/onusersignup", methods=["POST"])
@login_required
def on_user_signup() -> Any:
    data = json_body()
    email = self_or_admin(data.get("email", ""))
    user, created = _get_or_create(email, data.get("name") or current_user.name)
    if not created:
        return jsonify({"success": True, "message": "User already registered", "email": email})

    notified = send_signup_notice(user)
    log_event("user_signup", email)
    return jsonify({
        "success": True,
        "message": "User registered, pending approval",
        "email": email,
        "adminNotified": notified,
    }), 201


@bp.route("/api/approveuser", methods=["POST"])
@admin_required
def approve_user() -> Any:
    data = json_body()
    require_fields(data, "email", "action", message="Email and action required")
    action = data["action"]
    if action not in ("approve", "reject"):
        raise ValidationError(f"Invalid action: {action}")

    store = UserStoreDB()
    email = normalize_email(data["email"])
    user = store.require(email, "User not found")
    now = now_iso()
    changes: dict[str, Any] = {
        "status": "approved" if action == "approve" else "rejected",
        "processedDate": now,
        "processedBy": current_user.email,
    }
    if action == "approve":
        changes["approvedDate"] = now
    user = store.patch(email, changes, if_match=user["_etag"])

    emailed = send_approval_email(user) if action == "approve" else send_rejection_email(user)
    log_event(f"user_{changes['status']}", current_user.email, f"email={email}")
    return jsonify({
        "success": True,
        "message": f"User {changes['status']} successfully",
        "email": email,
        "emailSent": emailed,
    })


@bp.route("/api/getpendingusers", methods=["GET", "POST"])
@admin_required
def get_pending_users() -> Any:
    users = UserStoreDB().pending()
    return jsonify({"success": True, "users": users, "count": len(users)})


@bp.route("/api/check-admin-status", methods=["GET", "POST"])
@login_required
def check_admin_status() -> Any:
    data = json_body()
    email = self_or_admin(data.get("email") or request.args.get("email", ""))
    user = UserStoreDB().get(email)
    if user is None:
        return jsonify({"email": email, "isAdmin": False, "roles": [], "userType": None})
    roles = user.get("roles") or []
    is_admin = (
        bool(user.get("isAdmin"))
        or "admin" in roles
        or "tutor" in roles
        or user.get("userType") in ("admin", "tutor")
    )
    return jsonify({"email": email, "isAdmin": is_admin, "roles": roles, "userType": user.get("userType")})


@bp.route("/api/consent", methods=["POST"])
@login_required
def update_consent() -> Any:
    data = json_body()
    changes = {f: bool(data[f]) for f in CONSENT_FIELDS if f in data}
    if not changes:
        raise ValidationError("No consent fields supplied")
    store = UserStoreDB()
    user = store.require(current_user.email, "User not found")
    changes["consentUpdatedDate"] = now_iso()
    user = store.patch(current_user.email, changes, if_match=user["_etag"])
    log_event("consent_updated", current_user.email, ",".join(f"{k}={v}" for k, v in changes.items()))
    return jsonify({"success": True, "consent": {f: user.get(f) for f in CONSENT_FIELDS}})


# ---------------------------------------------------------------------------
# User management (admin)
# ---------------------------------------------------------------------------

def _user_stats(users: list[dict[str, Any]]) -> dict[str, int]:
    return {
        "pending": sum(1 for u in users if u.get("status") == "pending"),
        "approved": sum(1 for u in users if u.get("status") == "approved"),
        "rejected": sum(1 for u in users if u.get("status") == "rejected"),
        "total": len(users),
    }


def _all_users(data: dict[str, Any]) -> Any:
    users = UserStoreDB().all_users()
    return jsonify({"success": True, "users": users, "stats": _user_stats(users)})


def _pending_users(data: dict[str, Any]) -> Any:
    users = UserStoreDB().pending()
    return jsonify({"success": True, "users": users, "count": len(users)})


def _update_user_field(data: dict[str, Any]) -> Any:
    require_fields(data, "userEmail", "field", message="userEmail and field required")
    field = data["field"]
    if field not in EDITABLE_FIELDS:
        raise ValidationError(f"Field '{field}' cannot be edited")
    email = normalize_email(data["userEmail"])
    store = UserStoreDB()
    user = store.require(email, "User not found")
    user = store.patch(
        email,
        {field: data.get("value"), "updatedDate": now_iso(), "updatedBy": current_user.email},
        if_match=data.get("_etag") or user["_etag"],
    )
    log_event("user_field_updated", current_user.email, f"email={email} field={field}")
    return jsonify({"success": True, "user": user, "message": f"{field} updated successfully"})


def _delete_user(data: dict[str, Any]) -> Any:
    require_fields(data, "userEmail", message="userEmail required")
    email = normalize_email(data["userEmail"])
    if email == current_user.email:
        raise AccessDenied("You cannot delete your own account")
    if not UserStoreDB().delete(email):
        raise NotFound("User not found")
    directory = get_services().directory.delete_user(email)
    log_event("user_deleted", current_user.email, f"email={email} directory={directory.get('deleted')}")
    return jsonify({
        "success": True,
        "message": "User deleted successfully",
        "identityProvider": directory,
    })


USER_MANAGEMENT_ACTIONS = {
    "get-pending-users": _pending_users,
    "get-all-users": _all_users,
    "update-user-field": _update_user_field,
    "delete-user": _delete_user,
}


@bp.route("/api/user-management", methods=["POST"])
@admin_required
def user_management() -> Any:
    data = json_body()
    action = data.get("action", "")
    handler = USER_MANAGEMENT_ACTIONS.get(action)
    if handler is None:
        raise ValidationError(f"Invalid action: {action}")
    return handler(data)
