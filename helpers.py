"""
Shared helpers used across blueprints.

Request parsing, role decorators and timestamp utilities.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from functools import wraps
from typing import Any

from flask import current_app, request
from flask_login import current_user

from errors import AccessDenied, ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_iso(dt: datetime | None = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""
    dt = dt or utcnow()
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: Any) -> datetime | None:
    """Parse an ISO timestamp (``Z`` or offset form). Returns None when unparseable."""
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_email(value: Any) -> str:
    return str(value or "").strip().lower()


def json_body() -> dict[str, Any]:
    """Return the request JSON object, ``{}`` for an empty body."""
    if not request.get_data():
        return {}
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON in request body")
    return data


def require_fields(data: dict[str, Any], *fields: str, message: str | None = None) -> None:
    missing = [f for f in fields if data.get(f) in (None, "", [])]
    if missing:
        raise ValidationError(message or f"Missing required fields: {', '.join(missing)}")


def admin_required(f: Callable) -> Callable:
    """Decorator that requires the verified principal to hold the admin role."""
    @wraps(f)
    def decorated(*args: Any, **kwargs: Any) -> Any:
        if not current_user.is_authenticated:
            return current_app.login_manager.unauthorized()
        if not current_user.is_admin:
            raise AccessDenied("Admin access required", reason=f"{current_user.email} is not an admin")
        return f(*args, **kwargs)
    return decorated


def tutor_required(f: Callable) -> Callable:
    """Decorator that requires a tutor (or legacy admin) principal."""
    @wraps(f)
    def decorated(*args: Any, **kwargs: Any) -> Any:
        if not current_user.is_authenticated:
            return current_app.login_manager.unauthorized()
        if not current_user.is_tutor:
            raise AccessDenied("Tutor access required", reason=f"{current_user.email} is not a tutor")
        return f(*args, **kwargs)
    return decorated


def self_or_admin(email: str) -> str:
    """Resolve a target email: default to the principal, others need admin."""
    target = normalize_email(email) or current_user.email
    if target != current_user.email and not current_user.is_admin:
        raise AccessDenied("Access denied", reason="Only admins may act on other users")
    return target
