"""
Service error taxonomy and JSON error responses.

Handlers raise these instead of building error responses by hand; the
registered error handlers turn them into ``{"success": false, "error": ...}``.
"""

from __future__ import annotations

import logging
from typing import Any

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base error carrying an HTTP status and a client-facing message."""

    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        reason: str | None = None,
        details: Any = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.details = details
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": False, "error": self.message}
        if self.reason:
            body["reason"] = self.reason
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(ServiceError):
    status_code = 400


class AccessDenied(ServiceError):
    status_code = 403

    def __init__(self, message: str = "Access denied", *, reason: str | None = None, **kwargs: Any):
        super().__init__(message, reason=reason, **kwargs)


class NotFound(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 400


class ConcurrencyConflict(ConflictError):
    """The stored document changed since it was read (ETag mismatch)."""

    status_code = 409

    def __init__(self, message: str = "Document was modified by another request; retry", **kwargs: Any):
        super().__init__(message, **kwargs)


class InvitationExpired(ConflictError):
    def __init__(self, message: str = "Invitation has expired", **kwargs: Any):
        super().__init__(message, **kwargs)


class AlreadyAccepted(ConflictError):
    def __init__(self, message: str = "Invitation already accepted", **kwargs: Any):
        super().__init__(message, **kwargs)


class PaymentRequired(ServiceError):
    status_code = 402


class UpstreamFailure(ServiceError):
    """An external store or API call failed; the underlying message is passed through."""

    status_code = 500


def register_error_handlers(app: Flask) -> None:
    """Render service errors, HTTP errors and unexpected exceptions as JSON."""

    @app.errorhandler(ServiceError)
    def _service_error(e: ServiceError):
        if e.status_code >= 500:
            logger.error("%s: %s (%s)", type(e).__name__, e.message, e.details)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        return jsonify({"success": False, "error": e.description or e.name}), e.code

    @app.errorhandler(Exception)
    def _unexpected(e: Exception):
        logger.exception("Unhandled error")
        return jsonify({
            "success": False,
            "error": "Internal server error",
            "details": str(e),
        }), 500
