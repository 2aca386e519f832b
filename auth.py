"""
Bearer-token authentication: Flask-Login request loader.

The identity provider issues signed JWTs carrying the user's email. Each
request's token is verified with PyJWT and resolved to a ``Principal`` whose
roles come from the stored Users record, never from the request body.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from flask import current_app, jsonify, request
from flask_login import LoginManager, UserMixin

from db_stores import UserStoreDB
from helpers import normalize_email
from permissions import has_admin_role, has_tutor_role

logger = logging.getLogger(__name__)

login_manager = LoginManager()


class Principal(UserMixin):
    """The authenticated caller: verified email plus the stored user record."""

    def __init__(self, email: str, claims: dict[str, Any] | None = None,
                 record: dict[str, Any] | None = None):
        self.id = email
        self.email = email
        self.claims = claims or {}
        self.record = record

    @property
    def name(self) -> str:
        if self.record and self.record.get("name"):
            return self.record["name"]
        return self.claims.get("name", "")

    @property
    def roles(self) -> list[str]:
        return list((self.record or {}).get("roles") or [])

    @property
    def is_admin(self) -> bool:
        return has_admin_role(self.record)

    @property
    def is_tutor(self) -> bool:
        return has_tutor_role(self.record)

    @property
    def has_subscription(self) -> bool:
        return bool((self.record or {}).get("hasSubscription"))


def issue_identity_token(email: str, name: str = "", expires_in: int = 3600,
                         secret: str | None = None) -> str:
    """Mint a token the way the identity provider does (local development and tests)."""
    cfg = current_app.config
    now = datetime.now(timezone.utc)
    claims: dict[str, Any] = {
        "email": normalize_email(email),
        "name": name,
        "iat": now,
        "exp": now + timedelta(seconds=expires_in),
    }
    if cfg.get("IDENTITY_TOKEN_AUDIENCE"):
        claims["aud"] = cfg["IDENTITY_TOKEN_AUDIENCE"]
    if cfg.get("IDENTITY_TOKEN_ISSUER"):
        claims["iss"] = cfg["IDENTITY_TOKEN_ISSUER"]
    algorithm = (cfg.get("IDENTITY_TOKEN_ALGORITHMS") or ["HS256"])[0]
    return jwt.encode(claims, secret or cfg["IDENTITY_TOKEN_SECRET"], algorithm=algorithm)


def decode_identity_token(token: str) -> dict[str, Any]:
    """Verify signature, expiry and (when configured) audience and issuer."""
    cfg = current_app.config
    options: dict[str, Any] = {}
    kwargs: dict[str, Any] = {}
    if cfg.get("IDENTITY_TOKEN_AUDIENCE"):
        kwargs["audience"] = cfg["IDENTITY_TOKEN_AUDIENCE"]
    else:
        options["verify_aud"] = False
    if cfg.get("IDENTITY_TOKEN_ISSUER"):
        kwargs["issuer"] = cfg["IDENTITY_TOKEN_ISSUER"]
    return jwt.decode(
        token,
        cfg["IDENTITY_TOKEN_SECRET"],
        algorithms=cfg.get("IDENTITY_TOKEN_ALGORITHMS") or ["HS256"],
        options=options,
        **kwargs,
    )


def email_from_claims(claims: dict[str, Any]) -> str:
    emails = claims.get("emails")
    if isinstance(emails, list) and emails:
        return normalize_email(emails[0])
    return normalize_email(claims.get("email") or claims.get("preferred_username"))


@login_manager.request_loader
def load_principal_from_request(req) -> Principal | None:
    header = req.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    token = header[len("Bearer "):].strip()
    try:
        claims = decode_identity_token(token)
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired bearer token")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning("Rejected bearer token: %s", e)
        return None
    email = email_from_claims(claims)
    if not email:
        logger.warning("Bearer token carries no email claim")
        return None
    return Principal(email, claims, UserStoreDB().get(email))


@login_manager.unauthorized_handler
def unauthorized():
    logger.info("Unauthenticated request to %s", request.path)
    return jsonify({"success": False, "error": "Authentication required"}), 401
