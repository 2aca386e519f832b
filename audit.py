"""
Audit logging: records security-relevant events.

Events are written to both the AuditLog collection and structured logging.
"""

from __future__ import annotations

import logging

from flask import has_request_context, request

from db_stores import AuditLogStoreDB, new_id
from errors import ServiceError
from helpers import now_iso

logger = logging.getLogger(__name__)


def log_event(action: str, actor: str | None = None, detail: str = "") -> None:
    """Insert an audit log entry and emit a structured log line."""
    ip = (request.remote_addr or "") if has_request_context() else ""
    ua = request.headers.get("User-Agent", "") if has_request_context() else ""

    try:
        AuditLogStoreDB().create({
            "action": action,
            "actor": actor,
            "detail": detail,
            "ipAddress": ip,
            "userAgent": ua,
            "createdDate": now_iso(),
        }, doc_id=new_id("audit"))
    except ServiceError:
        logger.warning("audit write failed: %s actor=%s", action, actor)

    logger.info("audit: %s actor=%s detail=%s ip=%s", action, actor, detail, ip)
