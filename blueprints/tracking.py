"""Lesson view tracking."""

from __future__ import annotations

import logging
import secrets
from typing import Any

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from db_stores import ViewEventStoreDB
from errors import ValidationError
from helpers import json_body, now_iso, self_or_admin

logger = logging.getLogger(__name__)

bp = Blueprint("tracking", __name__)


def _client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or request.remote_addr or "unknown"


@bp.route("/api/trackview", methods=["POST"])
@login_required
def api_trackview() -> Any:
    data = json_body()
    user_id = self_or_admin(data.get("userId", ""))
    if not data.get("eventType") or not data.get("timestamp"):
        raise ValidationError("Missing required fields: eventType, userId, timestamp")

    event_id = f"{data['timestamp']}_{secrets.token_hex(5)}"
    ViewEventStoreDB().create({
        "eventType": data["eventType"],
        "userId": user_id,
        "timestamp": data["timestamp"],
        "lessonId": data.get("lessonId") or "unknown",
        "sessionId": data.get("sessionId") or "unknown",
        "lessonTitle": data.get("lessonTitle") or "",
        "lessonCategory": data.get("lessonCategory") or "",
        "viewDuration": data.get("viewDuration") or 0,
        "message": data.get("message") or "",
        "userAgent": request.headers.get("User-Agent", ""),
        "ipAddress": _client_ip(),
        "createdAt": now_iso(),
    }, doc_id=event_id)

    logger.info("Tracking event recorded: %s for user %s", data["eventType"], user_id)
    return jsonify({"success": True, "message": "Event tracked successfully", "eventId": event_id})
