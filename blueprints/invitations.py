"""Parent invitation routes.

``validate-token`` and ``process-invitation`` are public: the invitation
token is the credential. Every other action needs a tutor principal.
"""

from __future__ import annotations

import logging
from typing import Any

from flask import Blueprint, current_app, jsonify
from flask_login import current_user

import invitations
from errors import AccessDenied, ValidationError
from helpers import json_body, normalize_email

logger = logging.getLogger(__name__)

bp = Blueprint("invitations", __name__)


def _send_invitation(data: dict[str, Any]) -> tuple[Any, int]:
    invitation_data = data.get("invitationData") or {}
    tutor = current_user.email
    if current_user.is_admin and invitation_data.get("tutorEmail"):
        tutor = normalize_email(invitation_data["tutorEmail"])
    invitation, email_sent = invitations.send(tutor, invitation_data)
    message = "Invitation sent successfully" if email_sent else "Invitation created but email could not be sent"
    return jsonify({
        "success": True,
        "invitation": invitations.summary(invitation),
        "emailSent": email_sent,
        "message": message,
    }), 201


def _get_invitations(data: dict[str, Any]) -> tuple[Any, int]:
    return jsonify({"success": True, "invitations": invitations.list_for_tutor(current_user.email)}), 200


def _validate_token(data: dict[str, Any]) -> tuple[Any, int]:
    return jsonify({"success": True, "invitation": invitations.validate(data.get("token", ""))}), 200


def _process_invitation(data: dict[str, Any]) -> tuple[Any, int]:
    parent = invitations.accept(data.get("token", ""), data.get("parentDetails"))
    return jsonify({
        "success": True,
        "parent": parent,
        "message": "Invitation accepted successfully",
    }), 200


def _resend_invitation(data: dict[str, Any]) -> tuple[Any, int]:
    invitation, email_sent = invitations.resend(
        data.get("invitationId", ""), current_user.email, is_admin=current_user.is_admin,
    )
    return jsonify({
        "success": True,
        "invitation": invitations.summary(invitation),
        "emailSent": email_sent,
        "message": "Invitation resent successfully" if email_sent else "Invitation extended but email could not be sent",
    }), 200


INVITATION_ACTIONS = {
    "send-invitation": _send_invitation,
    "get-invitations": _get_invitations,
    "validate-token": _validate_token,
    "process-invitation": _process_invitation,
    "resend-invitation": _resend_invitation,
}
PUBLIC_ACTIONS = {"validate-token", "process-invitation"}


@bp.route("/api/student-invitations", methods=["POST"])
def api_student_invitations() -> tuple[Any, int]:
    data = json_body()
    action = data.get("action", "")
    handler = INVITATION_ACTIONS.get(action)
    if handler is None:
        raise ValidationError(f"Invalid action: {action}")
    if action not in PUBLIC_ACTIONS:
        if not current_user.is_authenticated:
            return current_app.login_manager.unauthorized()
        if not current_user.is_tutor:
            raise AccessDenied("Tutor access required", reason=f"{current_user.email} is not a tutor")
    return handler(data)
