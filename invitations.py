"""
Parent invitation workflow.

An invitation moves ``pending → accepted``. Expiry is never stored: it is
derived at validation time by comparing ``expiryDate`` with the clock. The
token is the only credential a parent needs, so it is never returned after
the invitation is created.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import Any

from flask import current_app

from db_stores import DocumentExists, InvitationStoreDB, TutorStoreDB, UserStoreDB, new_id
from email_service import send_invitation_email
from errors import (
    AccessDenied,
    AlreadyAccepted,
    ConcurrencyConflict,
    InvitationExpired,
    NotFound,
    ServiceError,
    ValidationError,
)
from helpers import normalize_email, now_iso, parse_iso, utcnow
from permissions import has_tutor_role

logger = logging.getLogger(__name__)

PENDING = "pending"
ACCEPTED = "accepted"

SUMMARY_FIELDS = (
    "id", "studentEmail", "parentEmail", "studentInfo", "status", "createdDate",
    "sentDate", "expiryDate", "acceptedDate", "emailSent", "remindersSent",
)


def _expiry() -> str:
    days = current_app.config.get("INVITATION_EXPIRY_DAYS", 7)
    return now_iso(utcnow() + timedelta(days=days))


def summary(invitation: dict[str, Any]) -> dict[str, Any]:
    return {k: invitation.get(k) for k in SUMMARY_FIELDS}


def public_view(invitation: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": invitation["id"],
        "studentInfo": invitation.get("studentInfo"),
        "parentEmail": invitation.get("parentEmail"),
        "tutorEmail": invitation.get("tutorEmail"),
        "expiryDate": invitation.get("expiryDate"),
    }


def _tutor_exists(tutor_email: str) -> bool:
    if TutorStoreDB().get(tutor_email) is not None:
        return True
    return has_tutor_role(UserStoreDB().get(tutor_email))


def send(tutor_email: str, data: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    """Create an invitation and try to email it. Returns (invitation, email_sent)."""
    tutor = normalize_email(tutor_email)
    student_email = normalize_email(data.get("studentEmail"))
    parent_email = normalize_email(data.get("parentEmail"))
    if not student_email or not parent_email:
        raise ValidationError("Student email and parent email required")
    if not _tutor_exists(tutor):
        raise NotFound("Tutor not found")

    store = InvitationStoreDB()
    invitation = store.create({
        "token": secrets.token_hex(32),
        "tutorEmail": tutor,
        "studentEmail": student_email,
        "parentEmail": parent_email,
        "studentInfo": {
            "email": student_email,
            "firstName": data.get("firstName"),
            "lastName": data.get("lastName"),
            "yearGroup": data.get("yearGroup"),
            "startDate": data.get("startDate") or now_iso(),
        },
        "status": PENDING,
        "createdDate": now_iso(),
        "sentDate": None,
        "expiryDate": _expiry(),
        "acceptedDate": None,
        "emailSent": False,
        "remindersSent": 0,
    }, doc_id=new_id("inv", entropy_bytes=8))

    email_sent = send_invitation_email(invitation)
    if email_sent:
        invitation = store.patch(
            invitation["id"], {"emailSent": True, "sentDate": now_iso()}, if_match=invitation["_etag"],
        )
    else:
        logger.warning("Invitation %s saved but email not sent", invitation["id"])
    return invitation, email_sent


def list_for_tutor(tutor_email: str) -> list[dict[str, Any]]:
    return [summary(inv) for inv in InvitationStoreDB().for_tutor(tutor_email)]


def _validated(token: str) -> dict[str, Any]:
    if not token:
        raise ValidationError("Token required")
    invitation = InvitationStoreDB().get_by_token(token)
    if invitation is None:
        raise NotFound("Invalid invitation token")
    expiry = parse_iso(invitation.get("expiryDate"))
    if expiry is None or expiry <= utcnow():
        raise InvitationExpired()
    if invitation.get("status") == ACCEPTED:
        raise AlreadyAccepted()
    return invitation


def validate(token: str) -> dict[str, Any]:
    """Read-only projection of a live invitation."""
    return public_view(_validated(token))


def accept(token: str, parent_details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Accept an invitation and create or extend the parent's user record.

    The invitation is claimed first with an etag compare-and-swap, so only one
    of two concurrent acceptances proceeds to the user write. If that write
    fails the claim is released and the token stays usable.
    """
    invitation = _validated(token)
    store = InvitationStoreDB()
    try:
        claimed = store.replace(
            invitation["id"],
            {**invitation, "status": ACCEPTED, "acceptedDate": now_iso()},
            if_match=invitation["_etag"],
        )
    except ConcurrencyConflict:
        raise AlreadyAccepted()

    try:
        parent = _upsert_parent(invitation, parent_details or {})
    except ServiceError:
        _release_claim(claimed)
        raise
    logger.info("Invitation %s accepted by %s", invitation["id"], parent["email"])
    return {
        "email": parent["email"],
        "name": parent.get("name"),
        "children": parent.get("children", []),
    }


def _release_claim(claimed: dict[str, Any]) -> None:
    try:
        InvitationStoreDB().replace(
            claimed["id"],
            {**claimed, "status": PENDING, "acceptedDate": None},
            if_match=claimed["_etag"],
        )
    except ServiceError:
        logger.exception("Could not release claim on invitation %s", claimed["id"])
    else:
        logger.warning("Invitation %s returned to pending after parent write failed", claimed["id"])


def _consented(approved_date: str) -> dict[str, Any]:
    return {
        "status": "approved",
        "approvedDate": approved_date,
        "dataProcessingConsent": True,
        "progressTrackingConsent": True,
        "parentAccessConsent": True,
    }


def _upsert_parent(invitation: dict[str, Any], details: dict[str, Any]) -> dict[str, Any]:
    users = UserStoreDB()
    parent_email = normalize_email(invitation["parentEmail"])
    child = normalize_email((invitation.get("studentInfo") or {}).get("email") or invitation.get("studentEmail"))

    for _ in range(3):
        now = now_iso()
        existing = users.get(parent_email)
        if existing is not None:
            roles = list(existing.get("roles") or [])
            if "parent" not in roles:
                roles.append("parent")
            children = list(existing.get("children") or [])
            if child and child not in children:
                children.append(child)
            consent = _consented(existing.get("approvedDate") or now)
            try:
                return users.replace(
                    parent_email, {**existing, **consent, "roles": roles, "children": children},
                    if_match=existing["_etag"],
                )
            except ConcurrencyConflict:
                continue

        try:
            return users.create({
                "email": parent_email,
                "name": details.get("name") or "Parent",
                "roles": ["parent"],
                **_consented(now),
                "children": [child] if child else [],
                "organization": current_app.config.get("DEFAULT_ORGANIZATION", ""),
                "hasSubscription": False,
                "signupDate": now,
                "createdDate": now,
                "lastLoginDate": None,
                "profile": {
                    "phone": details.get("phone"),
                    "emergencyContact": details.get("emergencyContact"),
                },
            }, doc_id=parent_email)
        except DocumentExists:
            continue
    raise ConcurrencyConflict("Parent record kept changing; retry")


def resend(invitation_id: str, requested_by: str, is_admin: bool = False) -> tuple[dict[str, Any], bool]:
    if not invitation_id:
        raise ValidationError("Invitation ID required")
    store = InvitationStoreDB()
    invitation = store.get(invitation_id)
    if invitation is None:
        raise NotFound("Invitation not found")
    if not is_admin and normalize_email(invitation.get("tutorEmail")) != normalize_email(requested_by):
        raise AccessDenied("You can only resend your own invitations")
    if invitation.get("status") == ACCEPTED:
        raise AlreadyAccepted()

    updated = {
        **invitation,
        "expiryDate": _expiry(),
        "remindersSent": int(invitation.get("remindersSent") or 0) + 1,
    }
    email_sent = send_invitation_email(updated)
    if email_sent:
        updated["sentDate"] = now_iso()
        updated["emailSent"] = True
    return store.replace(invitation_id, updated, if_match=invitation["_etag"]), email_sent
