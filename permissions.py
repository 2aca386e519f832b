"""
Permission & consent gate for student data.

Decides whether a caller may read or write a student's progress data. The
caller's stored Users record is the only source of roles and consent; the
``as_teacher``/``as_parent`` flags select which role the caller is acting in
and must be corroborated by that record. Read-only, fails closed.
"""

from __future__ import annotations

from dataclasses import dataclass

from db_stores import UserStoreDB
from errors import AccessDenied
from helpers import normalize_email


@dataclass(frozen=True)
class AccessDecision:
    has_access: bool
    role: str | None = None
    reason: str | None = None


def has_admin_role(record: dict | None) -> bool:
    rec = record or {}
    return bool(rec.get("isAdmin")) or "admin" in (rec.get("roles") or []) or rec.get("userType") == "admin"


def has_tutor_role(record: dict | None) -> bool:
    """Tutor by role or userType; admins count as tutors."""
    rec = record or {}
    return "tutor" in (rec.get("roles") or []) or rec.get("userType") == "tutor" or has_admin_role(rec)


def check_student_access(
    caller_email: str,
    student_id: str | None = None,
    *,
    as_teacher: bool = False,
    as_parent: bool = False,
) -> AccessDecision:
    caller = normalize_email(caller_email)
    target = normalize_email(student_id) if student_id else ""

    record = UserStoreDB().get(caller) if caller else None
    if record is None:
        return AccessDecision(False, reason="User not found")
    if record.get("dataProcessingConsent") is not True:
        return AccessDecision(False, reason="Data processing consent required")

    if as_teacher and has_tutor_role(record):
        return AccessDecision(True, role="teacher")

    if as_parent:
        children = [normalize_email(c) for c in record.get("children") or []]
        if target and target in children:
            return AccessDecision(True, role="parent")
        return AccessDecision(False, reason="Parent can only access own children data")

    if not target or target == caller:
        return AccessDecision(True, role="student")

    return AccessDecision(False, reason="Insufficient permissions")


def require_student_access(
    caller_email: str,
    student_id: str | None = None,
    *,
    as_teacher: bool = False,
    as_parent: bool = False,
) -> AccessDecision:
    """Like ``check_student_access`` but raises AccessDenied on denial."""
    decision = check_student_access(
        caller_email, student_id, as_teacher=as_teacher, as_parent=as_parent,
    )
    if not decision.has_access:
        raise AccessDenied("Access denied", reason=decision.reason)
    return decision
