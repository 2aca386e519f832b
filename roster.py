"""
Tutor roster management.

A student's ``assignedTutor`` and the tutor's ``students`` list are kept in
step on add and remove. Nothing repairs them if they drift apart.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from flask import current_app

from db_stores import DocumentExists, TutorStoreDB, UserStoreDB
from errors import AccessDenied, ConflictError, NotFound, ValidationError
from helpers import normalize_email, now_iso, parse_iso, utcnow

logger = logging.getLogger(__name__)

TUTOR_PERMISSIONS = [
    "manage_students",
    "assign_homework",
    "grade_assignments",
    "view_progress",
    "send_invitations",
]

RECENT_LOGIN_DAYS = 7


def _organization(value: Any = None) -> str:
    return value or current_app.config.get("DEFAULT_ORGANIZATION", "")


def ensure_tutor(tutor_email: str, name: str = "Tutor") -> dict[str, Any]:
    """Return the Tutors record, creating it on first use."""
    store = TutorStoreDB()
    tutor = store.get(tutor_email)
    if tutor is not None:
        return tutor
    record = {
        "email": normalize_email(tutor_email),
        "name": name or "Tutor",
        "role": "tutor",
        "organization": _organization(),
        "students": [],
        "permissions": list(TUTOR_PERMISSIONS),
        "createdDate": now_iso(),
        "isActive": True,
        "preferences": {"emailNotifications": True, "dashboardView": "grid"},
    }
    try:
        return store.create(record, doc_id=tutor_email)
    except DocumentExists:
        return store.require(tutor_email)


def _update_student_list(tutor_email: str, student_email: str, add: bool) -> dict[str, Any]:
    store = TutorStoreDB()
    tutor = ensure_tutor(tutor_email)
    students = list(tutor.get("students") or [])
    if add and student_email not in students:
        students.append(student_email)
    elif not add:
        students = [s for s in students if s != student_email]
    return store.replace(tutor_email, {**tutor, "students": students}, if_match=tutor["_etag"])


def student_summary(student: dict[str, Any]) -> dict[str, Any]:
    profile = student.get("profile") or {}
    return {
        "email": student.get("email"),
        "name": student.get("name"),
        "yearGroup": student.get("yearGroup"),
        "enrollmentDate": student.get("enrollmentDate"),
        "isActive": student.get("isActive"),
        "parentContactEmail": profile.get("parentContactEmail"),
        "lastLoginDate": student.get("lastLoginDate"),
    }


def tutor_students(tutor_email: str) -> list[dict[str, Any]]:
    """Students on the tutor's list, falling back to ``assignedTutor`` lookups."""
    users = UserStoreDB()
    tutor = TutorStoreDB().get(tutor_email)
    if tutor is not None:
        emails = tutor.get("students") or []
    else:
        emails = [u["email"] for u in users.by_tutor(tutor_email)]
    students = []
    for email in emails:
        record = users.get(email)
        if record is not None:
            students.append(student_summary(record))
    return students


def dashboard_metrics(students: list[dict[str, Any]]) -> dict[str, Any]:
    cutoff = utcnow() - timedelta(days=RECENT_LOGIN_DAYS)
    by_year: dict[str, int] = {}
    for s in students:
        year = s.get("yearGroup") or "unassigned"
        by_year[year] = by_year.get(year, 0) + 1

    def _recent(s: dict[str, Any]) -> bool:
        last = parse_iso(s.get("lastLoginDate"))
        return last is not None and last > cutoff

    return {
        "totalStudents": len(students),
        "activeStudents": sum(1 for s in students if s.get("isActive")),
        "year4Students": by_year.get("year4", 0),
        "year5Students": by_year.get("year5", 0),
        "studentsByYearGroup": by_year,
        "recentLogins": sum(1 for s in students if _recent(s)),
    }


def add_student(tutor_email: str, data: dict[str, Any]) -> dict[str, Any]:
    email = normalize_email(data.get("email"))
    if not email:
        raise ValidationError("Student email required")
    now = now_iso()
    record = {
        "email": email,
        "name": data.get("name"),
        "roles": ["student"],
        "status": "approved",
        "assignedTutor": normalize_email(tutor_email),
        "organization": _organization(data.get("organization")),
        "yearGroup": data.get("yearGroup"),
        "enrollmentDate": now,
        "isActive": True,
        "profile": {
            "parentContactEmail": data.get("parentEmail"),
            "dateOfBirth": data.get("dateOfBirth"),
            "emergencyContact": data.get("emergencyContact"),
        },
        "dataProcessingConsent": False,
        "progressTrackingConsent": False,
        "parentAccessConsent": False,
        "hasSubscription": False,
        "createdDate": now,
        "lastLoginDate": None,
    }
    try:
        student = UserStoreDB().create(record, doc_id=email)
    except DocumentExists:
        raise ConflictError("Student already exists")
    _update_student_list(tutor_email, email, add=True)
    logger.info("Tutor %s added student %s", tutor_email, email)
    return student


def _require_own_student(tutor_email: str, student_email: str) -> dict[str, Any]:
    student = UserStoreDB().get(student_email)
    if student is None:
        raise NotFound("Student not found")
    if normalize_email(student.get("assignedTutor")) != normalize_email(tutor_email):
        raise AccessDenied("Access denied to this student", reason="Student is assigned to another tutor")
    return student


def update_student(tutor_email: str, data: dict[str, Any]) -> dict[str, Any]:
    email = normalize_email(data.get("email"))
    if not email:
        raise ValidationError("Student email required")
    student = _require_own_student(tutor_email, email)
    profile = student.get("profile") or {}
    updated = {
        **student,
        "name": data.get("name") or student.get("name"),
        "yearGroup": data.get("yearGroup") or student.get("yearGroup"),
        "isActive": data["isActive"] if data.get("isActive") is not None else student.get("isActive"),
        "profile": {
            **profile,
            "parentContactEmail": data.get("parentEmail") or profile.get("parentContactEmail"),
            "dateOfBirth": data.get("dateOfBirth") or profile.get("dateOfBirth"),
            "emergencyContact": data.get("emergencyContact") or profile.get("emergencyContact"),
        },
        "updatedDate": now_iso(),
    }
    return UserStoreDB().replace(email, updated, if_match=data.get("_etag") or student["_etag"])


def remove_student(tutor_email: str, student_email: str) -> dict[str, Any]:
    """Take the student off the tutor's list and deactivate them (never deleted)."""
    email = normalize_email(student_email)
    if not email:
        raise ValidationError("Student email required")
    student = _require_own_student(tutor_email, email)
    _update_student_list(tutor_email, email, add=False)
    deactivated = {
        **student,
        "isActive": False,
        "assignedTutor": None,
        "deactivatedDate": now_iso(),
        "deactivatedBy": normalize_email(tutor_email),
    }
    logger.info("Tutor %s removed student %s", tutor_email, email)
    return UserStoreDB().replace(email, deactivated, if_match=student["_etag"])


def migrate_user(requested_by: str, target: dict[str, Any]) -> dict[str, Any]:
    """Derive ``roles`` and roster fields for a record written before roles existed."""
    store = UserStoreDB()
    user = store.get((target or {}).get("email"))
    if user is None:
        raise NotFound("User not found")

    roles: list[str] = []
    if user.get("isAdmin"):
        roles.append("tutor")
    if user.get("children"):
        roles.append("parent")
    if not user.get("isAdmin"):
        roles.append("student")

    migrated = {
        **user,
        "roles": roles,
        "assignedTutor": normalize_email(target.get("assignedTutor")) or None,
        "organization": _organization(target.get("organization")),
        "yearGroup": target.get("yearGroup") or (None if user.get("isAdmin") else "year5"),
        "enrollmentDate": user.get("createdDate") or user.get("signupDate"),
        "profile": {
            "parentContactEmail": target.get("parentEmail"),
            "dateOfBirth": target.get("dateOfBirth"),
            "emergencyContact": target.get("emergencyContact"),
        },
        "migratedDate": now_iso(),
        "migratedBy": normalize_email(requested_by),
    }
    return store.replace(user["id"], migrated, if_match=user["_etag"])
