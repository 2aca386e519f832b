"""
Homework catalogue and assignment fan-out.

Assigning N homework items to M students writes N×M independent assignment
records. There is no batch atomicity: if a write fails part-way, the records
already written stay. Each assignment moves ``assigned → submitted →
completed``; grade and feedback are set when the tutor marks it.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from flask import current_app

from db_stores import HomeworkAssignmentStoreDB, HomeworkStoreDB, new_id
from errors import AccessDenied, ConflictError, NotFound, ValidationError
from helpers import normalize_email, now_iso, utcnow

logger = logging.getLogger(__name__)

ASSIGNED = "assigned"
SUBMITTED = "submitted"
COMPLETED = "completed"


def list_catalog() -> list[dict[str, Any]]:
    return HomeworkStoreDB().catalog()


def create_homework_item(data: dict[str, Any], created_by: str) -> dict[str, Any]:
    if not data.get("title"):
        raise ValidationError("Homework title required")
    now = now_iso()
    item = {
        **{k: v for k, v in data.items() if k not in ("id", "_etag")},
        "createdDate": now,
        "updatedDate": now,
        "createdBy": normalize_email(created_by),
    }
    return HomeworkStoreDB().create(item, doc_id=new_id("homework"))


def default_due_date() -> str:
    days = current_app.config.get("HOMEWORK_DEFAULT_DUE_DAYS", 7)
    return now_iso(utcnow() + timedelta(days=days))


def assign(
    tutor_email: str,
    homework_ids: list[str],
    student_emails: list[str],
    due_date: str | None = None,
    notes: str | None = None,
) -> list[dict[str, Any]]:
    """Create one assignment per (homework id, student email) pair."""
    if not homework_ids or not student_emails:
        raise ValidationError("Homework IDs and student emails required")

    store = HomeworkAssignmentStoreDB()
    tutor = normalize_email(tutor_email)
    due = due_date or default_due_date()
    created = []
    for homework_id in homework_ids:
        for student_email in student_emails:
            record = {
                "homeworkId": homework_id,
                "studentEmail": normalize_email(student_email),
                "tutorEmail": tutor,
                "assignedDate": now_iso(),
                "dueDate": due,
                "status": ASSIGNED,
                "notes": notes or "",
                "submittedDate": None,
                "completedDate": None,
                "grade": None,
                "feedback": None,
            }
            created.append(store.create(record, doc_id=new_id("hw")))
    logger.info(
        "Tutor %s assigned %d homework item(s) to %d student(s)",
        tutor, len(homework_ids), len(student_emails),
    )
    return created


def for_student(tutor_email: str, student_email: str) -> list[dict[str, Any]]:
    """The tutor's assignments for one student, with homework details joined."""
    if not student_email:
        raise ValidationError("Student email required")
    catalog = HomeworkStoreDB()
    result = []
    for assignment in HomeworkAssignmentStoreDB().for_student(student_email, tutor_email):
        result.append({**assignment, "homework": catalog.get(assignment.get("homeworkId"))})
    return result


def _require_owned(tutor_email: str, assignment_id: str, action: str) -> dict[str, Any]:
    if not assignment_id:
        raise ValidationError("Assignment ID required")
    assignment = HomeworkAssignmentStoreDB().get(assignment_id)
    if assignment is None:
        raise NotFound("Homework assignment not found")
    if normalize_email(assignment.get("tutorEmail")) != normalize_email(tutor_email):
        raise AccessDenied(
            f"You can only {action} your own assignments",
            reason=f"Assignment belongs to {assignment.get('tutorEmail')}",
        )
    return assignment


def remove(tutor_email: str, assignment_id: str) -> None:
    assignment = _require_owned(tutor_email, assignment_id, "remove")
    HomeworkAssignmentStoreDB().delete(assignment_id, if_match=assignment["_etag"])
    logger.info("Tutor %s removed assignment %s", tutor_email, assignment_id)


def submit(student_email: str, assignment_id: str) -> dict[str, Any]:
    """Student hands in an assignment: ``assigned → submitted``."""
    store = HomeworkAssignmentStoreDB()
    assignment = store.get(assignment_id)
    if assignment is None or normalize_email(assignment.get("studentEmail")) != normalize_email(student_email):
        raise NotFound("Homework assignment not found")
    if assignment.get("status") != ASSIGNED:
        raise ConflictError(f"Assignment is already {assignment.get('status')}")
    return store.patch(
        assignment_id,
        {"status": SUBMITTED, "submittedDate": now_iso()},
        if_match=assignment["_etag"],
    )


def grade(tutor_email: str, assignment_id: str, grade_value: Any = None,
          feedback: str | None = None, if_match: str | None = None) -> dict[str, Any]:
    """Tutor marks an assignment: ``→ completed`` with grade and feedback."""
    assignment = _require_owned(tutor_email, assignment_id, "grade")
    return HomeworkAssignmentStoreDB().patch(
        assignment_id,
        {
            "status": COMPLETED,
            "completedDate": now_iso(),
            "grade": grade_value,
            "feedback": feedback,
        },
        if_match=if_match or assignment["_etag"],
    )
