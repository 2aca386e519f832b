"""Tutor roster and homework-assignment routes."""

from __future__ import annotations

import logging
from typing import Any

from flask import Blueprint, jsonify
from flask_login import current_user

import homework
import roster
from errors import ValidationError
from helpers import json_body, normalize_email, tutor_required

logger = logging.getLogger(__name__)

bp = Blueprint("tutor", __name__)


def _acting_tutor(data: dict[str, Any]) -> str:
    """The tutor whose roster is being managed. Admins may name another tutor."""
    requested = normalize_email(data.get("tutorEmail"))
    if requested and current_user.is_admin:
        return requested
    return current_user.email


def _section(data: dict[str, Any], key: str, message: str) -> dict[str, Any]:
    value = data.get(key)
    if not isinstance(value, dict) or not value:
        raise ValidationError(message)
    return value


# ── Roster ───────────────────────────────────────────────────────────


def _get_students(tutor: str, data: dict[str, Any]) -> tuple[Any, int]:
    students = roster.tutor_students(tutor)
    return jsonify({"success": True, "students": students, "totalStudents": len(students)}), 200


def _add_student(tutor: str, data: dict[str, Any]) -> tuple[Any, int]:
    student_data = _section(data, "studentData", "Student data required")
    roster.ensure_tutor(tutor, current_user.name if tutor == current_user.email else "Tutor")
    student = roster.add_student(tutor, student_data)
    return jsonify({
        "success": True,
        "student": student,
        "message": "Student added successfully",
    }), 201


def _update_student(tutor: str, data: dict[str, Any]) -> tuple[Any, int]:
    student_data = _section(data, "studentData", "Student data required")
    if not student_data.get("email"):
        student_data = {**student_data, "email": student_data.get("studentEmail")}
    student = roster.update_student(tutor, student_data)
    return jsonify({"success": True, "student": student, "message": "Student updated successfully"}), 200


def _remove_student(tutor: str, data: dict[str, Any]) -> tuple[Any, int]:
    student_data = _section(data, "studentData", "Student data required")
    roster.remove_student(tutor, student_data.get("studentEmail") or student_data.get("email"))
    return jsonify({"success": True, "message": "Student removed successfully"}), 200


def _get_dashboard(tutor: str, data: dict[str, Any]) -> tuple[Any, int]:
    students = roster.tutor_students(tutor)
    return jsonify({
        "success": True,
        "students": students,
        "metrics": roster.dashboard_metrics(students),
    }), 200


def _migrate_user(tutor: str, data: dict[str, Any]) -> tuple[Any, int]:
    target = _section(data, "targetUser", "Target user required")
    user = roster.migrate_user(current_user.email, target)
    return jsonify({"success": True, "user": user, "message": "User migrated successfully"}), 200


# ── Homework ─────────────────────────────────────────────────────────


def _get_available_homework(tutor: str, data: dict[str, Any]) -> tuple[Any, int]:
    return jsonify({"success": True, "homework": homework.list_catalog()}), 200


def _create_homework(tutor: str, data: dict[str, Any]) -> tuple[Any, int]:
    item = homework.create_homework_item(_section(data, "homework", "Homework data required"), tutor)
    return jsonify({"success": True, "homework": item}), 201


def _assign_homework(tutor: str, data: dict[str, Any]) -> tuple[Any, int]:
    hw = data.get("homeworkData") or {}
    homework_ids = hw.get("homeworkIds") or []
    student_emails = hw.get("studentEmails") or []
    assignments = homework.assign(
        tutor, homework_ids, student_emails, due_date=hw.get("dueDate"), notes=hw.get("notes"),
    )
    return jsonify({
        "success": True,
        "assignments": assignments,
        "message": (
            f"Successfully assigned {len(homework_ids)} homework items "
            f"to {len(student_emails)} students"
        ),
    }), 201


def _get_student_homework(tutor: str, data: dict[str, Any]) -> tuple[Any, int]:
    student_email = normalize_email(data.get("studentEmail") or (data.get("studentData") or {}).get("studentEmail"))
    return jsonify({"success": True, "assignments": homework.for_student(tutor, student_email)}), 200


def _remove_homework_assignment(tutor: str, data: dict[str, Any]) -> tuple[Any, int]:
    assignment = data.get("assignmentData") or {}
    homework.remove(tutor, assignment.get("assignmentId"))
    return jsonify({"success": True, "message": "Homework assignment removed successfully"}), 200


def _grade_homework(tutor: str, data: dict[str, Any]) -> tuple[Any, int]:
    assignment = data.get("assignmentData") or {}
    graded = homework.grade(
        tutor,
        assignment.get("assignmentId"),
        grade_value=assignment.get("grade"),
        feedback=assignment.get("feedback"),
        if_match=assignment.get("_etag"),
    )
    return jsonify({"success": True, "assignment": graded, "message": "Homework graded successfully"}), 200


TUTOR_ACTIONS = {
    "get-students": _get_students,
    "add-student": _add_student,
    "update-student": _update_student,
    "remove-student": _remove_student,
    "get-dashboard": _get_dashboard,
    "migrate-user": _migrate_user,
    "get-available-homework": _get_available_homework,
    "create-homework": _create_homework,
    "assign-homework": _assign_homework,
    "get-student-homework": _get_student_homework,
    "remove-homework-assignment": _remove_homework_assignment,
    "grade-homework": _grade_homework,
}


@bp.route("/api/tutor-management", methods=["POST"])
@tutor_required
def api_tutor_management() -> tuple[Any, int]:
    data = json_body()
    action = data.get("action", "")
    handler = TUTOR_ACTIONS.get(action)
    if handler is None:
        raise ValidationError(f"Invalid action: {action}")
    tutor = _acting_tutor(data)
    logger.debug("tutor-management %s for %s", action, tutor)
    return handler(tutor, data)
