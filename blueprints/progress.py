"""Student progress, homework submission and parent dashboard routes."""

from __future__ import annotations

import logging
from typing import Any

from flask import Blueprint, jsonify
from flask_login import current_user, login_required

import homework
from db_stores import HomeworkAssignmentStoreDB, ProgressStoreDB, UserStoreDB, new_id
from errors import AccessDenied, ValidationError
from helpers import json_body, normalize_email, now_iso
from permissions import AccessDecision, require_student_access
from progress_metrics import calculate_progress_metrics

logger = logging.getLogger(__name__)

bp = Blueprint("progress", __name__)

DASHBOARD_RECENT_RECORDS = 10


def _progress_fields(data: dict[str, Any]) -> dict[str, Any]:
    progress = data.get("progressData") or {}
    if not isinstance(progress, dict):
        raise ValidationError("progressData must be an object")
    return {k: v for k, v in progress.items() if k not in ("id", "_etag", "studentId")}


def _get_progress(student_id: str, data: dict[str, Any], decision: AccessDecision) -> tuple[Any, int]:
    records = ProgressStoreDB().for_student(student_id)
    return jsonify({
        "success": True,
        "progress": records,
        "metrics": calculate_progress_metrics(records),
    }), 200


def _update_progress(student_id: str, data: dict[str, Any], decision: AccessDecision) -> tuple[Any, int]:
    if decision.role != "teacher":
        raise AccessDenied("Teacher access required", reason=f"Access granted as {decision.role}")
    if not data.get("studentId"):
        raise ValidationError("studentId required")
    student = UserStoreDB().get(student_id) or {}
    record = {
        **_progress_fields(data),
        "studentId": student_id,
        "createdDate": now_iso(),
        "createdBy": current_user.email,
        "dataProcessingConsent": student.get("dataProcessingConsent") is True,
    }
    created = ProgressStoreDB().create(record, doc_id=new_id("progress"))
    logger.info("Progress record %s written for %s by %s", created["id"], student_id, current_user.email)
    return jsonify({"success": True, "progress": created}), 201


def _get_homework(student_id: str, data: dict[str, Any], decision: AccessDecision) -> tuple[Any, int]:
    records = ProgressStoreDB().for_student(student_id, record_type="homework", order_by="dueDate", descending=False)
    return jsonify({
        "success": True,
        "homework": records,
        "assignments": HomeworkAssignmentStoreDB().for_student(student_id),
    }), 200


def _submit_homework(student_id: str, data: dict[str, Any], decision: AccessDecision) -> tuple[Any, int]:
    fields = _progress_fields(data)
    assignment = None
    if fields.get("assignmentId"):
        assignment = homework.submit(student_id, fields["assignmentId"])

    submission = {
        **fields,
        "studentId": student_id,
        "type": "homework_submission",
        "submittedDate": now_iso(),
        "createdDate": now_iso(),
        "status": "submitted",
    }
    created = ProgressStoreDB().create(submission, doc_id=new_id("submission"))
    return jsonify({"success": True, "submission": created, "assignment": assignment}), 201


def _get_parent_dashboard(student_id: str, data: dict[str, Any], decision: AccessDecision) -> tuple[Any, int]:
    if decision.role != "parent":
        raise AccessDenied("Parent access required", reason=f"Access granted as {decision.role}")
    parent = UserStoreDB().get(current_user.email) or {}
    children = parent.get("children") or []
    if not children:
        return jsonify({
            "success": True,
            "children": [],
            "message": "No children found for this parent account",
        }), 200

    store = ProgressStoreDB()
    dashboard = []
    for child in children:
        records = store.for_student(child)
        dashboard.append({
            "studentId": child,
            "progress": records[:DASHBOARD_RECENT_RECORDS],
            "metrics": calculate_progress_metrics(records),
        })
    return jsonify({"success": True, "children": dashboard}), 200


PROGRESS_ACTIONS = {
    "get-progress": _get_progress,
    "update-progress": _update_progress,
    "get-homework": _get_homework,
    "submit-homework": _submit_homework,
    "get-parent-dashboard": _get_parent_dashboard,
}


@bp.route("/api/student-progress", methods=["POST"])
@login_required
def api_student_progress() -> tuple[Any, int]:
    data = json_body()
    requested = normalize_email(data.get("studentId"))

    # Consent gate first, for every action.
    decision = require_student_access(
        current_user.email,
        requested or None,
        as_teacher=bool(data.get("isTeacher")),
        as_parent=bool(data.get("isParent")),
    )

    action = data.get("action", "")
    handler = PROGRESS_ACTIONS.get(action)
    if handler is None:
        raise ValidationError(f"Invalid action: {action}")
    return handler(requested or current_user.email, data, decision)
