"""Lesson CRUD and the content listing used by the lessons page."""

from __future__ import annotations

import logging
from typing import Any

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from db_stores import LessonStoreDB, new_id
from errors import AccessDenied, NotFound, ValidationError
from helpers import json_body, now_iso

logger = logging.getLogger(__name__)

bp = Blueprint("lessons", __name__)

DEFAULT_ACTIONS = {"GET": "get", "POST": "create", "PUT": "update", "DELETE": "delete"}
CONTENT_GROUPS = {
    "year-plan": "yearPlan",
    "lesson-material": "lessonMaterials",
    "extra-resource": "extraResources",
}
SUMMARY_YEAR_GROUPS = ("year4", "year5")
SUMMARY_SUBJECTS = ("maths", "english", "general")
DEFAULT_CONTENT_LIMIT = 50


def _require_admin() -> None:
    if not current_user.is_admin:
        raise AccessDenied("Admin access required", reason=f"{current_user.email} is not an admin")


def _lesson_id(lesson: dict[str, Any]) -> str:
    lesson_id = lesson.get("id")
    if not lesson_id:
        raise ValidationError("Lesson ID required")
    return str(lesson_id)


def _get(lesson: dict[str, Any]) -> tuple[Any, int]:
    lessons = LessonStoreDB().listing(include_unpublished=current_user.is_admin)
    return jsonify({"success": True, "lessons": lessons}), 200


def _create(lesson: dict[str, Any]) -> tuple[Any, int]:
    _require_admin()
    now = now_iso()
    record = {
        "published": True,
        "visible": True,
        **{k: v for k, v in lesson.items() if k not in ("id", "_etag")},
        "createdDate": now,
        "updatedDate": now,
        "createdBy": current_user.email,
    }
    created = LessonStoreDB().create(record, doc_id=new_id("lesson"))
    logger.info("Lesson %s created by %s", created["id"], current_user.email)
    return jsonify({"success": True, "lesson": created}), 201


def _update(lesson: dict[str, Any]) -> tuple[Any, int]:
    _require_admin()
    lesson_id = _lesson_id(lesson)
    store = LessonStoreDB()
    existing = store.require(lesson_id, "Lesson not found")
    updated = {
        **existing,
        **{k: v for k, v in lesson.items() if k not in ("id", "_etag", "createdDate", "createdBy")},
        "updatedDate": now_iso(),
        "updatedBy": current_user.email,
    }
    saved = store.replace(lesson_id, updated, if_match=lesson.get("_etag") or existing["_etag"])
    return jsonify({"success": True, "lesson": saved}), 200


def _delete(lesson: dict[str, Any]) -> tuple[Any, int]:
    _require_admin()
    lesson_id = _lesson_id(lesson)
    if not LessonStoreDB().delete(lesson_id, if_match=lesson.get("_etag")):
        raise NotFound("Lesson not found")
    logger.info("Lesson %s deleted by %s", lesson_id, current_user.email)
    return jsonify({"success": True, "message": "Lesson deleted successfully"}), 200


LESSON_ACTIONS = {"get": _get, "create": _create, "update": _update, "delete": _delete}


@bp.route("/api/lessons", methods=["GET", "POST", "PUT", "DELETE"])
@login_required
def api_lessons() -> tuple[Any, int]:
    data = json_body()
    action = data.get("action") or request.args.get("action") or DEFAULT_ACTIONS[request.method]
    handler = LESSON_ACTIONS.get(action)
    if handler is None:
        raise ValidationError(f"Invalid action: {action}")
    return handler(data.get("lesson") or {})


def _content_summary(content: list[dict[str, Any]], organized: dict[str, list]) -> dict[str, Any]:
    return {
        "total": len(content),
        **{group: len(organized[group]) for group in CONTENT_GROUPS.values()},
        "byYearGroup": {
            yg: sum(1 for item in content if item.get("yearGroup") == yg) for yg in SUMMARY_YEAR_GROUPS
        },
        "bySubject": {
            **{s: sum(1 for item in content if item.get("subject") == s) for s in SUMMARY_SUBJECTS},
            "other": sum(1 for item in content if item.get("subject") not in SUMMARY_SUBJECTS),
        },
    }


@bp.route("/api/get-content", methods=["GET"])
@login_required
def api_get_content() -> Any:
    args = request.args

    def _filter(name: str) -> str | None:
        value = args.get(name)
        return None if value in (None, "", "all") else value

    try:
        limit = int(args.get("limit") or DEFAULT_CONTENT_LIMIT)
    except ValueError:
        raise ValidationError("limit must be an integer")

    content = LessonStoreDB().search(
        content_type=_filter("type"),
        year_group=args.get("yearGroup") or None,
        subject=_filter("subject"),
        category=_filter("category"),
        include_unpublished=current_user.is_admin,
        limit=limit,
    )

    organized: dict[str, list] = {group: [] for group in CONTENT_GROUPS.values()}
    for item in content:
        group = CONTENT_GROUPS.get(item.get("type"))
        if group:
            organized[group].append(item)
    organized["all"] = content

    return jsonify({
        "success": True,
        "content": organized,
        "summary": _content_summary(content, organized),
        "query": {
            "contentType": args.get("type"),
            "yearGroup": args.get("yearGroup"),
            "subject": args.get("subject"),
            "category": args.get("category"),
            "limit": limit,
            "isAdmin": current_user.is_admin,
        },
    })
