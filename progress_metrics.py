"""Derived progress metrics, aggregated on read from StudentProgress records."""

from __future__ import annotations

from typing import Any

ASSIGNMENT_TYPES = ("assignment", "homework")
DONE_STATUSES = ("completed", "submitted")
TREND_BAND = 5


def _score(record: dict[str, Any]) -> float | None:
    value = record.get("score")
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def improvement_trend(scores: list[float]) -> str:
    """Compare the newer half of the scores with the older half.

    ``scores`` are ordered newest first. Needs at least three scores.
    """
    if len(scores) < 3:
        return "neutral"
    half = len(scores) // 2
    recent = scores[:half]
    older = scores[half:]
    recent_avg = sum(recent) / len(recent)
    older_avg = sum(older) / len(older)
    if recent_avg > older_avg + TREND_BAND:
        return "improving"
    if recent_avg < older_avg - TREND_BAND:
        return "declining"
    return "neutral"


def calculate_progress_metrics(records: list[dict[str, Any]]) -> dict[str, Any]:
    """Metrics for a student's records (ordered newest first)."""
    assignments = [r for r in records if r.get("type") in ASSIGNMENT_TYPES]
    completed = [r for r in assignments if r.get("status") in DONE_STATUSES]
    scores = [s for s in (_score(r) for r in assignments) if s is not None]

    average = round(sum(scores) / len(scores), 1) if scores else 0
    last_activity = records[0].get("createdDate") if records else None

    return {
        "totalAssignments": len(assignments),
        "completedAssignments": len(completed),
        "averageScore": average,
        "improvementTrend": improvement_trend(scores),
        "lastActivity": last_activity,
    }
