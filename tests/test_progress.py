"""Tests for the consent gate, student progress and progress metrics."""

from __future__ import annotations

import pytest

from tests.conftest import PARENT_EMAIL, STUDENT_EMAIL, TUTOR_EMAIL


def _progress(client, action, **payload):
    return client.post("/api/student-progress", json={"action": action, **payload})


def _seed_progress(app, *records):
    with app.app_context():
        from db_stores import ProgressStoreDB
        for record in records:
            ProgressStoreDB().create({"studentId": STUDENT_EMAIL, **record})


class TestConsentGate:

    def test_unknown_caller(self, app):
        with app.app_context():
            from permissions import check_student_access
            decision = check_student_access("nobody@example.com")
        assert not decision.has_access
        assert decision.reason == "User not found"

    def test_consent_required_before_anything(self, app, seed_user):
        seed_user(TUTOR_EMAIL, roles=["tutor"], dataProcessingConsent=False)
        with app.app_context():
            from permissions import check_student_access
            decision = check_student_access(TUTOR_EMAIL, STUDENT_EMAIL, as_teacher=True)
        assert decision.reason == "Data processing consent required"

    def test_teacher_flag_needs_corroboration(self, app, seed_user):
        seed_user(STUDENT_EMAIL, roles=["student"])
        with app.app_context():
            from permissions import check_student_access
            decision = check_student_access(STUDENT_EMAIL, "someone.else@example.com", as_teacher=True)
        assert not decision.has_access
        assert decision.reason == "Insufficient permissions"

    def test_teacher_granted(self, app, seed_user):
        seed_user(TUTOR_EMAIL, userType="tutor")
        with app.app_context():
            from permissions import check_student_access
            decision = check_student_access(TUTOR_EMAIL, STUDENT_EMAIL, as_teacher=True)
        assert decision.has_access and decision.role == "teacher"

    @pytest.mark.parametrize("target, expected", [
        (STUDENT_EMAIL, True),
        ("stranger@example.com", False),
    ])
    def test_parent_only_own_children(self, app, seed_user, target, expected):
        seed_user(PARENT_EMAIL, roles=["parent"], children=[STUDENT_EMAIL])
        with app.app_context():
            from permissions import check_student_access
            decision = check_student_access(PARENT_EMAIL, target, as_parent=True)
        assert decision.has_access is expected
        if not expected:
            assert decision.reason == "Parent can only access own children data"

    def test_self_access(self, app, seed_user):
        seed_user(STUDENT_EMAIL)
        with app.app_context():
            from permissions import check_student_access
            assert check_student_access(STUDENT_EMAIL).role == "student"
            assert check_student_access(STUDENT_EMAIL, STUDENT_EMAIL.upper()).role == "student"

    def test_route_denies_without_consent(self, app, seed_user, make_token):
        seed_user(STUDENT_EMAIL, dataProcessingConsent=False)
        client = app.test_client()
        client.environ_base["HTTP_AUTHORIZATION"] = f"Bearer {make_token(STUDENT_EMAIL)}"
        resp = _progress(client, "get-progress")
        assert resp.status_code == 403
        assert resp.get_json() == {
            "success": False,
            "error": "Access denied",
            "reason": "Data processing consent required",
        }

    def test_gate_runs_before_action_validation(self, app, seed_user, make_token):
        seed_user(STUDENT_EMAIL, dataProcessingConsent=False)
        client = app.test_client()
        client.environ_base["HTTP_AUTHORIZATION"] = f"Bearer {make_token(STUDENT_EMAIL)}"
        assert _progress(client, "not-an-action").status_code == 403


class TestProgressRoutes:

    def test_get_progress_with_metrics(self, app, student_client):
        _seed_progress(
            app,
            {"type": "assignment", "score": 60, "status": "completed", "createdDate": "2026-01-01T00:00:00.000Z"},
            {"type": "homework", "score": 70, "status": "submitted", "createdDate": "2026-01-02T00:00:00.000Z"},
            {"type": "assignment", "score": 80, "status": "assigned", "createdDate": "2026-01-03T00:00:00.000Z"},
            {"type": "note", "createdDate": "2026-01-04T00:00:00.000Z"},
        )
        data = _progress(student_client, "get-progress").get_json()
        assert [r["createdDate"][:10] for r in data["progress"]] == [
            "2026-01-04", "2026-01-03", "2026-01-02", "2026-01-01",
        ]
        assert data["metrics"] == {
            "totalAssignments": 3,
            "completedAssignments": 2,
            "averageScore": 70.0,
            "improvementTrend": "improving",
            "lastActivity": "2026-01-04T00:00:00.000Z",
        }

    def test_update_progress_needs_teacher(self, student_client):
        resp = _progress(student_client, "update-progress", isTeacher=True,
                         studentId=STUDENT_EMAIL, progressData={"type": "assignment", "score": 90})
        assert resp.status_code == 403
        assert resp.get_json()["error"] == "Teacher access required"

    def test_update_progress_by_tutor(self, app, tutor_client, seed_user):
        seed_user(STUDENT_EMAIL, dataProcessingConsent=True)
        resp = _progress(tutor_client, "update-progress", isTeacher=True,
                         studentId=STUDENT_EMAIL, progressData={"type": "assignment", "score": 90})
        assert resp.status_code == 201
        record = resp.get_json()["progress"]
        assert record["createdBy"] == TUTOR_EMAIL
        assert record["studentId"] == STUDENT_EMAIL
        assert record["dataProcessingConsent"] is True

    def test_submit_homework_transitions_assignment(self, app, student_client):
        with app.app_context():
            from db_stores import HomeworkAssignmentStoreDB
            assignment = HomeworkAssignmentStoreDB().create({
                "studentEmail": STUDENT_EMAIL, "tutorEmail": TUTOR_EMAIL, "status": "assigned",
                "assignedDate": "2026-01-01T00:00:00.000Z",
            }, doc_id="hw_1")

        resp = _progress(student_client, "submit-homework", progressData={"assignmentId": assignment["id"]})
        assert resp.status_code == 201
        data = resp.get_json()
        assert data["submission"]["type"] == "homework_submission"
        assert data["submission"]["status"] == "submitted"
        assert data["assignment"]["status"] == "submitted"

        homework = _progress(student_client, "get-homework").get_json()
        assert [a["status"] for a in homework["assignments"]] == ["submitted"]

    def test_parent_dashboard(self, app, parent_client, seed_user):
        seed_user(STUDENT_EMAIL)
        _seed_progress(app, *[
            {"type": "assignment", "score": 50 + i, "createdDate": f"2026-02-{i + 1:02d}T00:00:00.000Z"}
            for i in range(12)
        ])
        resp = _progress(parent_client, "get-parent-dashboard", isParent=True, studentId=STUDENT_EMAIL)
        assert resp.status_code == 200
        children = resp.get_json()["children"]
        assert len(children) == 1
        assert children[0]["studentId"] == STUDENT_EMAIL
        assert len(children[0]["progress"]) == 10
        assert children[0]["metrics"]["totalAssignments"] == 12

    def test_parent_dashboard_requires_parent_role(self, student_client):
        resp = _progress(student_client, "get-parent-dashboard")
        assert resp.status_code == 403
        assert resp.get_json()["error"] == "Parent access required"

    def test_invalid_action(self, student_client):
        resp = _progress(student_client, "rewrite-history")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid action: rewrite-history"


class TestMetrics:

    def test_empty(self):
        from progress_metrics import calculate_progress_metrics
        assert calculate_progress_metrics([]) == {
            "totalAssignments": 0,
            "completedAssignments": 0,
            "averageScore": 0,
            "improvementTrend": "neutral",
            "lastActivity": None,
        }

    @pytest.mark.parametrize("scores, trend", [
        ([90, 80], "neutral"),
        ([90, 60, 50], "improving"),
        ([50, 80, 90], "declining"),
        ([72, 70, 69, 71], "neutral"),
    ])
    def test_trend(self, scores, trend):
        from progress_metrics import improvement_trend
        assert improvement_trend(scores) == trend
