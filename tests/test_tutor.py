"""Tests for tutor roster management and homework assignment."""

from __future__ import annotations

from datetime import timedelta

from tests.conftest import STUDENT_EMAIL, TUTOR_EMAIL

OTHER_TUTOR = "other.tutor@brightstars.test"


def _tm(client, action, **payload):
    return client.post("/api/tutor-management", json={"action": action, **payload})


def _seed_homework(app, *items):
    with app.app_context():
        from db_stores import HomeworkStoreDB
        return [HomeworkStoreDB().create(item)["id"] for item in items]


class TestAccess:

    def test_student_is_forbidden(self, student_client):
        resp = _tm(student_client, "get-students")
        assert resp.status_code == 403
        data = resp.get_json()
        assert data["error"] == "Tutor access required"
        assert data["reason"]

    def test_invalid_action(self, tutor_client):
        resp = _tm(tutor_client, "teleport")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid action: teleport"


class TestRoster:

    def test_add_student_creates_record_and_tutor(self, app, tutor_client):
        resp = _tm(tutor_client, "add-student", studentData={
            "email": "Kid@Example.com", "name": "Kid", "yearGroup": "year4", "parentEmail": "mum@example.com",
        })
        assert resp.status_code == 201
        student = resp.get_json()["student"]
        assert student["email"] == "kid@example.com"
        assert student["roles"] == ["student"]
        assert student["assignedTutor"] == TUTOR_EMAIL

        with app.app_context():
            from db_stores import TutorStoreDB
            tutor = TutorStoreDB().get(TUTOR_EMAIL)
        assert tutor["students"] == ["kid@example.com"]
        assert "assign_homework" in tutor["permissions"]

    def test_add_existing_student_is_400(self, tutor_client, seed_user):
        seed_user(STUDENT_EMAIL)
        resp = _tm(tutor_client, "add-student", studentData={"email": STUDENT_EMAIL})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Student already exists"

    def test_dashboard_counts(self, tutor_client):
        _tm(tutor_client, "add-student", studentData={"email": "a@example.com", "yearGroup": "year4"})
        _tm(tutor_client, "add-student", studentData={"email": "b@example.com", "yearGroup": "year5"})
        _tm(tutor_client, "add-student", studentData={"email": "c@example.com", "yearGroup": "year5"})

        metrics = _tm(tutor_client, "get-dashboard").get_json()["metrics"]
        assert metrics["totalStudents"] == 3
        assert metrics["activeStudents"] == 3
        assert metrics["year4Students"] == 1
        assert metrics["year5Students"] == 2
        assert metrics["recentLogins"] == 0

    def test_update_requires_assigned_tutor(self, tutor_client, seed_user):
        seed_user(STUDENT_EMAIL, assignedTutor=OTHER_TUTOR)
        resp = _tm(tutor_client, "update-student", studentData={"email": STUDENT_EMAIL, "name": "Renamed"})
        assert resp.status_code == 403

    def test_remove_deactivates_rather_than_deletes(self, app, tutor_client):
        _tm(tutor_client, "add-student", studentData={"email": "kid@example.com"})
        resp = _tm(tutor_client, "remove-student", studentData={"studentEmail": "kid@example.com"})
        assert resp.status_code == 200

        with app.app_context():
            from db_stores import TutorStoreDB, UserStoreDB
            student = UserStoreDB().get("kid@example.com")
            tutor = TutorStoreDB().get(TUTOR_EMAIL)
        assert student["isActive"] is False
        assert student["assignedTutor"] is None
        assert student["deactivatedBy"] == TUTOR_EMAIL
        assert tutor["students"] == []

    def test_migrate_user_derives_roles(self, tutor_client, seed_user):
        seed_user("legacy@example.com", roles=None, children=["kid@example.com"])
        resp = _tm(tutor_client, "migrate-user", targetUser={"email": "legacy@example.com"})
        user = resp.get_json()["user"]
        assert user["roles"] == ["parent", "student"]
        assert user["yearGroup"] == "year5"
        assert user["migratedBy"] == TUTOR_EMAIL


class TestHomework:

    def test_catalogue_sorted_by_subject_week_title(self, app, tutor_client):
        _seed_homework(
            app,
            {"title": "B", "subject": "maths", "week": 2},
            {"title": "A", "subject": "maths", "week": 10},
            {"title": "C", "subject": "english", "week": 1},
        )
        titles = [h["title"] for h in _tm(tutor_client, "get-available-homework").get_json()["homework"]]
        assert titles == ["C", "B", "A"]

    def test_create_homework_item(self, tutor_client):
        resp = _tm(tutor_client, "create-homework", homework={"title": "Fractions", "subject": "maths", "week": 3})
        assert resp.status_code == 201
        assert resp.get_json()["homework"]["createdBy"] == TUTOR_EMAIL

    def test_fan_out_writes_every_pair(self, app, tutor_client):
        hw_ids = _seed_homework(app, {"title": "One"}, {"title": "Two"})
        students = ["a@example.com", "b@example.com"]

        resp = _tm(tutor_client, "assign-homework", homeworkData={"homeworkIds": hw_ids, "studentEmails": students})
        assert resp.status_code == 201
        data = resp.get_json()
        assert data["message"] == "Successfully assigned 2 homework items to 2 students"
        assignments = data["assignments"]
        assert len(assignments) == 4
        assert {(a["homeworkId"], a["studentEmail"]) for a in assignments} == {
            (h, s) for h in hw_ids for s in students
        }

        with app.app_context():
            from helpers import parse_iso
            for a in assignments:
                assert a["status"] == "assigned"
                assert a["tutorEmail"] == TUTOR_EMAIL
                assert a["grade"] is None
                gap = parse_iso(a["dueDate"]) - parse_iso(a["assignedDate"])
                assert timedelta(days=6, hours=23) < gap <= timedelta(days=7, seconds=1)

    def test_assign_requires_ids_and_students(self, tutor_client):
        resp = _tm(tutor_client, "assign-homework", homeworkData={"homeworkIds": ["x"], "studentEmails": []})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Homework IDs and student emails required"

    def test_student_homework_joins_details(self, app, tutor_client):
        hw_ids = _seed_homework(app, {"title": "Kept"}, {"title": "Gone"})
        _tm(tutor_client, "assign-homework", homeworkData={"homeworkIds": hw_ids, "studentEmails": [STUDENT_EMAIL]})
        with app.app_context():
            from db_stores import HomeworkStoreDB
            HomeworkStoreDB().delete(hw_ids[1])

        assignments = _tm(tutor_client, "get-student-homework", studentEmail=STUDENT_EMAIL).get_json()["assignments"]
        details = {a["homeworkId"]: a["homework"] for a in assignments}
        assert details[hw_ids[0]]["title"] == "Kept"
        assert details[hw_ids[1]] is None

    def test_only_owner_can_remove(self, app, tutor_client, seed_user, make_token):
        hw_ids = _seed_homework(app, {"title": "One"})
        assignment = _tm(tutor_client, "assign-homework", homeworkData={
            "homeworkIds": hw_ids, "studentEmails": [STUDENT_EMAIL],
        }).get_json()["assignments"][0]

        seed_user(OTHER_TUTOR, roles=["tutor"])
        other = app.test_client()
        other.environ_base["HTTP_AUTHORIZATION"] = f"Bearer {make_token(OTHER_TUTOR)}"
        resp = _tm(other, "remove-homework-assignment", assignmentData={"assignmentId": assignment["id"]})
        assert resp.status_code == 403
        assert resp.get_json()["error"] == "You can only remove your own assignments"

        resp = _tm(tutor_client, "remove-homework-assignment", assignmentData={"assignmentId": assignment["id"]})
        assert resp.status_code == 200

    def test_grade_completes_assignment(self, app, tutor_client):
        hw_ids = _seed_homework(app, {"title": "One"})
        assignment = _tm(tutor_client, "assign-homework", homeworkData={
            "homeworkIds": hw_ids, "studentEmails": [STUDENT_EMAIL],
        }).get_json()["assignments"][0]

        resp = _tm(tutor_client, "grade-homework", assignmentData={
            "assignmentId": assignment["id"], "grade": 87, "feedback": "Great work",
        })
        graded = resp.get_json()["assignment"]
        assert graded["status"] == "completed"
        assert graded["grade"] == 87
        assert graded["completedDate"] is not None

    def test_grade_with_stale_etag_is_409(self, app, tutor_client):
        hw_ids = _seed_homework(app, {"title": "One"})
        assignment = _tm(tutor_client, "assign-homework", homeworkData={
            "homeworkIds": hw_ids, "studentEmails": [STUDENT_EMAIL],
        }).get_json()["assignments"][0]
        _tm(tutor_client, "grade-homework", assignmentData={"assignmentId": assignment["id"], "grade": 50})

        resp = _tm(tutor_client, "grade-homework", assignmentData={
            "assignmentId": assignment["id"], "grade": 90, "_etag": assignment["_etag"],
        })
        assert resp.status_code == 409
