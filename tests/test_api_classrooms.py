"""Classrooms: join codes, membership and classroom-restricted visibility."""

from datetime import timedelta

from conftest import login

from essay_exams.auth_utils import JOIN_CODE_ALPHABET, JOIN_CODE_LENGTH
from essay_exams.utils import utcnow


def _create_classroom(client, name="10A1"):
    response = client.post("/classrooms", json={"name": name})
    assert response.status_code == 201, response.text
    return response.json()


class TestClassrooms:
    def test_join_code_format(self, client, teacher_user):
        login(client, teacher_user.username)
        code = _create_classroom(client)["join_code"]

        assert len(code) == JOIN_CODE_LENGTH
        assert set(code) <= set(JOIN_CODE_ALPHABET)

    def test_join_list_leave(self, client, teacher_user, student_user):
        login(client, teacher_user.username)
        classroom = _create_classroom(client)

        login(client, student_user.username)
        joined = client.post("/classrooms/join", json={"join_code": classroom["join_code"].lower()})
        assert joined.status_code == 200
        assert "join_code" not in joined.json()
        assert client.post("/classrooms/join", json={"join_code": classroom["join_code"]}).status_code == 409
        assert [c["id"] for c in client.get("/classrooms").json()] == [classroom["id"]]

        assert client.post(f"/classrooms/{classroom['id']}/leave").status_code == 200
        assert client.get("/classrooms").json() == []

    def test_unknown_code(self, client, student_user):
        login(client, student_user.username)
        assert client.post("/classrooms/join", json={"join_code": "ZZZZZZ"}).status_code == 404

    def test_teacher_removes_student(self, client, teacher_user, student_user):
        login(client, teacher_user.username)
        classroom = _create_classroom(client)
        login(client, student_user.username)
        client.post("/classrooms/join", json={"join_code": classroom["join_code"]})

        login(client, teacher_user.username)
        detail = client.get(f"/classrooms/{classroom['id']}").json()
        assert [s["id"] for s in detail["students"]] == [student_user.id]

        response = client.delete(f"/classrooms/{classroom['id']}/students/{student_user.id}")
        assert response.status_code == 200
        assert client.get(f"/classrooms/{classroom['id']}").json()["member_count"] == 0

    def test_students_cannot_create(self, client, student_user):
        login(client, student_user.username)
        assert client.post("/classrooms", json={"name": "Mine"}).status_code == 403


class TestClassroomVisibility:
    def test_restricted_problem_and_exam(self, client, teacher_user, student_user, other_student):
        login(client, teacher_user.username)
        classroom = _create_classroom(client)
        problem = client.post(
            "/problems",
            json={"title": "Members only", "type": "essay", "prompt": "Write.", "classroom_ids": [classroom["id"]]},
        ).json()
        now = utcnow()
        exam = client.post(
            "/exams",
            json={
                "title": "Members exam",
                "start_time": (now - timedelta(minutes=5)).isoformat(),
                "end_time": (now + timedelta(minutes=30)).isoformat(),
                "classroom_ids": [classroom["id"]],
            },
        ).json()

        login(client, student_user.username)
        client.post("/classrooms/join", json={"join_code": classroom["join_code"]})
        assert client.get(f"/problems/{problem['id']}").status_code == 200
        assert client.post(f"/exams/{exam['id']}/start").status_code == 200

        login(client, other_student.username)
        assert client.get(f"/problems/{problem['id']}").status_code == 404
        assert client.get("/problems").json() == []
        assert client.get(f"/exams/{exam['id']}").status_code == 404
        assert client.get("/exams").json() == []
