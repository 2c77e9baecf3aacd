from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, text

import essay_exams.models  # noqa: F401  (registers the tables)
from essay_exams.ai.grader import get_grader
from essay_exams.auth_utils import hash_password
from essay_exams.database import get_session
from essay_exams.main import app
from essay_exams.models import Exam, Problem, User
from essay_exams.services import attempts as attempts_service
from essay_exams.utils import utcnow

# ============================================================================
# IN-MEMORY DATABASE FOR TESTING
# ============================================================================

# Use sqlite:///:memory: with poolclass=StaticPool to share the same in-memory DB across threads
test_engine = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

PASSWORD = "secret123"


@pytest.fixture(scope="session", autouse=True)
def setup_test_db():
    """Create all tables in the test database once per session."""
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture(autouse=True)
def cleanup_db_between_tests():
    """Clean up test data and in-process attempt state after each test."""
    yield

    # Clean up in FK-safe order
    with Session(test_engine) as session:
        session.exec(text("DELETE FROM submission"))
        session.exec(text("DELETE FROM attemptanswer"))
        session.exec(text("DELETE FROM examattempt"))
        session.exec(text("DELETE FROM problem"))
        session.exec(text("DELETE FROM exam"))
        session.exec(text("DELETE FROM classroommember"))
        session.exec(text("DELETE FROM classroom"))
        session.exec(text("DELETE FROM user"))
        session.commit()
    attempts_service.attempt_cache.clear()
    attempts_service._triggers.clear()


@pytest.fixture
def session():
    with Session(test_engine) as session:
        yield session


# ============================================================================
# SCRIPTED GRADING COLLABORATOR
# ============================================================================


class FakeGrader:
    """GradingCollaborator double with scripted answers.

    ``grade_result`` is returned for every essay unless the essay text is in
    ``failing_essays`` (raises) or ``grade_result`` is callable.
    """

    def __init__(self):
        self.grade_calls = []
        self.similarity_calls = []
        self.failing_essays = set()
        self.grade_result = None
        self.grade_delay = 0.0
        self.rubric_result = [{"criterion": "Thesis", "maxScore": 4}, {"criterion": "Evidence", "maxScore": 6}]
        self.rubric_error = None
        self.similarity_result = {
            "similarityPercentage": 12,
            "explanation": "Different arguments.",
            "mostSimilarEssayIndex": 0,
        }
        self.similarity_error = None
        self.short_answer_result = None
        self.short_answer_error = None

    async def grade(self, prompt, essay, rubric_items, raw_rubric, target_max_score, *, instructions):
        import asyncio

        self.grade_calls.append(
            {"prompt": prompt, "essay": essay, "target_max_score": target_max_score, "instructions": instructions}
        )
        if self.grade_delay:
            await asyncio.sleep(self.grade_delay)
        if essay in self.failing_essays:
            raise RuntimeError("grading service unavailable")
        if callable(self.grade_result):
            return self.grade_result(essay, target_max_score)
        if self.grade_result is not None:
            return self.grade_result
        return {
            "detailedFeedback": [{"criterion": "Overall", "score": 7, "feedback": "Clear structure."}],
            "totalScore": 7,
            "maxScore": target_max_score,
            "generalSuggestions": ["Add more evidence."],
        }

    async def parse_rubric(self, raw_text):
        if self.rubric_error:
            raise self.rubric_error
        return self.rubric_result

    async def check_similarity(self, new_essay, prior_essays):
        self.similarity_calls.append((new_essay, list(prior_essays)))
        if self.similarity_error:
            raise self.similarity_error
        return self.similarity_result

    async def grade_short_answers(self, passage, items):
        if self.short_answer_error:
            raise self.short_answer_error
        if self.short_answer_result is not None:
            return self.short_answer_result
        return [{"questionId": i["questionId"], "score": i["maxScore"], "feedback": "Good."} for i in items]


@pytest.fixture
def grader():
    return FakeGrader()


# ============================================================================
# FASTAPI APP & TEST CLIENT
# ============================================================================


@pytest.fixture
def client(grader):
    def override_get_session():
        # Must use the same test_engine instance that has tables
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_grader] = lambda: grader
    yield TestClient(app)
    app.dependency_overrides.clear()


def login(client, username, password=PASSWORD):
    response = client.post("/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return response


# ============================================================================
# DATA FIXTURES
# ============================================================================


@pytest.fixture
def make_user(session):
    def _make(username, role="student", display_name=None):
        user = User(
            username=username,
            display_name=display_name or username.title(),
            password_hash=hash_password(PASSWORD),
            role=role,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        return user

    return _make


@pytest.fixture
def student_user(make_user):
    return make_user("student1")


@pytest.fixture
def other_student(make_user):
    return make_user("student2")


@pytest.fixture
def teacher_user(make_user):
    return make_user("teacher1", role="teacher")


@pytest.fixture
def admin_user(make_user):
    return make_user("admin1", role="admin")


@pytest.fixture
def make_exam(session, teacher_user):
    def _make(start_offset=timedelta(minutes=-10), end_offset=timedelta(minutes=50), password=None,
              problems=3, classroom_ids=None):
        now = utcnow()
        exam = Exam(
            title="Literature midterm",
            start_time=now + start_offset,
            end_time=now + end_offset,
            password=password,
            created_by=teacher_user.id,
            classroom_ids=classroom_ids or [],
        )
        session.add(exam)
        session.commit()
        session.refresh(exam)
        for i in range(problems):
            session.add(
                Problem(
                    title=f"Essay {i + 1}",
                    type="essay",
                    created_by=teacher_user.id,
                    exam_id=exam.id,
                    prompt=f"Discuss theme {i + 1}.",
                )
            )
        session.commit()
        return exam

    return _make


@pytest.fixture
def ongoing_exam(make_exam):
    return make_exam()


@pytest.fixture
def practice_problem(session, teacher_user):
    problem = Problem(
        title="Practice essay",
        type="essay",
        created_by=teacher_user.id,
        prompt="Describe your hometown.",
        rubric_items=[
            {"id": "c-open", "criterion": "Mở bài", "max_score": 2},
            {"id": "c-body", "criterion": "Thân bài", "max_score": 6},
        ],
    )
    session.add(problem)
    session.commit()
    session.refresh(problem)
    return problem
