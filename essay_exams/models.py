"""SQLModel tables for the essay exam service."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from essay_exams.utils import utcnow

ROLES = ("student", "teacher", "admin")
PROBLEM_TYPES = ("essay", "reading_comprehension")

ATTEMPT_OPEN = "open"
ATTEMPT_SUBMITTING = "submitting"
ATTEMPT_CLOSED = "closed"


class User(SQLModel, table=True):
    """Application user owning one role (student / teacher / admin)."""

    __table_args__ = (UniqueConstraint("username", name="uq_user_username"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True)
    display_name: str
    password_hash: str
    role: str = Field(default="student")
    created_at: datetime = Field(default_factory=utcnow)


class Classroom(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("join_code", name="uq_classroom_join_code"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    teacher_id: int = Field(foreign_key="user.id")
    join_code: str
    is_public: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)


class ClassroomMember(SQLModel, table=True):
    """Junction table between Classroom and student users."""

    __table_args__ = (
        UniqueConstraint("classroom_id", "student_id", name="uq_classroom_student"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    classroom_id: int = Field(foreign_key="classroom.id")
    student_id: int = Field(foreign_key="user.id")
    joined_at: datetime = Field(default_factory=utcnow)


class Exam(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    description: str = ""
    start_time: datetime
    end_time: datetime
    # Plain shared secret typed in by students, compared as-is
    password: Optional[str] = None
    created_by: int = Field(foreign_key="user.id")
    created_at: datetime = Field(default_factory=utcnow)
    classroom_ids: List[int] = Field(default_factory=list, sa_column=Column(JSON))


class Problem(SQLModel, table=True):
    """An essay or reading-comprehension problem, standalone or part of an exam."""

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    type: str = Field(default="essay")
    created_by: int = Field(foreign_key="user.id")
    created_at: datetime = Field(default_factory=utcnow)
    exam_id: Optional[int] = Field(default=None, foreign_key="exam.id", index=True)
    custom_max_score: float = Field(default=10)
    is_rubric_hidden: bool = Field(default=False)
    disable_paste: bool = Field(default=False)
    classroom_ids: List[int] = Field(default_factory=list, sa_column=Column(JSON))

    # Essay fields
    prompt: Optional[str] = None
    raw_rubric: Optional[str] = None
    rubric_items: List[dict] = Field(default_factory=list, sa_column=Column(JSON))

    # Reading comprehension fields
    passage: Optional[str] = None
    questions: List[dict] = Field(default_factory=list, sa_column=Column(JSON))


class ExamAttempt(SQLModel, table=True):
    """One student's timed engagement with an exam."""

    id: Optional[int] = Field(default=None, primary_key=True)
    exam_id: int = Field(foreign_key="exam.id", index=True)
    student_id: int = Field(foreign_key="user.id", index=True)
    started_at: datetime = Field(default_factory=utcnow)
    submitted_at: Optional[datetime] = None
    status: str = Field(default=ATTEMPT_OPEN)  # open | submitting | closed
    finish_reason: Optional[str] = None  # submitted | timed_out
    fullscreen_exits: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    visibility_state_changes: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    submission_ids: List[int] = Field(default_factory=list, sa_column=Column(JSON))


class AttemptAnswer(SQLModel, table=True):
    """Autosaved free-text answer, kept only while the attempt is open."""

    __table_args__ = (
        UniqueConstraint("attempt_id", "problem_id", name="uq_attempt_problem"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    attempt_id: int = Field(foreign_key="examattempt.id", index=True)
    problem_id: int = Field(foreign_key="problem.id")
    answer_text: str = ""
    saved_at: datetime = Field(default_factory=utcnow)


class Submission(SQLModel, table=True):
    """A graded response. Rows are never updated once written."""

    id: Optional[int] = Field(default=None, primary_key=True)
    problem_id: int = Field(foreign_key="problem.id", index=True)
    submitter_id: int = Field(foreign_key="user.id", index=True)
    essay: Optional[str] = None
    answers: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    feedback: dict = Field(default_factory=dict, sa_column=Column(JSON))
    similarity_check: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    submitted_at: datetime = Field(default_factory=utcnow)
    exam_id: Optional[int] = Field(default=None, foreign_key="exam.id")
    exam_attempt_id: Optional[int] = Field(default=None, foreign_key="examattempt.id")
