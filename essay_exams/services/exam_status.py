"""Derived exam views: status, problem and attempt lookups, monitoring."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from essay_exams.models import ClassroomMember, Exam, ExamAttempt, Problem, User
from essay_exams.utils import utcnow

UPCOMING = "upcoming"
ONGOING = "ongoing"
ENDED = "ended"


def exam_status(exam: Exam, now: Optional[datetime] = None) -> str:
    """upcoming before start_time, ended after end_time, ongoing in between (inclusive)."""
    now = now or utcnow()
    if now < exam.start_time:
        return UPCOMING
    if now > exam.end_time:
        return ENDED
    return ONGOING


def exam_problems(session: Session, exam_id: int) -> List[Problem]:
    return list(session.exec(select(Problem).where(Problem.exam_id == exam_id).order_by(Problem.id)).all())


def problem_count(session: Session, exam: Exam) -> int:
    return session.exec(select(func.count()).select_from(Problem).where(Problem.exam_id == exam.id)).one()


def attempts_for(session: Session, exam: Exam) -> List[ExamAttempt]:
    return list(
        session.exec(select(ExamAttempt).where(ExamAttempt.exam_id == exam.id).order_by(ExamAttempt.id)).all()
    )


def visible_to_student(session: Session, classroom_ids: Iterable[int], student: User) -> bool:
    """Items without classrooms are visible to everyone; otherwise membership is required."""
    classroom_ids = list(classroom_ids or [])
    if not classroom_ids:
        return True
    stmt = select(ClassroomMember).where(
        (ClassroomMember.student_id == student.id) & (ClassroomMember.classroom_id.in_(classroom_ids))
    )
    return session.exec(stmt).first() is not None


def monitoring_view(session: Session, exam: Exam, now: Optional[datetime] = None) -> dict:
    """Per-attempt integrity summary plus a violation timeline, newest first."""
    attempts = attempts_for(session, exam)
    student_ids = {a.student_id for a in attempts}
    names = {}
    if student_ids:
        users = session.exec(select(User).where(User.id.in_(sorted(student_ids)))).all()
        names = {u.id: u.display_name for u in users}

    rows = []
    timeline = []
    for a in attempts:
        hidden = [c for c in a.visibility_state_changes or [] if c.get("state") == "hidden"]
        rows.append(
            {
                "attempt_id": a.id,
                "student_id": a.student_id,
                "student_name": names.get(a.student_id, ""),
                "status": a.status,
                "finish_reason": a.finish_reason,
                "started_at": a.started_at,
                "submitted_at": a.submitted_at,
                "fullscreen_exit_count": len(a.fullscreen_exits or []),
                "visibility_change_count": len(hidden),
                "submission_count": len(a.submission_ids or []),
            }
        )
        for ts in a.fullscreen_exits or []:
            timeline.append(
                {"attempt_id": a.id, "student_id": a.student_id, "student_name": names.get(a.student_id, ""),
                 "type": "fullscreen_exit", "timestamp": ts}
            )
        for change in hidden:
            timeline.append(
                {"attempt_id": a.id, "student_id": a.student_id, "student_name": names.get(a.student_id, ""),
                 "type": "visibility_hidden", "timestamp": change.get("timestamp")}
            )

    # ISO timestamps sort chronologically as strings
    timeline.sort(key=lambda event: event["timestamp"] or "", reverse=True)
    return {
        "exam_id": exam.id,
        "title": exam.title,
        "status": exam_status(exam, now),
        "problem_count": problem_count(session, exam),
        "attempts": rows,
        "timeline": timeline,
    }
