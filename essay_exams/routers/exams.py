"""Exam routes: scheduling, starting an attempt and monitoring."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlmodel import Session, select

from essay_exams.database import get_session
from essay_exams.deps import require_login, require_role
from essay_exams.models import Classroom, Exam, ExamAttempt, User
from essay_exams.routers.problems import STAFF_ROLES, is_staff, problem_to_dict
from essay_exams.services.attempts import AttemptSnapshot, start_attempt
from essay_exams.services.exam_status import (
    ONGOING,
    exam_problems,
    exam_status,
    monitoring_view,
    problem_count,
    visible_to_student,
)
from essay_exams.services.timer import Countdown
from essay_exams.utils import sanitize_plain_text, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


class ExamIn(BaseModel):
    title: str
    description: str = ""
    start_time: datetime
    end_time: datetime
    password: Optional[str] = None
    classroom_ids: List[int] = Field(default_factory=list)


class StartIn(BaseModel):
    password: Optional[str] = None


def _student_attempt(session: Session, exam_id: int, student_id: int) -> Optional[ExamAttempt]:
    stmt = (
        select(ExamAttempt)
        .where((ExamAttempt.exam_id == exam_id) & (ExamAttempt.student_id == student_id))
        .order_by(ExamAttempt.id.desc())
    )
    return session.exec(stmt).first()


def exam_to_dict(session: Session, exam: Exam, viewer: User, now: datetime) -> dict:
    data = {
        "id": exam.id,
        "title": exam.title,
        "description": exam.description,
        "start_time": exam.start_time,
        "end_time": exam.end_time,
        "has_password": bool(exam.password),
        "created_by": exam.created_by,
        "created_at": exam.created_at,
        "classroom_ids": list(exam.classroom_ids or []),
        "status": exam_status(exam, now),
        "problem_count": problem_count(session, exam),
    }
    if data["status"] == ONGOING:
        data["countdown"] = Countdown(exam.end_time, now).to_dict()
    if viewer.role == "student":
        attempt = _student_attempt(session, exam.id, viewer.id)
        data["attempt"] = AttemptSnapshot.from_row(attempt).to_dict() if attempt else None
    return data


def _get_exam(session: Session, exam_id: int, user: User) -> Exam:
    exam = session.get(Exam, exam_id)
    if not exam:
        raise HTTPException(status_code=404, detail="Exam not found")
    if user.role == "student" and not visible_to_student(session, exam.classroom_ids, user):
        raise HTTPException(status_code=404, detail="Exam not found")
    return exam


@router.post("", status_code=status.HTTP_201_CREATED)
def create_exam(
    payload: ExamIn = Body(...),
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role(list(STAFF_ROLES))),
):
    title = sanitize_plain_text(payload.title)
    if not title:
        raise HTTPException(status_code=400, detail="Title is required")
    start_time = to_naive_utc(payload.start_time)
    end_time = to_naive_utc(payload.end_time)
    if end_time <= start_time:
        raise HTTPException(status_code=400, detail="End time must be after start time")
    for classroom_id in payload.classroom_ids:
        if not session.get(Classroom, classroom_id):
            raise HTTPException(status_code=400, detail=f"Classroom {classroom_id} does not exist")

    exam = Exam(
        title=title,
        description=sanitize_plain_text(payload.description or ""),
        start_time=start_time,
        end_time=end_time,
        password=payload.password or None,
        created_by=current_user.id,
        classroom_ids=list(payload.classroom_ids),
    )
    session.add(exam)
    session.commit()
    session.refresh(exam)
    logger.info("Exam %s scheduled by user %s", exam.id, current_user.id)
    return exam_to_dict(session, exam, current_user, utcnow())


@router.get("")
def list_exams(
    session: Session = Depends(get_session),
    current_user: User = Depends(require_login),
):
    """Admins see every exam, teachers their own, students those assigned to them."""
    stmt = select(Exam).order_by(Exam.start_time.desc())
    if current_user.role == "teacher":
        stmt = stmt.where(Exam.created_by == current_user.id)
    exams = session.exec(stmt).all()
    if current_user.role == "student":
        exams = [e for e in exams if visible_to_student(session, e.classroom_ids, current_user)]
    now = utcnow()
    return [exam_to_dict(session, e, current_user, now) for e in exams]


@router.get("/{exam_id}")
def get_exam(
    exam_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_login),
):
    """Exam details. Problems are listed for staff and for students who started it."""
    exam = _get_exam(session, exam_id, current_user)
    data = exam_to_dict(session, exam, current_user, utcnow())
    if is_staff(current_user) or data.get("attempt"):
        data["problems"] = [problem_to_dict(p, current_user) for p in exam_problems(session, exam.id)]
    return data


@router.post("/{exam_id}/start")
def start_exam(
    exam_id: int,
    payload: Optional[StartIn] = Body(None),
    session: Session = Depends(get_session),
    current_user: User = Depends(require_login),
):
    """Start or resume the current student's attempt."""
    exam = _get_exam(session, exam_id, current_user)
    password = payload.password if payload else None
    attempt = start_attempt(session, exam, current_user, password=password)
    return AttemptSnapshot.from_row(attempt).to_dict()


@router.get("/{exam_id}/monitoring")
def exam_monitoring(
    exam_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role(list(STAFF_ROLES))),
):
    exam = _get_exam(session, exam_id, current_user)
    if current_user.role != "admin" and exam.created_by != current_user.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return monitoring_view(session, exam)
