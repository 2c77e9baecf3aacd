"""Exam session routes: autosave, proctoring events, finish and timeout."""

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session

from essay_exams.ai.grader import GradingCollaborator, get_grader
from essay_exams.database import get_session
from essay_exams.deps import require_login
from essay_exams.models import ATTEMPT_OPEN, Exam, User
from essay_exams.routers.problems import problem_to_dict
from essay_exams.services import answer_cache
from essay_exams.services.attempts import (
    AttemptSnapshot,
    finish_attempt,
    get_attempt,
    record_fullscreen_exit,
    record_visibility_change,
    save_answer,
    timeout_attempt,
)
from essay_exams.services.exam_status import exam_problems
from essay_exams.services.timer import Countdown
from essay_exams.utils import utcnow

router = APIRouter()


class AnswerIn(BaseModel):
    answer_text: str = ""


class VisibilityIn(BaseModel):
    state: str


@router.get("/{attempt_id}")
def api_get_attempt(
    attempt_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_login),
):
    """Attempt state with its countdown, problems and, while open, the saved answers."""
    snapshot = get_attempt(session, attempt_id, current_user)
    exam = session.get(Exam, snapshot.exam_id)
    data = snapshot.to_dict()
    data["exam_title"] = exam.title
    data["countdown"] = Countdown(exam.end_time, utcnow()).to_dict()
    data["problems"] = [problem_to_dict(p, current_user) for p in exam_problems(session, exam.id)]
    if snapshot.status == ATTEMPT_OPEN and snapshot.student_id == current_user.id:
        data["answers"] = {str(k): v for k, v in answer_cache.get_all(session, attempt_id).items()}
    return data


@router.put("/{attempt_id}/answers/{problem_id}")
def api_save_answer(
    attempt_id: int,
    problem_id: int,
    payload: AnswerIn = Body(...),
    session: Session = Depends(get_session),
    current_user: User = Depends(require_login),
):
    try:
        entry = save_answer(session, attempt_id, problem_id, payload.answer_text, current_user)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "success", "problem_id": entry.problem_id, "saved_at": entry.saved_at}


@router.post("/{attempt_id}/fullscreen-exit")
def api_fullscreen_exit(
    attempt_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_login),
):
    recorded = record_fullscreen_exit(session, attempt_id, current_user)
    return {"recorded": recorded}


@router.post("/{attempt_id}/visibility")
def api_visibility(
    attempt_id: int,
    payload: VisibilityIn = Body(...),
    session: Session = Depends(get_session),
    current_user: User = Depends(require_login),
):
    try:
        recorded = record_visibility_change(session, attempt_id, payload.state, current_user)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"recorded": recorded}


@router.post("/{attempt_id}/finish")
async def api_finish(
    attempt_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_login),
    grader: GradingCollaborator = Depends(get_grader),
):
    attempt = await finish_attempt(session, attempt_id, current_user, grader)
    return AttemptSnapshot.from_row(attempt).to_dict()


@router.post("/{attempt_id}/timeout")
async def api_timeout(
    attempt_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_login),
    grader: GradingCollaborator = Depends(get_grader),
):
    attempt = await timeout_attempt(session, attempt_id, current_user, grader)
    return AttemptSnapshot.from_row(attempt).to_dict()
