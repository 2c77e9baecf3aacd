"""Problem routes: authoring, practice submissions and per-problem analytics."""

import logging
import math
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlmodel import Session, select

from essay_exams.ai.grader import GradingCollaborator, get_grader
from essay_exams.config import get_settings
from essay_exams.database import get_session
from essay_exams.deps import require_login, require_role
from essay_exams.models import PROBLEM_TYPES, Classroom, Exam, ExamAttempt, Problem, Submission, User
from essay_exams.schemas import Answer, Question
from essay_exams.services.exam_status import visible_to_student
from essay_exams.services.grading import grade_problem, grade_reading_comprehension, similarity_or_none
from essay_exams.services.ledger import (
    best_submissions,
    create_submission,
    criterion_analysis,
    history_for,
    prior_essays,
    submission_score,
    submissions_for_problem,
)
from essay_exams.services.rubric import derive_criteria, parse_rubric_strict, validate_rubric_items
from essay_exams.utils import sanitize_plain_text, sanitize_prompt_text

logger = logging.getLogger(__name__)

router = APIRouter()

STAFF_ROLES = ("teacher", "admin")


# --- Request schemas ---


class ProblemIn(BaseModel):
    title: str
    type: str = "essay"
    exam_id: Optional[int] = None
    classroom_ids: List[int] = Field(default_factory=list)
    custom_max_score: float = 10
    is_rubric_hidden: bool = False
    disable_paste: bool = False
    # essay
    prompt: Optional[str] = None
    raw_rubric: Optional[str] = None
    rubric_items: List[dict] = Field(default_factory=list)
    # reading comprehension
    passage: Optional[str] = None
    questions: List[Question] = Field(default_factory=list)


class RubricTextIn(BaseModel):
    raw_rubric: str


class SubmissionIn(BaseModel):
    essay: Optional[str] = None
    answers: List[Answer] = Field(default_factory=list)


# --- Serialization ---


def is_staff(user: User) -> bool:
    return user.role in STAFF_ROLES


def problem_to_dict(problem: Problem, viewer: User) -> dict:
    """Problem as seen by ``viewer``: students never see answer keys or hidden rubrics."""
    staff = is_staff(viewer)
    data = {
        "id": problem.id,
        "title": problem.title,
        "type": problem.type,
        "created_by": problem.created_by,
        "created_at": problem.created_at,
        "exam_id": problem.exam_id,
        "classroom_ids": list(problem.classroom_ids or []),
        "custom_max_score": problem.custom_max_score,
        "is_rubric_hidden": problem.is_rubric_hidden,
        "disable_paste": problem.disable_paste,
        "prompt": problem.prompt,
        "passage": problem.passage,
    }
    if staff or not problem.is_rubric_hidden:
        data["raw_rubric"] = problem.raw_rubric
        data["rubric_items"] = list(problem.rubric_items or [])
    questions = [dict(q) for q in problem.questions or []]
    if not staff:
        for q in questions:
            q.pop("correct_option_id", None)
            q.pop("grading_criteria", None)
    data["questions"] = questions
    return data


def submission_to_dict(submission: Submission) -> dict:
    return {
        "id": submission.id,
        "problem_id": submission.problem_id,
        "submitter_id": submission.submitter_id,
        "essay": submission.essay,
        "answers": list(submission.answers or []),
        "feedback": submission.feedback,
        "similarity_check": submission.similarity_check,
        "submitted_at": submission.submitted_at,
        "exam_id": submission.exam_id,
        "exam_attempt_id": submission.exam_attempt_id,
    }


# --- Access helpers ---


def _has_attempt(session: Session, exam_id: int, student_id: int) -> bool:
    stmt = select(ExamAttempt).where((ExamAttempt.exam_id == exam_id) & (ExamAttempt.student_id == student_id))
    return session.exec(stmt).first() is not None


def get_visible_problem(session: Session, problem_id: int, user: User) -> Problem:
    """Load a problem the user may see; anything else looks like a missing problem."""
    problem = session.get(Problem, problem_id)
    if not problem:
        raise HTTPException(status_code=404, detail="Problem not found")
    if user.role == "student":
        if problem.exam_id is not None:
            # Exam problems are revealed once the student has started the exam
            if not _has_attempt(session, problem.exam_id, user.id):
                raise HTTPException(status_code=404, detail="Problem not found")
        elif not visible_to_student(session, problem.classroom_ids, user):
            raise HTTPException(status_code=404, detail="Problem not found")
    return problem


def _validate_questions(questions: List[Question]) -> None:
    if not questions:
        raise HTTPException(status_code=400, detail="Add at least one question")
    for q in questions:
        if not q.question_text.strip():
            raise HTTPException(status_code=400, detail="Question text cannot be empty")
        if not math.isfinite(q.max_score) or q.max_score <= 0:
            raise HTTPException(status_code=400, detail="Question max score must be positive")
        if q.question_type == "multiple_choice":
            if len(q.options) < 2:
                raise HTTPException(status_code=400, detail="Multiple-choice questions need at least two options")
            if q.correct_option_id not in {o.id for o in q.options}:
                raise HTTPException(status_code=400, detail="Pick the correct option for every multiple-choice question")


# --- Authoring ---


@router.post("/problems", status_code=status.HTTP_201_CREATED)
def create_problem(
    payload: ProblemIn = Body(...),
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role(list(STAFF_ROLES))),
):
    title = sanitize_plain_text(payload.title)
    if not title:
        raise HTTPException(status_code=400, detail="Title is required")
    if payload.type not in PROBLEM_TYPES:
        raise HTTPException(status_code=400, detail=f"Type must be one of: {', '.join(PROBLEM_TYPES)}")

    if payload.exam_id is not None:
        exam = session.get(Exam, payload.exam_id)
        if not exam:
            raise HTTPException(status_code=404, detail="Exam not found")
        if current_user.role != "admin" and exam.created_by != current_user.id:
            raise HTTPException(status_code=403, detail="Forbidden")
    else:
        duplicate = session.exec(
            select(Problem).where(Problem.exam_id.is_(None)).where(func.lower(Problem.title) == title.lower())
        ).first()
        if duplicate:
            raise HTTPException(status_code=409, detail="A problem with this title already exists")

    for classroom_id in payload.classroom_ids:
        if not session.get(Classroom, classroom_id):
            raise HTTPException(status_code=400, detail=f"Classroom {classroom_id} does not exist")

    problem = Problem(
        title=title,
        type=payload.type,
        created_by=current_user.id,
        exam_id=payload.exam_id,
        classroom_ids=list(payload.classroom_ids),
        is_rubric_hidden=payload.is_rubric_hidden,
        disable_paste=payload.disable_paste,
    )
    if payload.type == "essay":
        prompt = sanitize_prompt_text(payload.prompt or "")
        if not prompt:
            raise HTTPException(status_code=400, detail="Essay prompt is required")
        if not math.isfinite(payload.custom_max_score) or payload.custom_max_score <= 0:
            raise HTTPException(status_code=400, detail="Max score must be a positive number")
        try:
            items = validate_rubric_items(payload.rubric_items)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        problem.prompt = prompt
        problem.raw_rubric = (payload.raw_rubric or "").strip() or None
        problem.rubric_items = [item.model_dump() for item in items]
        problem.custom_max_score = payload.custom_max_score
    else:
        passage = sanitize_prompt_text(payload.passage or "")
        if not passage:
            raise HTTPException(status_code=400, detail="Reading passage is required")
        _validate_questions(payload.questions)
        problem.passage = passage
        problem.questions = [q.model_dump() for q in payload.questions]
        problem.custom_max_score = sum(q.max_score for q in payload.questions)

    session.add(problem)
    session.commit()
    session.refresh(problem)
    logger.info("Problem %s (%s) created by user %s", problem.id, problem.type, current_user.id)
    return problem_to_dict(problem, current_user)


@router.post("/problems/rubric/parse")
async def parse_rubric(
    payload: RubricTextIn = Body(...),
    current_user: User = Depends(require_role(list(STAFF_ROLES))),
    grader: GradingCollaborator = Depends(get_grader),
):
    """Turn a grading guide into criteria for the editor. Failures are retryable."""
    if not payload.raw_rubric.strip():
        raise HTTPException(status_code=400, detail="Grading guide is empty")
    items = await parse_rubric_strict(payload.raw_rubric, grader)
    return {"rubric_items": [item.model_dump() for item in items]}


@router.get("/problems")
def list_problems(
    session: Session = Depends(get_session),
    current_user: User = Depends(require_login),
):
    """Dashboard: standalone problems the user can see, newest first."""
    problems = session.exec(
        select(Problem).where(Problem.exam_id.is_(None)).order_by(Problem.created_at.desc(), Problem.id.desc())
    ).all()
    if current_user.role == "student":
        problems = [p for p in problems if visible_to_student(session, p.classroom_ids, current_user)]
    return [
        {
            "id": p.id,
            "title": p.title,
            "type": p.type,
            "custom_max_score": p.custom_max_score,
            "created_at": p.created_at,
        }
        for p in problems
    ]


@router.get("/problems/{problem_id}")
def get_problem(
    problem_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_login),
):
    return problem_to_dict(get_visible_problem(session, problem_id, current_user), current_user)


# --- Practice submissions ---


@router.post("/problems/{problem_id}/submissions", status_code=status.HTTP_201_CREATED)
async def submit_problem(
    problem_id: int,
    payload: SubmissionIn = Body(...),
    session: Session = Depends(get_session),
    current_user: User = Depends(require_login),
    grader: GradingCollaborator = Depends(get_grader),
):
    problem = get_visible_problem(session, problem_id, current_user)
    if problem.exam_id is not None:
        raise HTTPException(status_code=409, detail="Exam problems are answered from the exam session")

    timeout = get_settings().grading_timeout_seconds
    if problem.type == "essay":
        essay = (payload.essay or "").strip()
        if not essay:
            raise HTTPException(status_code=400, detail="Essay cannot be empty")
        feedback = await grade_problem(grader, problem, essay, timeout=timeout)
        similarity = await similarity_or_none(grader, essay, prior_essays(session, problem.id), timeout=timeout)
        submission = create_submission(
            session,
            problem=problem,
            submitter_id=current_user.id,
            essay=essay,
            feedback=feedback,
            similarity=similarity,
        )
    else:
        if not payload.answers:
            raise HTTPException(status_code=400, detail="Answer at least one question")
        feedback = await grade_reading_comprehension(grader, problem, payload.answers, timeout=timeout)
        submission = create_submission(
            session,
            problem=problem,
            submitter_id=current_user.id,
            answers=payload.answers,
            feedback=feedback,
        )
    return submission_to_dict(submission)


@router.get("/problems/{problem_id}/submissions")
def list_submissions(
    problem_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_login),
):
    """Staff see every submission; students their own history. Most recent first."""
    problem = get_visible_problem(session, problem_id, current_user)
    if is_staff(current_user):
        submissions = submissions_for_problem(session, problem.id)[::-1]
    else:
        submissions = history_for(
            submissions_for_problem(session, problem.id, current_user.id), current_user.id, problem.id
        )
    return [submission_to_dict(s) for s in submissions]


@router.get("/problems/{problem_id}/leaderboard")
def problem_leaderboard(
    problem_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_login),
):
    """Best submission per student. Each row keeps the scale that score was given on."""
    problem = get_visible_problem(session, problem_id, current_user)
    ranking = best_submissions(submissions_for_problem(session, problem.id))
    names = {}
    if ranking:
        users = session.exec(select(User).where(User.id.in_([sid for sid, _ in ranking]))).all()
        names = {u.id: u.display_name for u in users}
    rows = []
    for rank, (student_id, best) in enumerate(ranking, start=1):
        feedback = best.feedback or {}
        rows.append(
            {
                "rank": rank,
                "student_id": student_id,
                "display_name": names.get(student_id, ""),
                "submission_id": best.id,
                "best_score": submission_score(best),
                "max_score": feedback.get("max_score", problem.custom_max_score),
                "scale_mismatch": bool(feedback.get("scale_mismatch")),
            }
        )
    return rows


@router.get("/problems/{problem_id}/analysis")
async def problem_analysis(
    problem_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role(list(STAFF_ROLES))),
    grader: GradingCollaborator = Depends(get_grader),
):
    """Average score per rubric criterion. ``criteria`` is null for holistic problems."""
    problem = get_visible_problem(session, problem_id, current_user)
    criteria = await derive_criteria(problem, grader)
    if criteria is None:
        return {"problem_id": problem.id, "criteria": None}
    return {
        "problem_id": problem.id,
        "criteria": criterion_analysis(criteria, submissions_for_problem(session, problem.id)),
    }


@router.get("/submissions/{submission_id}")
def get_submission(
    submission_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_login),
):
    submission = session.get(Submission, submission_id)
    if not submission or (not is_staff(current_user) and submission.submitter_id != current_user.id):
        raise HTTPException(status_code=404, detail="Submission not found")
    return submission_to_dict(submission)
