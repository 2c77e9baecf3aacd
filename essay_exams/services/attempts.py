"""
Exam attempt state machine.

An attempt moves ``open -> submitting -> closed`` and never leaves
``closed``. Every write to an attempt row happens under that attempt's lock
and touches only the columns it changes, so a proctoring append and the
terminal write of a finish cannot overwrite each other. Grading runs outside
the lock.

Every operation takes the acting user explicitly. ``actor=None`` is the
system itself (the overdue sweep).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from essay_exams.ai.grader import GradingCollaborator
from essay_exams.config import get_settings
from essay_exams.errors import (
    AttemptAlreadySubmitted,
    AttemptClosed,
    AttemptNotFound,
    ExamNotOpen,
    ExamStillRunning,
    PasswordMismatch,
    PermissionDenied,
)
from essay_exams.models import (
    ATTEMPT_CLOSED,
    ATTEMPT_OPEN,
    ATTEMPT_SUBMITTING,
    AttemptAnswer,
    Exam,
    ExamAttempt,
    Problem,
    User,
)
from essay_exams.services import answer_cache
from essay_exams.services.exam_status import exam_problems, visible_to_student
from essay_exams.services.grading import GradingJob, grade_batch
from essay_exams.services.ledger import create_submission, prior_essays
from essay_exams.services.locks import KeyedLocks
from essay_exams.services.timer import AutoSubmitTrigger, Countdown
from essay_exams.utils import utcnow

logger = logging.getLogger(__name__)

FINISH_SUBMITTED = "submitted"
FINISH_TIMED_OUT = "timed_out"
VISIBILITY_STATES = ("hidden", "visible")

_locks = KeyedLocks()
_finishing = set()
_finishing_guard = threading.Lock()


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


# --- Attempt resolution ---------------------------------------------------

@dataclass(frozen=True)
class AttemptSnapshot:
    """Read-only copy of an attempt row."""

    id: int
    exam_id: int
    student_id: int
    status: str
    started_at: datetime
    submitted_at: Optional[datetime]
    finish_reason: Optional[str]
    fullscreen_exits: Tuple[str, ...]
    visibility_state_changes: Tuple[dict, ...]
    submission_ids: Tuple[int, ...]

    @classmethod
    def from_row(cls, attempt: ExamAttempt) -> "AttemptSnapshot":
        return cls(
            id=attempt.id,
            exam_id=attempt.exam_id,
            student_id=attempt.student_id,
            status=attempt.status,
            started_at=attempt.started_at,
            submitted_at=attempt.submitted_at,
            finish_reason=attempt.finish_reason,
            fullscreen_exits=tuple(attempt.fullscreen_exits or []),
            visibility_state_changes=tuple(dict(c) for c in attempt.visibility_state_changes or []),
            submission_ids=tuple(attempt.submission_ids or []),
        )

    @property
    def is_closed(self) -> bool:
        return self.status == ATTEMPT_CLOSED

    def to_dict(self) -> dict:
        return {
            "attempt_id": self.id,
            "exam_id": self.exam_id,
            "student_id": self.student_id,
            "status": self.status,
            "started_at": self.started_at,
            "submitted_at": self.submitted_at,
            "finish_reason": self.finish_reason,
            "fullscreen_exits": list(self.fullscreen_exits),
            "visibility_state_changes": list(self.visibility_state_changes),
            "submission_ids": list(self.submission_ids),
        }


class AttemptCache:
    """In-memory snapshots of recently used attempts.

    A miss falls back to the database; only an attempt missing from both
    raises ``AttemptNotFound``.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._items: Dict[int, AttemptSnapshot] = {}

    def put(self, attempt: ExamAttempt) -> AttemptSnapshot:
        snapshot = AttemptSnapshot.from_row(attempt)
        with self._guard:
            self._items[snapshot.id] = snapshot
        return snapshot

    def get(self, attempt_id: int) -> Optional[AttemptSnapshot]:
        with self._guard:
            return self._items.get(attempt_id)

    def discard(self, attempt_id: int) -> None:
        with self._guard:
            self._items.pop(attempt_id, None)

    def clear(self) -> None:
        with self._guard:
            self._items.clear()

    def resolve(self, session: Session, attempt_id: int) -> AttemptSnapshot:
        snapshot = self.get(attempt_id)
        if snapshot is not None:
            return snapshot
        attempt = session.get(ExamAttempt, attempt_id)
        if attempt is None:
            raise AttemptNotFound(attempt_id)
        return self.put(attempt)


attempt_cache = AttemptCache()


def _reload(session: Session, attempt_id: int) -> ExamAttempt:
    attempt = session.get(ExamAttempt, attempt_id, populate_existing=True)
    if attempt is None:
        attempt_cache.discard(attempt_id)
        raise AttemptNotFound(attempt_id)
    attempt_cache.put(attempt)
    return attempt


def _set_fields(session: Session, attempt_id: int, **values) -> None:
    session.exec(
        update(ExamAttempt)
        .where(ExamAttempt.id == attempt_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


def get_attempt(session: Session, attempt_id: int, actor: User) -> AttemptSnapshot:
    """Resolve an attempt the actor may see: its student, or any teacher/admin."""
    snapshot = attempt_cache.resolve(session, attempt_id)
    if actor.role == "student" and snapshot.student_id != actor.id:
        raise AttemptNotFound(attempt_id)
    return snapshot


def _owned(session: Session, attempt_id: int, actor: Optional[User]) -> AttemptSnapshot:
    snapshot = attempt_cache.resolve(session, attempt_id)
    if actor is not None and snapshot.student_id != actor.id:
        # Other users' attempts look the same as missing ones
        raise AttemptNotFound(attempt_id)
    return snapshot


# --- Start ----------------------------------------------------------------

def start_attempt(
    session: Session,
    exam: Exam,
    actor: User,
    password: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ExamAttempt:
    """Start the actor's attempt on an exam, or resume the one already open.

    Raises:
        PermissionDenied: If the actor is not a student allowed to see the exam
        ExamNotOpen: Outside the exam window
        PasswordMismatch: If the exam password does not match exactly
        AttemptAlreadySubmitted: If the actor already finished this exam
    """
    if actor.role != "student":
        raise PermissionDenied("Only students can take exams")
    if not visible_to_student(session, exam.classroom_ids, actor):
        raise PermissionDenied("This exam is not assigned to your classrooms")

    now = now or utcnow()
    if not (exam.start_time <= now <= exam.end_time):
        raise ExamNotOpen("This exam is not open at the moment")
    if exam.password and password != exam.password:
        raise PasswordMismatch()

    with _locks.hold(("start", exam.id, actor.id)):
        stmt = (
            select(ExamAttempt)
            .where((ExamAttempt.exam_id == exam.id) & (ExamAttempt.student_id == actor.id))
            .order_by(ExamAttempt.id)
        )
        existing = session.exec(stmt).all()
        for attempt in existing:
            if attempt.status != ATTEMPT_CLOSED:
                attempt_cache.put(attempt)
                return attempt
        if existing:
            raise AttemptAlreadySubmitted(existing[-1].id)

        attempt = ExamAttempt(exam_id=exam.id, student_id=actor.id, started_at=now, status=ATTEMPT_OPEN)
        session.add(attempt)
        session.commit()
        session.refresh(attempt)

    attempt_cache.put(attempt)
    logger.info("Attempt %s started on exam %s by user %s", attempt.id, exam.id, actor.id)
    return attempt


# --- Answers --------------------------------------------------------------

def save_answer(
    session: Session,
    attempt_id: int,
    problem_id: int,
    answer_text: str,
    actor: User,
    now: Optional[datetime] = None,
) -> AttemptAnswer:
    """Autosave the actor's answer to one essay problem of an open attempt.

    Raises:
        AttemptClosed: Once the attempt is no longer open or the exam has ended
        ValueError: If the problem is not an essay problem of this exam
    """
    snapshot = _owned(session, attempt_id, actor)
    now = now or utcnow()
    with _locks.hold(attempt_id):
        attempt = _reload(session, attempt_id)
        if attempt.status != ATTEMPT_OPEN:
            raise AttemptClosed("This exam session no longer accepts answers")
        exam = session.get(Exam, snapshot.exam_id)
        if now > exam.end_time:
            raise AttemptClosed("Time is up for this exam")
        problem = session.get(Problem, problem_id)
        if problem is None or problem.exam_id != exam.id:
            raise ValueError(f"Problem {problem_id} is not part of this exam")
        if problem.type != "essay":
            raise ValueError("Only essay problems can be answered during an exam")
        return answer_cache.put(session, attempt_id, problem_id, answer_text)


# --- Proctoring -----------------------------------------------------------

def _append_event(
    session: Session,
    attempt_id: int,
    column: str,
    make_entry: Callable[[datetime], object],
    now: Optional[datetime] = None,
) -> bool:
    """Append one entry to a JSON list column unless the attempt is closed.

    The entry is built from the event time inside the attempt lock, so entries
    are stored in the order their timestamps were taken.

    Persistence errors are retried, then the event is logged and dropped.
    """
    tries = max(1, get_settings().proctoring_write_retries)
    for attempt_no in range(1, tries + 1):
        try:
            with _locks.hold(attempt_id):
                row = session.exec(
                    select(getattr(ExamAttempt, column), ExamAttempt.status).where(ExamAttempt.id == attempt_id)
                ).first()
                if row is None:
                    raise AttemptNotFound(attempt_id)
                current, status = row
                if status == ATTEMPT_CLOSED:
                    return False
                entry = make_entry(now or utcnow())
                _set_fields(session, attempt_id, **{column: list(current or []) + [entry]})
                session.commit()
            _reload(session, attempt_id)
            return True
        except SQLAlchemyError as e:
            session.rollback()
            logger.warning("Writing %s for attempt %s failed (try %d/%d): %s", column, attempt_id, attempt_no, tries, e)
    logger.error("Dropped %s event for attempt %s after %d tries", column, attempt_id, tries)
    return False


def record_fullscreen_exit(
    session: Session, attempt_id: int, actor: User, now: Optional[datetime] = None
) -> bool:
    """Log a fullscreen exit. Returns False when nothing was recorded."""
    _owned(session, attempt_id, actor)
    return _append_event(session, attempt_id, "fullscreen_exits", _iso, now)


def record_visibility_change(
    session: Session, attempt_id: int, state: str, actor: User, now: Optional[datetime] = None
) -> bool:
    """Log the page becoming hidden. Becoming visible again is not recorded."""
    if state not in VISIBILITY_STATES:
        raise ValueError(f"Unknown visibility state {state!r}")
    _owned(session, attempt_id, actor)
    if state == "visible":
        logger.debug("Attempt %s visible again; not recorded", attempt_id)
        return False
    return _append_event(
        session,
        attempt_id,
        "visibility_state_changes",
        lambda at: {"timestamp": _iso(at), "state": state},
        now,
    )


# --- Finish ---------------------------------------------------------------

def _claim_finish(session: Session, attempt_id: int) -> Tuple[ExamAttempt, bool]:
    with _locks.hold(attempt_id):
        attempt = _reload(session, attempt_id)
        if attempt.status != ATTEMPT_OPEN:
            logger.info("Finish ignored for attempt %s in status %s", attempt_id, attempt.status)
            return attempt, False
        with _finishing_guard:
            if attempt_id in _finishing:
                return attempt, False
            _finishing.add(attempt_id)
        _set_fields(session, attempt_id, status=ATTEMPT_SUBMITTING)
        session.commit()
        return _reload(session, attempt_id), True


async def finish_attempt(
    session: Session,
    attempt_id: int,
    actor: Optional[User],
    grader: GradingCollaborator,
    reason: str = FINISH_SUBMITTED,
    now: Optional[datetime] = None,
) -> ExamAttempt:
    """Grade every answered essay and close the attempt.

    Finishing an attempt that is already closed or being finished is a no-op
    that returns its current state. Problems whose grading fails get no
    submission; the attempt still closes with the others.
    """
    _owned(session, attempt_id, actor)
    attempt, claimed = _claim_finish(session, attempt_id)
    if not claimed:
        return attempt

    try:
        settings = get_settings()
        answers = answer_cache.get_all(session, attempt_id)
        jobs = [
            GradingJob(problem=p, essay=answers[p.id], prior_essays=prior_essays(session, p.id))
            for p in exam_problems(session, attempt.exam_id)
            if p.type == "essay" and (answers.get(p.id) or "").strip()
        ]
        outcomes = await grade_batch(
            grader,
            jobs,
            concurrency=settings.grading_concurrency,
            timeout=settings.grading_timeout_seconds,
        )

        with _locks.hold(attempt_id):
            submission_ids = []
            for outcome in outcomes:
                if not outcome.ok:
                    continue
                submission = create_submission(
                    session,
                    problem=outcome.job.problem,
                    submitter_id=attempt.student_id,
                    essay=outcome.job.essay,
                    feedback=outcome.feedback,
                    similarity=outcome.similarity,
                    exam_attempt_id=attempt_id,
                    commit=False,
                )
                submission_ids.append(submission.id)
            _set_fields(
                session,
                attempt_id,
                status=ATTEMPT_CLOSED,
                finish_reason=reason,
                submitted_at=now or utcnow(),
                submission_ids=submission_ids,
            )
            session.commit()
    except Exception:
        session.rollback()
        logger.exception("Finishing attempt %s failed; reopening it", attempt_id)
        with _locks.hold(attempt_id):
            _set_fields(session, attempt_id, status=ATTEMPT_OPEN)
            session.commit()
        _reload(session, attempt_id)
        raise
    finally:
        with _finishing_guard:
            _finishing.discard(attempt_id)

    answer_cache.clear(session, attempt_id)
    attempt = _reload(session, attempt_id)
    logger.info(
        "Attempt %s closed (%s) with %d of %d answers graded",
        attempt_id, reason, len(attempt.submission_ids), len(jobs),
    )
    return attempt


async def timeout_attempt(
    session: Session,
    attempt_id: int,
    actor: Optional[User],
    grader: GradingCollaborator,
    now: Optional[datetime] = None,
) -> ExamAttempt:
    """Finish an attempt because its exam time ran out.

    Raises:
        ExamStillRunning: If the countdown has not expired yet
    """
    snapshot = _owned(session, attempt_id, actor)
    now = now or utcnow()
    exam = session.get(Exam, snapshot.exam_id)
    if not Countdown(exam.end_time, now).expired:
        raise ExamStillRunning("The exam is still running")
    return await finish_attempt(session, attempt_id, actor, grader, reason=FINISH_TIMED_OUT, now=now)


# --- Overdue sweep --------------------------------------------------------

_triggers: Dict[int, AutoSubmitTrigger] = {}


async def expire_overdue_attempts(
    session: Session, grader: GradingCollaborator, now: Optional[datetime] = None
) -> int:
    """Time out every open attempt whose exam has ended. Returns how many closed."""
    now = now or utcnow()
    stmt = (
        select(ExamAttempt, Exam)
        .where(ExamAttempt.exam_id == Exam.id)
        .where(ExamAttempt.status == ATTEMPT_OPEN)
        .where(Exam.end_time < now)
    )
    closed = 0
    for attempt, exam in session.exec(stmt).all():
        trigger = _triggers.setdefault(attempt.id, AutoSubmitTrigger(exam.end_time))
        if not trigger.fire(now):
            continue
        try:
            result = await timeout_attempt(session, attempt.id, None, grader, now=now)
        except Exception:
            # finish_attempt reopened it; the next sweep tries again
            _triggers.pop(attempt.id, None)
            logger.exception("Could not time out attempt %s", attempt.id)
            continue
        # Still open: another finish owns it and may reopen it on failure
        _triggers.pop(attempt.id, None)
        if result.status == ATTEMPT_CLOSED:
            closed += 1
    return closed


async def sweep_forever(session_factory: Callable[[], Session], grader_factory, interval: float) -> None:
    """Background loop closing overdue attempts every ``interval`` seconds."""
    while True:
        await asyncio.sleep(interval)
        try:
            with session_factory() as session:
                count = await expire_overdue_attempts(session, grader_factory())
            if count:
                logger.info("Closed %d overdue attempts", count)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Overdue attempt sweep failed")
