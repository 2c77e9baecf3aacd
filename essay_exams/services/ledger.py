"""
Submission ledger: append-only record of graded work.

Submissions are written once and never updated. The pure helpers
(``history_for``, ``leaderboard``, ``criterion_analysis``) take any iterable
of submissions so they can be used on query results or in tests directly.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlmodel import Session, select

from essay_exams.models import Problem, Submission
from essay_exams.schemas import Answer, Feedback, RubricItem, SimilarityResult
from essay_exams.services.rubric import match_feedback_entry

logger = logging.getLogger(__name__)


def create_submission(
    session: Session,
    *,
    problem: Problem,
    submitter_id: int,
    feedback: Feedback,
    essay: Optional[str] = None,
    answers: Optional[Sequence[Answer]] = None,
    similarity: Optional[SimilarityResult] = None,
    exam_attempt_id: Optional[int] = None,
    commit: bool = True,
) -> Submission:
    """Record a graded submission.

    With ``commit=False`` the row is only flushed so that the caller can
    include it in a larger transaction.
    """
    submission = Submission(
        problem_id=problem.id,
        submitter_id=submitter_id,
        essay=essay,
        answers=[a.model_dump() for a in answers or []],
        feedback=feedback.model_dump(),
        similarity_check=similarity.model_dump() if similarity else None,
        exam_id=problem.exam_id,
        exam_attempt_id=exam_attempt_id,
    )
    session.add(submission)
    if commit:
        session.commit()
        session.refresh(submission)
    else:
        session.flush()
    logger.info("Submission %s recorded for problem %s by user %s", submission.id, problem.id, submitter_id)
    return submission


def submissions_for_problem(
    session: Session, problem_id: int, submitter_id: Optional[int] = None
) -> List[Submission]:
    """Submissions for a problem in insertion order, optionally for one user."""
    stmt = select(Submission).where(Submission.problem_id == problem_id)
    if submitter_id is not None:
        stmt = stmt.where(Submission.submitter_id == submitter_id)
    return list(session.exec(stmt.order_by(Submission.id)).all())


def prior_essays(session: Session, problem_id: int) -> List[str]:
    """Non-blank essays already submitted for a problem, oldest first."""
    return [s.essay for s in submissions_for_problem(session, problem_id) if s.essay and s.essay.strip()]


def submission_score(submission: Submission) -> float:
    return float((submission.feedback or {}).get("total_score") or 0)


def history_for(submissions: Iterable[Submission], student_id: int, problem_id: int) -> List[Submission]:
    """One student's submissions to a problem, most recent first."""
    mine = [s for s in submissions if s.submitter_id == student_id and s.problem_id == problem_id]
    return sorted(mine, key=lambda s: (s.submitted_at, s.id or 0), reverse=True)


def best_submissions(submissions: Iterable[Submission]) -> List[Tuple[int, Submission]]:
    """Each student's best-scoring submission, highest total first.

    Students with equal scores keep the order in which they first appear.
    Totals are compared as stored; the submission carries its own
    ``max_score`` and ``scale_mismatch`` so callers can show them.
    """
    best = {}
    for s in submissions:
        current = best.get(s.submitter_id)
        if current is None or submission_score(s) > submission_score(current):
            best[s.submitter_id] = s
    return sorted(best.items(), key=lambda pair: submission_score(pair[1]), reverse=True)


def leaderboard(submissions: Iterable[Submission]) -> List[Tuple[int, float]]:
    """Best total score per student, highest first."""
    return [(student_id, submission_score(s)) for student_id, s in best_submissions(submissions)]


def criterion_analysis(criteria: Sequence[RubricItem], submissions: Iterable[Submission]) -> List[dict]:
    """Average score per criterion across submissions.

    Feedback entries are joined to criteria with ``match_feedback_entry``;
    a criterion that never matches reports an average of 0 over 0 samples.
    """
    feedbacks = [Feedback.model_validate(s.feedback) for s in submissions if s.feedback]
    rows = []
    for item in criteria:
        scores = []
        for feedback in feedbacks:
            entry = match_feedback_entry(item, feedback.detailed_feedback)
            if entry is not None:
                scores.append(entry.score)
        rows.append(
            {
                "criterion_id": item.id,
                "criterion": item.criterion,
                "max_score": item.max_score,
                "average_score": sum(scores) / len(scores) if scores else 0,
                "sample_count": len(scores),
            }
        )
    return rows
