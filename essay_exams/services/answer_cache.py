"""Attempt-scoped autosave of in-progress answers.

Entries live in the ``AttemptAnswer`` table until the attempt closes.
"""

from typing import Dict

from sqlalchemy import delete
from sqlmodel import Session, select

from essay_exams.models import AttemptAnswer
from essay_exams.utils import utcnow


def put(session: Session, attempt_id: int, problem_id: int, answer_text: str) -> AttemptAnswer:
    """Insert or overwrite the saved answer for one problem of an attempt."""
    stmt = select(AttemptAnswer).where(
        (AttemptAnswer.attempt_id == attempt_id) & (AttemptAnswer.problem_id == problem_id)
    )
    existing = session.exec(stmt).first()
    if existing:
        existing.answer_text = answer_text
        existing.saved_at = utcnow()
        entry = existing
    else:
        entry = AttemptAnswer(attempt_id=attempt_id, problem_id=problem_id, answer_text=answer_text)
    session.add(entry)
    session.commit()
    session.refresh(entry)
    return entry


def get_all(session: Session, attempt_id: int) -> Dict[int, str]:
    """Saved answers of an attempt keyed by problem id."""
    rows = session.exec(select(AttemptAnswer).where(AttemptAnswer.attempt_id == attempt_id)).all()
    return {row.problem_id: row.answer_text for row in rows}


def clear(session: Session, attempt_id: int) -> None:
    session.exec(delete(AttemptAnswer).where(AttemptAnswer.attempt_id == attempt_id))
    session.commit()
