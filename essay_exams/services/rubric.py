"""
Rubric model: turns a problem's grading guide into weighted criteria.

Criteria are used both to constrain AI grading and for post-hoc analytics.
Matching AI feedback entries back to criteria is a best-effort label match
(see ``match_feedback_entry``); there is no foreign key between the two.
"""

from __future__ import annotations

import logging
import math
import unicodedata
from typing import Iterable, List, Optional

from pydantic import ValidationError

from essay_exams.ai.grader import GradingCollaborator
from essay_exams.errors import RubricParseError
from essay_exams.models import Problem
from essay_exams.schemas import DetailedFeedbackItem, RubricItem

logger = logging.getLogger(__name__)


def normalize_label(label: Optional[str]) -> str:
    """Trim and casefold a criterion label for comparison."""
    return unicodedata.normalize("NFC", (label or "").strip()).casefold()


def validate_rubric_items(items: Iterable[dict]) -> List[RubricItem]:
    """Validate raw rubric dicts; every max_score must be finite and >= 0.

    Raises:
        ValueError: If an item is malformed
    """
    validated = []
    for raw in items:
        try:
            validated.append(RubricItem.model_validate(raw))
        except ValidationError as e:
            raise ValueError(f"Invalid rubric item {raw!r}: {e.errors()[0]['msg']}") from e
    return validated


def rubric_total(items: Iterable[RubricItem]) -> float:
    """Sum of criterion max scores. Informational only, never enforced."""
    return sum(item.max_score for item in items)


def _coerce_parsed(parsed) -> List[RubricItem]:
    if not isinstance(parsed, list):
        raise RubricParseError("Rubric parser did not return a list of criteria")
    items = []
    for entry in parsed:
        if not isinstance(entry, dict):
            raise RubricParseError("Rubric parser returned a malformed criterion")
        criterion = entry.get("criterion")
        max_score = entry.get("maxScore", entry.get("max_score"))
        if not isinstance(criterion, str) or not criterion.strip():
            raise RubricParseError("Rubric parser returned a criterion without a name")
        if isinstance(max_score, bool) or not isinstance(max_score, (int, float)) or not math.isfinite(max_score) or max_score < 0:
            raise RubricParseError(f"Rubric parser returned an invalid score for {criterion!r}")
        # a fresh id per parsed criterion
        items.append(RubricItem(criterion=criterion, max_score=float(max_score)))
    return items


async def parse_rubric_strict(raw_rubric: str, parser: GradingCollaborator) -> List[RubricItem]:
    """Parse rubric text for an authoring context.

    Raises:
        RubricParseError: If the parser fails, returns malformed data or finds no criteria
    """
    try:
        parsed = await parser.parse_rubric(raw_rubric)
    except RubricParseError:
        raise
    except Exception as e:
        raise RubricParseError(f"Could not analyse the grading guide: {e}") from e
    items = _coerce_parsed(parsed)
    if not items:
        raise RubricParseError("No scored criteria were found in the grading guide")
    return items


async def derive_criteria(problem: Problem, parser: GradingCollaborator) -> Optional[List[RubricItem]]:
    """Return the problem's criteria, or None when no structured rubric is available.

    Structured rubric items win; otherwise the raw rubric text is parsed.
    Parse failures and empty results both mean "no rubric" here.
    """
    if problem.rubric_items:
        return validate_rubric_items(problem.rubric_items)
    if problem.raw_rubric and problem.raw_rubric.strip():
        try:
            return await parse_rubric_strict(problem.raw_rubric, parser)
        except RubricParseError as e:
            logger.warning("Falling back to holistic grading for problem %s: %s", problem.id, e.message)
            return None
    return None


def match_feedback_entry(
    item: RubricItem, entries: Iterable[DetailedFeedbackItem]
) -> Optional[DetailedFeedbackItem]:
    """Find the feedback entry for a criterion.

    An entry echoing the criterion id wins; otherwise labels are compared
    trimmed and case-insensitively. Returns None when nothing matches.
    """
    entries = list(entries)
    for entry in entries:
        if entry.criterion_id and entry.criterion_id == item.id:
            return entry
    wanted = normalize_label(item.criterion)
    for entry in entries:
        if normalize_label(entry.criterion) == wanted:
            return entry
    return None
