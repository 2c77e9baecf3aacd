"""
Grading orchestrator.

Builds grading instructions from a problem's rubric, calls the AI
collaborator, and validates what comes back into a ``Feedback``. Scores are
never clamped or rescaled here for essays: the requested scale is part of
the instructions, and a returned ``maxScore`` that differs from it is flagged
on the feedback (``scale_mismatch``) so that displays and aggregates can
surface it.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Sequence

from essay_exams.ai.grader import GradingCollaborator
from essay_exams.errors import GradingError, GradingErrorKind
from essay_exams.models import Problem
from essay_exams.schemas import (
    Answer,
    DetailedFeedbackItem,
    Feedback,
    Question,
    RubricItem,
    SimilarityResult,
)
from essay_exams.services.rubric import rubric_total, validate_rubric_items
from essay_exams.utils import sanitize_plain_text

logger = logging.getLogger(__name__)

DEFAULT_MAX_SCORE = 10.0
FIRST_SUBMISSION_EXPLANATION = "This is the first essay submitted for this problem."


def _fmt(value: float) -> str:
    return f"{value:g}"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def build_grading_instructions(
    prompt: Optional[str],
    essay: str,
    rubric_items: Sequence[RubricItem],
    raw_rubric: Optional[str],
    target_max_score: float,
) -> str:
    """Combine task, grading guide and essay into one instruction text.

    Priority: raw rubric text (verbatim), then structured criteria, then
    holistic grading directly on ``target_max_score``.
    """
    target = _fmt(target_max_score)
    normalize = (
        f"IMPORTANT: after grading, convert the FINAL TOTAL to a scale of {target} "
        f"and set maxScore in the JSON to {target}."
    )
    parts = []
    if prompt and prompt.strip():
        parts.append(f'Task: """{prompt.strip()}"""')

    if raw_rubric and raw_rubric.strip():
        parts.append(
            "Below is the DETAILED GRADING GUIDE that you MUST follow exactly:\n"
            f'"""{raw_rubric.strip()}"""\n\n{normalize}'
        )
    elif rubric_items:
        lines = "\n".join(
            f'- Criterion [id={item.id}]: "{item.criterion}", max score: {_fmt(item.max_score)}'
            for item in rubric_items
        )
        parts.append(
            "Below is the rubric that you MUST follow:\n"
            f"{lines}\n(Rubric total: {_fmt(rubric_total(rubric_items))})\n\n"
            "Give exactly one detailedFeedback entry per criterion, copying its id into criterionId "
            "and its name into criterion. The total is the sum of the criterion scores.\n"
            f"{normalize}"
        )
    else:
        parts.append(f"Grade the essay holistically on a scale of {target}; maxScore must be {target}.")

    parts.append(f'Essay: """{essay}"""')
    return "\n\n".join(parts)


def _invalid(message: str, problem_id: Optional[int]) -> GradingError:
    return GradingError(GradingErrorKind.INVALID_RESPONSE_SHAPE, message, problem_id)


def validate_feedback(raw: Any, target_max_score: float, problem_id: Optional[int] = None) -> Feedback:
    """Check the collaborator's result and convert it into a Feedback.

    Raises:
        GradingError: With kind INVALID_RESPONSE_SHAPE on any shape violation
    """
    if not isinstance(raw, dict):
        raise _invalid("Grading result is not a JSON object", problem_id)
    detailed = raw.get("detailedFeedback")
    if not isinstance(detailed, list):
        raise _invalid("detailedFeedback must be an array", problem_id)
    total_score = raw.get("totalScore")
    max_score = raw.get("maxScore")
    if not _is_number(total_score) or not _is_number(max_score):
        raise _invalid("totalScore and maxScore must be numbers", problem_id)

    items = []
    for entry in detailed:
        if not isinstance(entry, dict) or not isinstance(entry.get("criterion"), str) or not _is_number(entry.get("score")):
            raise _invalid("detailedFeedback entries need a criterion and a numeric score", problem_id)
        criterion_id = entry.get("criterionId")
        items.append(
            DetailedFeedbackItem(
                criterion=entry["criterion"],
                score=float(entry["score"]),
                feedback=sanitize_plain_text(str(entry.get("feedback") or "")),
                criterion_id=criterion_id if isinstance(criterion_id, str) else None,
            )
        )

    suggestions = raw.get("generalSuggestions", [])
    if not isinstance(suggestions, list):
        raise _invalid("generalSuggestions must be an array", problem_id)

    return Feedback(
        detailed_feedback=items,
        total_score=float(total_score),
        max_score=float(max_score),
        general_suggestions=[sanitize_plain_text(str(s)) for s in suggestions],
        scale_mismatch=not math.isclose(float(max_score), float(target_max_score)),
    )


async def grade_one(
    grader: GradingCollaborator,
    prompt: Optional[str],
    essay: str,
    rubric_items: Sequence[RubricItem],
    raw_rubric: Optional[str],
    target_max_score: float,
    *,
    timeout: Optional[float] = None,
    problem_id: Optional[int] = None,
) -> Feedback:
    """Grade a single essay with one collaborator call.

    Raises:
        GradingError: TIMEOUT, COLLABORATOR_FAILURE or INVALID_RESPONSE_SHAPE
    """
    instructions = build_grading_instructions(prompt, essay, rubric_items, raw_rubric, target_max_score)
    call = grader.grade(
        prompt or "",
        essay,
        [item.model_dump() for item in rubric_items],
        raw_rubric or "",
        target_max_score,
        instructions=instructions,
    )
    try:
        raw = await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError as e:
        raise GradingError(GradingErrorKind.TIMEOUT, "Grading timed out", problem_id) from e
    except GradingError:
        raise
    except ValueError as e:
        raise _invalid(f"Unreadable grading result: {e}", problem_id) from e
    except Exception as e:
        raise GradingError(GradingErrorKind.COLLABORATOR_FAILURE, f"Grading service failed: {e}", problem_id) from e

    feedback = validate_feedback(raw, target_max_score, problem_id)
    if feedback.scale_mismatch:
        logger.warning(
            "Problem %s graded on a scale of %s instead of %s",
            problem_id, _fmt(feedback.max_score), _fmt(target_max_score),
        )
    return feedback


async def grade_problem(
    grader: GradingCollaborator,
    problem: Problem,
    essay: str,
    *,
    timeout: Optional[float] = None,
) -> Feedback:
    """Grade an essay against a stored problem's prompt and rubric."""
    return await grade_one(
        grader,
        problem.prompt,
        essay,
        validate_rubric_items(problem.rubric_items or []),
        problem.raw_rubric,
        problem.custom_max_score or DEFAULT_MAX_SCORE,
        timeout=timeout,
        problem_id=problem.id,
    )


async def check_similarity(
    grader: GradingCollaborator,
    new_essay: str,
    prior_essays: Sequence[str],
    *,
    timeout: Optional[float] = None,
) -> SimilarityResult:
    """Compare an essay with earlier essays for the same problem.

    The first essay for a problem is trivially original; no call is made.
    """
    prior = [essay for essay in prior_essays if essay and essay.strip()]
    if not prior:
        return SimilarityResult(
            similarity_percentage=0,
            explanation=FIRST_SUBMISSION_EXPLANATION,
            most_similar_essay_index=-1,
        )
    try:
        raw = await asyncio.wait_for(grader.check_similarity(new_essay, prior), timeout)
    except asyncio.TimeoutError as e:
        raise GradingError(GradingErrorKind.TIMEOUT, "Similarity check timed out") from e
    except ValueError as e:
        raise _invalid(f"Unreadable similarity result: {e}", None) from e
    except Exception as e:
        raise GradingError(GradingErrorKind.COLLABORATOR_FAILURE, f"Similarity service failed: {e}") from e

    if (
        not isinstance(raw, dict)
        or not _is_number(raw.get("similarityPercentage"))
        or not isinstance(raw.get("explanation"), str)
    ):
        raise _invalid("Invalid similarity result", None)
    index = raw.get("mostSimilarEssayIndex", -1)
    return SimilarityResult(
        similarity_percentage=max(0.0, min(100.0, float(raw["similarityPercentage"]))),
        explanation=sanitize_plain_text(raw["explanation"]),
        most_similar_essay_index=int(index) if _is_number(index) else -1,
    )


async def similarity_or_none(
    grader: GradingCollaborator,
    new_essay: str,
    prior_essays: Sequence[str],
    *,
    timeout: Optional[float] = None,
) -> Optional[SimilarityResult]:
    """Best-effort similarity check: a failure is logged and yields None."""
    try:
        return await check_similarity(grader, new_essay, prior_essays, timeout=timeout)
    except GradingError as e:
        logger.warning("Similarity check skipped: %s", e.message)
        return None


@dataclass
class GradingJob:
    problem: Problem
    essay: str
    prior_essays: List[str] = field(default_factory=list)


@dataclass
class GradingOutcome:
    job: GradingJob
    feedback: Optional[Feedback] = None
    similarity: Optional[SimilarityResult] = None
    error: Optional[GradingError] = None

    @property
    def ok(self) -> bool:
        return self.feedback is not None


async def grade_batch(
    grader: GradingCollaborator,
    jobs: Iterable[GradingJob],
    *,
    concurrency: int = 3,
    timeout: Optional[float] = None,
) -> List[GradingOutcome]:
    """Grade several essays, at most ``concurrency`` at a time.

    Outcomes come back in job order. A failed job carries its error and
    never prevents the other jobs from completing.
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def run(job: GradingJob) -> GradingOutcome:
        async with semaphore:
            try:
                feedback = await grade_problem(grader, job.problem, job.essay, timeout=timeout)
            except GradingError as e:
                logger.warning("Could not grade problem %s (%s): %s", job.problem.id, e.kind.value, e.message)
                return GradingOutcome(job=job, error=e)
            similarity = await similarity_or_none(grader, job.essay, job.prior_essays, timeout=timeout)
            return GradingOutcome(job=job, feedback=feedback, similarity=similarity)

    return list(await asyncio.gather(*(run(job) for job in jobs)))


# --- Reading comprehension -------------------------------------------------

async def grade_reading_comprehension(
    grader: GradingCollaborator,
    problem: Problem,
    answers: Sequence[Answer],
    *,
    timeout: Optional[float] = None,
) -> Feedback:
    """Grade multiple-choice answers locally and short answers in one AI call.

    Short-answer scores are clamped to each question's max score. When the
    AI call fails every short answer scores 0 with an explanation.
    """
    questions = [Question.model_validate(q) for q in problem.questions or []]
    by_question = {a.question_id: a for a in answers}
    results = {}

    for q in questions:
        if q.question_type != "multiple_choice":
            continue
        answer = by_question.get(q.id)
        correct = answer is not None and answer.selected_option_id == q.correct_option_id
        if correct:
            text = "Correct."
        else:
            correct_text = next((o.text for o in q.options if o.id == q.correct_option_id), "")
            text = f'Incorrect. The correct answer is: "{correct_text}"'
        results[q.id] = DetailedFeedbackItem(
            criterion=q.question_text, score=q.max_score if correct else 0, feedback=text, question_id=q.id
        )

    short_answers = [q for q in questions if q.question_type == "short_answer"]
    if short_answers:
        to_grade = [
            {
                "questionId": q.id,
                "questionText": q.question_text,
                "maxScore": q.max_score,
                "gradingCriteria": q.grading_criteria or "Judge the answer using the passage.",
                "studentAnswer": (by_question[q.id].written_answer if q.id in by_question else None)
                or "The student did not answer.",
            }
            for q in short_answers
        ]
        try:
            raw = await asyncio.wait_for(grader.grade_short_answers(problem.passage or "", to_grade), timeout)
            if not isinstance(raw, list):
                raise ValueError("expected an array of results")
            graded = {r.get("questionId"): r for r in raw if isinstance(r, dict)}
            for q in short_answers:
                r = graded.get(q.id)
                if r is not None and _is_number(r.get("score")):
                    results[q.id] = DetailedFeedbackItem(
                        criterion=q.question_text,
                        score=max(0.0, min(float(r["score"]), q.max_score)),
                        feedback=sanitize_plain_text(str(r.get("feedback") or "")),
                        question_id=q.id,
                    )
                else:
                    results[q.id] = DetailedFeedbackItem(
                        criterion=q.question_text,
                        score=0,
                        feedback="This answer could not be graded automatically.",
                        question_id=q.id,
                    )
        except Exception as e:
            logger.warning("Short-answer grading failed for problem %s: %s", problem.id, e)
            for q in short_answers:
                results[q.id] = DetailedFeedbackItem(
                    criterion=q.question_text,
                    score=0,
                    feedback="An error occurred during automatic grading.",
                    question_id=q.id,
                )

    detailed = [results[q.id] for q in questions if q.id in results]
    return Feedback(
        detailed_feedback=detailed,
        total_score=sum(item.score for item in detailed),
        max_score=sum(q.max_score for q in questions),
        general_suggestions=[],
    )
