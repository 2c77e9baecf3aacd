"""Rubric model: criteria derivation, validation and the label soft join."""

import asyncio
import math

import pytest

from essay_exams.errors import RubricParseError
from essay_exams.models import Problem
from essay_exams.schemas import DetailedFeedbackItem, RubricItem
from essay_exams.services.rubric import (
    derive_criteria,
    match_feedback_entry,
    normalize_label,
    parse_rubric_strict,
    rubric_total,
    validate_rubric_items,
)


def _problem(**kwargs):
    return Problem(id=1, title="P", created_by=1, **kwargs)


class TestLabelMatching:
    def test_normalize_label_trims_and_casefolds(self):
        assert normalize_label("  Mở Bài ") == normalize_label("mở bài")
        assert normalize_label(None) == ""

    def test_case_and_whitespace_insensitive_match(self):
        item = RubricItem(id="x", criterion="Mở bài", max_score=2)
        entry = DetailedFeedbackItem(criterion=" mở bài ", score=1.5, feedback="ok")

        assert match_feedback_entry(item, [entry]) is entry

    def test_criterion_id_wins_over_label(self):
        item = RubricItem(id="c1", criterion="Introduction", max_score=2)
        by_label = DetailedFeedbackItem(criterion="Introduction", score=1)
        by_id = DetailedFeedbackItem(criterion="Intro (renamed)", score=2, criterion_id="c1")

        assert match_feedback_entry(item, [by_label, by_id]) is by_id

    def test_no_match_returns_none(self):
        item = RubricItem(criterion="Conclusion", max_score=2)
        assert match_feedback_entry(item, [DetailedFeedbackItem(criterion="Body", score=3)]) is None


class TestValidation:
    def test_accepts_valid_items_and_totals(self):
        items = validate_rubric_items([{"criterion": "A", "max_score": 3}, {"criterion": "B", "max_score": 5}])
        assert rubric_total(items) == 8
        assert all(item.id for item in items)

    @pytest.mark.parametrize("bad", [-1, math.inf, math.nan])
    def test_rejects_non_finite_or_negative_scores(self, bad):
        with pytest.raises(ValueError):
            validate_rubric_items([{"criterion": "A", "max_score": bad}])

    def test_rejects_blank_criterion(self):
        with pytest.raises(ValueError):
            validate_rubric_items([{"criterion": "   ", "max_score": 1}])


class TestDeriveCriteria:
    def test_structured_items_are_returned_as_is(self, grader):
        problem = _problem(rubric_items=[{"id": "keep", "criterion": "A", "max_score": 2}], raw_rubric="ignored")

        criteria = asyncio.run(derive_criteria(problem, grader))

        assert [(c.id, c.criterion, c.max_score) for c in criteria] == [("keep", "A", 2)]

    def test_raw_rubric_is_parsed_with_fresh_ids(self, grader):
        problem = _problem(raw_rubric="Thesis 4 points, evidence 6 points")

        criteria = asyncio.run(derive_criteria(problem, grader))

        assert [c.criterion for c in criteria] == ["Thesis", "Evidence"]
        assert len({c.id for c in criteria}) == 2

    def test_no_rubric_means_holistic(self, grader):
        assert asyncio.run(derive_criteria(_problem(raw_rubric="   "), grader)) is None

    def test_parser_failure_falls_back_to_holistic(self, grader):
        grader.rubric_error = RuntimeError("boom")
        assert asyncio.run(derive_criteria(_problem(raw_rubric="guide"), grader)) is None

    def test_empty_parse_falls_back_to_holistic(self, grader):
        grader.rubric_result = []
        assert asyncio.run(derive_criteria(_problem(raw_rubric="guide"), grader)) is None


class TestParseRubricStrict:
    def test_raises_on_parser_failure(self, grader):
        grader.rubric_error = RuntimeError("quota exceeded")
        with pytest.raises(RubricParseError) as excinfo:
            asyncio.run(parse_rubric_strict("guide", grader))
        assert excinfo.value.to_dict()["retryable"] is True

    def test_raises_on_zero_items(self, grader):
        grader.rubric_result = []
        with pytest.raises(RubricParseError):
            asyncio.run(parse_rubric_strict("guide", grader))

    def test_raises_on_malformed_item(self, grader):
        grader.rubric_result = [{"criterion": "A", "maxScore": "four"}]
        with pytest.raises(RubricParseError):
            asyncio.run(parse_rubric_strict("guide", grader))
