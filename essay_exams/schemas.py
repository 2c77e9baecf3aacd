"""Pydantic value types shared by services and routers."""

from __future__ import annotations

import math
import uuid
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


def new_item_id() -> str:
    return uuid.uuid4().hex


class RubricItem(BaseModel):
    id: str = Field(default_factory=new_item_id)
    criterion: str
    max_score: float

    @field_validator("criterion")
    @classmethod
    def _criterion_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("criterion must not be blank")
        return value.strip()

    @field_validator("max_score")
    @classmethod
    def _max_score_finite(cls, value: float) -> float:
        if not math.isfinite(value) or value < 0:
            raise ValueError("max_score must be a finite number >= 0")
        return value


class DetailedFeedbackItem(BaseModel):
    criterion: str
    score: float
    feedback: str = ""
    criterion_id: Optional[str] = None
    question_id: Optional[str] = None


class Feedback(BaseModel):
    detailed_feedback: List[DetailedFeedbackItem] = Field(default_factory=list)
    total_score: float
    max_score: float
    general_suggestions: List[str] = Field(default_factory=list)
    # Set by the grading orchestrator when max_score differs from the requested scale
    scale_mismatch: bool = False


class SimilarityResult(BaseModel):
    similarity_percentage: float
    explanation: str
    most_similar_essay_index: int = -1


class Option(BaseModel):
    id: str = Field(default_factory=new_item_id)
    text: str


class Question(BaseModel):
    id: str = Field(default_factory=new_item_id)
    question_text: str
    question_type: Literal["multiple_choice", "short_answer"]
    max_score: float = 1
    options: List[Option] = Field(default_factory=list)
    correct_option_id: Optional[str] = None
    grading_criteria: Optional[str] = None


class Answer(BaseModel):
    question_id: str
    selected_option_id: Optional[str] = None
    written_answer: Optional[str] = None
