"""
AI grading collaborator.

The services only depend on the ``GradingCollaborator`` protocol; the
production implementation talks to Gemini through ``GeminiClient``. Every
method returns plain JSON-shaped data and leaves validation to the caller.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, List, Optional, Protocol

from essay_exams.ai.gemini_client import GeminiClient

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")


class GradingCollaborator(Protocol):
    async def grade(
        self,
        prompt: str,
        essay: str,
        rubric_items: List[dict],
        raw_rubric: str,
        target_max_score: float,
        *,
        instructions: str,
    ) -> Any: ...

    async def parse_rubric(self, raw_text: str) -> Any: ...

    async def check_similarity(self, new_essay: str, prior_essays: List[str]) -> Any: ...

    async def grade_short_answers(self, passage: str, items: List[dict]) -> Any: ...


def extract_json(text: Optional[str]) -> Any:
    """Return the first JSON object or array found in a model response.

    Handles markdown code fences and ignores trailing prose after the JSON.
    Raises ValueError when no JSON value can be decoded.
    """
    if not text:
        raise ValueError("empty model response")
    fenced = _FENCE_RE.search(text)
    if fenced:
        return json.loads(fenced.group(1))

    decoder = json.JSONDecoder()
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    for start in sorted(starts):
        try:
            value, _ = decoder.raw_decode(text, start)
            return value
        except json.JSONDecodeError:
            continue
    raise ValueError("model response did not contain valid JSON")


# --- Prompts & response schemas -------------------------------------------

GRADING_SYSTEM_INSTRUCTION = (
    "You are an experienced and impartial literature teacher.\n"
    "Read the task, the student's essay and the grading guide, then give detailed feedback and a score.\n"
    "- Follow the grading guide and rubric strictly, criterion by criterion.\n"
    "- After grading, make sure the final total is converted to the scale requested in the IMPORTANT section.\n"
    "- Feedback must be constructive: strengths, weaknesses and how to improve.\n"
    "- Always answer with JSON matching the schema, with no text outside the JSON object."
)

GRADING_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "detailedFeedback": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "criterionId": {"type": "STRING"},
                    "criterion": {"type": "STRING"},
                    "score": {"type": "NUMBER"},
                    "feedback": {"type": "STRING"},
                },
                "required": ["criterion", "score", "feedback"],
            },
        },
        "totalScore": {"type": "NUMBER"},
        "maxScore": {"type": "NUMBER"},
        "generalSuggestions": {"type": "ARRAY", "items": {"type": "STRING"}},
    },
    "required": ["detailedFeedback", "totalScore", "maxScore", "generalSuggestions"],
}

RUBRIC_SYSTEM_INSTRUCTION = (
    "You are an assessment expert. Read the grading guide and extract EVERY scored criterion "
    "with its maximum score.\n"
    "- Split compound points into separate criteria when they carry separate scores, e.g. "
    "'Introduction (0.5): author (0.25), work (0.25)' becomes two criteria.\n"
    "- Only extract criteria that have an explicit score; skip general requirements.\n"
    "- Answer with a JSON array matching the schema."
)

RUBRIC_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "criterion": {"type": "STRING"},
            "maxScore": {"type": "NUMBER"},
        },
        "required": ["criterion", "maxScore"],
    },
}

SIMILARITY_SYSTEM_INSTRUCTION = (
    "You are a precise plagiarism checker. Compare the NEW essay with the list of EXISTING essays.\n"
    "- Find the single existing essay most similar to the new one.\n"
    "- Give the similarity percentage (0-100) for that pair, a one or two sentence explanation, "
    "and the 0-based index of that essay.\n"
    "- Answer with JSON matching the schema."
)

SIMILARITY_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "similarityPercentage": {"type": "NUMBER"},
        "explanation": {"type": "STRING"},
        "mostSimilarEssayIndex": {"type": "NUMBER"},
    },
    "required": ["similarityPercentage", "explanation", "mostSimilarEssayIndex"],
}

SHORT_ANSWER_SYSTEM_INSTRUCTION = (
    "You are a careful teacher grading short answers about a reading passage.\n"
    "For each question: read the question, its criteria and maximum score, read the student's answer, "
    "compare it with the passage, award a score that never exceeds the maximum, and write short "
    "constructive feedback.\n"
    "Answer with a JSON array matching the schema and nothing else."
)

SHORT_ANSWER_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "questionId": {"type": "STRING"},
            "score": {"type": "NUMBER"},
            "feedback": {"type": "STRING"},
        },
        "required": ["questionId", "score", "feedback"],
    },
}


class GeminiGrader:
    """GradingCollaborator backed by Gemini. The HTTP client is created lazily."""

    def __init__(self, client: Optional[GeminiClient] = None) -> None:
        self._client = client

    @property
    def client(self) -> GeminiClient:
        if self._client is None:
            self._client = GeminiClient()
        return self._client

    async def grade(self, prompt, essay, rubric_items, raw_rubric, target_max_score, *, instructions):
        text = await self.client.generate_json(
            instructions,
            system_instruction=GRADING_SYSTEM_INSTRUCTION,
            response_schema=GRADING_SCHEMA,
        )
        return extract_json(text)

    async def parse_rubric(self, raw_text):
        content = f'Extract the scoring rubric from the following grading guide:\n\n"""{raw_text}"""'
        text = await self.client.generate_json(
            content,
            system_instruction=RUBRIC_SYSTEM_INSTRUCTION,
            response_schema=RUBRIC_SCHEMA,
        )
        return extract_json(text)

    async def check_similarity(self, new_essay, prior_essays):
        listing = "\n".join(
            f'--- Essay {index} ---\n"""\n{essay}\n"""' for index, essay in enumerate(prior_essays)
        )
        content = (
            f'**New essay to check:**\n"""\n{new_essay}\n"""\n\n'
            f"**Existing essays to compare against:**\n{listing}"
        )
        text = await self.client.generate_json(
            content,
            system_instruction=SIMILARITY_SYSTEM_INSTRUCTION,
            response_schema=SIMILARITY_SCHEMA,
        )
        return extract_json(text)

    async def grade_short_answers(self, passage, items):
        content = (
            f'**Passage:**\n"""{passage}"""\n\n'
            "**Instructions:** grade the following answers using the passage and each question's criteria.\n\n"
            f"**Answers to grade:**\n{json.dumps(items, ensure_ascii=False, indent=2)}"
        )
        text = await self.client.generate_json(
            content,
            system_instruction=SHORT_ANSWER_SYSTEM_INSTRUCTION,
            response_schema=SHORT_ANSWER_SCHEMA,
            temperature=0.1,
        )
        return extract_json(text)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


_default_grader: Optional[GeminiGrader] = None


def get_grader() -> GradingCollaborator:
    """FastAPI dependency returning the process-wide grading collaborator."""
    global _default_grader
    if _default_grader is None:
        _default_grader = GeminiGrader()
    return _default_grader
