"""Domain errors raised by the services and mapped to HTTP responses in main.py."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ExamPlatformError(Exception):
    """Base class for expected, user-facing failures."""

    status_code: int = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "error": type(self).__name__}


class PermissionDenied(ExamPlatformError):
    status_code = 403


class AttemptNotFound(ExamPlatformError):
    status_code = 404

    def __init__(self, attempt_id: int):
        super().__init__("Exam session not found")
        self.attempt_id = attempt_id


class PasswordMismatch(ExamPlatformError):
    status_code = 403

    def __init__(self):
        super().__init__("Incorrect exam password")


class ExamNotOpen(ExamPlatformError):
    status_code = 409


class ExamStillRunning(ExamPlatformError):
    status_code = 409


class AttemptClosed(ExamPlatformError):
    status_code = 409


class AttemptAlreadySubmitted(ExamPlatformError):
    status_code = 409

    def __init__(self, attempt_id: int):
        super().__init__("This exam has already been submitted")
        self.attempt_id = attempt_id


class GradingErrorKind(str, Enum):
    INVALID_RESPONSE_SHAPE = "invalid_response_shape"
    TIMEOUT = "timeout"
    COLLABORATOR_FAILURE = "collaborator_failure"


class GradingError(ExamPlatformError):
    """One essay could not be graded. Never aborts sibling grading work."""

    status_code = 502

    def __init__(self, kind: GradingErrorKind, message: str, problem_id: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.problem_id = problem_id

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["kind"] = self.kind.value
        return data


class RubricParseError(ExamPlatformError):
    """The rubric text could not be turned into structured criteria."""

    status_code = 502

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retryable"] = True
        return data
