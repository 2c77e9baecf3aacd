"""Exam attempt state machine: start, answers, finish, timeout and the sweep."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from essay_exams.errors import (
    AttemptAlreadySubmitted,
    AttemptClosed,
    AttemptNotFound,
    ExamNotOpen,
    ExamStillRunning,
    PasswordMismatch,
    PermissionDenied,
)
from essay_exams.models import ExamAttempt, Problem, Submission
from essay_exams.services import answer_cache
from essay_exams.services import attempts as attempts_service
from essay_exams.services.attempts import (
    attempt_cache,
    expire_overdue_attempts,
    finish_attempt,
    get_attempt,
    record_fullscreen_exit,
    record_visibility_change,
    save_answer,
    start_attempt,
    timeout_attempt,
)
from essay_exams.services.exam_status import exam_problems


def _answer_all(session, attempt, student, exam, texts):
    for problem, text in zip(exam_problems(session, exam.id), texts):
        save_answer(session, attempt.id, problem.id, text, student)


class TestStart:
    def test_start_is_idempotent(self, session, ongoing_exam, student_user):
        first = start_attempt(session, ongoing_exam, student_user)
        second = start_attempt(session, ongoing_exam, student_user)

        assert first.id == second.id
        rows = session.exec(select(ExamAttempt).where(ExamAttempt.exam_id == ongoing_exam.id)).all()
        assert len(rows) == 1
        assert rows[0].status == "open"

    def test_wrong_password_creates_nothing(self, session, make_exam, student_user):
        exam = make_exam(password="s3cret")

        with pytest.raises(PasswordMismatch):
            start_attempt(session, exam, student_user, password="S3CRET")

        assert session.exec(select(ExamAttempt)).all() == []
        assert start_attempt(session, exam, student_user, password="s3cret").status == "open"

    def test_password_is_checked_on_resume(self, session, make_exam, student_user):
        exam = make_exam(password="s3cret")
        start_attempt(session, exam, student_user, password="s3cret")
        with pytest.raises(PasswordMismatch):
            start_attempt(session, exam, student_user)

    @pytest.mark.parametrize(
        "start_offset,end_offset",
        [(timedelta(minutes=10), timedelta(minutes=60)), (timedelta(minutes=-60), timedelta(minutes=-1))],
    )
    def test_outside_window(self, session, make_exam, student_user, start_offset, end_offset):
        exam = make_exam(start_offset=start_offset, end_offset=end_offset)
        with pytest.raises(ExamNotOpen):
            start_attempt(session, exam, student_user)

    def test_window_is_inclusive(self, session, ongoing_exam, student_user):
        attempt = start_attempt(session, ongoing_exam, student_user, now=ongoing_exam.end_time)
        assert attempt.status == "open"

    def test_only_students_start(self, session, ongoing_exam, teacher_user):
        with pytest.raises(PermissionDenied):
            start_attempt(session, ongoing_exam, teacher_user)


class TestAnswers:
    def test_answers_are_cached_per_problem(self, session, ongoing_exam, student_user):
        attempt = start_attempt(session, ongoing_exam, student_user)
        problem = exam_problems(session, ongoing_exam.id)[0]

        save_answer(session, attempt.id, problem.id, "draft", student_user)
        save_answer(session, attempt.id, problem.id, "final", student_user)

        assert answer_cache.get_all(session, attempt.id) == {problem.id: "final"}

    def test_problem_outside_exam_is_rejected(self, session, ongoing_exam, student_user, practice_problem):
        attempt = start_attempt(session, ongoing_exam, student_user)
        with pytest.raises(ValueError):
            save_answer(session, attempt.id, practice_problem.id, "text", student_user)

    def test_answer_after_end_time_is_rejected(self, session, ongoing_exam, student_user):
        attempt = start_attempt(session, ongoing_exam, student_user)
        problem = exam_problems(session, ongoing_exam.id)[0]
        with pytest.raises(AttemptClosed):
            save_answer(session, attempt.id, problem.id, "late", student_user,
                        now=ongoing_exam.end_time + timedelta(seconds=1))

    def test_other_students_cannot_write(self, session, ongoing_exam, student_user, other_student):
        attempt = start_attempt(session, ongoing_exam, student_user)
        problem = exam_problems(session, ongoing_exam.id)[0]
        with pytest.raises(AttemptNotFound):
            save_answer(session, attempt.id, problem.id, "text", other_student)


class TestProctoring:
    def test_fullscreen_exits_are_appended(self, session, ongoing_exam, student_user):
        attempt = start_attempt(session, ongoing_exam, student_user)

        assert record_fullscreen_exit(session, attempt.id, student_user)
        assert record_fullscreen_exit(session, attempt.id, student_user)

        assert len(get_attempt(session, attempt.id, student_user).fullscreen_exits) == 2

    def test_only_hidden_visibility_is_recorded(self, session, ongoing_exam, student_user):
        attempt = start_attempt(session, ongoing_exam, student_user)

        assert record_visibility_change(session, attempt.id, "hidden", student_user) is True
        assert record_visibility_change(session, attempt.id, "visible", student_user) is False

        changes = get_attempt(session, attempt.id, student_user).visibility_state_changes
        assert [c["state"] for c in changes] == ["hidden"]

    def test_unknown_visibility_state(self, session, ongoing_exam, student_user):
        attempt = start_attempt(session, ongoing_exam, student_user)
        with pytest.raises(ValueError):
            record_visibility_change(session, attempt.id, "minimized", student_user)


class TestFinish:
    def test_partial_grading_failure(self, session, ongoing_exam, student_user, grader):
        attempt = start_attempt(session, ongoing_exam, student_user)
        _answer_all(session, attempt, student_user, ongoing_exam, ["answer 1", "answer 2", "answer 3"])
        grader.failing_essays.add("answer 2")

        closed = asyncio.run(finish_attempt(session, attempt.id, student_user, grader))

        submissions = session.exec(select(Submission).where(Submission.exam_attempt_id == attempt.id)).all()
        assert closed.status == "closed"
        assert closed.finish_reason == "submitted"
        assert closed.submitted_at is not None
        assert len(submissions) == 2
        assert sorted(closed.submission_ids) == sorted(s.id for s in submissions)
        assert sorted(s.essay for s in submissions) == ["answer 1", "answer 3"]

    def test_blank_answers_are_not_graded(self, session, ongoing_exam, student_user, grader):
        attempt = start_attempt(session, ongoing_exam, student_user)
        _answer_all(session, attempt, student_user, ongoing_exam, ["answer 1", "   \n ", ""])

        closed = asyncio.run(finish_attempt(session, attempt.id, student_user, grader))

        assert [call["essay"] for call in grader.grade_calls] == ["answer 1"]
        assert len(closed.submission_ids) == 1

    def test_answer_cache_is_cleared_after_close(self, session, ongoing_exam, student_user, grader):
        attempt = start_attempt(session, ongoing_exam, student_user)
        _answer_all(session, attempt, student_user, ongoing_exam, ["answer 1"])

        asyncio.run(finish_attempt(session, attempt.id, student_user, grader))

        assert answer_cache.get_all(session, attempt.id) == {}
        assert len(attempts_service._locks) == 0

    def test_closed_attempt_is_immutable(self, session, ongoing_exam, student_user, grader):
        attempt = start_attempt(session, ongoing_exam, student_user)
        _answer_all(session, attempt, student_user, ongoing_exam, ["answer 1"])
        closed = asyncio.run(finish_attempt(session, attempt.id, student_user, grader))
        submitted_at = closed.submitted_at
        submission_ids = list(closed.submission_ids)
        problem = exam_problems(session, ongoing_exam.id)[0]

        assert record_fullscreen_exit(session, attempt.id, student_user) is False
        assert record_visibility_change(session, attempt.id, "hidden", student_user) is False
        with pytest.raises(AttemptClosed):
            save_answer(session, attempt.id, problem.id, "edit", student_user)
        again = asyncio.run(finish_attempt(session, attempt.id, student_user, grader))
        with pytest.raises(AttemptAlreadySubmitted):
            start_attempt(session, ongoing_exam, student_user)

        assert again.submitted_at == submitted_at
        assert list(again.submission_ids) == submission_ids
        assert again.fullscreen_exits == []
        assert len(grader.grade_calls) == 1

    def test_failed_terminal_write_reopens_attempt(self, session, ongoing_exam, student_user, grader, monkeypatch):
        attempt = start_attempt(session, ongoing_exam, student_user)
        _answer_all(session, attempt, student_user, ongoing_exam, ["answer 1"])

        def broken(*args, **kwargs):
            raise SQLAlchemyError("disk I/O error")

        monkeypatch.setattr(attempts_service, "create_submission", broken)
        with pytest.raises(SQLAlchemyError):
            asyncio.run(finish_attempt(session, attempt.id, student_user, grader))

        reopened = session.get(ExamAttempt, attempt.id, populate_existing=True)
        assert reopened.status == "open"
        assert answer_cache.get_all(session, attempt.id) != {}


class TestTimeout:
    def test_timeout_before_end_is_rejected(self, session, ongoing_exam, student_user, grader):
        attempt = start_attempt(session, ongoing_exam, student_user)
        with pytest.raises(ExamStillRunning):
            asyncio.run(timeout_attempt(session, attempt.id, student_user, grader))

    def test_timeout_after_end_closes_attempt(self, session, ongoing_exam, student_user, grader):
        attempt = start_attempt(session, ongoing_exam, student_user)
        _answer_all(session, attempt, student_user, ongoing_exam, ["answer 1", "answer 2"])

        closed = asyncio.run(
            timeout_attempt(session, attempt.id, student_user, grader, now=ongoing_exam.end_time + timedelta(seconds=1))
        )

        assert closed.status == "closed"
        assert closed.finish_reason == "timed_out"
        assert len(closed.submission_ids) == 2

    def test_sweep_closes_overdue_attempts_once(self, session, make_exam, student_user, grader):
        exam = make_exam(start_offset=timedelta(minutes=-90), end_offset=timedelta(minutes=-30))
        attempt = start_attempt(session, exam, student_user, now=exam.start_time + timedelta(minutes=1))

        assert asyncio.run(expire_overdue_attempts(session, grader)) == 1
        assert asyncio.run(expire_overdue_attempts(session, grader)) == 0

        closed = session.get(ExamAttempt, attempt.id, populate_existing=True)
        assert closed.status == "closed"
        assert closed.finish_reason == "timed_out"

    def test_sweep_retries_after_a_concurrent_finish_fails(self, session, make_exam, student_user, grader):
        exam = make_exam(start_offset=timedelta(minutes=-90), end_offset=timedelta(minutes=-30))
        attempt = start_attempt(session, exam, student_user, now=exam.start_time + timedelta(minutes=1))

        # Another finish is in progress during the first sweep, then fails and reopens
        attempts_service._finishing.add(attempt.id)
        try:
            assert asyncio.run(expire_overdue_attempts(session, grader)) == 0
        finally:
            attempts_service._finishing.discard(attempt.id)
        assert session.get(ExamAttempt, attempt.id, populate_existing=True).status == "open"

        assert asyncio.run(expire_overdue_attempts(session, grader)) == 1
        assert session.get(ExamAttempt, attempt.id, populate_existing=True).status == "closed"
        assert attempt.id not in attempts_service._triggers


class TestResolution:
    def test_cache_miss_falls_back_to_database(self, session, ongoing_exam, student_user):
        attempt = start_attempt(session, ongoing_exam, student_user)
        attempt_cache.clear()

        snapshot = get_attempt(session, attempt.id, student_user)

        assert snapshot.id == attempt.id
        assert attempt_cache.get(attempt.id) is not None

    def test_unknown_attempt(self, session, student_user):
        with pytest.raises(AttemptNotFound):
            get_attempt(session, 999, student_user)

    def test_students_cannot_see_other_attempts(self, session, ongoing_exam, student_user, other_student):
        attempt = start_attempt(session, ongoing_exam, student_user)
        with pytest.raises(AttemptNotFound):
            get_attempt(session, attempt.id, other_student)
