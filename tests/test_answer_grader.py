"""Answer grader dispatch tests."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from grading.answer_grader import AnswerGrader
from grading.numeric_grade import GradeError
from trials.types import Question, QuestionType


def mcq() -> Question:
    return Question(
        id="q-mcq",
        text="Pick the prime",
        difficulty=3,
        type=QuestionType.MCQ,
        choices=["4", "6", "7", "9"],
        correct_index=2,
    )


def numeric(tolerance: float | None = None) -> Question:
    return Question(
        id="q-num",
        text="Half of three",
        difficulty=3,
        type=QuestionType.NUMERIC,
        canonical_answer="3/2",
        tolerance=tolerance,
    )


def test_mcq_index_equality() -> None:
    grader = AnswerGrader()
    assert grader.grade(mcq(), 2).correct is True
    assert grader.grade(mcq(), "2").correct is True
    assert grader.grade(mcq(), 1).correct is False


def test_mcq_missing_and_invalid() -> None:
    grader = AnswerGrader()
    assert grader.grade(mcq(), None).error == GradeError.MISSING_ANSWER
    assert grader.grade(mcq(), "b").error == GradeError.INVALID_FORMAT
    assert grader.grade(mcq(), 1.5).error == GradeError.INVALID_FORMAT
    assert grader.grade(mcq(), True).error == GradeError.INVALID_FORMAT


def test_numeric_dispatch() -> None:
    grader = AnswerGrader()
    assert grader.grade(numeric(), "1.5").correct is True
    assert grader.grade(numeric(), "1 1/2").correct is True
    assert grader.grade(numeric(tolerance=0.1), "1.58").correct is True
    assert grader.grade(numeric(), "x").error == GradeError.INVALID_FORMAT


def test_redacted_question_hides_answer() -> None:
    public = mcq().redacted()
    dumped = public.model_dump()
    assert "correct_index" not in dumped
    assert "canonical_answer" not in dumped
    assert public.choices == ["4", "6", "7", "9"]


def test_question_answer_shape_is_validated() -> None:
    with pytest.raises(ValidationError):
        Question(id="bad", text="?", difficulty=3, type=QuestionType.MCQ, choices=["a"], correct_index=0)
    with pytest.raises(ValidationError):
        Question(id="bad", text="?", difficulty=3, type=QuestionType.NUMERIC)
    with pytest.raises(ValidationError):
        Question(id="bad", text="?", difficulty=6, type=QuestionType.NUMERIC, canonical_answer="1")


def test_whitespace_only_answer_is_missing_for_both_types() -> None:
    grader = AnswerGrader()
    assert grader.grade(mcq(), "   ").error == GradeError.MISSING_ANSWER
    assert grader.grade(numeric(), "   ").error == GradeError.MISSING_ANSWER
