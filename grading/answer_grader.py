"""Server-side grading of submitted answers against canonical questions."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from grading.numeric_grade import GradeError, grade_numeric
from trials.types.question import Question, QuestionType

logger = logging.getLogger("rankup.grader")


@dataclass
class GradeOutcome:
    """Result of grading one answer."""

    correct: bool
    error: GradeError | None = None


def _parse_choice_index(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("+-").isdigit():
            return int(text)
    return None


def grade_mcq(question: Question, submitted: object) -> GradeOutcome:
    """Index equality against the canonical choice."""
    if submitted is None or (isinstance(submitted, str) and not submitted.strip()):
        return GradeOutcome(False, GradeError.MISSING_ANSWER)
    index = _parse_choice_index(submitted)
    if index is None:
        return GradeOutcome(False, GradeError.INVALID_FORMAT)
    return GradeOutcome(index == question.correct_index)


class AnswerGrader:
    """Grades answers by question type; client-side correctness is never trusted."""

    def grade(self, question: Question, submitted: object) -> GradeOutcome:
        if question.type is QuestionType.MCQ:
            return grade_mcq(question, submitted)
        result = grade_numeric(submitted, question.canonical_answer, question.tolerance)
        if result.error is GradeError.INVALID_FORMAT and result.correct_value is None:
            logger.warning("Canonical answer for question %s does not parse", question.id)
        return GradeOutcome(result.correct, result.error)
