"""Submission and completion payloads."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from grading.numeric_grade import GradeError


class SubmittedAnswer(BaseModel):
    """One client answer: an MCQ index or a numeric expression."""

    question_id: str
    value: int | float | str | None = None


class AnswerResult(BaseModel):
    question_id: str
    correct: bool
    error: GradeError | None = None


class TrialCompletion(BaseModel):
    """Outcome returned by ``TrialEngine.complete_trial``."""

    trial_id: str
    result: str
    correct_count: int
    total_count: int
    accuracy: float
    avg_difficulty: float
    fail_streak: int
    rollback_applied: bool = False
    new_level: int | None = None
    failed_reason: str | None = None
    cooldown_until: datetime | None = None
    slashed_amount: Decimal | None = None
    answers: list[AnswerResult]
