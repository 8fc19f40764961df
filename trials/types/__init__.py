"""Typed trial payload models."""

from trials.types.question import PublicQuestion, Question, QuestionType
from trials.types.result import AnswerResult, SubmittedAnswer, TrialCompletion
from trials.types.trial import Trial, TrialStatus

__all__ = [
    "AnswerResult",
    "PublicQuestion",
    "Question",
    "QuestionType",
    "SubmittedAnswer",
    "Trial",
    "TrialCompletion",
    "TrialStatus",
]
