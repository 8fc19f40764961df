"""Question bank models."""

from __future__ import annotations

import enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class QuestionType(str, enum.Enum):
    MCQ = "mcq"
    NUMERIC = "numeric"


class Question(BaseModel):
    """A gradable question including its canonical answer."""

    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    difficulty: int = Field(ge=1, le=5)
    type: QuestionType
    track_id: str | None = None
    choices: list[str] = Field(default_factory=list)
    correct_index: int | None = None
    canonical_answer: str | None = None
    tolerance: float | None = Field(default=None, ge=0.0)
    unit: str | None = None

    @model_validator(mode="after")
    def _check_answer_shape(self) -> Question:
        if self.type is QuestionType.MCQ:
            if len(self.choices) < 2:
                raise ValueError("MCQ questions need at least two choices.")
            if self.correct_index is None or not 0 <= self.correct_index < len(self.choices):
                raise ValueError("MCQ correct_index must point at one of the choices.")
        elif not self.canonical_answer:
            raise ValueError("Numeric questions need a canonical_answer.")
        return self

    def redacted(self) -> PublicQuestion:
        """Client-safe view without the correct answer."""
        return PublicQuestion(
            id=self.id,
            text=self.text,
            difficulty=self.difficulty,
            type=self.type,
            choices=list(self.choices),
            unit=self.unit,
        )


class PublicQuestion(BaseModel):
    """Question as sent to the client before grading."""

    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    difficulty: int
    type: QuestionType
    choices: list[str] = Field(default_factory=list)
    unit: str | None = None
