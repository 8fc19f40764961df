"""Question bank contracts and implementations."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Protocol

import yaml
from sqlalchemy import select

from grading.numeric_grade import require_numeric
from persistence.schemas import QuestionRecord
from persistence.sql_store import SQLStore
from trials.types.question import Question, QuestionType

logger = logging.getLogger("rankup.question_bank")


class QuestionBank(Protocol):
    """Supplies the question pool; the engine only selects and orders from it."""

    def list_questions(self, track_id: str | None = None) -> list[Question]: ...

    def get_question(self, question_id: str) -> Question | None: ...


class InMemoryQuestionBank:
    """Question bank over a fixed list, for tests and previews."""

    def __init__(self, questions: Iterable[Question] = ()) -> None:
        self._questions = {q.id: q for q in questions}

    def add(self, question: Question) -> None:
        self._questions[question.id] = question

    def list_questions(self, track_id: str | None = None) -> list[Question]:
        return [q for q in self._questions.values() if track_id is None or q.track_id == track_id]

    def get_question(self, question_id: str) -> Question | None:
        return self._questions.get(question_id)


class SQLQuestionBank:
    """Question bank persisted in the ``questions`` table."""

    def __init__(self, sql_store: SQLStore) -> None:
        self.sql_store = sql_store

    def add_questions(self, questions: Iterable[Question]) -> int:
        """Insert or replace questions by id; returns how many were written."""
        count = 0
        with self.sql_store.session() as sess:
            for question in questions:
                if question.type == QuestionType.NUMERIC:
                    require_numeric(question.canonical_answer)
                row = sess.get(QuestionRecord, question.id)
                if row is None:
                    row = QuestionRecord(id=question.id)
                    sess.add(row)
                row.text = question.text
                row.difficulty = question.difficulty
                row.type = question.type.value
                row.track_id = question.track_id
                row.choices = list(question.choices)
                row.correct_index = question.correct_index
                row.canonical_answer = question.canonical_answer
                row.tolerance = question.tolerance
                row.unit = question.unit
                count += 1
        return count

    def load_yaml(self, path: Path) -> int:
        """Load a YAML list of question mappings into the bank."""
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or []
        if isinstance(data, dict):
            data = data.get("questions", [])
        if not isinstance(data, list):
            raise ValueError(f"Question file must contain a list: {path}")
        count = self.add_questions(Question.model_validate(item) for item in data)
        logger.info("Loaded %d questions from %s", count, path)
        return count

    def list_questions(self, track_id: str | None = None) -> list[Question]:
        with self.sql_store.session() as sess:
            stmt = select(QuestionRecord)
            if track_id is not None:
                stmt = stmt.where(QuestionRecord.track_id == track_id)
            rows = sess.scalars(stmt.order_by(QuestionRecord.id)).all()
            return [record_to_question(row) for row in rows]

    def get_question(self, question_id: str) -> Question | None:
        with self.sql_store.session() as sess:
            row = sess.get(QuestionRecord, question_id)
            return record_to_question(row) if row is not None else None


def record_to_question(row: QuestionRecord) -> Question:
    payload: dict[str, Any] = {
        "id": row.id,
        "text": row.text,
        "difficulty": row.difficulty,
        "type": row.type,
        "track_id": row.track_id,
        "choices": list(row.choices or []),
        "correct_index": row.correct_index,
        "canonical_answer": row.canonical_answer,
        "tolerance": row.tolerance,
        "unit": row.unit,
    }
    return Question.model_validate(payload)
