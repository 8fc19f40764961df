"""Fee-bearing training sessions.

A session reserves its tier fee from the owner's vault stake up front. When
the owner submits answers the fee is split by score: the refund goes back to
the balance and the cost is retained as a pending transfer. Settling a
session twice returns the first outcome.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.errors import IncompleteSubmission, SessionNotFound
from core.event_bus import SESSION_RESERVED, SESSION_SETTLED, EventBus
from core.policy_runtime import DifficultyTier
from economy.calculator import EconomyCalculator
from grading.answer_grader import AnswerGrader
from ledger.stake_ledger import StakeLedger
from persistence.schemas import TrainingSessionRecord
from persistence.sql_store import SQLStore
from trials.question_bank import QuestionBank
from trials.types import AnswerResult, SubmittedAnswer

logger = logging.getLogger("rankup.sessions")

RESERVED = "reserved"
SETTLED = "settled"

SCORE_QUANTUM = Decimal("0.0001")


class TrainingSession(BaseModel):
    id: str
    owner_id: str
    tier: DifficultyTier
    fee_hive: Decimal
    status: str
    stake_before: Decimal
    correct_count: int | None = None
    total_count: int | None = None
    score_pct: Decimal | None = None
    cost_hive: Decimal | None = None
    refund_hive: Decimal | None = None
    created_at: datetime
    settled_at: datetime | None = None


class SessionSettlement(BaseModel):
    """Outcome of ``TrainingSessionService.settle``."""

    session: TrainingSession
    passed: bool
    answers: list[AnswerResult]
    applied: bool


class TrainingSessionService:
    def __init__(
        self,
        sql_store: SQLStore,
        ledger: StakeLedger,
        calculator: EconomyCalculator,
        question_bank: QuestionBank,
        grader: AnswerGrader | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.sql_store = sql_store
        self.ledger = ledger
        self.calculator = calculator
        self.question_bank = question_bank
        self.grader = grader or AnswerGrader()
        self.event_bus = event_bus or EventBus()
        self.clock = clock or ledger.clock

    def reserve(self, owner_id: str, tier: DifficultyTier | str) -> TrainingSession:
        """Escrow the tier fee and open a session."""
        tier = DifficultyTier(tier)
        fee = self.calculator.fee_for_tier(tier)
        session_id = str(uuid.uuid4())
        with self.ledger.locks.hold(owner_id):
            with self.sql_store.session() as sess:
                account = self.ledger.load_account(sess, owner_id)
                stake_before = account.balance
                self.ledger.escrow(
                    owner_id, fee, reference_id=session_id, kind="session", sess=sess
                )
                record = TrainingSessionRecord(
                    id=session_id,
                    owner_id=owner_id,
                    tier=tier.value,
                    fee_hive=fee,
                    status=RESERVED,
                    stake_before=stake_before,
                    created_at=self.clock(),
                )
                sess.add(record)
                sess.flush()
                session = session_to_model(record)
        logger.info("Reserved %s fee %s for %s (session %s)", tier.value, fee, owner_id, session_id)
        self.event_bus.emit(SESSION_RESERVED, session.model_dump(mode="json"))
        return session

    def get_session(self, session_id: str) -> TrainingSession:
        with self.sql_store.session() as sess:
            return session_to_model(self._load(sess, session_id))

    @staticmethod
    def _load(sess: Session, session_id: str) -> TrainingSessionRecord:
        record = sess.get(TrainingSessionRecord, session_id)
        if record is None:
            raise SessionNotFound(f"Training session not found: {session_id}")
        return record

    def settle(
        self,
        session_id: str,
        answers: Iterable[SubmittedAnswer | Mapping[str, Any]],
    ) -> SessionSettlement:
        """Grade the answers and split the reserved fee by score."""
        submitted = [
            a if isinstance(a, SubmittedAnswer) else SubmittedAnswer.model_validate(a)
            for a in answers
        ]
        existing = self.get_session(session_id)
        if existing.status == SETTLED:
            logger.info("Session %s already settled", session_id)
            return SessionSettlement(
                session=existing,
                passed=self._passed(existing.score_pct),
                answers=[],
                applied=False,
            )

        results = self._grade(submitted)
        correct = sum(1 for r in results if r.correct)
        score = (Decimal(correct) / Decimal(len(results))).quantize(
            SCORE_QUANTUM, rounding=ROUND_HALF_UP
        )

        with self.ledger.locks.hold(existing.owner_id):
            with self.sql_store.session() as sess:
                record = self._load(sess, session_id)
                if record.status == SETTLED:
                    return SessionSettlement(
                        session=session_to_model(record),
                        passed=self._passed(Decimal(record.score_pct or "0")),
                        answers=[],
                        applied=False,
                    )
                outcome = self.calculator.settle(record.fee_hive, score, record.stake_before)
                self.ledger.settle(
                    record.owner_id,
                    reference_id=session_id,
                    refund=outcome.refund_hive,
                    source="training_fee",
                    sess=sess,
                )
                record.status = SETTLED
                record.correct_count = correct
                record.total_count = len(results)
                record.score_pct = str(score)
                record.cost_hive = outcome.cost_hive
                record.refund_hive = outcome.refund_hive
                record.settled_at = self.clock()
                sess.flush()
                session = session_to_model(record)

        logger.info(
            "Settled session %s: score %s, cost %s, refund %s",
            session_id,
            score,
            outcome.cost_hive,
            outcome.refund_hive,
        )
        self.event_bus.emit(SESSION_SETTLED, session.model_dump(mode="json"))
        return SessionSettlement(
            session=session, passed=outcome.passed, answers=results, applied=True
        )

    def _grade(self, submitted: list[SubmittedAnswer]) -> list[AnswerResult]:
        if not submitted:
            raise IncompleteSubmission("A training session needs at least one answer.")
        seen: set[str] = set()
        results: list[AnswerResult] = []
        for answer in submitted:
            if answer.question_id in seen:
                raise IncompleteSubmission(
                    f"Question {answer.question_id} answered more than once."
                )
            seen.add(answer.question_id)
            question = self.question_bank.get_question(answer.question_id)
            if question is None:
                raise IncompleteSubmission(f"Unknown question {answer.question_id}.")
            outcome = self.grader.grade(question, answer.value)
            results.append(
                AnswerResult(question_id=question.id, correct=outcome.correct, error=outcome.error)
            )
        return results

    def _passed(self, score: Decimal | None) -> bool:
        return score is not None and score >= self.calculator.config.pass_threshold


def session_to_model(record: TrainingSessionRecord) -> TrainingSession:
    return TrainingSession(
        id=record.id,
        owner_id=record.owner_id,
        tier=DifficultyTier(record.tier),
        fee_hive=record.fee_hive,
        status=record.status,
        stake_before=record.stake_before,
        correct_count=record.correct_count,
        total_count=record.total_count,
        score_pct=Decimal(record.score_pct) if record.score_pct is not None else None,
        cost_hive=record.cost_hive,
        refund_hive=record.refund_hive,
        created_at=record.created_at,
        settled_at=record.settled_at,
    )
