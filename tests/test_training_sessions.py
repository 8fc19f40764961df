"""Training session fee reservation and settlement tests."""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest

from core.errors import IncompleteSubmission, InsufficientBalance, SessionNotFound
from economy.calculator import EconomyCalculator
from economy.training_sessions import TrainingSessionService
from ledger.stake_ledger import StakeLedger
from persistence.sql_store import SQLStore
from trials.question_bank import InMemoryQuestionBank
from trials.types import Question, QuestionType


def build_service(tmp_path: Path) -> tuple[TrainingSessionService, StakeLedger]:
    store = SQLStore(db_path=tmp_path / "sessions.db")
    store.create_all()
    ledger = StakeLedger(store)
    bank = InMemoryQuestionBank(
        Question(
            id=f"t{i}",
            text=f"{i} squared",
            difficulty=2,
            type=QuestionType.NUMERIC,
            canonical_answer=str(i * i),
        )
        for i in range(10)
    )
    service = TrainingSessionService(store, ledger, EconomyCalculator(), bank)
    return service, ledger


def answers(correct: int, total: int = 10) -> list[dict[str, object]]:
    return [
        {"question_id": f"t{i}", "value": str(i * i) if i < correct else "-7"}
        for i in range(total)
    ]


def test_reserve_escrows_tier_fee(tmp_path: Path) -> None:
    service, ledger = build_service(tmp_path)
    ledger.deposit("alice", Decimal("10"))

    session = service.reserve("alice", "high")
    assert session.fee_hive == Decimal("2")
    assert session.stake_before == Decimal("10")
    assert session.status == "reserved"

    account = ledger.get_account("alice")
    assert account.balance == Decimal("8")
    assert account.escrowed == Decimal("2")


def test_reserve_requires_balance(tmp_path: Path) -> None:
    service, ledger = build_service(tmp_path)
    ledger.deposit("alice", Decimal("3"))
    with pytest.raises(InsufficientBalance):
        service.reserve("alice", "extreme")
    assert ledger.get_account("alice").balance == Decimal("3")


def test_settle_refunds_by_score(tmp_path: Path) -> None:
    service, ledger = build_service(tmp_path)
    ledger.deposit("alice", Decimal("10"))
    session = service.reserve("alice", "medium")

    outcome = service.settle(session.id, answers(correct=9))
    assert outcome.applied is True
    assert outcome.passed is True
    assert outcome.session.score_pct == Decimal("0.9")
    assert outcome.session.cost_hive == Decimal("0.1")
    assert outcome.session.refund_hive == Decimal("0.9")

    account = ledger.get_account("alice")
    assert account.balance == Decimal("9.9")
    assert account.escrowed == Decimal("0")
    pending = ledger.list_pending_transfers()
    assert pending[0].source == "training_fee"
    assert pending[0].amount == Decimal("0.1")


def test_failed_session_retains_whole_fee(tmp_path: Path) -> None:
    service, ledger = build_service(tmp_path)
    ledger.deposit("alice", Decimal("10"))
    session = service.reserve("alice", "low")

    outcome = service.settle(session.id, answers(correct=3))
    assert outcome.passed is False
    assert outcome.session.refund_hive == Decimal("0")
    assert ledger.get_account("alice").balance == Decimal("9.5")


def test_settle_is_idempotent(tmp_path: Path) -> None:
    service, ledger = build_service(tmp_path)
    ledger.deposit("alice", Decimal("10"))
    session = service.reserve("alice", "medium")
    service.settle(session.id, answers(correct=10))
    balance = ledger.get_account("alice").balance

    again = service.settle(session.id, answers(correct=0))
    assert again.applied is False
    assert again.passed is True
    assert ledger.get_account("alice").balance == balance == Decimal("10")


def test_settle_validates_answers(tmp_path: Path) -> None:
    service, ledger = build_service(tmp_path)
    ledger.deposit("alice", Decimal("10"))
    session = service.reserve("alice", "medium")

    with pytest.raises(IncompleteSubmission):
        service.settle(session.id, [])
    with pytest.raises(IncompleteSubmission):
        service.settle(session.id, [{"question_id": "nope", "value": "1"}])
    with pytest.raises(SessionNotFound):
        service.settle("missing", answers(correct=1))
    assert service.get_session(session.id).status == "reserved"
