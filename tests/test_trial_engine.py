"""Rank-up trial lifecycle tests."""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest

from core.errors import (
    CooldownActive,
    IncompleteSubmission,
    InsufficientBalance,
    InsufficientQuestions,
    InvalidTransition,
    LevelMismatch,
    StakeLocked,
    TrialAlreadyActive,
    TrialNotActive,
    TrialNotFound,
    TrialOwnershipError,
)
from core.event_bus import TRIAL_FAILED, TRIAL_PASSED, TRIAL_STARTED, EventBus
from core.policy_runtime import TrialPolicy
from ledger.stake_ledger import StakeLedger
from persistence.sql_store import SQLStore
from progression.requirement_curve import (
    RequirementCurve,
    required_vault_stake,
    required_wallet_hold,
)
from trials.collaborators import StaticWalletOracle
from trials.question_bank import InMemoryQuestionBank
from trials.trial_engine import TrialEngine
from trials.types import Question, QuestionType, TrialStatus


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, hours: float) -> None:
        self.now = self.now + timedelta(hours=hours)


@dataclass
class Harness:
    store: SQLStore
    ledger: StakeLedger
    bank: InMemoryQuestionBank
    oracle: StaticWalletOracle
    engine: TrialEngine
    clock: FakeClock
    events: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    def set_level(self, owner_id: str, level: int) -> None:
        with self.store.session() as sess:
            self.ledger.load_account(sess, owner_id).level = level

    def answers(self, trial_id: str, correct: int) -> list[dict[str, Any]]:
        issued = self.engine.get_trial_questions(trial_id)
        out = []
        for index, question in enumerate(issued):
            canonical = self.bank.get_question(question.id).canonical_answer
            out.append({"question_id": question.id, "value": canonical if index < correct else "-1"})
        return out


def build_harness(tmp_path: Path, pool_size: int = 12, difficulty: int = 3) -> Harness:
    store = SQLStore(db_path=tmp_path / "trials.db")
    store.create_all()
    clock = FakeClock()
    ledger = StakeLedger(store, clock=clock)
    bank = InMemoryQuestionBank(
        Question(
            id=f"q{i:02d}",
            text=f"What is {i} + 100?",
            difficulty=difficulty,
            type=QuestionType.NUMERIC,
            canonical_answer=str(i + 100),
        )
        for i in range(pool_size)
    )
    oracle = StaticWalletOracle(default=Decimal("1000"))
    bus = EventBus()
    engine = TrialEngine(
        store,
        ledger,
        RequirementCurve(),
        bank,
        oracle,
        policy=TrialPolicy(question_count=10, min_required_questions=5),
        event_bus=bus,
        rng=random.Random(42),
    )
    harness = Harness(store, ledger, bank, oracle, engine, clock)
    bus.subscribe_many(
        [TRIAL_STARTED, TRIAL_PASSED, TRIAL_FAILED],
        lambda name, payload: harness.events.append((name, payload)),
    )
    return harness


def test_level_one_failure_slashes_full_escrow(tmp_path: Path) -> None:
    h = build_harness(tmp_path)
    assert required_wallet_hold(1) == Decimal("55")
    assert required_vault_stake(1) == Decimal("50.995")

    h.oracle.set_hold("alice", Decimal("60"))
    h.ledger.deposit("alice", Decimal("100"))
    trial = h.engine.start_trial("alice", 1, 2)

    assert trial.status is TrialStatus.ACTIVE
    assert trial.trial_stake == Decimal("53.98")
    assert trial.question_count == 10
    assert trial.min_accuracy == pytest.approx(0.8)
    account = h.ledger.get_account("alice")
    assert account.balance == Decimal("46.02")
    assert account.escrowed == Decimal("53.98")

    result = h.engine.complete_trial(trial.id, h.answers(trial.id, correct=5))
    assert result.result == "failed"
    assert result.accuracy == pytest.approx(0.5)
    assert result.slashed_amount == Decimal("53.98")
    assert result.fail_streak == 1
    assert result.rollback_applied is False
    assert result.failed_reason == "Accuracy 50.0% below required 80.0%"
    assert result.cooldown_until == h.clock.now + timedelta(hours=24)

    account = h.ledger.get_account("alice")
    assert account.balance == Decimal("46.02")
    assert account.escrowed == Decimal("0")
    assert account.fail_streak == 1
    assert account.level == 1

    pending = h.ledger.list_pending_transfers()
    assert [p.amount for p in pending] == [Decimal("53.98")]
    assert pending[0].source == "rankup_forfeit"


def test_pass_promotes_and_locks_stake(tmp_path: Path) -> None:
    h = build_harness(tmp_path)
    h.ledger.deposit("alice", Decimal("100"))
    trial = h.engine.start_trial("alice", 1, 2)

    result = h.engine.complete_trial(trial.id, h.answers(trial.id, correct=10))
    assert result.result == "passed"
    assert result.new_level == 2
    assert result.fail_streak == 0
    assert result.accuracy == pytest.approx(1.0)
    assert result.avg_difficulty == pytest.approx(3.0)
    assert all(a.correct for a in result.answers)

    account = h.ledger.get_account("alice")
    assert account.level == 2
    assert account.balance == Decimal("100")
    assert account.escrowed == Decimal("0")
    assert account.locked_until == h.clock.now + timedelta(hours=168 * 4)

    with pytest.raises(StakeLocked):
        h.ledger.withdraw("alice", Decimal("100"))
    assert h.engine.get_active_trial("alice") is None
    assert h.engine.get_trial(trial.id).status is TrialStatus.PASSED


def test_accuracy_at_threshold_passes(tmp_path: Path) -> None:
    h = build_harness(tmp_path)
    h.ledger.deposit("alice", Decimal("100"))
    trial = h.engine.start_trial("alice", 1, 2)
    assert h.engine.complete_trial(trial.id, h.answers(trial.id, correct=8)).result == "passed"


def test_completing_twice_does_not_move_money(tmp_path: Path) -> None:
    h = build_harness(tmp_path)
    h.ledger.deposit("alice", Decimal("100"))
    trial = h.engine.start_trial("alice", 1, 2)
    answers = h.answers(trial.id, correct=2)
    h.engine.complete_trial(trial.id, answers)
    before = h.ledger.get_account("alice")

    with pytest.raises(TrialNotActive):
        h.engine.complete_trial(trial.id, answers)
    assert h.ledger.get_account("alice") == before
    assert len(h.ledger.list_pending_transfers()) == 1


def test_three_failures_roll_back_one_level(tmp_path: Path) -> None:
    h = build_harness(tmp_path)
    h.ledger.deposit("alice", Decimal("1000"))
    h.set_level("alice", 3)

    results = []
    for _ in range(3):
        trial = h.engine.start_trial("alice", 3, 4)
        results.append(h.engine.complete_trial(trial.id, h.answers(trial.id, correct=0)))
        h.clock.advance(25)

    assert [r.fail_streak for r in results] == [1, 2, 0]
    assert [r.rollback_applied for r in results] == [False, False, True]
    assert results[-1].new_level == 2

    account = h.ledger.get_account("alice")
    assert account.level == 2
    assert account.fail_streak == 0
    slashed = Decimal("65.92") * 3
    assert account.balance == Decimal("1000") - slashed


def test_rollback_at_level_one_stays_at_one(tmp_path: Path) -> None:
    h = build_harness(tmp_path)
    h.ledger.deposit("alice", Decimal("1000"))
    last = None
    for _ in range(3):
        trial = h.engine.start_trial("alice", 1, 2)
        last = h.engine.complete_trial(trial.id, h.answers(trial.id, correct=0))
        h.clock.advance(25)
    assert last is not None
    assert last.rollback_applied is True
    assert h.ledger.get_account("alice").level == 1


def test_streak_resets_when_target_changes(tmp_path: Path) -> None:
    h = build_harness(tmp_path)
    h.ledger.deposit("alice", Decimal("1000"))
    h.set_level("alice", 3)
    for _ in range(2):
        trial = h.engine.start_trial("alice", 3, 4)
        h.engine.complete_trial(trial.id, h.answers(trial.id, correct=0))
        h.clock.advance(25)
    assert h.ledger.get_account("alice").fail_streak == 2

    h.set_level("alice", 5)
    trial = h.engine.start_trial("alice", 5, 6)
    result = h.engine.complete_trial(trial.id, h.answers(trial.id, correct=0))
    assert result.fail_streak == 1
    assert result.rollback_applied is False


def test_cooldown_blocks_retry_until_expiry(tmp_path: Path) -> None:
    h = build_harness(tmp_path)
    h.ledger.deposit("alice", Decimal("1000"))
    trial = h.engine.start_trial("alice", 1, 2)
    h.engine.complete_trial(trial.id, h.answers(trial.id, correct=0))

    with pytest.raises(CooldownActive) as excinfo:
        h.engine.start_trial("alice", 1, 2)
    assert excinfo.value.cooldown_until == h.clock.now + timedelta(hours=24)

    h.clock.advance(23)
    with pytest.raises(CooldownActive):
        h.engine.start_trial("alice", 1, 2)

    h.clock.advance(2)
    assert h.engine.start_trial("alice", 1, 2).status is TrialStatus.ACTIVE


def test_start_preconditions(tmp_path: Path) -> None:
    h = build_harness(tmp_path)
    h.ledger.deposit("alice", Decimal("100"))

    with pytest.raises(InvalidTransition):
        h.engine.start_trial("alice", 1, 3)
    with pytest.raises(LevelMismatch) as mismatch:
        h.engine.start_trial("alice", 2, 3)
    assert mismatch.value.actual == 1

    h.oracle.set_hold("alice", Decimal("59.99"))
    with pytest.raises(InsufficientBalance) as wallet:
        h.engine.start_trial("alice", 1, 2)
    assert wallet.value.kind == "wallet_hold"
    assert wallet.value.required == Decimal("60.00")

    h.oracle.set_hold("bob", Decimal("60"))
    h.ledger.deposit("bob", Decimal("53.97"))
    with pytest.raises(InsufficientBalance) as vault:
        h.engine.start_trial("bob", 1, 2)
    assert vault.value.kind == "vault_stake"

    assert h.ledger.get_account("alice").escrowed == Decimal("0")
    assert h.engine.get_active_trial("bob") is None


def test_one_active_trial_per_owner(tmp_path: Path) -> None:
    h = build_harness(tmp_path)
    h.ledger.deposit("alice", Decimal("1000"))
    first = h.engine.start_trial("alice", 1, 2)
    with pytest.raises(TrialAlreadyActive) as excinfo:
        h.engine.start_trial("alice", 1, 2)
    assert excinfo.value.trial_id == first.id
    assert h.ledger.get_account("alice").escrowed == first.trial_stake


def test_concurrent_starts_admit_exactly_one(tmp_path: Path) -> None:
    h = build_harness(tmp_path)
    h.ledger.deposit("alice", Decimal("1000"))
    barrier = threading.Barrier(6)
    outcomes: list[str] = []
    guard = threading.Lock()

    def attempt() -> None:
        barrier.wait()
        try:
            h.engine.start_trial("alice", 1, 2)
            outcome = "started"
        except TrialAlreadyActive:
            outcome = "rejected"
        with guard:
            outcomes.append(outcome)

    threads = [threading.Thread(target=attempt) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("started") == 1
    assert outcomes.count("rejected") == 5
    assert h.ledger.get_account("alice").escrowed == Decimal("53.98")


def test_insufficient_questions_persists_nothing(tmp_path: Path) -> None:
    h = build_harness(tmp_path, pool_size=4)
    h.ledger.deposit("alice", Decimal("100"))
    with pytest.raises(InsufficientQuestions) as excinfo:
        h.engine.start_trial("alice", 1, 2)
    assert excinfo.value.found == 4
    assert excinfo.value.needed == 5

    account = h.ledger.get_account("alice")
    assert account.balance == Decimal("100")
    assert account.escrowed == Decimal("0")
    assert h.engine.get_active_trial("alice") is None


def test_questions_are_fixed_and_redacted(tmp_path: Path) -> None:
    h = build_harness(tmp_path)
    h.ledger.deposit("alice", Decimal("100"))
    trial = h.engine.start_trial("alice", 1, 2)

    first = h.engine.get_trial_questions(trial.id, owner_id="alice")
    second = h.engine.get_trial_questions(trial.id)
    assert [q.id for q in first] == [q.id for q in second]
    assert len({q.id for q in first}) == 10
    for question in first:
        assert "canonical_answer" not in question.model_dump()

    with pytest.raises(TrialOwnershipError):
        h.engine.get_trial_questions(trial.id, owner_id="mallory")
    with pytest.raises(TrialNotFound):
        h.engine.get_trial("missing")


def test_answer_set_must_match_issued_questions(tmp_path: Path) -> None:
    h = build_harness(tmp_path)
    h.ledger.deposit("alice", Decimal("100"))
    trial = h.engine.start_trial("alice", 1, 2)
    answers = h.answers(trial.id, correct=10)

    with pytest.raises(IncompleteSubmission):
        h.engine.complete_trial(trial.id, answers[:-1])
    with pytest.raises(IncompleteSubmission):
        h.engine.complete_trial(trial.id, answers[:-1] + [answers[0]])
    with pytest.raises(IncompleteSubmission):
        h.engine.complete_trial(trial.id, answers[:-1] + [{"question_id": "other", "value": "1"}])
    with pytest.raises(TrialOwnershipError):
        h.engine.complete_trial(trial.id, answers, owner_id="mallory")

    assert h.engine.get_trial(trial.id).status is TrialStatus.ACTIVE
    assert h.ledger.get_account("alice").escrowed == Decimal("53.98")
    assert h.engine.complete_trial(trial.id, answers).result == "passed"


def test_missing_and_malformed_answers_grade_as_wrong(tmp_path: Path) -> None:
    h = build_harness(tmp_path)
    h.ledger.deposit("alice", Decimal("100"))
    trial = h.engine.start_trial("alice", 1, 2)
    answers = h.answers(trial.id, correct=10)
    answers[0]["value"] = None
    answers[1]["value"] = "twelve"

    result = h.engine.complete_trial(trial.id, answers)
    by_id = {a.question_id: a for a in result.answers}
    assert by_id[answers[0]["question_id"]].error.value == "MissingAnswer"
    assert by_id[answers[1]["question_id"]].error.value == "InvalidFormat"
    assert result.correct_count == 8
    assert result.result == "passed"


def test_lifecycle_events_are_published(tmp_path: Path) -> None:
    h = build_harness(tmp_path)
    h.ledger.deposit("alice", Decimal("100"))
    trial = h.engine.start_trial("alice", 1, 2)
    h.engine.complete_trial(trial.id, h.answers(trial.id, correct=0))

    names = [name for name, _ in h.events]
    assert names == [TRIAL_STARTED, TRIAL_FAILED]
    assert h.events[1][1]["status"] == "failed"
    assert h.events[1][1]["owner_id"] == "alice"


def test_selection_prefers_unseen_questions(tmp_path: Path) -> None:
    h = build_harness(tmp_path, pool_size=20)
    h.ledger.deposit("alice", Decimal("1000"))
    first = h.engine.start_trial("alice", 1, 2)
    first_ids = {q.id for q in h.engine.get_trial_questions(first.id)}
    h.engine.complete_trial(first.id, h.answers(first.id, correct=0))
    h.clock.advance(25)

    second = h.engine.start_trial("alice", 1, 2)
    second_ids = {q.id for q in h.engine.get_trial_questions(second.id)}
    assert first_ids.isdisjoint(second_ids)
