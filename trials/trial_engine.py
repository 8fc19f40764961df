"""Rank-up trial state machine.

A trial moves ``active -> passed`` or ``active -> failed`` exactly once.
Start and complete each run under the owner's lock in a single session, so
the trial row, its escrow hold, the issued questions, the graded answers and
the stake account change together or not at all.
"""

from __future__ import annotations

import logging
import random
import uuid
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.errors import (
    CooldownActive,
    IncompleteSubmission,
    InsufficientBalance,
    InsufficientQuestions,
    InvalidLevel,
    InvalidTransition,
    LevelMismatch,
    TrialAlreadyActive,
    TrialNotActive,
    TrialNotFound,
    TrialOwnershipError,
)
from core.event_bus import TRIAL_FAILED, TRIAL_PASSED, TRIAL_STARTED, EventBus
from core.policy_runtime import TrialPolicy
from economy.calculator import to_hive
from grading.answer_grader import AnswerGrader
from ledger.stake_ledger import StakeLedger
from persistence.schemas import (
    QuestionHistoryRecord,
    StakeAccountRecord,
    TrialAnswerRecord,
    TrialQuestionRecord,
    TrialRecord,
)
from persistence.sql_store import SQLStore
from progression.requirement_curve import LevelRequirement, RequirementCurve
from trials.collaborators import WalletHoldOracle
from trials.question_bank import QuestionBank
from trials.question_selector import select_rankup_questions
from trials.types import (
    AnswerResult,
    PublicQuestion,
    Question,
    SubmittedAnswer,
    Trial,
    TrialCompletion,
    TrialStatus,
)

logger = logging.getLogger("rankup.trials")

AnswerInput = SubmittedAnswer | Mapping[str, Any]


class TrialEngine:
    """Owns the lifecycle of rank-up trials."""

    def __init__(
        self,
        sql_store: SQLStore,
        ledger: StakeLedger,
        curve: RequirementCurve,
        question_bank: QuestionBank,
        wallet_oracle: WalletHoldOracle,
        policy: TrialPolicy | None = None,
        grader: AnswerGrader | None = None,
        event_bus: EventBus | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.sql_store = sql_store
        self.ledger = ledger
        self.curve = curve
        self.question_bank = question_bank
        self.wallet_oracle = wallet_oracle
        self.policy = policy or TrialPolicy()
        self.grader = grader or AnswerGrader()
        self.event_bus = event_bus or EventBus()
        self.rng = rng or random.Random()
        self.clock = clock or ledger.clock
        self.locks = ledger.locks

    def get_requirements(self, level: int) -> LevelRequirement:
        return self.curve.get_requirements(level)

    # -- start -----------------------------------------------------------

    def start_trial(self, owner_id: str, from_level: int, to_level: int) -> Trial:
        """Escrow the trial stake and open a trial for ``from_level -> to_level``."""
        if from_level < 1:
            raise InvalidLevel(from_level)
        if to_level != from_level + 1:
            raise InvalidTransition(from_level, to_level)
        requirements = self.curve.get_requirements(to_level)

        with self.locks.hold(owner_id):
            try:
                with self.sql_store.session() as sess:
                    trial = self._open_trial(sess, owner_id, from_level, to_level, requirements)
            except IntegrityError as exc:
                active = self.get_active_trial(owner_id)
                if active is None:
                    raise
                raise TrialAlreadyActive(active.id) from exc

        logger.info(
            "Started trial %s for %s (%d -> %d, stake %s)",
            trial.id,
            owner_id,
            from_level,
            to_level,
            trial.trial_stake,
        )
        self._emit(TRIAL_STARTED, trial)
        return trial

    def _open_trial(
        self,
        sess: Session,
        owner_id: str,
        from_level: int,
        to_level: int,
        requirements: LevelRequirement,
    ) -> Trial:
        now = self.clock()
        account = self.ledger.load_account(sess, owner_id)

        active = self._active_record(sess, owner_id)
        if active is not None:
            raise TrialAlreadyActive(active.id)
        if account.level != from_level:
            raise LevelMismatch(expected=from_level, actual=account.level)
        cooldown_until = self._cooldown_until(sess, owner_id, to_level, now)
        if cooldown_until is not None:
            raise CooldownActive(cooldown_until)

        wallet_hold = to_hive(self.wallet_oracle.get_wallet_hold(owner_id))
        if wallet_hold < requirements.wallet_hold:
            raise InsufficientBalance("wallet_hold", requirements.wallet_hold, wallet_hold)
        vault_stake = account.balance
        if vault_stake < requirements.vault_stake:
            raise InsufficientBalance("vault_stake", requirements.vault_stake, vault_stake)

        selection = select_rankup_questions(
            self.question_bank.list_questions(),
            level=from_level,
            count=self.policy.question_count,
            min_avg_difficulty=self.policy.min_avg_difficulty,
            seen_ids=self._recently_seen(sess, owner_id, now),
            rng=self.rng,
        )
        if len(selection.questions) < self.policy.min_required_questions:
            raise InsufficientQuestions(
                found=len(selection.questions),
                needed=self.policy.min_required_questions,
                min_complexity=selection.min_complexity,
            )

        record = TrialRecord(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            from_level=from_level,
            to_level=to_level,
            status=TrialStatus.ACTIVE.value,
            question_count=len(selection.questions),
            min_accuracy=self.policy.min_accuracy,
            min_avg_difficulty=self.policy.min_avg_difficulty,
            trial_stake=requirements.vault_stake,
            required_wallet_hold=requirements.wallet_hold,
            required_vault_stake=requirements.vault_stake,
            wallet_hold_at_start=wallet_hold,
            vault_stake_at_start=vault_stake,
            rollback_applied=False,
            started_at=now,
        )
        sess.add(record)
        sess.flush()

        self.ledger.escrow(
            owner_id,
            requirements.vault_stake,
            reference_id=record.id,
            kind="trial",
            sess=sess,
        )
        for position, question in enumerate(selection.questions):
            sess.add(
                TrialQuestionRecord(
                    trial_id=record.id,
                    position=position,
                    question_id=question.id,
                    snapshot=question.model_dump(mode="json"),
                )
            )
            sess.add(
                QuestionHistoryRecord(
                    owner_id=owner_id, question_id=question.id, trial_id=record.id, seen_at=now
                )
            )
        sess.flush()
        return trial_to_model(record)

    def _active_record(self, sess: Session, owner_id: str) -> TrialRecord | None:
        return sess.scalars(
            select(TrialRecord).where(
                TrialRecord.owner_id == owner_id,
                TrialRecord.status == TrialStatus.ACTIVE.value,
            )
        ).first()

    def _cooldown_until(
        self, sess: Session, owner_id: str, to_level: int, now: datetime
    ) -> datetime | None:
        rows = sess.scalars(
            select(TrialRecord).where(
                TrialRecord.owner_id == owner_id,
                TrialRecord.to_level == to_level,
                TrialRecord.status == TrialStatus.FAILED.value,
                TrialRecord.cooldown_until.is_not(None),
            )
        ).all()
        pending = [row.cooldown_until for row in rows if row.cooldown_until > now]
        return max(pending) if pending else None

    def _recently_seen(self, sess: Session, owner_id: str, now: datetime) -> set[str]:
        since = now - timedelta(days=self.policy.avoid_recent_days)
        rows = sess.scalars(
            select(QuestionHistoryRecord).where(QuestionHistoryRecord.owner_id == owner_id)
        ).all()
        return {row.question_id for row in rows if row.seen_at >= since}

    # -- queries ---------------------------------------------------------

    def get_active_trial(self, owner_id: str) -> Trial | None:
        with self.sql_store.session() as sess:
            record = self._active_record(sess, owner_id)
            return trial_to_model(record) if record is not None else None

    def get_trial(self, trial_id: str) -> Trial:
        with self.sql_store.session() as sess:
            record = sess.get(TrialRecord, trial_id)
            if record is None:
                raise TrialNotFound(f"Trial not found: {trial_id}")
            return trial_to_model(record)

    def get_trial_questions(
        self, trial_id: str, owner_id: str | None = None
    ) -> list[PublicQuestion]:
        """Issued questions in their fixed order, answers redacted.

        Repeated calls return the same set; questions are drawn once, when
        the trial starts.
        """
        trial = self.get_trial(trial_id)
        self._check_owner(trial, owner_id)
        with self.sql_store.session() as sess:
            return [question.redacted() for question in self._issued_questions(sess, trial_id)]

    @staticmethod
    def _issued_questions(sess: Session, trial_id: str) -> list[Question]:
        rows = sess.scalars(
            select(TrialQuestionRecord)
            .where(TrialQuestionRecord.trial_id == trial_id)
            .order_by(TrialQuestionRecord.position)
        ).all()
        return [Question.model_validate(row.snapshot) for row in rows]

    @staticmethod
    def _check_owner(trial: Trial, owner_id: str | None) -> None:
        if owner_id is not None and trial.owner_id != owner_id:
            raise TrialOwnershipError("Trial does not belong to you")

    # -- complete --------------------------------------------------------

    def complete_trial(
        self,
        trial_id: str,
        answers: Iterable[AnswerInput],
        owner_id: str | None = None,
    ) -> TrialCompletion:
        """Grade a full answer set and settle the trial's escrow."""
        submitted = [
            a if isinstance(a, SubmittedAnswer) else SubmittedAnswer.model_validate(a)
            for a in answers
        ]
        trial = self.get_trial(trial_id)
        self._check_owner(trial, owner_id)

        with self.locks.hold(trial.owner_id):
            with self.sql_store.session() as sess:
                completion = self._settle_trial(sess, trial_id, submitted)

        event = TRIAL_PASSED if completion.result == TrialStatus.PASSED.value else TRIAL_FAILED
        self._emit(event, self.get_trial(trial_id))
        return completion

    def _settle_trial(
        self, sess: Session, trial_id: str, submitted: list[SubmittedAnswer]
    ) -> TrialCompletion:
        now = self.clock()
        record = sess.scalars(
            select(TrialRecord).where(TrialRecord.id == trial_id).with_for_update()
        ).one()
        if record.status != TrialStatus.ACTIVE.value:
            raise TrialNotActive(trial_id, record.status)

        issued = self._issued_questions(sess, trial_id)
        values = self._match_answers(issued, submitted)

        results: list[AnswerResult] = []
        correct_count = 0
        for question in issued:
            value = values[question.id]
            outcome = self.grader.grade(question, value)
            sess.add(
                TrialAnswerRecord(
                    trial_id=trial_id,
                    question_id=question.id,
                    submitted_value=None if value is None else str(value),
                    correct=outcome.correct,
                    error=outcome.error.value if outcome.error else None,
                    graded_at=now,
                )
            )
            results.append(
                AnswerResult(question_id=question.id, correct=outcome.correct, error=outcome.error)
            )
            correct_count += int(outcome.correct)

        total = len(issued)
        accuracy = correct_count / total
        avg_difficulty = sum(q.difficulty for q in issued) / total
        passed = accuracy >= record.min_accuracy and avg_difficulty >= record.min_avg_difficulty

        record.correct_count = correct_count
        record.total_count = total
        record.accuracy = accuracy
        record.avg_difficulty = avg_difficulty
        record.completed_at = now

        account = self.ledger.load_account(sess, record.owner_id)
        if passed:
            self._apply_pass(sess, record, account)
        else:
            self._apply_failure(sess, record, account, now)
        sess.flush()

        return TrialCompletion(
            trial_id=trial_id,
            result=record.status,
            correct_count=correct_count,
            total_count=total,
            accuracy=accuracy,
            avg_difficulty=avg_difficulty,
            fail_streak=account.fail_streak,
            rollback_applied=record.rollback_applied,
            new_level=account.level if passed or record.rollback_applied else None,
            failed_reason=record.failed_reason,
            cooldown_until=record.cooldown_until,
            slashed_amount=record.slashed_amount,
            answers=results,
        )

    @staticmethod
    def _match_answers(
        issued: list[Question], submitted: list[SubmittedAnswer]
    ) -> dict[str, object]:
        if len(submitted) != len(issued):
            raise IncompleteSubmission(
                f"Expected {len(issued)} answers, received {len(submitted)}."
            )
        issued_ids = {q.id for q in issued}
        values: dict[str, object] = {}
        for answer in submitted:
            if answer.question_id not in issued_ids:
                raise IncompleteSubmission(
                    f"Question {answer.question_id} is not part of this trial."
                )
            if answer.question_id in values:
                raise IncompleteSubmission(
                    f"Question {answer.question_id} answered more than once."
                )
            values[answer.question_id] = answer.value
        return values

    def _apply_pass(self, sess: Session, record: TrialRecord, account: StakeAccountRecord) -> None:
        self.ledger.release(record.owner_id, reference_id=record.id, sess=sess)
        account.level = record.to_level
        account.fail_streak = 0
        account.fail_streak_target_level = None
        self.ledger.lock_stake(
            record.owner_id,
            record.trial_stake,
            reference_id=record.id,
            cycles=self.policy.lock_cycles,
            sess=sess,
        )
        record.status = TrialStatus.PASSED.value
        logger.info(
            "Trial %s passed; %s promoted to %d", record.id, record.owner_id, record.to_level
        )

    def _apply_failure(
        self, sess: Session, record: TrialRecord, account: StakeAccountRecord, now: datetime
    ) -> None:
        if record.accuracy < record.min_accuracy:
            reason = (
                f"Accuracy {record.accuracy * 100:.1f}% below required "
                f"{record.min_accuracy * 100:.1f}%"
            )
        else:
            reason = (
                f"Average difficulty {record.avg_difficulty:.2f} below required "
                f"{record.min_avg_difficulty:.2f}"
            )
        receipt = self.ledger.slash(
            record.owner_id, reference_id=record.id, source="rankup_forfeit", sess=sess
        )

        if account.fail_streak_target_level == record.to_level:
            streak = account.fail_streak + 1
        else:
            streak = 1
        rollback = streak >= self.policy.rollback_streak
        if rollback:
            account.level = max(1, record.from_level - 1)
            account.fail_streak = 0
            account.fail_streak_target_level = None
        else:
            account.fail_streak = streak
            account.fail_streak_target_level = record.to_level

        record.status = TrialStatus.FAILED.value
        record.failed_reason = reason
        record.slashed_amount = receipt.retained
        record.rollback_applied = rollback
        record.cooldown_until = now + timedelta(hours=self.policy.cooldown_hours)
        logger.info(
            "Trial %s failed (%s); slashed %s, streak %d, rollback=%s",
            record.id,
            reason,
            receipt.retained,
            streak,
            rollback,
        )

    def _emit(self, event_name: str, trial: Trial) -> None:
        self.event_bus.emit(event_name, trial.model_dump(mode="json"))


def trial_to_model(record: TrialRecord) -> Trial:
    return Trial(
        id=record.id,
        owner_id=record.owner_id,
        from_level=record.from_level,
        to_level=record.to_level,
        status=TrialStatus(record.status),
        question_count=record.question_count,
        min_accuracy=record.min_accuracy,
        min_avg_difficulty=record.min_avg_difficulty,
        trial_stake=record.trial_stake,
        required_wallet_hold=record.required_wallet_hold,
        required_vault_stake=record.required_vault_stake,
        wallet_hold_at_start=record.wallet_hold_at_start,
        vault_stake_at_start=record.vault_stake_at_start,
        started_at=record.started_at,
        completed_at=record.completed_at,
        correct_count=record.correct_count,
        total_count=record.total_count,
        accuracy=record.accuracy,
        avg_difficulty=record.avg_difficulty,
        failed_reason=record.failed_reason,
        slashed_amount=record.slashed_amount,
        rollback_applied=bool(record.rollback_applied),
        cooldown_until=record.cooldown_until,
    )
