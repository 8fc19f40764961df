"""SQLAlchemy schemas for stake, trial and question tables."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from economy.calculator import to_hive


def utc_now() -> datetime:
    """Return UTC datetime for default timestamps."""
    return datetime.now(UTC)


class HiveAmount(TypeDecorator):
    """Exact 8-decimal token amount stored as text."""

    impl = String(40)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> str | None:
        if value is None:
            return None
        return str(to_hive(value))

    def process_result_value(self, value: Any, dialect: Any) -> Decimal | None:
        if value is None:
            return None
        return Decimal(value)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps, including on SQLite."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Declarative base."""


class StakeAccountRecord(Base):
    """Vault stake aggregate, one row per owner."""

    __tablename__ = "stake_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    balance: Mapped[Decimal] = mapped_column(HiveAmount, default=Decimal("0"))
    escrowed: Mapped[Decimal] = mapped_column(HiveAmount, default=Decimal("0"))
    level: Mapped[int] = mapped_column(Integer, default=1)
    fail_streak: Mapped[int] = mapped_column(Integer, default=0)
    fail_streak_target_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    locked_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


class StakeHoldRecord(Base):
    """Escrowed amount held against one trial or training session."""

    __tablename__ = "stake_holds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reference_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    kind: Mapped[str] = mapped_column(String(32), default="trial")  # trial/session
    owner_id: Mapped[str] = mapped_column(String(128), index=True)
    amount: Mapped[Decimal] = mapped_column(HiveAmount)
    status: Mapped[str] = mapped_column(String(32), default="held")
    refunded: Mapped[Decimal] = mapped_column(HiveAmount, default=Decimal("0"))
    retained: Mapped[Decimal] = mapped_column(HiveAmount, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    settled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class StakeJournalRecord(Base):
    """Append-only history of balance mutations."""

    __tablename__ = "stake_journal"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(128), index=True)
    reference_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_type: Mapped[str] = mapped_column(String(32))
    amount: Mapped[Decimal] = mapped_column(HiveAmount)
    balance_after: Mapped[Decimal] = mapped_column(HiveAmount)
    escrowed_after: Mapped[Decimal] = mapped_column(HiveAmount)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class StakeLockRecord(Base):
    """Post-promotion lock on released stake, counted in cycles."""

    __tablename__ = "stake_locks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(128), index=True)
    reference_id: Mapped[str] = mapped_column(String(64), unique=True)
    amount: Mapped[Decimal] = mapped_column(HiveAmount)
    cycles_remaining: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    unlocked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class PendingTransferRecord(Base):
    """Retained stake awaiting off-engine settlement."""

    __tablename__ = "pending_transfers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    source: Mapped[str] = mapped_column(String(32))  # rankup_forfeit/training_fee
    owner_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reference_id: Mapped[str] = mapped_column(String(64), unique=True)
    amount: Mapped[Decimal] = mapped_column(HiveAmount)
    status: Mapped[str] = mapped_column(String(32), default="recorded", index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    tx_signature: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_error: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


class QuestionRecord(Base):
    """Question bank table."""

    __tablename__ = "questions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    text: Mapped[str] = mapped_column(Text)
    difficulty: Mapped[int] = mapped_column(Integer, index=True)
    type: Mapped[str] = mapped_column(String(16))
    track_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    choices: Mapped[list[str]] = mapped_column(JSON, default=list)
    correct_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    canonical_answer: Mapped[str | None] = mapped_column(Text, nullable=True)
    tolerance: Mapped[float | None] = mapped_column(Float, nullable=True)
    unit: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class QuestionHistoryRecord(Base):
    """Questions an owner has been shown."""

    __tablename__ = "question_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(128), index=True)
    question_id: Mapped[str] = mapped_column(String(64))
    trial_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    seen_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class TrialRecord(Base):
    """Rank-up trial table."""

    __tablename__ = "rankup_trials"
    __table_args__ = (
        Index(
            "uq_rankup_trials_one_active",
            "owner_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), index=True)
    from_level: Mapped[int] = mapped_column(Integer)
    to_level: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(16), default="active")
    question_count: Mapped[int] = mapped_column(Integer)
    min_accuracy: Mapped[float] = mapped_column(Float)
    min_avg_difficulty: Mapped[float] = mapped_column(Float)
    trial_stake: Mapped[Decimal] = mapped_column(HiveAmount)
    required_wallet_hold: Mapped[Decimal] = mapped_column(HiveAmount)
    required_vault_stake: Mapped[Decimal] = mapped_column(HiveAmount)
    wallet_hold_at_start: Mapped[Decimal] = mapped_column(HiveAmount)
    vault_stake_at_start: Mapped[Decimal] = mapped_column(HiveAmount)
    correct_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    accuracy: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_difficulty: Mapped[float | None] = mapped_column(Float, nullable=True)
    failed_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    slashed_amount: Mapped[Decimal | None] = mapped_column(HiveAmount, nullable=True)
    rollback_applied: Mapped[bool] = mapped_column(Boolean, default=False)
    cooldown_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class TrialQuestionRecord(Base):
    """Question issued to a trial, snapshotted at issue time."""

    __tablename__ = "rankup_trial_questions"
    __table_args__ = (UniqueConstraint("trial_id", "question_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trial_id: Mapped[str] = mapped_column(String(64), index=True)
    position: Mapped[int] = mapped_column(Integer)
    question_id: Mapped[str] = mapped_column(String(64))
    snapshot: Mapped[dict[str, Any]] = mapped_column(JSON)


class TrialAnswerRecord(Base):
    """Graded answer, one per issued question."""

    __tablename__ = "rankup_trial_answers"
    __table_args__ = (UniqueConstraint("trial_id", "question_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trial_id: Mapped[str] = mapped_column(String(64), index=True)
    question_id: Mapped[str] = mapped_column(String(64))
    submitted_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    correct: Mapped[bool] = mapped_column(Boolean)
    error: Mapped[str | None] = mapped_column(String(32), nullable=True)
    graded_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class TrainingSessionRecord(Base):
    """Fee-bearing training session."""

    __tablename__ = "training_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), index=True)
    tier: Mapped[str] = mapped_column(String(16))
    fee_hive: Mapped[Decimal] = mapped_column(HiveAmount)
    status: Mapped[str] = mapped_column(String(16), default="reserved")
    stake_before: Mapped[Decimal] = mapped_column(HiveAmount)
    correct_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    score_pct: Mapped[str | None] = mapped_column(String(16), nullable=True)
    cost_hive: Mapped[Decimal | None] = mapped_column(HiveAmount, nullable=True)
    refund_hive: Mapped[Decimal | None] = mapped_column(HiveAmount, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    settled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
