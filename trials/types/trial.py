"""Rank-up trial models."""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class TrialStatus(str, enum.Enum):
    ACTIVE = "active"
    PASSED = "passed"
    FAILED = "failed"


class Trial(BaseModel):
    """Snapshot of a rank-up attempt and its policy at creation time."""

    id: str
    owner_id: str
    from_level: int
    to_level: int
    status: TrialStatus
    question_count: int
    min_accuracy: float
    min_avg_difficulty: float
    trial_stake: Decimal
    required_wallet_hold: Decimal
    required_vault_stake: Decimal
    wallet_hold_at_start: Decimal
    vault_stake_at_start: Decimal
    started_at: datetime
    completed_at: datetime | None = None
    correct_count: int | None = None
    total_count: int | None = None
    accuracy: float | None = None
    avg_difficulty: float | None = None
    failed_reason: str | None = None
    slashed_amount: Decimal | None = None
    rollback_applied: bool = False
    cooldown_until: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not TrialStatus.ACTIVE
