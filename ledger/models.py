"""Stake ledger payload models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class StakeAccount(BaseModel):
    owner_id: str
    balance: Decimal
    escrowed: Decimal
    level: int
    fail_streak: int
    fail_streak_target_level: int | None = None
    locked_until: datetime | None = None


class HoldReceipt(BaseModel):
    """State of an escrow hold after an escrow/release/slash/settle call."""

    reference_id: str
    owner_id: str
    kind: str
    amount: Decimal
    status: str
    refunded: Decimal
    retained: Decimal
    balance_after: Decimal
    applied: bool  # False when the call was an idempotent no-op


class JournalEntry(BaseModel):
    owner_id: str
    reference_id: str | None
    entry_type: str
    amount: Decimal
    balance_after: Decimal
    escrowed_after: Decimal
    created_at: datetime


class PendingTransfer(BaseModel):
    id: str
    source: str
    owner_id: str | None
    reference_id: str
    amount: Decimal
    status: str
    attempts: int
    tx_signature: str | None = None
    last_error: str = ""
