"""Authoritative vault-stake ledger with idempotent escrow settlement.

Every mutation runs under the owner's lock and inside one session
transaction. Callers that must combine a ledger operation with their own
writes (trial creation, trial completion) pass their session in, so the
ledger change and theirs commit or roll back together.

Holds are keyed by a reference id (a trial or training-session id). Once a
hold has been released, slashed or settled, repeating the call returns the
existing receipt with ``applied=False`` and moves no money.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.errors import HoldNotFound, InsufficientBalance, StakeLocked
from core.locks import OwnerLockRegistry
from economy.calculator import to_hive
from ledger.models import HoldReceipt, JournalEntry, PendingTransfer, StakeAccount
from persistence.schemas import (
    PendingTransferRecord,
    StakeAccountRecord,
    StakeHoldRecord,
    StakeJournalRecord,
    StakeLockRecord,
    utc_now,
)
from persistence.sql_store import SQLStore

logger = logging.getLogger("rankup.ledger")

HELD = "held"
RELEASED = "released"
SLASHED = "slashed"
SETTLED = "settled"

ZERO = Decimal("0")


class StakeLedger:
    """Owns stake account balances and the holds placed against them."""

    def __init__(
        self,
        sql_store: SQLStore,
        locks: OwnerLockRegistry | None = None,
        cycle_length: timedelta = timedelta(hours=168),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.sql_store = sql_store
        self.locks = locks or OwnerLockRegistry()
        self.cycle_length = cycle_length
        self.clock = clock

    @contextmanager
    def _unit(self, owner_id: str, sess: Session | None) -> Iterator[Session]:
        with self.locks.hold(owner_id):
            if sess is not None:
                yield sess
            else:
                with self.sql_store.session() as own:
                    yield own

    def load_account(self, sess: Session, owner_id: str) -> StakeAccountRecord:
        """Fetch the owner's account row for update, creating it on first use."""
        stmt = (
            select(StakeAccountRecord)
            .where(StakeAccountRecord.owner_id == owner_id)
            .with_for_update()
        )
        row = sess.scalars(stmt).first()
        if row is None:
            row = StakeAccountRecord(
                owner_id=owner_id,
                balance=ZERO,
                escrowed=ZERO,
                level=1,
                fail_streak=0,
            )
            sess.add(row)
            sess.flush()
        return row

    def _journal(
        self,
        sess: Session,
        account: StakeAccountRecord,
        entry_type: str,
        amount: Decimal,
        reference_id: str | None = None,
    ) -> None:
        sess.add(
            StakeJournalRecord(
                owner_id=account.owner_id,
                reference_id=reference_id,
                entry_type=entry_type,
                amount=amount,
                balance_after=account.balance,
                escrowed_after=account.escrowed,
                created_at=self.clock(),
            )
        )

    @staticmethod
    def _positive(amount: Decimal | int | str) -> Decimal:
        value = to_hive(amount)
        if value <= ZERO:
            raise ValueError(f"Amount must be positive, got {value}")
        return value

    def get_account(self, owner_id: str) -> StakeAccount:
        """Current account state; unknown owners read as an empty level-1 account."""
        with self.sql_store.session() as sess:
            row = sess.scalars(
                select(StakeAccountRecord).where(StakeAccountRecord.owner_id == owner_id)
            ).first()
            if row is None:
                return StakeAccount(
                    owner_id=owner_id, balance=ZERO, escrowed=ZERO, level=1, fail_streak=0
                )
            return account_to_model(row)

    def deposit(
        self,
        owner_id: str,
        amount: Decimal | int | str,
        reference_id: str | None = None,
        sess: Session | None = None,
    ) -> StakeAccount:
        """Credit a confirmed vault deposit."""
        value = self._positive(amount)
        with self._unit(owner_id, sess) as unit:
            account = self.load_account(unit, owner_id)
            account.balance = account.balance + value
            self._journal(unit, account, "deposit", value, reference_id)
            unit.flush()
            logger.info("Deposited %s for %s (balance %s)", value, owner_id, account.balance)
            return account_to_model(account)

    def locked_amount(self, sess: Session, owner_id: str) -> Decimal:
        rows = sess.scalars(
            select(StakeLockRecord).where(
                StakeLockRecord.owner_id == owner_id,
                StakeLockRecord.unlocked_at.is_(None),
            )
        ).all()
        return sum((row.amount for row in rows), ZERO)

    def withdraw(
        self,
        owner_id: str,
        amount: Decimal | int | str,
        sess: Session | None = None,
    ) -> StakeAccount:
        """Debit free stake; locked stake stays put until its cycles elapse."""
        value = self._positive(amount)
        with self._unit(owner_id, sess) as unit:
            account = self.load_account(unit, owner_id)
            if account.balance < value:
                raise InsufficientBalance("vault_stake", value, account.balance)
            locked = self.locked_amount(unit, owner_id)
            if value > account.balance - locked:
                raise StakeLocked(locked, account.locked_until)
            account.balance = account.balance - value
            self._journal(unit, account, "withdraw", value)
            unit.flush()
            logger.info("Withdrew %s for %s (balance %s)", value, owner_id, account.balance)
            return account_to_model(account)

    def escrow(
        self,
        owner_id: str,
        amount: Decimal | int | str,
        *,
        reference_id: str,
        kind: str = "trial",
        sess: Session | None = None,
    ) -> HoldReceipt:
        """Move ``amount`` from balance into a hold keyed by ``reference_id``."""
        value = self._positive(amount)
        with self._unit(owner_id, sess) as unit:
            existing = self._find_hold(unit, reference_id)
            account = self.load_account(unit, owner_id)
            if existing is not None:
                self._check_owner(existing, owner_id)
                return hold_receipt(existing, account, applied=False)
            if account.balance < value:
                raise InsufficientBalance("vault_stake", value, account.balance)
            account.balance = account.balance - value
            account.escrowed = account.escrowed + value
            hold = StakeHoldRecord(
                reference_id=reference_id,
                kind=kind,
                owner_id=owner_id,
                amount=value,
                status=HELD,
                refunded=ZERO,
                retained=ZERO,
                created_at=self.clock(),
            )
            unit.add(hold)
            self._journal(unit, account, "escrow", value, reference_id)
            unit.flush()
            logger.info("Escrowed %s for %s against %s", value, owner_id, reference_id)
            return hold_receipt(hold, account, applied=True)

    def release(
        self, owner_id: str, *, reference_id: str, sess: Session | None = None
    ) -> HoldReceipt:
        """Return the full hold to the owner's balance."""
        with self._unit(owner_id, sess) as unit:
            return self._settle(
                unit, owner_id, reference_id, refund=None, source="", status=RELEASED
            )

    def slash(
        self,
        owner_id: str,
        *,
        reference_id: str,
        source: str = "rankup_forfeit",
        sess: Session | None = None,
    ) -> HoldReceipt:
        """Forfeit the full hold and record it for off-engine settlement."""
        with self._unit(owner_id, sess) as unit:
            return self._settle(
                unit, owner_id, reference_id, refund=ZERO, source=source, status=SLASHED
            )

    def settle(
        self,
        owner_id: str,
        *,
        reference_id: str,
        refund: Decimal,
        source: str = "training_fee",
        sess: Session | None = None,
    ) -> HoldReceipt:
        """Refund part of a hold and retain the remainder."""
        with self._unit(owner_id, sess) as unit:
            return self._settle(
                unit, owner_id, reference_id, refund=to_hive(refund), source=source, status=SETTLED
            )

    def _settle(
        self,
        sess: Session,
        owner_id: str,
        reference_id: str,
        *,
        refund: Decimal | None,
        source: str,
        status: str,
    ) -> HoldReceipt:
        hold = self._find_hold(sess, reference_id)
        if hold is None:
            raise HoldNotFound(f"No stake hold for reference {reference_id}")
        self._check_owner(hold, owner_id)
        account = self.load_account(sess, owner_id)
        if hold.status != HELD:
            logger.info("Hold %s already %s; nothing to do", reference_id, hold.status)
            return hold_receipt(hold, account, applied=False)

        refund_value = hold.amount if refund is None else refund
        if refund_value < ZERO or refund_value > hold.amount:
            raise ValueError(f"Refund {refund_value} outside hold amount {hold.amount}")
        retained = hold.amount - refund_value
        if account.escrowed < hold.amount:
            raise RuntimeError(
                f"Escrow for {owner_id} ({account.escrowed}) is below hold "
                f"{reference_id} ({hold.amount})"
            )

        account.escrowed = account.escrowed - hold.amount
        account.balance = account.balance + refund_value
        hold.status = status
        hold.refunded = refund_value
        hold.retained = retained
        hold.settled_at = self.clock()

        if refund_value > ZERO:
            self._journal(sess, account, "release", refund_value, reference_id)
        if retained > ZERO:
            self._journal(sess, account, "slash", retained, reference_id)
            sess.add(
                PendingTransferRecord(
                    id=uuid.uuid4().hex,
                    source=source,
                    owner_id=owner_id,
                    reference_id=reference_id,
                    amount=retained,
                    status="recorded",
                    attempts=0,
                    last_error="",
                )
            )
        sess.flush()
        logger.info(
            "Hold %s %s: refunded %s, retained %s", reference_id, status, refund_value, retained
        )
        return hold_receipt(hold, account, applied=True)

    def lock_stake(
        self,
        owner_id: str,
        amount: Decimal,
        *,
        reference_id: str,
        cycles: int,
        sess: Session | None = None,
    ) -> datetime | None:
        """Lock ``amount`` of balance for ``cycles`` cycles; returns the new lock expiry."""
        if cycles <= 0:
            return None
        with self._unit(owner_id, sess) as unit:
            account = self.load_account(unit, owner_id)
            existing = unit.scalars(
                select(StakeLockRecord).where(StakeLockRecord.reference_id == reference_id)
            ).first()
            if existing is not None:
                return account.locked_until
            value = to_hive(amount)
            unit.add(
                StakeLockRecord(
                    owner_id=owner_id,
                    reference_id=reference_id,
                    amount=value,
                    cycles_remaining=cycles,
                    created_at=self.clock(),
                )
            )
            until = self.clock() + self.cycle_length * cycles
            if account.locked_until is None or account.locked_until < until:
                account.locked_until = until
            self._journal(unit, account, "lock", value, reference_id)
            unit.flush()
            return account.locked_until

    def advance_cycle(self) -> int:
        """Tick every active lock down one cycle; return how many unlocked."""
        with self.sql_store.session() as sess:
            active = select(StakeLockRecord.owner_id).where(StakeLockRecord.unlocked_at.is_(None))
            owners = sorted(set(sess.scalars(active).all()))
        unlocked = 0
        for owner_id in owners:
            with self._unit(owner_id, None) as unit:
                account = self.load_account(unit, owner_id)
                locks = unit.scalars(
                    select(StakeLockRecord).where(
                        StakeLockRecord.owner_id == owner_id,
                        StakeLockRecord.unlocked_at.is_(None),
                    )
                ).all()
                still_locked = 0
                for lock in locks:
                    lock.cycles_remaining -= 1
                    if lock.cycles_remaining <= 0:
                        lock.unlocked_at = self.clock()
                        self._journal(unit, account, "unlock", lock.amount, lock.reference_id)
                        unlocked += 1
                    else:
                        still_locked += 1
                if still_locked == 0:
                    account.locked_until = None
        logger.info("Advanced stake locks one cycle; %d unlocked", unlocked)
        return unlocked

    def get_hold(self, reference_id: str) -> HoldReceipt | None:
        with self.sql_store.session() as sess:
            hold = self._find_hold(sess, reference_id)
            if hold is None:
                return None
            account = sess.scalars(
                select(StakeAccountRecord).where(StakeAccountRecord.owner_id == hold.owner_id)
            ).one()
            return hold_receipt(hold, account, applied=False)

    def journal(self, owner_id: str, limit: int = 50) -> list[JournalEntry]:
        """Most recent balance mutations for an owner, newest first."""
        with self.sql_store.session() as sess:
            rows = sess.scalars(
                select(StakeJournalRecord)
                .where(StakeJournalRecord.owner_id == owner_id)
                .order_by(StakeJournalRecord.id.desc())
                .limit(limit)
            ).all()
            return [
                JournalEntry(
                    owner_id=row.owner_id,
                    reference_id=row.reference_id,
                    entry_type=row.entry_type,
                    amount=row.amount,
                    balance_after=row.balance_after,
                    escrowed_after=row.escrowed_after,
                    created_at=row.created_at,
                )
                for row in rows
            ]

    def list_pending_transfers(
        self, status: str | None = None, limit: int = 50
    ) -> list[PendingTransfer]:
        with self.sql_store.session() as sess:
            stmt = select(PendingTransferRecord)
            if status is not None:
                stmt = stmt.where(PendingTransferRecord.status == status)
            rows = sess.scalars(stmt.order_by(PendingTransferRecord.created_at).limit(limit)).all()
            return [pending_transfer_to_model(row) for row in rows]

    @staticmethod
    def _find_hold(sess: Session, reference_id: str) -> StakeHoldRecord | None:
        return sess.scalars(
            select(StakeHoldRecord).where(StakeHoldRecord.reference_id == reference_id)
        ).first()

    @staticmethod
    def _check_owner(hold: StakeHoldRecord, owner_id: str) -> None:
        if hold.owner_id != owner_id:
            raise HoldNotFound(f"Hold {hold.reference_id} does not belong to {owner_id}")


def account_to_model(row: StakeAccountRecord) -> StakeAccount:
    return StakeAccount(
        owner_id=row.owner_id,
        balance=row.balance,
        escrowed=row.escrowed,
        level=row.level,
        fail_streak=row.fail_streak,
        fail_streak_target_level=row.fail_streak_target_level,
        locked_until=row.locked_until,
    )


def hold_receipt(hold: StakeHoldRecord, account: StakeAccountRecord, applied: bool) -> HoldReceipt:
    return HoldReceipt(
        reference_id=hold.reference_id,
        owner_id=hold.owner_id,
        kind=hold.kind,
        amount=hold.amount,
        status=hold.status,
        refunded=hold.refunded,
        retained=hold.retained,
        balance_after=account.balance,
        applied=applied,
    )


def pending_transfer_to_model(row: PendingTransferRecord) -> PendingTransfer:
    return PendingTransfer(
        id=row.id,
        source=row.source,
        owner_id=row.owner_id,
        reference_id=row.reference_id,
        amount=row.amount,
        status=row.status,
        attempts=row.attempts,
        tx_signature=row.tx_signature,
        last_error=row.last_error or "",
    )
