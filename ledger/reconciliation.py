"""Reconciliation of recorded slashes with the on-chain rewards wallet.

Slashes and retained fees are written to ``pending_transfers`` with status
``recorded`` inside the ledger transaction. This job moves them forward
afterwards:

* ``transferred``       gateway confirmed a transfer; signature stored
* ``pending_transfer``  gateway unavailable (transfers disabled or no
                        authority); retried on the next run
* ``failed``            gateway raised; retried until ``max_attempts``

A row is claimed by flipping it to ``submitting`` with a conditional UPDATE
before the gateway is called, so overlapping runs never submit the same
transfer twice. A row left in ``submitting`` by a crashed run is not
retried automatically.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from sqlalchemy import select, update

from ledger.models import PendingTransfer
from ledger.stake_ledger import pending_transfer_to_model
from persistence.schemas import PendingTransferRecord
from persistence.sql_store import SQLStore

logger = logging.getLogger("rankup.reconciliation")

RETRYABLE_STATUSES = ("recorded", "pending_transfer", "failed")
SUBMITTING = "submitting"


class TransferUnavailable(Exception):
    """Gateway cannot attempt transfers right now; not counted as a failure."""


class SettlementGateway(Protocol):
    """Submits a retained amount to the rewards wallet and returns a tx signature."""

    def transfer(self, transfer: PendingTransfer) -> str: ...


class DisabledSettlementGateway:
    """Gateway used when on-chain transfers are switched off."""

    def transfer(self, transfer: PendingTransfer) -> str:
        raise TransferUnavailable("Transfer not enabled")


@dataclass
class ReconciliationReport:
    transferred: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, list[str]]:
        return {"transferred": self.transferred, "deferred": self.deferred, "failed": self.failed}


class ReconciliationJob:
    """Retries outstanding pending transfers through a settlement gateway."""

    def __init__(
        self,
        sql_store: SQLStore,
        gateway: SettlementGateway | None = None,
        max_attempts: int = 5,
        batch_size: int = 50,
    ) -> None:
        self.sql_store = sql_store
        self.gateway = gateway or DisabledSettlementGateway()
        self.max_attempts = max_attempts
        self.batch_size = batch_size

    def _candidate_ids(self) -> list[str]:
        with self.sql_store.session() as sess:
            candidates = sess.scalars(
                select(PendingTransferRecord.id)
                .where(
                    PendingTransferRecord.status.in_(RETRYABLE_STATUSES),
                    PendingTransferRecord.attempts < self.max_attempts,
                )
                .order_by(PendingTransferRecord.created_at)
                .limit(self.batch_size)
            ).all()
        return list(candidates)

    def _claim(self, transfer_id: str) -> PendingTransfer | None:
        """Move one row to ``submitting``; ``None`` if another run got it first."""
        with self.sql_store.session() as sess:
            result = sess.execute(
                update(PendingTransferRecord)
                .where(
                    PendingTransferRecord.id == transfer_id,
                    PendingTransferRecord.status.in_(RETRYABLE_STATUSES),
                    PendingTransferRecord.attempts < self.max_attempts,
                )
                .values(status=SUBMITTING)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.info("Transfer %s already claimed", transfer_id)
                return None
            row = sess.get(PendingTransferRecord, transfer_id)
            return pending_transfer_to_model(row)

    def _mark(
        self,
        transfer_id: str,
        status: str,
        *,
        signature: str | None = None,
        error: str = "",
        attempted: bool = True,
    ) -> None:
        with self.sql_store.session() as sess:
            row = sess.get(PendingTransferRecord, transfer_id)
            if row is None or row.status != SUBMITTING:
                return
            row.status = status
            if attempted:
                row.attempts += 1
            if signature is not None:
                row.tx_signature = signature
            row.last_error = error

    def run_once(self) -> ReconciliationReport:
        """Attempt one batch of outstanding transfers."""
        report = ReconciliationReport()
        for transfer_id in self._candidate_ids():
            transfer = self._claim(transfer_id)
            if transfer is None:
                continue
            try:
                signature = self.gateway.transfer(transfer)
            except TransferUnavailable as exc:
                self._mark(transfer.id, "pending_transfer", error=str(exc), attempted=False)
                report.deferred.append(transfer.id)
                continue
            except Exception as exc:  # noqa: BLE001
                logger.error("Transfer %s failed: %s", transfer.id, exc)
                self._mark(transfer.id, "failed", error=str(exc))
                report.failed.append(transfer.id)
                continue
            self._mark(transfer.id, "transferred", signature=signature)
            report.transferred.append(transfer.id)
            logger.info("Transfer %s settled with signature %s", transfer.id, signature)
        if report.deferred:
            logger.info("%d transfers deferred: gateway unavailable", len(report.deferred))
        return report
