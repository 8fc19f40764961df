"""Pending transfer reconciliation tests."""

from __future__ import annotations

import threading
import time
from decimal import Decimal
from pathlib import Path

from ledger.models import PendingTransfer
from ledger.reconciliation import ReconciliationJob
from ledger.stake_ledger import StakeLedger
from persistence.sql_store import SQLStore


class RecordingGateway:
    def __init__(self) -> None:
        self.sent: list[PendingTransfer] = []

    def transfer(self, transfer: PendingTransfer) -> str:
        self.sent.append(transfer)
        return f"sig-{transfer.reference_id}"


class SlowGateway(RecordingGateway):
    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.Lock()

    def transfer(self, transfer: PendingTransfer) -> str:
        time.sleep(0.2)
        with self._lock:
            return super().transfer(transfer)


class BrokenGateway:
    def transfer(self, transfer: PendingTransfer) -> str:
        raise ConnectionError("rpc unavailable")


def build_slashed_ledger(tmp_path: Path) -> tuple[SQLStore, StakeLedger]:
    store = SQLStore(db_path=tmp_path / "recon.db")
    store.create_all()
    ledger = StakeLedger(store)
    ledger.deposit("alice", Decimal("100"))
    ledger.escrow("alice", Decimal("51"), reference_id="t-1")
    ledger.slash("alice", reference_id="t-1")
    return store, ledger


def test_disabled_gateway_defers_without_counting_attempts(tmp_path: Path) -> None:
    store, ledger = build_slashed_ledger(tmp_path)
    report = ReconciliationJob(store).run_once()

    assert len(report.deferred) == 1
    assert report.transferred == []
    pending = ledger.list_pending_transfers()[0]
    assert pending.status == "pending_transfer"
    assert pending.attempts == 0
    assert "not enabled" in pending.last_error


def test_gateway_success_marks_transferred(tmp_path: Path) -> None:
    store, ledger = build_slashed_ledger(tmp_path)
    gateway = RecordingGateway()
    job = ReconciliationJob(store, gateway=gateway)

    report = job.run_once()
    assert len(report.transferred) == 1
    assert gateway.sent[0].amount == Decimal("51")

    pending = ledger.list_pending_transfers(status="transferred")[0]
    assert pending.tx_signature == "sig-t-1"
    assert job.run_once().as_dict() == {"transferred": [], "deferred": [], "failed": []}


def test_failures_retry_until_max_attempts(tmp_path: Path) -> None:
    store, ledger = build_slashed_ledger(tmp_path)
    job = ReconciliationJob(store, gateway=BrokenGateway(), max_attempts=2)

    assert len(job.run_once().failed) == 1
    assert len(job.run_once().failed) == 1
    assert job.run_once().failed == []

    pending = ledger.list_pending_transfers(status="failed")[0]
    assert pending.attempts == 2
    assert "rpc unavailable" in pending.last_error


def test_overlapping_runs_submit_each_transfer_once(tmp_path: Path) -> None:
    store, ledger = build_slashed_ledger(tmp_path)
    gateway = SlowGateway()
    start = threading.Barrier(2)
    reports = []

    def run() -> None:
        job = ReconciliationJob(store, gateway=gateway)
        start.wait()
        reports.append(job.run_once())

    workers = [threading.Thread(target=run) for _ in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert len(gateway.sent) == 1
    assert sum(len(r.transferred) for r in reports) == 1
    pending = ledger.list_pending_transfers()[0]
    assert pending.status == "transferred"
    assert pending.attempts == 1


def test_claimed_transfer_is_skipped_by_later_runs(tmp_path: Path) -> None:
    store, ledger = build_slashed_ledger(tmp_path)
    gateway = RecordingGateway()
    job = ReconciliationJob(store, gateway=gateway)
    transfer_id = ledger.list_pending_transfers()[0].id

    claimed = job._claim(transfer_id)
    assert claimed is not None
    assert claimed.status == "submitting"
    assert job._claim(transfer_id) is None
    assert job.run_once().as_dict() == {"transferred": [], "deferred": [], "failed": []}
    assert gateway.sent == []
