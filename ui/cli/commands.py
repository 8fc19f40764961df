"""Typer command handlers."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import typer
import yaml
from pydantic import BaseModel

from core.errors import EngineError
from core.orchestrator import EngineBundle, Orchestrator
from trials.collaborators import StaticWalletOracle

state: dict[str, Any] = {"root": None}


def _runtime(wallet_hold: Decimal | None = None, owner_id: str | None = None) -> EngineBundle:
    oracle = StaticWalletOracle()
    if wallet_hold is not None and owner_id is not None:
        oracle.set_hold(owner_id, wallet_hold)
    return Orchestrator(root=state["root"], wallet_oracle=oracle).build()


def _emit(payload: object) -> None:
    typer.echo(json.dumps(_json_safe(payload), indent=2))


@contextmanager
def _engine_errors() -> Iterator[None]:
    try:
        yield
    except EngineError as exc:
        typer.echo(json.dumps(_json_safe(exc.details()), indent=2), err=True)
        raise typer.Exit(code=1) from exc


def requirements(level: int) -> None:
    """Show wallet-hold and vault-stake thresholds for a level."""
    bundle = _runtime()
    with _engine_errors():
        _emit(bundle.curve.get_requirements(level))


def stake_deposit(owner_id: str, amount: str) -> None:
    bundle = _runtime()
    with _engine_errors():
        _emit(bundle.ledger.deposit(owner_id, _amount(amount)))


def stake_withdraw(owner_id: str, amount: str) -> None:
    bundle = _runtime()
    with _engine_errors():
        _emit(bundle.ledger.withdraw(owner_id, _amount(amount)))


def stake_show(owner_id: str, journal: int = 0) -> None:
    """Show an account and, optionally, its latest journal entries."""
    bundle = _runtime()
    data: dict[str, Any] = {"account": bundle.ledger.get_account(owner_id)}
    if journal:
        data["journal"] = bundle.ledger.journal(owner_id, limit=journal)
    _emit(data)


def stake_advance_cycle() -> None:
    bundle = _runtime()
    _emit({"unlocked": bundle.ledger.advance_cycle()})


def questions_load(path: Path) -> None:
    """Load a YAML question file into the bank."""
    bundle = _runtime()
    with _engine_errors():
        count = bundle.question_bank.load_yaml(path)
    _emit({"loaded": count, "path": str(path)})


def trial_start(owner_id: str, from_level: int, wallet_hold: str) -> None:
    bundle = _runtime(wallet_hold=_amount(wallet_hold), owner_id=owner_id)
    with _engine_errors():
        trial = bundle.trials.start_trial(owner_id, from_level, from_level + 1)
        _emit(trial)


def trial_active(owner_id: str) -> None:
    bundle = _runtime()
    _emit(bundle.trials.get_active_trial(owner_id))


def trial_questions(trial_id: str, owner_id: str | None = None) -> None:
    bundle = _runtime()
    with _engine_errors():
        _emit(bundle.trials.get_trial_questions(trial_id, owner_id=owner_id))


def trial_complete(trial_id: str, answers_path: Path, owner_id: str | None = None) -> None:
    """Grade an answer file against an active trial."""
    bundle = _runtime()
    answers = _read_answers(answers_path)
    with _engine_errors():
        _emit(bundle.trials.complete_trial(trial_id, answers, owner_id=owner_id))


def session_reserve(owner_id: str, tier: str) -> None:
    bundle = _runtime()
    with _engine_errors():
        _emit(bundle.sessions.reserve(owner_id, tier))


def session_settle(session_id: str, answers_path: Path) -> None:
    bundle = _runtime()
    answers = _read_answers(answers_path)
    with _engine_errors():
        _emit(bundle.sessions.settle(session_id, answers))


def ledger_pending(status: str | None = None, limit: int = 50) -> None:
    bundle = _runtime()
    _emit(bundle.ledger.list_pending_transfers(status=status, limit=limit))


def ledger_reconcile() -> None:
    """Run one reconciliation batch."""
    bundle = _runtime()
    _emit(bundle.reconciler.run_once().as_dict())


def audit_tail(limit: int = 20) -> None:
    bundle = _runtime()
    _emit(bundle.audit.read(limit=limit))


def config_show() -> None:
    """Show effective runtime config."""
    bundle = _runtime()
    _emit(bundle.config)


def _amount(text: str) -> Decimal:
    try:
        return Decimal(text)
    except InvalidOperation as exc:
        raise typer.BadParameter(f"Not a decimal amount: {text}") from exc


def _read_answers(path: Path) -> list[dict[str, Any]]:
    """Answers as a ``{question_id: value}`` mapping or a list of answer objects."""
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or []
    if isinstance(data, dict):
        return [{"question_id": str(k), "value": v} for k, v in data.items()]
    if not isinstance(data, list):
        raise typer.BadParameter(f"Answer file must hold a mapping or a list: {path}")
    return data


def _json_safe(payload: object) -> object:
    """Convert models, decimals and datetimes for JSON output."""
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    if isinstance(payload, dict):
        return {str(k): _json_safe(v) for k, v in payload.items()}
    if isinstance(payload, (list, tuple)):
        return [_json_safe(v) for v in payload]
    if isinstance(payload, Decimal):
        return str(payload)
    if hasattr(payload, "isoformat"):
        return payload.isoformat()
    return payload
