"""CLI entrypoint for the rank-up engine."""

from __future__ import annotations

import logging
from pathlib import Path

import typer

from ui.cli import commands

app = typer.Typer(help="Stake-gated rank-up trial engine")
stake_app = typer.Typer(help="Vault stake commands")
questions_app = typer.Typer(help="Question bank commands")
trial_app = typer.Typer(help="Rank-up trial commands")
session_app = typer.Typer(help="Training session commands")
ledger_app = typer.Typer(help="Pending transfer commands")
audit_app = typer.Typer(help="Audit trail commands")
config_app = typer.Typer(help="Configuration commands")


@app.callback()
def main_callback(
    root: Path | None = typer.Option(
        None, "--root", help="Project root holding config/ and data/"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine activity to stderr"),
) -> None:
    commands.state["root"] = root
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


@app.command("requirements")
def requirements_cmd(level: int = typer.Argument(..., help="Target level")) -> None:
    """Show requirements for a level."""
    commands.requirements(level=level)


@stake_app.command("deposit")
def stake_deposit_cmd(owner_id: str, amount: str) -> None:
    """Credit a confirmed vault deposit."""
    commands.stake_deposit(owner_id=owner_id, amount=amount)


@stake_app.command("withdraw")
def stake_withdraw_cmd(owner_id: str, amount: str) -> None:
    """Withdraw unlocked vault stake."""
    commands.stake_withdraw(owner_id=owner_id, amount=amount)


@stake_app.command("show")
def stake_show_cmd(
    owner_id: str,
    journal: int = typer.Option(0, min=0, max=500, help="Include the latest N journal entries"),
) -> None:
    """Show a stake account."""
    commands.stake_show(owner_id=owner_id, journal=journal)


@stake_app.command("advance-cycle")
def stake_advance_cycle_cmd() -> None:
    """Tick stake locks down one cycle."""
    commands.stake_advance_cycle()


@questions_app.command("load")
def questions_load_cmd(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="YAML question file"),
) -> None:
    """Load questions into the bank."""
    commands.questions_load(path=path)


@trial_app.command("start")
def trial_start_cmd(
    owner_id: str,
    from_level: int = typer.Option(..., "--from-level", min=1),
    wallet_hold: str = typer.Option(
        "0", "--wallet-hold", help="Wallet balance reported for the owner"
    ),
) -> None:
    """Start a rank-up trial to the next level."""
    commands.trial_start(owner_id=owner_id, from_level=from_level, wallet_hold=wallet_hold)


@trial_app.command("active")
def trial_active_cmd(owner_id: str) -> None:
    """Show the owner's active trial."""
    commands.trial_active(owner_id=owner_id)


@trial_app.command("questions")
def trial_questions_cmd(
    trial_id: str,
    owner_id: str | None = typer.Option(None, "--owner"),
) -> None:
    """List a trial's issued questions without answers."""
    commands.trial_questions(trial_id=trial_id, owner_id=owner_id)


@trial_app.command("complete")
def trial_complete_cmd(
    trial_id: str,
    answers: Path = typer.Argument(..., exists=True, dir_okay=False, help="YAML/JSON answer file"),
    owner_id: str | None = typer.Option(None, "--owner"),
) -> None:
    """Submit answers and settle a trial."""
    commands.trial_complete(trial_id=trial_id, answers_path=answers, owner_id=owner_id)


@session_app.command("reserve")
def session_reserve_cmd(
    owner_id: str,
    tier: str = typer.Option("medium", "--tier", help="low, medium, high or extreme"),
) -> None:
    """Reserve a training session fee."""
    commands.session_reserve(owner_id=owner_id, tier=tier)


@session_app.command("settle")
def session_settle_cmd(
    session_id: str,
    answers: Path = typer.Argument(..., exists=True, dir_okay=False),
) -> None:
    """Grade a training session and refund by score."""
    commands.session_settle(session_id=session_id, answers_path=answers)


@ledger_app.command("pending")
def ledger_pending_cmd(
    status: str | None = typer.Option(None, "--status"),
    limit: int = typer.Option(50, min=1, max=500),
) -> None:
    """List pending transfers."""
    commands.ledger_pending(status=status, limit=limit)


@ledger_app.command("reconcile")
def ledger_reconcile_cmd() -> None:
    """Retry outstanding transfers once."""
    commands.ledger_reconcile()


@audit_app.command("tail")
def audit_tail_cmd(limit: int = typer.Option(20, min=1, max=1000)) -> None:
    """Show the latest audit records."""
    commands.audit_tail(limit=limit)


@config_app.command("show")
def config_show_cmd() -> None:
    """Show effective configuration."""
    commands.config_show()


app.add_typer(stake_app, name="stake")
app.add_typer(questions_app, name="questions")
app.add_typer(trial_app, name="trial")
app.add_typer(session_app, name="session")
app.add_typer(ledger_app, name="ledger")
app.add_typer(audit_app, name="audit")
app.add_typer(config_app, name="config")


def main() -> None:
    """Console script entrypoint."""
    app()


if __name__ == "__main__":
    main()
