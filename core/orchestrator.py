"""Top-level application orchestrator."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from core.event_bus import EventBus
from core.locks import OwnerLockRegistry
from core.policy_runtime import EngineConfig, ensure_runtime_dirs, load_effective_config
from economy.calculator import EconomyCalculator
from economy.training_sessions import TrainingSessionService
from governance.audit_logger import AuditLogger
from grading.answer_grader import AnswerGrader
from ledger.reconciliation import ReconciliationJob, SettlementGateway
from ledger.stake_ledger import StakeLedger
from persistence.sql_store import SQLStore
from progression.requirement_curve import RequirementCurve
from trials.collaborators import StaticWalletOracle, WalletHoldOracle
from trials.question_bank import SQLQuestionBank
from trials.trial_engine import TrialEngine

logger = logging.getLogger("rankup.orchestrator")


@dataclass
class EngineBundle:
    """Holds initialized engine components."""

    config: EngineConfig
    sql_store: SQLStore
    event_bus: EventBus
    ledger: StakeLedger
    curve: RequirementCurve
    question_bank: SQLQuestionBank
    wallet_oracle: WalletHoldOracle
    trials: TrialEngine
    sessions: TrainingSessionService
    reconciler: ReconciliationJob
    audit: AuditLogger


class Orchestrator:
    """Creates and wires engine components for CLI and embedding use."""

    def __init__(
        self,
        root: Path | None = None,
        wallet_oracle: WalletHoldOracle | None = None,
        gateway: SettlementGateway | None = None,
    ) -> None:
        default_root = Path(__file__).resolve().parents[1]
        self.root = (root or default_root).resolve()
        self.wallet_oracle = wallet_oracle
        self.gateway = gateway

    def build(self, config: EngineConfig | None = None) -> EngineBundle:
        config = config or load_effective_config(self.root)
        paths = ensure_runtime_dirs(self.root, config)

        sql_store = SQLStore(paths["db_path"])
        sql_store.create_all()

        event_bus = EventBus()
        audit = AuditLogger(paths["audit_log_path"])
        audit.attach(event_bus)

        ledger = StakeLedger(
            sql_store,
            locks=OwnerLockRegistry(),
            cycle_length=timedelta(hours=config.trials.cycle_length_hours),
        )
        curve = RequirementCurve(config.progression)
        question_bank = SQLQuestionBank(sql_store)
        wallet_oracle = self.wallet_oracle or StaticWalletOracle()
        grader = AnswerGrader()

        trials = TrialEngine(
            sql_store,
            ledger,
            curve,
            question_bank,
            wallet_oracle,
            policy=config.trials,
            grader=grader,
            event_bus=event_bus,
        )
        sessions = TrainingSessionService(
            sql_store,
            ledger,
            EconomyCalculator(config.economy),
            question_bank,
            grader=grader,
            event_bus=event_bus,
        )
        gateway = self.gateway
        if gateway is None and config.settlement.transfer_enabled:
            logger.warning("Transfers enabled but no settlement gateway configured")
        reconciler = ReconciliationJob(
            sql_store,
            gateway=gateway,
            max_attempts=config.settlement.max_attempts,
            batch_size=config.settlement.batch_size,
        )

        return EngineBundle(
            config=config,
            sql_store=sql_store,
            event_bus=event_bus,
            ledger=ledger,
            curve=curve,
            question_bank=question_bank,
            wallet_oracle=wallet_oracle,
            trials=trials,
            sessions=sessions,
            reconciler=reconciler,
            audit=audit,
        )
