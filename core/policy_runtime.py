"""Configuration and runtime policy bootstrapping."""

from __future__ import annotations

import enum
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


class DifficultyTier(str, enum.Enum):
    """Fee tiers for training sessions."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EXTREME = "extreme"


def _decimal_from_yaml(value: Any) -> Any:
    # YAML hands us floats; go through str so 0.995 stays 0.995.
    if isinstance(value, float):
        return Decimal(str(value))
    return value


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class PathsConfig(_Frozen):
    db_path: str = "data/rankup.db"
    audit_log_path: str = "logs/audit.jsonl"


class ProgressionConfig(_Frozen):
    """Requirement-curve constants."""

    min_hive_access: Decimal = Decimal("50")
    hold_scale: Decimal = Decimal("5")
    max_level: int = Field(default=100, ge=1)
    target_max_vault_stake: Decimal = Decimal("10000")
    stake_scale: Decimal | None = None

    @field_validator(
        "min_hive_access", "hold_scale", "target_max_vault_stake", "stake_scale", mode="before"
    )
    @classmethod
    def _decimals(cls, value: Any) -> Any:
        return _decimal_from_yaml(value)


class EconomyConfig(_Frozen):
    """Fee schedule and pass/refund policy for training sessions."""

    base_fee_hive: Decimal = Decimal("1")
    pass_threshold: Decimal = Decimal("0.70")
    min_partial_cost_pct: Decimal = Decimal("0.05")
    fees: dict[DifficultyTier, Decimal] = Field(
        default_factory=lambda: {
            DifficultyTier.LOW: Decimal("0.5"),
            DifficultyTier.MEDIUM: Decimal("1.0"),
            DifficultyTier.HIGH: Decimal("2.0"),
            DifficultyTier.EXTREME: Decimal("4.0"),
        }
    )

    @field_validator("base_fee_hive", "pass_threshold", "min_partial_cost_pct", mode="before")
    @classmethod
    def _decimals(cls, value: Any) -> Any:
        return _decimal_from_yaml(value)

    @field_validator("fees", mode="before")
    @classmethod
    def _fee_multipliers(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {key: _decimal_from_yaml(mult) for key, mult in value.items()}
        return value


class TrialPolicy(_Frozen):
    """Rank-up trial thresholds, snapshotted onto each trial at creation."""

    question_count: int = Field(default=20, ge=1)
    min_required_questions: int = Field(default=5, ge=1)
    min_accuracy: float = Field(default=0.8, ge=0.0, le=1.0)
    min_avg_difficulty: float = Field(default=3.0, ge=1.0, le=5.0)
    cooldown_hours: float = Field(default=24.0, ge=0.0)
    lock_cycles: int = Field(default=4, ge=0)
    cycle_length_hours: float = Field(default=168.0, gt=0.0)
    rollback_streak: int = Field(default=3, ge=1)
    avoid_recent_days: int = Field(default=30, ge=0)


class SettlementConfig(_Frozen):
    transfer_enabled: bool = False
    max_attempts: int = Field(default=5, ge=1)
    batch_size: int = Field(default=50, ge=1)


class EngineConfig(_Frozen):
    """Process-wide configuration, loaded once and read-only afterwards."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    progression: ProgressionConfig = Field(default_factory=ProgressionConfig)
    economy: EconomyConfig = Field(default_factory=EconomyConfig)
    trials: TrialPolicy = Field(default_factory=TrialPolicy)
    settlement: SettlementConfig = Field(default_factory=SettlementConfig)


def load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML from file, returning empty mapping when missing."""
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")
    return data


def merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge dictionaries."""
    merged: dict[str, Any] = dict(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def ensure_runtime_dirs(root: Path, config: EngineConfig) -> dict[str, Path]:
    """Ensure database and log directories exist and return resolved paths."""
    db_path = (root / config.paths.db_path).resolve()
    audit_log_path = (root / config.paths.audit_log_path).resolve()

    db_path.parent.mkdir(parents=True, exist_ok=True)
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)

    return {
        "db_path": db_path,
        "audit_log_path": audit_log_path,
    }


def load_effective_config(root: Path) -> EngineConfig:
    """Load default.yaml, overlay local.yaml, and validate the result."""
    config_dir = root / "config"
    default_cfg = load_yaml(config_dir / "default.yaml")
    local_cfg = load_yaml(config_dir / "local.yaml")
    return EngineConfig.model_validate(merge_dicts(default_cfg, local_cfg))
