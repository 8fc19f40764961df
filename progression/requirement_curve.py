"""Level requirement curves for wallet hold and vault stake.

Wallet hold grows linearly and vault stake quadratically with level. The
stake scale is derived once so that the curve lands exactly on the target
stake at ``max_level``. All arithmetic is ``Decimal`` so that any client
previewing requirements from the same configuration computes the same
cent-rounded figures as the server.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel, ConfigDict

from core.errors import InvalidLevel
from core.policy_runtime import ProgressionConfig

CENT = Decimal("0.01")


class LevelRequirement(BaseModel):
    """Thresholds a user must meet to attempt a level."""

    model_config = ConfigDict(frozen=True)

    level: int
    wallet_hold: Decimal
    vault_stake: Decimal


def round_cents(value: Decimal) -> Decimal:
    """Round half-up at the cent unit."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class RequirementCurve:
    """Pure requirement functions over an immutable progression config."""

    def __init__(self, config: ProgressionConfig | None = None) -> None:
        self.config = config or ProgressionConfig()
        self.base_hold = self.config.min_hive_access
        self.base_stake = self.config.min_hive_access
        self.hold_scale = self.config.hold_scale
        if self.config.stake_scale is not None:
            self.stake_scale = self.config.stake_scale
        else:
            max_level_sq = Decimal(self.config.max_level) ** 2
            self.stake_scale = (self.config.target_max_vault_stake - self.base_stake) / max_level_sq

    @staticmethod
    def _check(level: int) -> None:
        if level < 1:
            raise InvalidLevel(level)

    def required_wallet_hold(self, level: int) -> Decimal:
        """Linear curve: base_hold + level * hold_scale."""
        self._check(level)
        return self.base_hold + Decimal(level) * self.hold_scale

    def required_vault_stake(self, level: int) -> Decimal:
        """Quadratic curve: base_stake + level^2 * stake_scale."""
        self._check(level)
        return self.base_stake + Decimal(level) ** 2 * self.stake_scale

    def get_requirements(self, level: int) -> LevelRequirement:
        """Both thresholds for a level, rounded to cents."""
        self._check(level)
        return LevelRequirement(
            level=level,
            wallet_hold=round_cents(self.required_wallet_hold(level)),
            vault_stake=round_cents(self.required_vault_stake(level)),
        )


_default_curve = RequirementCurve()


def required_wallet_hold(level: int) -> Decimal:
    return _default_curve.required_wallet_hold(level)


def required_vault_stake(level: int) -> Decimal:
    return _default_curve.required_vault_stake(level)


def get_requirements(level: int) -> LevelRequirement:
    """Requirements for ``level`` under the default progression constants."""
    return _default_curve.get_requirements(level)
