"""Fee reservation and settlement arithmetic for training sessions."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from core.policy_runtime import DifficultyTier, EconomyConfig

HIVE_QUANTUM = Decimal("0.00000001")


def to_hive(value: Decimal | int | float | str) -> Decimal:
    """Quantise an amount to the 8-decimal ledger precision."""
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    return amount.quantize(HIVE_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FeeSettlement:
    """Split of a reserved fee into retained cost and refund."""

    fee_hive: Decimal
    score_pct: Decimal
    passed: bool
    cost_pct: Decimal
    cost_hive: Decimal
    refund_hive: Decimal
    stake_before: Decimal | None = None
    stake_after: Decimal | None = None


class EconomyCalculator:
    """Pure fee computations over an immutable economy config."""

    def __init__(self, config: EconomyConfig | None = None) -> None:
        self.config = config or EconomyConfig()

    def fee_for_tier(self, tier: DifficultyTier | str) -> Decimal:
        """Fee reserved at session start for a difficulty tier."""
        tier = DifficultyTier(tier)
        return to_hive(self.config.base_fee_hive * self.config.fees[tier])

    def cost_pct(self, score_pct: Decimal, passed: bool) -> Decimal:
        if not passed:
            return Decimal("1")
        if score_pct >= 1:
            return Decimal("0")
        return max(self.config.min_partial_cost_pct, Decimal("1") - score_pct)

    def settle(
        self,
        fee_hive: Decimal,
        score_pct: Decimal | float,
        stake_before: Decimal | None = None,
    ) -> FeeSettlement:
        """Split ``fee_hive`` given a final score in [0, 1].

        ``cost_hive + refund_hive == fee_hive`` holds exactly: the refund is
        taken as the remainder after the quantised cost.
        """
        fee = to_hive(fee_hive)
        score = score_pct if isinstance(score_pct, Decimal) else Decimal(str(score_pct))
        if not Decimal("0") <= score <= Decimal("1"):
            raise ValueError(f"score_pct must be within [0, 1], got {score}")
        passed = score >= self.config.pass_threshold
        cost_pct = self.cost_pct(score, passed)
        cost = to_hive(fee * cost_pct)
        refund = fee - cost
        stake_after = None
        if stake_before is not None:
            stake_after = to_hive(stake_before) - fee + refund
        return FeeSettlement(
            fee_hive=fee,
            score_pct=score,
            passed=passed,
            cost_pct=cost_pct,
            cost_hive=cost,
            refund_hive=refund,
            stake_before=stake_before,
            stake_after=stake_after,
        )
