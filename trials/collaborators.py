"""Contracts for collaborators the trial engine reads from but does not own."""

from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal
from typing import Protocol


class WalletHoldOracle(Protocol):
    """Reports the token balance held in an owner's own wallet."""

    def get_wallet_hold(self, owner_id: str) -> Decimal: ...


class StaticWalletOracle:
    """Wallet oracle backed by a fixed mapping; unknown owners hold ``default``."""

    def __init__(
        self, holdings: Mapping[str, Decimal] | None = None, default: Decimal = Decimal("0")
    ) -> None:
        self.holdings = dict(holdings or {})
        self.default = default

    def set_hold(self, owner_id: str, amount: Decimal) -> None:
        self.holdings[owner_id] = amount

    def get_wallet_hold(self, owner_id: str) -> Decimal:
        return Decimal(self.holdings.get(owner_id, self.default))
