"""Hedge model — a delta-neutral short hedge attached to a Position.

A hedge targets a short exposure of ``target`` x pool amount for each asset.
If the actual short deviates by at least ``tolerance`` x target short, a
rebalance is required. Each rebalance attempt is recorded as a ShortRebalance.

Each asset's short lives on the Hyperliquid main account or a sub-account.
``assetN_hl_account`` holds the sub-account address and ``assetN_account_assigned``
records whether the slot has been resolved at all, so ``None`` + assigned means
"main account" while ``None`` + unassigned means "not resolved yet".
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON
from sqlmodel import SQLModel, Field, Column

from lp_hedger.utils.constants import map_token


def _dec(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


class Hedge(SQLModel, table=True):
    __tablename__ = "hedge"

    id: int | None = Field(default=None, primary_key=True)
    position_id: int = Field(foreign_key="position.id", index=True)
    target: Decimal = Field(default=Decimal("1"), max_digits=10, decimal_places=6)
    tolerance: Decimal = Field(default=Decimal("0.05"), max_digits=10, decimal_places=6)
    active: bool = True
    auto_rebalance: bool = True

    # Pool symbol -> exchange symbol overrides (null value = do not hedge)
    token_mappings: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    asset0_hl_account: str | None = None
    asset1_hl_account: str | None = None
    asset0_account_assigned: bool = False
    asset1_account_assigned: bool = False

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def exchange_asset_for(self, pool_symbol: str | None) -> str | None:
        """Exchange symbol hedging ``pool_symbol``, or None for unhedged tokens."""
        return map_token(pool_symbol, self.token_mappings)

    def target_short(self, pool_amount: Decimal) -> Decimal:
        return _dec(pool_amount) * _dec(self.target)

    def needs_rebalance(self, pool_amount: Decimal, current_short: Decimal) -> bool:
        """True when the short deviates from target by at least the tolerance band.

        Both sides at zero is balanced; a zero target with an open short always
        needs a rebalance.
        """
        target_short = self.target_short(pool_amount)
        current_short = _dec(current_short)
        if target_short == 0 and current_short == 0:
            return False
        return abs(target_short - current_short) >= target_short * _dec(self.tolerance)

    def hl_account_for(self, slot: int) -> str | None:
        return self.asset0_hl_account if slot == 0 else self.asset1_hl_account

    def account_assigned(self, slot: int) -> bool:
        return self.asset0_account_assigned if slot == 0 else self.asset1_account_assigned

    def assign_account(self, slot: int, address: str | None):
        """Record the account for a slot; None means the main account."""
        if slot == 0:
            self.asset0_hl_account = address
            self.asset0_account_assigned = True
        else:
            self.asset1_hl_account = address
            self.asset1_account_assigned = True
        self.updated_at = datetime.now(timezone.utc)

    def clear_account(self, slot: int):
        if slot == 0:
            self.asset0_hl_account = None
            self.asset0_account_assigned = False
        else:
            self.asset1_hl_account = None
            self.asset1_account_assigned = False
        self.updated_at = datetime.now(timezone.utc)
