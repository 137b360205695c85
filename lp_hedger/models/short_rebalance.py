"""ShortRebalance model — append-only audit row for one per-asset rebalance attempt."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlmodel import SQLModel, Field


class ShortRebalance(SQLModel, table=True):
    __tablename__ = "short_rebalance"

    id: int | None = Field(default=None, primary_key=True)
    hedge_id: int = Field(foreign_key="hedge.id", index=True)
    asset: str  # pool symbol, e.g. "WETH"
    exchange_asset: str | None = None  # Hyperliquid symbol, e.g. "ETH"
    account: str | None = None  # sub-account address; None = main account
    old_short_size: Decimal = Field(default=Decimal("0"), max_digits=40, decimal_places=18)
    new_short_size: Decimal = Field(default=Decimal("0"), max_digits=40, decimal_places=18)
    realized_pnl: Decimal = Field(default=Decimal("0"), max_digits=40, decimal_places=18)
    status: str = "success"  # "success", "failed"
    message: str | None = None
    rebalanced_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), index=True
    )
