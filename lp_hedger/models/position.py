"""Position model — one concentrated-liquidity LP position."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlmodel import SQLModel, Field


class Position(SQLModel, table=True):
    __tablename__ = "position"

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    wallet_id: int | None = Field(default=None, foreign_key="wallet.id", index=True)
    external_id: str = Field(index=True)  # NFT token id
    network: str = "arbitrum"
    pool_address: str | None = None

    asset0: str
    asset1: str
    asset0_decimals: int = 18
    asset1_decimals: int = 18
    asset0_amount: Decimal = Field(default=Decimal("0"), max_digits=40, decimal_places=18)
    asset1_amount: Decimal = Field(default=Decimal("0"), max_digits=40, decimal_places=18)
    asset0_price_usd: Decimal = Field(default=Decimal("0"), max_digits=40, decimal_places=18)
    asset1_price_usd: Decimal = Field(default=Decimal("0"), max_digits=40, decimal_places=18)
    entry_value_usd: Decimal | None = Field(default=None, max_digits=40, decimal_places=18)

    # Range state as last read from the pool
    liquidity: str = "0"  # uint128, kept as text
    tick_lower: int | None = None
    tick_upper: int | None = None
    current_tick: int | None = None

    active: bool = True
    last_synced_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def asset_for(self, slot: int) -> str:
        return self.asset0 if slot == 0 else self.asset1

    def amount_for(self, slot: int) -> Decimal:
        return self.asset0_amount if slot == 0 else self.asset1_amount

    def total_value_usd(self) -> Decimal:
        return (
            self.asset0_amount * self.asset0_price_usd
            + self.asset1_amount * self.asset1_price_usd
        )
