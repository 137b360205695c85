"""PnlSnapshot model — periodic point-in-time P&L record for a position."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlmodel import SQLModel, Field


def _num(default: Decimal | None = Decimal("0")):
    return Field(default=default, max_digits=40, decimal_places=18)


class PnlSnapshot(SQLModel, table=True):
    __tablename__ = "pnl_snapshot"

    id: int | None = Field(default=None, primary_key=True)
    position_id: int = Field(foreign_key="position.id", index=True)
    captured_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), index=True
    )

    asset0_amount: Decimal = _num()
    asset1_amount: Decimal = _num()
    asset0_price_usd: Decimal = _num()
    asset1_price_usd: Decimal = _num()

    hedge_unrealized_pnl: Decimal = _num()
    hedge_realized_pnl: Decimal = _num()
    pool_unrealized_pnl: Decimal = _num()

    collected_fees0: Decimal | None = _num(None)
    collected_fees1: Decimal | None = _num(None)
    uncollected_fees0: Decimal | None = _num(None)
    uncollected_fees1: Decimal | None = _num(None)

    def pool_value_usd(self) -> Decimal:
        return (
            self.asset0_amount * self.asset0_price_usd
            + self.asset1_amount * self.asset1_price_usd
        )

    def fees_usd(self) -> Decimal:
        fees0 = (self.collected_fees0 or 0) + (self.uncollected_fees0 or 0)
        fees1 = (self.collected_fees1 or 0) + (self.uncollected_fees1 or 0)
        return fees0 * self.asset0_price_usd + fees1 * self.asset1_price_usd

    def net_pnl_usd(self) -> Decimal:
        return (
            self.pool_unrealized_pnl
            + self.hedge_unrealized_pnl
            + self.hedge_realized_pnl
            + self.fees_usd()
        )
