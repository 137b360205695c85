"""RealizedPnl model — P&L realized by one adjustment of a RebalanceEvent."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlmodel import SQLModel, Field


class RealizedPnl(SQLModel, table=True):
    __tablename__ = "realized_pnl"

    id: int | None = Field(default=None, primary_key=True)
    position_id: int = Field(foreign_key="position.id", index=True)
    rebalance_event_id: int = Field(foreign_key="rebalance_event.id", index=True)
    asset: str
    size_closed: Decimal = Field(max_digits=40, decimal_places=18)
    entry_price: Decimal = Field(max_digits=40, decimal_places=18)
    exit_price: Decimal = Field(max_digits=40, decimal_places=18)
    realized_pnl: Decimal = Field(max_digits=40, decimal_places=18)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @staticmethod
    def short_pnl(entry_price: Decimal, exit_price: Decimal, size_closed: Decimal) -> Decimal:
        """Shorts profit when price falls: (entry - exit) x |size|."""
        return (entry_price - exit_price) * abs(size_closed)
