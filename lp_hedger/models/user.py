"""User model — account owner and per-user trading preferences."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class User(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    username: str = Field(unique=True, index=True)
    is_active: bool = Field(default=True)

    # Trading preferences
    paper_trading: bool = True
    testnet: bool = True
    auto_rebalance_enabled: bool = False
    hyperliquid_leverage: int = Field(default=3, ge=1, le=50)
    cross_margin: bool = False

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
