"""Wallet model — an on-chain address whose LP positions are tracked."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class Wallet(SQLModel, table=True):
    __tablename__ = "wallet"

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    address: str = Field(index=True)
    network: str = "arbitrum"
    label: str | None = None
    last_synced_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
