"""Credential model — encrypted Hyperliquid API wallet key."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class Credential(SQLModel, table=True):
    __tablename__ = "credential"

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    name: str = "default"
    account_address: str  # main account the API wallet trades for
    private_key_encrypted: str = ""  # Fernet-encrypted hex private key
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
