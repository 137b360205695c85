"""Pydantic schemas for Hedge API."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator


def _normalize_mappings(value: dict[str, str | None] | None) -> dict[str, str | None] | None:
    if value is None:
        return None
    normalized = {}
    for symbol, asset in value.items():
        key = symbol.strip().upper()
        if not key:
            raise ValueError("token symbols must not be empty")
        normalized[key] = asset.strip().upper() if asset else None
    return normalized


class HedgeCreate(BaseModel):
    position_id: int
    target: Decimal = Field(default=Decimal("1"), gt=0, le=1)
    tolerance: Decimal = Field(default=Decimal("0.05"), gt=0, le=1)
    token_mappings: dict[str, str | None] = Field(default_factory=dict)
    auto_rebalance: bool = True

    @field_validator("token_mappings")
    @classmethod
    def _validate_mappings(cls, value: dict[str, str | None]) -> dict[str, str | None]:
        return _normalize_mappings(value)


class HedgeUpdate(BaseModel):
    target: Decimal | None = Field(default=None, gt=0, le=1)
    tolerance: Decimal | None = Field(default=None, gt=0, le=1)
    token_mappings: dict[str, str | None] | None = None
    auto_rebalance: bool | None = None
    active: bool | None = None

    @field_validator("token_mappings")
    @classmethod
    def _validate_optional_mappings(cls, value: dict[str, str | None] | None) -> dict[str, str | None] | None:
        return _normalize_mappings(value)


class HedgeRead(BaseModel):
    id: int
    position_id: int
    target: Decimal
    tolerance: Decimal
    active: bool
    auto_rebalance: bool
    token_mappings: dict[str, str | None]
    asset0_hl_account: str | None
    asset1_hl_account: str | None
    asset0_account_assigned: bool
    asset1_account_assigned: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ShortRebalanceRead(BaseModel):
    id: int
    hedge_id: int
    asset: str
    exchange_asset: str | None
    account: str | None
    old_short_size: Decimal
    new_short_size: Decimal
    realized_pnl: Decimal
    status: str
    message: str | None
    rebalanced_at: datetime

    model_config = {"from_attributes": True}
