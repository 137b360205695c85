"""Shared fixtures: in-memory database, a fake Hyperliquid exchange, seed data."""

import itertools
import os

# Must be set before lp_hedger.config is imported
os.environ["LPH_DATABASE_URL"] = "sqlite://"
os.environ["LPH_ENCRYPTION_KEY"] = "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY="
os.environ["LPH_REDIS_URL"] = ""
os.environ["LPH_API_TOKEN"] = "test-token"
os.environ["LPH_TELEGRAM_BOT_TOKEN"] = ""

from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from sqlmodel import SQLModel, Session

import lp_hedger.models  # noqa: F401
from lp_hedger.database import engine
from lp_hedger.engine import account_allocator, hedge_sync
from lp_hedger.models.hedge import Hedge
from lp_hedger.models.position import Position
from lp_hedger.models.user import User
from lp_hedger.services.breaker_store import InMemoryBreakerStore
from lp_hedger.services.hyperliquid_client import (
    AccountState,
    ExchangePosition,
    OrderRejectedError,
    OrderResult,
    SubAccount,
)


_ids = itertools.count(1)


class FakeExchange:
    """In-memory stand-in for HyperliquidClient.

    Positions are keyed by (account, asset) with ``None`` as the main account.
    ``errors[method]`` is a list of exceptions raised, one per call, before
    the method does its normal work.
    """

    def __init__(self, prices: dict[str, str] | None = None):
        self.prices = {k: Decimal(v) for k, v in (prices or {"ETH": "2000", "BTC": "60000"}).items()}
        self.positions: dict[tuple[str | None, str], ExchangePosition] = {}
        self.sub_accounts: list[SubAccount] = []
        self.balances: dict[str | None, Decimal] = {}
        self.transfers: list[tuple[str, str, Decimal]] = []
        self.orders: list[dict] = []
        self.leverage_updates: list[tuple] = []
        self.fill_pnl: dict[str, Decimal] = {}
        self.errors: dict[str, list[Exception]] = {}
        self.closed = False

    def _maybe_fail(self, method: str):
        pending = self.errors.get(method)
        if pending:
            raise pending.pop(0)

    def set_short(self, asset: str, size, account: str | None = None, entry_price="2000", unrealized="0"):
        self.positions[(account, asset)] = ExchangePosition(
            asset=asset,
            size=-abs(Decimal(str(size))),
            entry_price=Decimal(entry_price),
            unrealized_pnl=Decimal(unrealized),
        )

    def short_size(self, asset: str, account: str | None = None) -> Decimal:
        pos = self.positions.get((account, asset))
        return abs(pos.size) if pos and pos.size < 0 else Decimal("0")

    async def get_position(self, asset, address=None):
        self._maybe_fail("get_position")
        return self.positions.get((address, asset))

    async def get_positions(self, address=None):
        return [p for (acct, _), p in self.positions.items() if acct == address]

    async def account_state(self, address=None):
        balance = self.balances.get(address, Decimal("0"))
        return AccountState(
            address=address or "0xmain",
            account_value=balance,
            total_margin_used=Decimal("0"),
            withdrawable=balance,
            positions=await self.get_positions(address),
        )

    async def market_price(self, asset):
        return self.prices[asset]

    async def market_prices(self, assets):
        return {a: self.prices[a] for a in assets if a in self.prices}

    async def place_order(self, asset, size, reduce_only=False, account=None):
        self._maybe_fail("place_order")
        size = Decimal(str(size))
        self.orders.append({"asset": asset, "size": size, "reduce_only": reduce_only, "account": account})
        pos = self.positions.get((account, asset))
        new_size = (pos.size if pos else Decimal("0")) + size
        if new_size == 0:
            self.positions.pop((account, asset), None)
        else:
            entry = pos.entry_price if pos else self.prices[asset]
            self.positions[(account, asset)] = ExchangePosition(asset=asset, size=new_size, entry_price=entry)
        return OrderResult(success=True, order_id=str(len(self.orders)), filled_price=self.prices[asset], filled_size=abs(size))

    async def open_short(self, asset, size, account=None):
        self._maybe_fail("open_short")
        return await self.place_order(asset, -abs(Decimal(str(size))), account=account)

    async def close_short(self, asset, account=None):
        self._maybe_fail("close_short")
        pos = self.positions.get((account, asset))
        if pos is None or pos.size >= 0:
            return None
        return await self.place_order(asset, abs(pos.size), reduce_only=True, account=account)

    async def update_leverage(self, asset, leverage, is_cross=True, account=None):
        self.leverage_updates.append((asset, leverage, is_cross, account))
        return leverage

    async def list_sub_accounts(self):
        return list(self.sub_accounts)

    async def create_sub_account(self, name):
        address = f"0xsub{len(self.sub_accounts) + 1}"
        self.sub_accounts.append(SubAccount(name=name, address=address))
        return address

    async def transfer_to_sub_account(self, address, usd):
        self.balances[address] = self.balances.get(address, Decimal("0")) + usd
        self.transfers.append(("deposit", address, usd))
        return usd

    async def withdraw_from_sub_account(self, address, usd):
        self.balances[address] = self.balances.get(address, Decimal("0")) - usd
        self.transfers.append(("withdraw", address, usd))
        return usd

    async def realized_pnl_since(self, asset, since, address=None):
        self._maybe_fail("realized_pnl_since")
        return self.fill_pnl.get(asset, Decimal("0"))

    async def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def db():
    SQLModel.metadata.create_all(engine)
    account_allocator._asset_locks.clear()
    hedge_sync._hedge_locks.clear()
    yield
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def breaker_store():
    return InMemoryBreakerStore()


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def rejected():
    """An order rejection as the exchange reports it for dust orders."""
    return OrderRejectedError("Order must have minimum value of $10")


@pytest.fixture
def seed():
    """Create a user, position and hedge; returns their ids."""

    def _seed(
        asset0="WETH",
        asset1="USDC",
        amount0="10",
        amount1="20000",
        target="0.5",
        tolerance="0.05",
        paper_trading=False,
        user_id=None,
        **hedge_fields,
    ):
        with Session(engine) as session:
            if user_id is None:
                user = User(username=f"user{next(_ids)}", paper_trading=paper_trading)
                session.add(user)
                session.commit()
                session.refresh(user)
                user_id = user.id

            position = Position(
                user_id=user_id,
                external_id=str(next(_ids)),
                asset0=asset0,
                asset1=asset1,
                asset0_amount=Decimal(amount0),
                asset1_amount=Decimal(amount1),
                asset0_price_usd=Decimal("2000"),
                asset1_price_usd=Decimal("1"),
            )
            session.add(position)
            session.commit()
            session.refresh(position)

            hedge = Hedge(
                position_id=position.id,
                target=Decimal(target),
                tolerance=Decimal(tolerance),
                **hedge_fields,
            )
            session.add(hedge)
            session.commit()
            session.refresh(hedge)
            return SimpleNamespace(user_id=user_id, position_id=position.id, hedge_id=hedge.id)

    return _seed
