"""Hyperliquid client wrapper for hedge execution and account management.

Wraps the synchronous hyperliquid-python-sdk. Every SDK call runs in the
default executor under a bounded timeout, and SDK/transport errors are
translated into the exchange error hierarchy below so the job layer can
tell transient failures from rejected orders.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, ROUND_UP

import requests
from eth_account import Account
from hyperliquid.exchange import Exchange
from hyperliquid.info import Info
from hyperliquid.utils import constants
from hyperliquid.utils.error import ClientError, ServerError
from sqlmodel import Session, select

from lp_hedger.config import settings

logger = logging.getLogger(__name__)

USD_DECIMALS = 6  # sub-account transfers are denominated in micro-USD


class ExchangeError(Exception):
    """Base class for exchange failures."""


class ExchangeTimeoutError(ExchangeError):
    pass


class ExchangeNetworkError(ExchangeError):
    pass


class ExchangeRateLimitError(ExchangeError):
    pass


class OrderRejectedError(ExchangeError):
    """The exchange accepted the request but refused the order."""


@dataclass
class ExchangePosition:
    asset: str
    size: Decimal  # signed; negative = short
    entry_price: Decimal
    unrealized_pnl: Decimal = Decimal("0")
    liquidation_price: Decimal | None = None
    margin_used: Decimal = Decimal("0")


@dataclass
class AccountState:
    address: str
    account_value: Decimal
    total_margin_used: Decimal
    withdrawable: Decimal
    positions: list[ExchangePosition] = field(default_factory=list)


@dataclass
class Market:
    name: str
    sz_decimals: int
    max_leverage: int


@dataclass
class SubAccount:
    name: str
    address: str


@dataclass
class OrderResult:
    success: bool
    order_id: str | None = None
    error: str | None = None
    filled_price: Decimal | None = None
    filled_size: Decimal | None = None
    order_status: str | None = None
    raw_response: str | None = None


def _dec(value, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    return Decimal(str(value))


def parse_order_response(resp) -> OrderResult:
    """Interpret an order response, including nested per-order statuses.

    The outer call can report ``"ok"`` while an individual order carries an
    ``{"error": ...}`` status; that still counts as a failure.
    """
    if not isinstance(resp, dict) or resp.get("status") != "ok":
        error = resp.get("response") if isinstance(resp, dict) else resp
        return OrderResult(success=False, error=str(error), raw_response=str(resp))

    statuses = (resp.get("response") or {}).get("data", {}).get("statuses", [])
    if not statuses:
        return OrderResult(success=False, error="No order status returned", raw_response=str(resp))

    status = statuses[0]
    if "error" in status:
        return OrderResult(success=False, error=status["error"], order_status="error", raw_response=str(resp))
    if "filled" in status:
        filled = status["filled"]
        return OrderResult(
            success=True,
            order_id=str(filled.get("oid")),
            filled_price=_dec(filled.get("avgPx")),
            filled_size=_dec(filled.get("totalSz")),
            order_status="filled",
            raw_response=str(resp),
        )
    if "resting" in status:
        return OrderResult(
            success=True,
            order_id=str(status["resting"].get("oid")),
            order_status="resting",
            raw_response=str(resp),
        )
    return OrderResult(success=False, error=f"Unknown order status: {status}", raw_response=str(resp))


class HyperliquidClient:
    """Wrapper around the Hyperliquid SDK for hedge operations.

    ``account`` arguments select the trading account: ``None`` is the main
    account, anything else is a sub-account address.
    """

    def __init__(
        self,
        private_key: str,
        account_address: str,
        testnet: bool = True,
        timeout: float | None = None,
        slippage: float | None = None,
    ):
        self.private_key = private_key
        self.account_address = account_address
        self.testnet = testnet
        self.base_url = constants.TESTNET_API_URL if testnet else constants.MAINNET_API_URL
        self.timeout = timeout or settings.exchange_timeout_seconds
        self.slippage = Decimal(str(slippage if slippage is not None else settings.order_slippage))
        self._wallet = None
        self._info: Info | None = None
        self._exchanges: dict[str | None, Exchange] = {}
        self._market_meta: dict[str, Market] = {}  # asset -> size precision / leverage cap

    async def _ensure_clients(self):
        """Lazily initialize the SDK clients."""
        if self._info is not None:
            return
        self._wallet = Account.from_key(self.private_key)
        # Info fetches exchange metadata on construction
        self._info = await self._call(
            functools.partial(Info, self.base_url, skip_ws=True, timeout=self.timeout)
        )
        logger.info(f"Hyperliquid clients initialized ({'testnet' if self.testnet else 'mainnet'})")

    async def _exchange_for(self, account: str | None) -> Exchange:
        await self._ensure_clients()
        exchange = self._exchanges.get(account)
        if exchange is None:
            if account is None:
                factory = functools.partial(
                    Exchange, self._wallet, self.base_url,
                    account_address=self.account_address, timeout=self.timeout,
                )
            else:
                # Sub-accounts are traded by signing on their behalf as a vault
                factory = functools.partial(
                    Exchange, self._wallet, self.base_url,
                    vault_address=account, timeout=self.timeout,
                )
            exchange = await self._call(factory)
            self._exchanges[account] = exchange
        return exchange

    async def _call(self, fn, *args, **kwargs):
        """Run a blocking SDK call in the executor with a timeout."""
        loop = asyncio.get_event_loop()
        name = getattr(fn, "__name__", type(fn).__name__)
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(fn, *args, **kwargs)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExchangeTimeoutError(f"{name} timed out after {self.timeout}s") from e
        except requests.exceptions.Timeout as e:
            raise ExchangeTimeoutError(f"{name} timed out: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise ExchangeNetworkError(f"{name} connection failed: {e}") from e
        except ClientError as e:
            if e.status_code == 429:
                raise ExchangeRateLimitError(f"{name} rate limited") from e
            raise ExchangeError(f"{name} rejected: {e.error_message}") from e
        except ServerError as e:
            raise ExchangeNetworkError(f"{name} server error {e.status_code}: {e.message}") from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def account_state(self, address: str | None = None) -> AccountState:
        await self._ensure_clients()
        address = address or self.account_address
        state = await self._call(self._info.user_state, address)
        summary = state.get("marginSummary") or {}
        positions = []
        for entry in state.get("assetPositions") or []:
            pos = entry.get("position") or {}
            size = _dec(pos.get("szi"))
            if size == 0:
                continue
            positions.append(ExchangePosition(
                asset=pos.get("coin"),
                size=size,
                entry_price=_dec(pos.get("entryPx")),
                unrealized_pnl=_dec(pos.get("unrealizedPnl")),
                liquidation_price=_dec(pos["liquidationPx"]) if pos.get("liquidationPx") else None,
                margin_used=_dec(pos.get("marginUsed")),
            ))
        return AccountState(
            address=address,
            account_value=_dec(summary.get("accountValue")),
            total_margin_used=_dec(summary.get("totalMarginUsed")),
            withdrawable=_dec(state.get("withdrawable")),
            positions=positions,
        )

    async def get_positions(self, address: str | None = None) -> list[ExchangePosition]:
        return (await self.account_state(address)).positions

    async def get_position(self, asset: str, address: str | None = None) -> ExchangePosition | None:
        for pos in await self.get_positions(address):
            if pos.asset == asset:
                return pos
        return None

    async def available_markets(self) -> list[Market]:
        await self._ensure_clients()
        meta = await self._call(self._info.meta)
        markets = []
        for asset in meta.get("universe", []):
            if asset.get("isDelisted"):
                continue
            market = Market(
                name=asset["name"],
                sz_decimals=int(asset.get("szDecimals", 0)),
                max_leverage=int(asset.get("maxLeverage", 1)),
            )
            self._market_meta[market.name] = market
            markets.append(market)
        return markets

    async def _get_market(self, asset: str) -> Market:
        """Fetch and cache size precision for an asset."""
        if asset not in self._market_meta:
            await self.available_markets()
        market = self._market_meta.get(asset)
        if market is None:
            raise ExchangeError(f"Unknown Hyperliquid market: {asset}")
        return market

    async def market_price(self, asset: str) -> Decimal:
        await self._ensure_clients()
        mids = await self._call(self._info.all_mids)
        if asset not in mids:
            raise ExchangeError(f"No mid price for {asset}")
        return _dec(mids[asset])

    async def market_prices(self, assets: list[str]) -> dict[str, Decimal]:
        await self._ensure_clients()
        mids = await self._call(self._info.all_mids)
        return {a: _dec(mids[a]) for a in assets if a in mids}

    async def user_fills(
        self,
        since: datetime,
        address: str | None = None,
        with_pnl_only: bool = False,
    ) -> list[dict]:
        await self._ensure_clients()
        start_ms = int(since.timestamp() * 1000)
        fills = await self._call(self._info.user_fills_by_time, address or self.account_address, start_ms)
        if with_pnl_only:
            fills = [f for f in fills if f.get("closedPnl") not in (None, "")]
        return fills

    async def realized_pnl_since(self, asset: str, since: datetime, address: str | None = None) -> Decimal:
        """Sum ``closedPnl`` of this asset's fills at or after ``since``."""
        fills = await self.user_fills(since, address=address, with_pnl_only=True)
        return sum((_dec(f["closedPnl"]) for f in fills if f.get("coin") == asset), Decimal("0"))

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def _round_size(self, size: Decimal, market: Market) -> Decimal:
        quantum = Decimal(1).scaleb(-market.sz_decimals)
        return abs(size).quantize(quantum, rounding=ROUND_HALF_UP)

    def _slippage_price(self, mid: Decimal, is_buy: bool, market: Market) -> float:
        # Perp prices allow 5 significant figures and at most 6 - szDecimals decimals
        px = mid * (1 + self.slippage) if is_buy else mid * (1 - self.slippage)
        px = Decimal(f"{px:.5g}")
        return round(float(px), 6 - market.sz_decimals)

    async def place_order(
        self,
        asset: str,
        size: Decimal,
        reduce_only: bool = False,
        account: str | None = None,
    ) -> OrderResult:
        """Place an IOC market order. Negative ``size`` sells, positive buys."""
        market = await self._get_market(asset)
        sz = self._round_size(size, market)
        if sz == 0:
            return OrderResult(success=False, error=f"Size {size} rounds to zero for {asset}")

        is_buy = size > 0
        mid = await self.market_price(asset)
        limit_px = self._slippage_price(mid, is_buy, market)
        exchange = await self._exchange_for(account)

        logger.info(
            f"Order {asset}: {'buy' if is_buy else 'sell'} {sz} @ <= {limit_px} "
            f"reduce_only={reduce_only} account={account or 'main'}"
        )
        resp = await self._call(
            exchange.order, asset, is_buy, float(sz), limit_px,
            {"limit": {"tif": "Ioc"}}, reduce_only=reduce_only,
        )
        result = parse_order_response(resp)
        if not result.success:
            logger.error(f"Order rejected for {asset}: {result.error}")
        return result

    async def open_short(self, asset: str, size: Decimal, account: str | None = None) -> OrderResult:
        result = await self.place_order(asset, -abs(size), account=account)
        if not result.success:
            raise OrderRejectedError(f"Open short {asset} {size} failed: {result.error}")
        return result

    async def close_short(self, asset: str, account: str | None = None) -> OrderResult | None:
        """Buy back the full short. Returns None when nothing is open."""
        position = await self.get_position(asset, account)
        if position is None or position.size >= 0:
            logger.warning(f"No open short to close for {asset} on {account or 'main'}")
            return None
        result = await self.place_order(asset, abs(position.size), reduce_only=True, account=account)
        if not result.success:
            raise OrderRejectedError(f"Close short {asset} failed: {result.error}")
        return result

    async def update_leverage(self, asset: str, leverage: int, is_cross: bool = True, account: str | None = None):
        market = await self._get_market(asset)
        leverage = max(1, min(int(leverage), market.max_leverage))
        exchange = await self._exchange_for(account)
        resp = await self._call(exchange.update_leverage, leverage, asset, is_cross)
        if resp.get("status") != "ok":
            raise ExchangeError(f"Leverage update for {asset} failed: {resp.get('response')}")
        return leverage

    # ------------------------------------------------------------------
    # Sub-accounts
    # ------------------------------------------------------------------

    async def list_sub_accounts(self) -> list[SubAccount]:
        await self._ensure_clients()
        subs = await self._call(self._info.query_sub_accounts, self.account_address)
        return [SubAccount(name=s.get("name", ""), address=s["subAccountUser"]) for s in subs or []]

    async def create_sub_account(self, name: str) -> str:
        exchange = await self._exchange_for(None)
        resp = await self._call(exchange.create_sub_account, name)
        if resp.get("status") != "ok":
            raise ExchangeError(f"Sub-account creation failed: {resp.get('response')}")
        address = resp["response"]["data"]
        logger.info(f"Created sub-account {name} at {address}")
        return address

    async def _sub_account_transfer(self, address: str, usd: Decimal, is_deposit: bool) -> int:
        rounding = ROUND_UP if is_deposit else ROUND_DOWN
        raw = int((usd * Decimal(10) ** USD_DECIMALS).to_integral_value(rounding=rounding))
        if raw <= 0:
            return 0
        exchange = await self._exchange_for(None)
        resp = await self._call(exchange.sub_account_transfer, address, is_deposit, raw)
        if resp.get("status") != "ok":
            direction = "to" if is_deposit else "from"
            raise ExchangeError(f"Transfer {direction} {address} failed: {resp.get('response')}")
        return raw

    async def transfer_to_sub_account(self, address: str, usd: Decimal) -> Decimal:
        raw = await self._sub_account_transfer(address, usd, is_deposit=True)
        return Decimal(raw).scaleb(-USD_DECIMALS)

    async def withdraw_from_sub_account(self, address: str, usd: Decimal) -> Decimal:
        raw = await self._sub_account_transfer(address, usd, is_deposit=False)
        return Decimal(raw).scaleb(-USD_DECIMALS)

    async def close(self):
        """Drop SDK clients and cached metadata."""
        self._info = None
        self._exchanges = {}
        self._market_meta = {}


def client_for_user(user_id: int) -> HyperliquidClient | None:
    """Build a client from the user's active credential."""
    from lp_hedger.database import engine
    from lp_hedger.models.credential import Credential
    from lp_hedger.models.user import User
    from lp_hedger.services.encryption import decrypt

    with Session(engine) as session:
        user = session.get(User, user_id)
        cred = session.exec(
            select(Credential)
            .where(Credential.user_id == user_id)
            .where(Credential.is_active == True)
        ).first()
        if not user or not cred:
            return None

        return HyperliquidClient(
            private_key=decrypt(cred.private_key_encrypted),
            account_address=cred.account_address,
            testnet=user.testnet,
        )
