"""Exchange account allocation and margin funding for hedge shorts.

Each (hedge, asset slot) trades on either the main Hyperliquid account or a
dedicated sub-account. The first hedge to need an exchange asset gets the
main account; later hedges needing the same asset get a free or newly
created sub-account. Resolution is serialized per (user, exchange asset) so
two hedges resolving concurrently cannot both claim the main account.
"""

import asyncio
import logging
from decimal import Decimal

from sqlmodel import Session, select

from lp_hedger.config import settings
from lp_hedger.database import engine
from lp_hedger.models.hedge import Hedge
from lp_hedger.models.position import Position

logger = logging.getLogger(__name__)
_asset_locks: dict[str, asyncio.Lock] = {}
_asset_locks_guard = asyncio.Lock()


async def _get_asset_lock(key: str) -> asyncio.Lock:
    async with _asset_locks_guard:
        lock = _asset_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            _asset_locks[key] = lock
        return lock


def claimed_accounts(
    session: Session,
    user_id: int,
    exchange_asset: str,
    exclude: tuple[int, int] | None = None,
) -> set[str | None]:
    """Accounts already holding ``exchange_asset`` for the user's other active hedge slots.

    ``None`` in the result means the main account is taken.
    """
    rows = session.exec(
        select(Hedge, Position)
        .join(Position, Hedge.position_id == Position.id)
        .where(Hedge.active == True)
        .where(Position.user_id == user_id)
    ).all()

    claims: set[str | None] = set()
    for hedge, position in rows:
        for slot in (0, 1):
            if exclude == (hedge.id, slot) or not hedge.account_assigned(slot):
                continue
            if hedge.exchange_asset_for(position.asset_for(slot)) != exchange_asset:
                continue
            claims.add(hedge.hl_account_for(slot))
    return claims


class AccountAllocator:
    """Resolves trading accounts and funds sub-account margin for one user."""

    def __init__(
        self,
        client,
        user_id: int,
        leverage: int = 3,
        cross_margin: bool = False,
        margin_buffer: float | None = None,
    ):
        self.client = client
        self.user_id = user_id
        self.leverage = leverage
        self.cross_margin = cross_margin
        self.margin_buffer = Decimal(str(margin_buffer if margin_buffer is not None else settings.margin_buffer))

    async def resolve_account(self, hedge_id: int, slot: int, exchange_asset: str) -> str | None:
        """Return the account for a hedge slot, assigning one on first use."""
        lock = await _get_asset_lock(f"{self.user_id}:{exchange_asset}")
        async with lock:
            with Session(engine) as session:
                hedge = session.get(Hedge, hedge_id)
                if hedge is None:
                    raise ValueError(f"Hedge {hedge_id} not found")
                if hedge.account_assigned(slot):
                    return hedge.hl_account_for(slot)
                claims = claimed_accounts(session, self.user_id, exchange_asset, exclude=(hedge_id, slot))

            if None not in claims:
                account = None
            else:
                account = await self._free_sub_account(claims, exchange_asset, hedge_id, slot)

            with Session(engine) as session:
                hedge = session.get(Hedge, hedge_id)
                hedge.assign_account(slot, account)
                session.add(hedge)
                session.commit()

        logger.info(
            f"[hedge_{hedge_id}] {exchange_asset} slot {slot} assigned to "
            f"{account or 'main account'}"
        )
        return account

    async def _free_sub_account(
        self,
        claims: set[str | None],
        exchange_asset: str,
        hedge_id: int,
        slot: int,
    ) -> str:
        for sub in await self.client.list_sub_accounts():
            if sub.address not in claims:
                return sub.address
        name = f"lph-{exchange_asset.lower()}-{hedge_id}-{slot}"
        return await self.client.create_sub_account(name)

    def required_margin(self, target_short: Decimal, mark_price: Decimal) -> Decimal:
        return target_short * mark_price / Decimal(self.leverage) * self.margin_buffer

    async def prepare_for_open(self, account: str | None, exchange_asset: str, target_short: Decimal) -> Decimal:
        """Set leverage and top up sub-account margin ahead of opening a short.

        Returns the USD amount transferred from the main account.
        """
        await self.client.update_leverage(
            exchange_asset, self.leverage, is_cross=self.cross_margin, account=account
        )
        return await self.ensure_margin(account, exchange_asset, target_short)

    async def ensure_margin(self, account: str | None, exchange_asset: str, target_short: Decimal) -> Decimal:
        """Transfer only the margin shortfall into a sub-account."""
        if account is None:
            return Decimal("0")

        mark_price = await self.client.market_price(exchange_asset)
        required = self.required_margin(target_short, mark_price)
        state = await self.client.account_state(account)
        shortfall = required - state.account_value
        if shortfall <= 0:
            logger.debug(
                f"Sub-account {account} has ${state.account_value:.2f}, "
                f"needs ${required:.2f} for {exchange_asset}"
            )
            return Decimal("0")

        transferred = await self.client.transfer_to_sub_account(account, shortfall)
        logger.info(f"Funded sub-account {account} with ${transferred:.2f} for {exchange_asset}")
        return transferred

    async def release_account(self, hedge_id: int, slot: int) -> Decimal:
        """Withdraw a sub-account's balance and free the slot for reuse."""
        with Session(engine) as session:
            hedge = session.get(Hedge, hedge_id)
            if hedge is None or not hedge.account_assigned(slot):
                return Decimal("0")
            account = hedge.hl_account_for(slot)
        if account is None:
            return Decimal("0")

        state = await self.client.account_state(account)
        withdrawn = Decimal("0")
        if state.withdrawable > 0:
            withdrawn = await self.client.withdraw_from_sub_account(account, state.withdrawable)

        with Session(engine) as session:
            hedge = session.get(Hedge, hedge_id)
            hedge.clear_account(slot)
            session.add(hedge)
            session.commit()

        logger.info(f"[hedge_{hedge_id}] Released sub-account {account} (withdrew ${withdrawn:.2f})")
        return withdrawn
