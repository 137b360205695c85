"""Per-asset hedge sync: the job APScheduler runs on every hedge interval.

For each active hedge and each of its two pool assets:
read the current short → compare with target → close the old short →
open the new one on the slot's account → record a ShortRebalance.

Policies wrap the trade, outermost first: job-level retry for transient
errors, failure-streak suppression per (hedge, asset), the user's circuit
breaker, then the close/open itself.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlmodel import Session, select

from lp_hedger.config import settings
from lp_hedger.database import engine
from lp_hedger.engine.account_allocator import AccountAllocator
from lp_hedger.engine.outcomes import (
    Blocked,
    Closed,
    Failed,
    HedgeSyncResult,
    NoChange,
    Rebalanced,
    Skipped,
    Suppressed,
)
from lp_hedger.engine.retry import policy_for, run_with_retry
from lp_hedger.models.hedge import Hedge
from lp_hedger.models.position import Position
from lp_hedger.models.short_rebalance import ShortRebalance
from lp_hedger.models.user import User
from lp_hedger.services.circuit_breaker import CircuitBreaker, CircuitOpenError
from lp_hedger.services.hyperliquid_client import ExchangeError, client_for_user
from lp_hedger.services.telegram_bot import notify
from lp_hedger.utils.constants import REBALANCE_FAILED, REBALANCE_SUCCESS

logger = logging.getLogger(__name__)
_hedge_locks: dict[int, asyncio.Lock] = {}
_hedge_locks_guard = asyncio.Lock()

FAILURE_STREAK = 3
FAILURE_WINDOW = timedelta(hours=24)


async def get_hedge_lock(hedge_id: int) -> asyncio.Lock:
    async with _hedge_locks_guard:
        lock = _hedge_locks.get(hedge_id)
        if lock is None:
            lock = asyncio.Lock()
            _hedge_locks[hedge_id] = lock
        return lock


def active_hedge_ids() -> list[int]:
    with Session(engine) as session:
        return list(session.exec(select(Hedge.id).where(Hedge.active == True)).all())


def failure_streak(hedge_id: int, asset: str, now: datetime | None = None) -> bool:
    """True when the last FAILURE_STREAK attempts in the window all failed."""
    cutoff = (now or datetime.now(timezone.utc)) - FAILURE_WINDOW
    with Session(engine) as session:
        statuses = session.exec(
            select(ShortRebalance.status)
            .where(ShortRebalance.hedge_id == hedge_id)
            .where(ShortRebalance.asset == asset)
            .where(ShortRebalance.rebalanced_at >= cutoff)
            .order_by(ShortRebalance.rebalanced_at.desc(), ShortRebalance.id.desc())
            .limit(FAILURE_STREAK)
        ).all()
    return len(statuses) == FAILURE_STREAK and all(s == REBALANCE_FAILED for s in statuses)


def record_rebalance(
    hedge_id: int,
    asset: str,
    exchange_asset: str,
    account: str | None,
    old_size: Decimal,
    new_size: Decimal,
    realized_pnl: Decimal,
    status: str = REBALANCE_SUCCESS,
    message: str | None = None,
) -> ShortRebalance:
    with Session(engine) as session:
        row = ShortRebalance(
            hedge_id=hedge_id,
            asset=asset,
            exchange_asset=exchange_asset,
            account=account,
            old_short_size=old_size,
            new_short_size=new_size,
            realized_pnl=realized_pnl,
            status=status,
            message=message,
        )
        session.add(row)
        session.commit()
        session.refresh(row)
        return row


async def realized_pnl_or_zero(client, exchange_asset: str, since: datetime, account: str | None, label: str) -> Decimal:
    """Realized P&L from fills since ``since``; zero with a warning if fills can't be read."""
    try:
        return await client.realized_pnl_since(exchange_asset, since, account)
    except ExchangeError as e:
        logger.warning(f"[{label}] Could not read fills for {exchange_asset}, recording zero PnL: {e}")
        return Decimal("0")


class HedgeSyncer:
    """Runs hedge sync cycles. One instance per cycle; clients are cached per user."""

    def __init__(
        self,
        client_factory=client_for_user,
        breaker_store=None,
        notifier=notify,
        max_concurrency: int | None = None,
        retry=run_with_retry,
    ):
        self.client_factory = client_factory
        self.breaker_store = breaker_store
        self.notifier = notifier
        self.max_concurrency = max_concurrency or settings.max_concurrent_hedges
        self.retry = retry
        self._clients: dict[int, object] = {}

    def _client_for(self, user_id: int):
        if user_id not in self._clients:
            self._clients[user_id] = self.client_factory(user_id)
        return self._clients[user_id]

    async def sync_all(self) -> list[HedgeSyncResult]:
        hedge_ids = active_hedge_ids()
        if not hedge_ids:
            logger.debug("No active hedges to sync")
            return []

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _bounded(hedge_id: int) -> HedgeSyncResult:
            async with semaphore:
                return await self.sync_hedge(hedge_id)

        try:
            results = await asyncio.gather(*(_bounded(h) for h in hedge_ids))
        finally:
            await self.close()

        failed = sum(1 for r in results if r.error)
        logger.info(f"Hedge sync finished: {len(results)} hedges, {failed} failed")
        return list(results)

    async def sync_hedge(self, hedge_id: int) -> HedgeSyncResult:
        """Sync one hedge, skipping if a prior run for it is still in flight."""
        lock = await get_hedge_lock(hedge_id)
        if lock.locked():
            logger.warning(f"[hedge_{hedge_id}] Skipping overlapping sync")
            return HedgeSyncResult(hedge_id, skipped="Previous sync still in progress")

        async with lock:
            try:
                outcomes = await self.retry(f"hedge_{hedge_id}", self._sync_hedge_once, hedge_id)
            except Exception as e:
                logger.error(f"[hedge_{hedge_id}] Sync failed: {e}", exc_info=True)
                return HedgeSyncResult(hedge_id, error=str(e))
        return HedgeSyncResult(hedge_id, outcomes=outcomes)

    async def _sync_hedge_once(self, hedge_id: int) -> list:
        with Session(engine) as session:
            hedge = session.get(Hedge, hedge_id)
            if not hedge or not hedge.active:
                return []
            position = session.get(Position, hedge.position_id)
            user = session.get(User, position.user_id) if position else None

        if position is None or not position.active:
            logger.info(f"[hedge_{hedge_id}] Position inactive, skipping")
            return [Skipped(hedge_id, None, "Position inactive")]
        if user is None or not user.is_active:
            return [Skipped(hedge_id, None, "User inactive")]
        if user.paper_trading:
            return [Skipped(hedge_id, None, "Paper trading enabled")]

        client = self._client_for(user.id)
        if client is None:
            logger.error(f"[hedge_{hedge_id}] No active credential for user {user.id}")
            return [Skipped(hedge_id, None, "No active credential")]

        breaker = CircuitBreaker.for_user(user.id, store=self.breaker_store)
        allocator = AccountAllocator(
            client, user.id, leverage=user.hyperliquid_leverage, cross_margin=user.cross_margin
        )

        outcomes, errors = [], []
        for slot in (0, 1):
            try:
                outcome = await self._sync_asset(hedge, position, slot, client, allocator, breaker)
            except Exception as e:
                logger.error(f"[hedge_{hedge_id}] {position.asset_for(slot)} failed: {e}")
                outcome = Failed(hedge_id, position.asset_for(slot), str(e))
                errors.append(e)
            outcomes.append(outcome)

        # Let the job-level retry see transient causes
        transient = next((e for e in errors if policy_for(e) is not None), None)
        if transient is not None:
            raise transient
        return outcomes

    async def _sync_asset(self, hedge: Hedge, position: Position, slot: int, client, allocator, breaker):
        label = f"hedge_{hedge.id}"
        asset = position.asset_for(slot)
        exchange_asset = hedge.exchange_asset_for(asset)
        if exchange_asset is None:
            return Skipped(hedge.id, asset, "Not hedged")

        if failure_streak(hedge.id, asset):
            logger.warning(f"[{label}] {asset} suppressed after {FAILURE_STREAK} consecutive failures")
            return Suppressed(hedge.id, asset, f"Last {FAILURE_STREAK} attempts failed")

        account = hedge.hl_account_for(slot)
        current_short = Decimal("0")
        if hedge.account_assigned(slot):
            current = await client.get_position(exchange_asset, account)
            if current is not None and current.size < 0:
                current_short = abs(current.size)

        pool_amount = position.amount_for(slot)
        target_short = hedge.target_short(pool_amount)
        if not hedge.needs_rebalance(pool_amount, current_short):
            logger.debug(f"[{label}] {asset} within tolerance ({current_short} vs {target_short})")
            return NoChange(hedge.id, asset, current_short, target_short)

        logger.info(f"[{label}] {asset} short {current_short} -> {target_short} ({exchange_asset})")
        try:
            return await breaker.call(
                self._execute, hedge, slot, asset, exchange_asset, current_short, target_short,
                client, allocator,
            )
        except CircuitOpenError as e:
            logger.warning(f"[{label}] {asset} blocked: {e}")
            return Blocked(hedge.id, asset, str(e))

    async def _execute(
        self,
        hedge: Hedge,
        slot: int,
        asset: str,
        exchange_asset: str,
        current_short: Decimal,
        target_short: Decimal,
        client,
        allocator: AccountAllocator,
    ):
        label = f"hedge_{hedge.id}"
        account = hedge.hl_account_for(slot)
        closed = False
        realized = Decimal("0")
        try:
            if current_short > 0:
                before_close = datetime.now(timezone.utc)
                await client.close_short(exchange_asset, account)
                closed = True
                realized = await realized_pnl_or_zero(client, exchange_asset, before_close, account, label)

            if target_short > 0:
                account = await allocator.resolve_account(hedge.id, slot, exchange_asset)
                await allocator.prepare_for_open(account, exchange_asset, target_short)
                await client.open_short(exchange_asset, target_short, account)
            elif account is not None:
                await allocator.release_account(hedge.id, slot)
        except Exception as e:
            new_size = Decimal("0") if closed else current_short
            record_rebalance(
                hedge.id, asset, exchange_asset, account, current_short, new_size, realized,
                status=REBALANCE_FAILED, message=str(e),
            )
            self.notifier(f"Hedge {hedge.id} {asset} rebalance FAILED: {e}")
            raise

        record_rebalance(hedge.id, asset, exchange_asset, account, current_short, target_short, realized)
        where = account or "main"
        if target_short == 0:
            self.notifier(f"Hedge {hedge.id} {asset}: closed {current_short} {exchange_asset} short, PnL ${realized:.2f}")
            return Closed(hedge.id, asset, current_short, realized, account)

        self.notifier(
            f"Hedge {hedge.id} {asset}: short {current_short} -> {target_short} {exchange_asset} "
            f"on {where}, PnL ${realized:.2f}"
        )
        return Rebalanced(hedge.id, asset, current_short, target_short, realized, account)

    async def close(self):
        for client in self._clients.values():
            if client is not None:
                await client.close()
        self._clients = {}


async def run_hedge_sync(hedge_id: int | None = None) -> list[HedgeSyncResult]:
    """Scheduler and API entry point: sync one hedge or all active ones."""
    syncer = HedgeSyncer()
    if hedge_id is None:
        return await syncer.sync_all()
    try:
        return [await syncer.sync_hedge(hedge_id)]
    finally:
        await syncer.close()
