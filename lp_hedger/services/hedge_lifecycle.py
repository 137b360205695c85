"""Hedge lifecycle: create, destroy, and emergency stop across all hedges."""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlmodel import Session, select

from lp_hedger.database import engine
from lp_hedger.engine.account_allocator import AccountAllocator
from lp_hedger.engine.hedge_sync import get_hedge_lock, realized_pnl_or_zero, record_rebalance
from lp_hedger.engine.rebalance_execution import active_hedge_for, hedge_accounts
from lp_hedger.models.hedge import Hedge
from lp_hedger.models.position import Position
from lp_hedger.models.rebalance_event import RebalanceEvent
from lp_hedger.models.short_rebalance import ShortRebalance
from lp_hedger.models.user import User
from lp_hedger.services.hyperliquid_client import client_for_user

logger = logging.getLogger(__name__)


def create_hedge(
    position_id: int,
    target: Decimal = Decimal("1"),
    tolerance: Decimal = Decimal("0.05"),
    token_mappings: dict | None = None,
    auto_rebalance: bool = True,
) -> Hedge:
    """Attach a hedge to a position. A position has at most one active hedge."""
    with Session(engine) as session:
        position = session.get(Position, position_id)
        if position is None:
            raise ValueError(f"Position {position_id} not found")
        if active_hedge_for(session, position_id) is not None:
            raise ValueError(f"Position {position_id} already has an active hedge")

        hedge = Hedge(
            position_id=position_id,
            target=target,
            tolerance=tolerance,
            token_mappings=token_mappings or {},
            auto_rebalance=auto_rebalance,
        )
        session.add(hedge)
        session.commit()
        session.refresh(hedge)

    logger.info(f"[hedge_{hedge.id}] Created for position {position_id} (target {target}, tolerance {tolerance})")
    return hedge


async def close_hedge_shorts(hedge: Hedge, position: Position, client, reason: str) -> int:
    """Close every open short the hedge holds and release its sub-accounts.

    Each close is recorded as a ShortRebalance. Returns the number closed.
    """
    label = f"hedge_{hedge.id}"
    closed = 0
    for asset, account in hedge_accounts(hedge, position).items():
        held = await client.get_position(asset, account)
        if held is None or held.size >= 0:
            continue
        before_close = datetime.now(timezone.utc)
        await client.close_short(asset, account)
        realized = await realized_pnl_or_zero(client, asset, before_close, account, label)
        pool_symbol = next(
            (position.asset_for(s) for s in (0, 1) if hedge.exchange_asset_for(position.asset_for(s)) == asset),
            asset,
        )
        record_rebalance(hedge.id, pool_symbol, asset, account, abs(held.size), Decimal("0"), realized, message=reason)
        logger.info(f"[{label}] Closed {abs(held.size)} {asset} short on {account or 'main'} ({reason})")
        closed += 1

    allocator = AccountAllocator(client, position.user_id)
    for slot in (0, 1):
        if hedge.account_assigned(slot) and hedge.hl_account_for(slot) is not None:
            await allocator.release_account(hedge.id, slot)
    return closed


def _load(hedge_id: int) -> tuple[Hedge, Position, User]:
    with Session(engine) as session:
        hedge = session.get(Hedge, hedge_id)
        if hedge is None:
            raise ValueError(f"Hedge {hedge_id} not found")
        position = session.get(Position, hedge.position_id)
        user = session.get(User, position.user_id)
    return hedge, position, user


async def update_hedge(hedge_id: int, changes: dict, client_factory=client_for_user) -> Hedge:
    """Apply field changes to a hedge.

    Deactivating an active hedge or changing its token mappings closes its
    shorts and frees its account slots first. A reactivated hedge starts with
    unresolved slots and gets its accounts from the allocator again.
    """
    lock = await get_hedge_lock(hedge_id)
    if lock.locked():
        raise ValueError(f"Hedge {hedge_id} is rebalancing, try again shortly")

    async with lock:
        hedge, position, user = _load(hedge_id)
        if "token_mappings" in changes:
            changes["token_mappings"] = changes["token_mappings"] or {}

        reactivating = changes.get("active") is True and not hedge.active
        deactivating = changes.get("active") is False and hedge.active
        remapping = "token_mappings" in changes and changes["token_mappings"] != (hedge.token_mappings or {})

        if reactivating:
            with Session(engine) as session:
                if active_hedge_for(session, hedge.position_id) is not None:
                    raise ValueError(f"Position {hedge.position_id} already has an active hedge")

        # Slots of an inactive hedge may be stale; only an active hedge owns its shorts
        has_slots = any(hedge.account_assigned(slot) for slot in (0, 1))
        if (deactivating or (remapping and hedge.active)) and has_slots and not user.paper_trading:
            client = client_factory(user.id)
            if client is None:
                raise ValueError(f"No active credential for user {user.id}; cannot close shorts")
            try:
                reason = "hedge deactivated" if deactivating else "token mappings changed"
                await close_hedge_shorts(hedge, position, client, reason)
            finally:
                await client.close()

        with Session(engine) as session:
            hedge = session.get(Hedge, hedge_id)
            if reactivating or deactivating or remapping:
                for slot in (0, 1):
                    hedge.clear_account(slot)
            for key, value in changes.items():
                setattr(hedge, key, value)
            hedge.updated_at = datetime.now(timezone.utc)
            session.add(hedge)
            session.commit()
            session.refresh(hedge)

    logger.info(f"[hedge_{hedge_id}] Updated: {', '.join(sorted(changes))}")
    return hedge


async def destroy_hedge(hedge_id: int, client_factory=client_for_user) -> int:
    """Close the hedge's shorts, then delete it with its rebalance history.

    Returns the number of shorts closed.
    """
    lock = await get_hedge_lock(hedge_id)
    if lock.locked():
        raise ValueError(f"Hedge {hedge_id} is rebalancing, try again shortly")

    async with lock:
        hedge, position, user = _load(hedge_id)

        closed = 0
        # An inactive hedge already gave up its shorts and accounts
        if hedge.active and not user.paper_trading:
            client = client_factory(user.id)
            if client is None:
                raise ValueError(f"No active credential for user {user.id}; cannot close shorts")
            try:
                closed = await close_hedge_shorts(hedge, position, client, "hedge destroyed")
            finally:
                await client.close()

        with Session(engine) as session:
            for row in session.exec(select(ShortRebalance).where(ShortRebalance.hedge_id == hedge_id)).all():
                session.delete(row)
            # Events stay with the position for reporting
            for event in session.exec(select(RebalanceEvent).where(RebalanceEvent.hedge_id == hedge_id)).all():
                event.hedge_id = None
                session.add(event)
            session.delete(session.get(Hedge, hedge_id))
            session.commit()

    logger.info(f"[hedge_{hedge_id}] Destroyed ({closed} shorts closed)")
    return closed


async def run_emergency_stop(
    close_shorts: bool = True,
    deactivate_hedges: bool = True,
    client_factory=client_for_user,
) -> dict:
    """Execute emergency stop across all active hedges.

    Returns dict with shorts_closed, errors, hedges_deactivated counts.
    """
    result = {"shorts_closed": 0, "errors": [], "hedges_deactivated": 0}

    with Session(engine) as session:
        hedge_ids = session.exec(select(Hedge.id).where(Hedge.active == True)).all()

    if close_shorts:
        clients = {}
        try:
            for hedge_id in hedge_ids:
                hedge, position, user = _load(hedge_id)
                if user.paper_trading:
                    continue
                if user.id not in clients:
                    clients[user.id] = client_factory(user.id)
                client = clients[user.id]
                if client is None:
                    result["errors"].append(f"Hedge {hedge_id}: no active credential for user {user.id}")
                    continue
                try:
                    result["shorts_closed"] += await close_hedge_shorts(hedge, position, client, "emergency stop")
                except Exception as e:
                    error_msg = f"Failed to close shorts for hedge {hedge_id}: {e}"
                    logger.error(error_msg)
                    result["errors"].append(error_msg)
        finally:
            for client in clients.values():
                if client is not None:
                    await client.close()

    if deactivate_hedges:
        with Session(engine) as session:
            for hedge_id in hedge_ids:
                hedge = session.get(Hedge, hedge_id)
                hedge.active = False
                hedge.updated_at = datetime.now(timezone.utc)
                session.add(hedge)
                result["hedges_deactivated"] += 1
            session.commit()

    logger.warning(
        f"[emergency_stop] Closed {result['shorts_closed']} shorts, "
        f"deactivated {result['hedges_deactivated']} hedges, {len(result['errors'])} errors"
    )
    return result
