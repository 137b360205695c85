"""Position sync — refresh LP positions from the pool index and snapshot P&L.

Per active position:
1. Re-read the position and its pool from the subgraph
2. Recompute token amounts from liquidity and the current tick
3. Capture the entry value on the first successful sync
4. Read uncollected fees on-chain and hedge P&L from the exchange
5. Append a PnlSnapshot

A position the index no longer knows is deactivated, not retried.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func
from sqlmodel import Session, select

from lp_hedger.database import engine
from lp_hedger.engine.rebalance_execution import active_hedge_for, hedge_accounts
from lp_hedger.engine.retry import run_with_retry
from lp_hedger.models.pnl_snapshot import PnlSnapshot
from lp_hedger.models.position import Position
from lp_hedger.models.realized_pnl import RealizedPnl
from lp_hedger.models.short_rebalance import ShortRebalance
from lp_hedger.models.wallet import Wallet
from lp_hedger.services.fee_reader import FeeReader
from lp_hedger.services.hyperliquid_client import ExchangeError, client_for_user
from lp_hedger.services.liquidity_math import amounts_from_position_data
from lp_hedger.services.subgraph import PositionFetcher, PositionNotFound
from lp_hedger.utils.constants import REBALANCE_SUCCESS

logger = logging.getLogger(__name__)


def realized_hedge_pnl(session: Session, position_id: int, hedge_id: int | None) -> Decimal:
    """Sum of P&L realized by per-asset rebalances and per-position events."""
    total = session.exec(
        select(func.coalesce(func.sum(RealizedPnl.realized_pnl), 0))
        .where(RealizedPnl.position_id == position_id)
    ).one()
    if hedge_id is not None:
        total += session.exec(
            select(func.coalesce(func.sum(ShortRebalance.realized_pnl), 0))
            .where(ShortRebalance.hedge_id == hedge_id)
            .where(ShortRebalance.status == REBALANCE_SUCCESS)
        ).one()
    return Decimal(str(total))


async def unrealized_hedge_pnl(client, hedge, position: Position) -> Decimal:
    if client is None or hedge is None:
        return Decimal("0")
    total = Decimal("0")
    try:
        for asset, account in hedge_accounts(hedge, position).items():
            held = await client.get_position(asset, account)
            if held is not None:
                total += held.unrealized_pnl
    except ExchangeError as e:
        logger.warning(f"[position_{position.id}] Hedge P&L read failed, using zero: {e}")
        return Decimal("0")
    return total


async def sync_position(
    position_id: int,
    fetcher: PositionFetcher | None = None,
    fee_reader: FeeReader | None = None,
    client_factory=client_for_user,
) -> PnlSnapshot | None:
    """Refresh one position and append a PnlSnapshot. Returns None if deactivated."""
    with Session(engine) as session:
        position = session.get(Position, position_id)
        if not position or not position.active:
            return None
        wallet = session.get(Wallet, position.wallet_id) if position.wallet_id else None
        hedge = active_hedge_for(session, position_id)

    fetcher = fetcher or PositionFetcher(position.network)
    try:
        data = await fetcher.fetch(position.external_id)
    except PositionNotFound:
        logger.warning(f"[position_{position_id}] Not found in index, deactivating")
        _deactivate(position_id)
        return None

    amount0, amount1 = amounts_from_position_data(data)
    pool = await fetcher.fetch_pool(data["pool_address"]) if data.get("pool_address") else None
    price0 = pool["token0"]["price_usd"] if pool else position.asset0_price_usd
    price1 = pool["token1"]["price_usd"] if pool else position.asset1_price_usd

    owner = data.get("owner") or (wallet.address if wallet else None)
    fee_reader = fee_reader or FeeReader(position.network)
    fees0, fees1 = await fee_reader.fetch_uncollected_fees(
        position.external_id, data["token0_decimals"], data["token1_decimals"], owner=owner
    )

    client = client_factory(position.user_id) if hedge else None
    try:
        unrealized = await unrealized_hedge_pnl(client, hedge, position)
    finally:
        if client is not None:
            await client.close()

    with Session(engine) as session:
        position = session.get(Position, position_id)
        position.asset0_amount = amount0
        position.asset1_amount = amount1
        position.asset0_price_usd = price0
        position.asset1_price_usd = price1
        position.asset0_decimals = data["token0_decimals"]
        position.asset1_decimals = data["token1_decimals"]
        position.liquidity = str(data["liquidity"])
        position.tick_lower = data["tick_lower"]
        position.tick_upper = data["tick_upper"]
        position.current_tick = data["current_tick"]
        position.pool_address = data.get("pool_address")
        position.last_synced_at = datetime.now(timezone.utc)

        current_value = position.total_value_usd()
        if position.entry_value_usd is None:
            position.entry_value_usd = current_value
            logger.info(f"[position_{position_id}] Entry value captured: ${current_value:.2f}")

        snapshot = PnlSnapshot(
            position_id=position_id,
            asset0_amount=amount0,
            asset1_amount=amount1,
            asset0_price_usd=price0,
            asset1_price_usd=price1,
            hedge_unrealized_pnl=unrealized,
            hedge_realized_pnl=realized_hedge_pnl(session, position_id, hedge.id if hedge else None),
            pool_unrealized_pnl=current_value - position.entry_value_usd,
            collected_fees0=data.get("collected_fees0"),
            collected_fees1=data.get("collected_fees1"),
            uncollected_fees0=fees0,
            uncollected_fees1=fees1,
        )
        summary = (
            f"{position.asset0}={amount0:.6f} {position.asset1}={amount1:.6f}, "
            f"value ${current_value:.2f}"
        )
        session.add(position)
        session.add(snapshot)
        session.commit()
        session.refresh(snapshot)

    logger.info(f"[position_{position_id}] Synced {summary}")
    return snapshot


def _deactivate(position_id: int):
    with Session(engine) as session:
        position = session.get(Position, position_id)
        if position:
            position.active = False
            session.add(position)
            session.commit()


async def run_position_sync() -> dict:
    """Scheduler entry point: sync every active position independently."""
    with Session(engine) as session:
        position_ids = session.exec(select(Position.id).where(Position.active == True)).all()

    result = {"synced": 0, "deactivated": 0, "errors": []}
    for position_id in position_ids:
        try:
            snapshot = await run_with_retry(f"position_{position_id}", sync_position, position_id)
        except Exception as e:
            logger.error(f"[position_{position_id}] Sync failed: {e}", exc_info=True)
            result["errors"].append(f"position {position_id}: {e}")
            continue
        if snapshot is None:
            result["deactivated"] += 1
        else:
            result["synced"] += 1

    logger.info(
        f"Position sync: {result['synced']} synced, {result['deactivated']} deactivated, "
        f"{len(result['errors'])} errors"
    )
    return result
