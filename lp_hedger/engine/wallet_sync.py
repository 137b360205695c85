"""Wallet sync — discover LP positions owned by tracked wallets.

Positions are upserted by NFT token id. A previously tracked position that
no longer appears for its wallet is deactivated.
"""

import logging
from datetime import datetime, timezone

from sqlmodel import Session, select

from lp_hedger.database import engine
from lp_hedger.engine.retry import run_with_retry
from lp_hedger.models.position import Position
from lp_hedger.models.wallet import Wallet
from lp_hedger.services.liquidity_math import amounts_from_position_data
from lp_hedger.services.subgraph import PositionFetcher

logger = logging.getLogger(__name__)


async def sync_wallet(wallet_id: int, fetcher: PositionFetcher | None = None) -> dict:
    """Upsert the wallet's positions. Returns created/updated/deactivated counts."""
    with Session(engine) as session:
        wallet = session.get(Wallet, wallet_id)
        if not wallet:
            raise ValueError(f"Wallet {wallet_id} not found")
        address, network, user_id = wallet.address, wallet.network, wallet.user_id

    fetcher = fetcher or PositionFetcher(network)
    found = await fetcher.fetch_by_owner(address)
    counts = {"created": 0, "updated": 0, "deactivated": 0}

    with Session(engine) as session:
        existing = {
            p.external_id: p
            for p in session.exec(select(Position).where(Position.wallet_id == wallet_id)).all()
        }
        seen = set()

        for data in found:
            seen.add(data["id"])
            amount0, amount1 = amounts_from_position_data(data)
            position = existing.get(data["id"])
            if position is None:
                position = Position(
                    user_id=user_id,
                    wallet_id=wallet_id,
                    external_id=data["id"],
                    network=network,
                    asset0=data["token0_symbol"],
                    asset1=data["token1_symbol"],
                )
                counts["created"] += 1
                logger.info(
                    f"[wallet_{wallet_id}] New position {data['id']} "
                    f"{data['token0_symbol']}/{data['token1_symbol']}"
                )
            else:
                counts["updated"] += 1

            position.pool_address = data["pool_address"]
            position.asset0_decimals = data["token0_decimals"]
            position.asset1_decimals = data["token1_decimals"]
            position.asset0_amount = amount0
            position.asset1_amount = amount1
            position.liquidity = str(data["liquidity"])
            position.tick_lower = data["tick_lower"]
            position.tick_upper = data["tick_upper"]
            position.current_tick = data["current_tick"]
            position.active = True
            session.add(position)

        for external_id, position in existing.items():
            if external_id not in seen and position.active:
                position.active = False
                session.add(position)
                counts["deactivated"] += 1
                logger.info(f"[wallet_{wallet_id}] Position {external_id} gone from index, deactivated")

        wallet = session.get(Wallet, wallet_id)
        wallet.last_synced_at = datetime.now(timezone.utc)
        session.add(wallet)
        session.commit()

    return counts


async def run_wallet_sync() -> dict:
    """Scheduler entry point: sync every wallet; one failure does not stop the rest."""
    with Session(engine) as session:
        wallet_ids = session.exec(select(Wallet.id)).all()

    totals = {"wallets": 0, "created": 0, "updated": 0, "deactivated": 0, "errors": []}
    for wallet_id in wallet_ids:
        try:
            counts = await run_with_retry(f"wallet_{wallet_id}", sync_wallet, wallet_id)
        except Exception as e:
            logger.error(f"[wallet_{wallet_id}] Sync failed: {e}", exc_info=True)
            totals["errors"].append(f"wallet {wallet_id}: {e}")
            continue
        totals["wallets"] += 1
        for key, value in counts.items():
            totals[key] += value

    logger.info(
        f"Wallet sync: {totals['wallets']} wallets, {totals['created']} new, "
        f"{totals['deactivated']} deactivated"
    )
    return totals
