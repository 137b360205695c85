"""Threshold monitor: alerts on drifted hedges and auto-rebalances opted-in ones."""

import logging

from sqlmodel import Session, select

from lp_hedger.database import engine
from lp_hedger.engine.rebalance_execution import RebalanceExecution, current_hedge_sizes
from lp_hedger.models.hedge import Hedge
from lp_hedger.models.position import Position
from lp_hedger.models.user import User
from lp_hedger.services.drift_analyzer import analyze_hedge
from lp_hedger.services.hyperliquid_client import client_for_user
from lp_hedger.services.telegram_bot import notify
from lp_hedger.utils.constants import TRIGGER_THRESHOLD

logger = logging.getLogger(__name__)


async def analyze_position(position_id: int, client_factory=client_for_user) -> dict:
    """Drift analysis for one position against its live exchange sizes."""
    with Session(engine) as session:
        position = session.get(Position, position_id)
        if position is None:
            raise ValueError(f"Position {position_id} not found")
        hedge = session.exec(
            select(Hedge).where(Hedge.position_id == position_id).where(Hedge.active == True)
        ).first()

    current = {}
    if hedge is not None:
        client = client_factory(position.user_id)
        if client is not None:
            try:
                current, _ = await current_hedge_sizes(client, hedge, position)
            finally:
                await client.close()

    result = analyze_hedge(hedge, position, current)
    return {
        "position_id": position_id,
        "hedge_id": hedge.id if hedge else None,
        "needs_rebalance": result.needs_rebalance,
        "drift": float(result.drift),
        "reason": result.reason,
        "adjustments": [adj.to_dict() for adj in result.adjustments],
    }


async def run_hedge_analysis(
    client_factory=client_for_user,
    executor: RebalanceExecution | None = None,
    notifier=notify,
) -> list[dict]:
    """Scheduler entry point. Per-hedge failures are logged and do not stop the scan."""
    with Session(engine) as session:
        rows = session.exec(
            select(Hedge, Position, User)
            .join(Position, Hedge.position_id == Position.id)
            .join(User, Position.user_id == User.id)
            .where(Hedge.active == True)
            .where(Position.active == True)
        ).all()

    executor = executor or RebalanceExecution(client_factory=client_factory)
    results = []
    for hedge, position, user in rows:
        try:
            analysis = await analyze_position(position.id, client_factory)
        except Exception as e:
            logger.error(f"[hedge_{hedge.id}] Analysis failed: {e}")
            continue
        results.append(analysis)
        if not analysis["needs_rebalance"]:
            continue

        notifier(f"Hedge {hedge.id} ({position.asset0}/{position.asset1}) needs rebalance: {analysis['reason']}")
        if hedge.auto_rebalance and user.auto_rebalance_enabled:
            logger.info(f"[hedge_{hedge.id}] Auto-rebalancing: {analysis['reason']}")
            try:
                await executor.run(position.id, trigger_type=TRIGGER_THRESHOLD)
            except Exception as e:
                logger.error(f"[hedge_{hedge.id}] Auto-rebalance failed: {e}")
    return results
