"""LP positions API: listing, drift analysis, manual rebalance, P&L history."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from lp_hedger.database import get_session
from lp_hedger.models.pnl_snapshot import PnlSnapshot
from lp_hedger.models.position import Position
from lp_hedger.models.rebalance_event import RebalanceEvent
from lp_hedger.api.deps import require_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/positions", tags=["positions"], dependencies=[Depends(require_token)])


def _get_position(session: Session, position_id: int) -> Position:
    position = session.get(Position, position_id)
    if not position:
        raise HTTPException(status_code=404, detail="Position not found")
    return position


@router.get("")
def list_positions(
    user_id: int | None = None,
    active: bool | None = None,
    session: Session = Depends(get_session),
):
    stmt = select(Position)
    if user_id is not None:
        stmt = stmt.where(Position.user_id == user_id)
    if active is not None:
        stmt = stmt.where(Position.active == active)
    return session.exec(stmt).all()


@router.get("/{position_id}/analysis")
async def position_analysis(position_id: int, session: Session = Depends(get_session)):
    """Current drift against live exchange sizes."""
    _get_position(session, position_id)

    from lp_hedger.engine.hedge_analysis import analyze_position
    return await analyze_position(position_id)


@router.post("/{position_id}/rebalance")
async def rebalance_position(position_id: int, session: Session = Depends(get_session)):
    """Manually rebalance every asset of a position as one audited event."""
    _get_position(session, position_id)

    from lp_hedger.engine.rebalance_execution import RebalanceExecution
    try:
        event = await RebalanceExecution().run(position_id)
    except Exception as e:
        logger.error(f"[position_{position_id}] Manual rebalance failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    if event is None:
        raise HTTPException(status_code=409, detail="Position has no active hedge or credential, or a rebalance is in progress")
    return event


@router.get("/{position_id}/snapshots")
def position_snapshots(
    position_id: int,
    limit: int = 200,
    session: Session = Depends(get_session),
):
    _get_position(session, position_id)
    stmt = (
        select(PnlSnapshot)
        .where(PnlSnapshot.position_id == position_id)
        .order_by(PnlSnapshot.captured_at.desc())
        .limit(limit)
    )
    return [
        {
            **snap.model_dump(),
            "pool_value_usd": snap.pool_value_usd(),
            "fees_usd": snap.fees_usd(),
            "net_pnl_usd": snap.net_pnl_usd(),
        }
        for snap in session.exec(stmt).all()
    ]


@router.get("/{position_id}/events")
def position_events(
    position_id: int,
    limit: int = 50,
    session: Session = Depends(get_session),
):
    _get_position(session, position_id)
    stmt = (
        select(RebalanceEvent)
        .where(RebalanceEvent.position_id == position_id)
        .order_by(RebalanceEvent.created_at.desc())
        .limit(limit)
    )
    return session.exec(stmt).all()
