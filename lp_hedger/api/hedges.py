"""CRUD API for hedges."""

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from lp_hedger.database import get_session
from lp_hedger.models.hedge import Hedge
from lp_hedger.models.short_rebalance import ShortRebalance
from lp_hedger.schemas.hedge import HedgeCreate, HedgeUpdate, HedgeRead, ShortRebalanceRead
from lp_hedger.api.deps import require_token

router = APIRouter(prefix="/api/hedges", tags=["hedges"], dependencies=[Depends(require_token)])


@router.get("", response_model=list[HedgeRead])
def list_hedges(
    active: bool | None = None,
    session: Session = Depends(get_session),
):
    stmt = select(Hedge)
    if active is not None:
        stmt = stmt.where(Hedge.active == active)
    return session.exec(stmt).all()


@router.post("", response_model=HedgeRead, status_code=201)
def create_hedge(data: HedgeCreate):
    from lp_hedger.services.hedge_lifecycle import create_hedge as _create_hedge

    try:
        return _create_hedge(**data.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=404 if "not found" in str(e) else 409, detail=str(e))


@router.get("/{hedge_id}", response_model=HedgeRead)
def get_hedge(hedge_id: int, session: Session = Depends(get_session)):
    hedge = session.get(Hedge, hedge_id)
    if not hedge:
        raise HTTPException(status_code=404, detail="Hedge not found")
    return hedge


@router.patch("/{hedge_id}", response_model=HedgeRead)
async def update_hedge(hedge_id: int, data: HedgeUpdate):
    """Update a hedge. Deactivating or remapping closes its shorts first."""
    from lp_hedger.services.hedge_lifecycle import update_hedge as _update_hedge

    try:
        return await _update_hedge(hedge_id, data.model_dump(exclude_unset=True))
    except ValueError as e:
        raise HTTPException(status_code=404 if "not found" in str(e) else 409, detail=str(e))


@router.delete("/{hedge_id}")
async def delete_hedge(hedge_id: int):
    """Close the hedge's exchange shorts, then delete it."""
    from lp_hedger.services.hedge_lifecycle import destroy_hedge

    try:
        closed = await destroy_hedge(hedge_id)
    except ValueError as e:
        raise HTTPException(status_code=404 if "not found" in str(e) else 409, detail=str(e))
    return {"status": "deleted", "shorts_closed": closed}


@router.get("/{hedge_id}/rebalances", response_model=list[ShortRebalanceRead])
def list_rebalances(
    hedge_id: int,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    if not session.get(Hedge, hedge_id):
        raise HTTPException(status_code=404, detail="Hedge not found")
    stmt = (
        select(ShortRebalance)
        .where(ShortRebalance.hedge_id == hedge_id)
        .order_by(ShortRebalance.rebalanced_at.desc())
        .offset(offset)
        .limit(limit)
    )
    return session.exec(stmt).all()
