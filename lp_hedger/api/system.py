"""System API — health check, scheduler status, rebalance triggers, circuit breaker, emergency stop."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session

from lp_hedger.database import get_session
from lp_hedger.models.hedge import Hedge
from lp_hedger.models.user import User
from lp_hedger.api.deps import require_token

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/scheduler", dependencies=[Depends(require_token)])
def scheduler_status():
    """Current scheduler state with job details."""
    from lp_hedger.engine.scheduler import get_scheduler_status
    return get_scheduler_status()


@router.post("/rebalance", dependencies=[Depends(require_token)])
async def rebalance_all():
    """Run one hedge sync cycle across all active hedges."""
    from lp_hedger.engine.hedge_sync import run_hedge_sync
    results = await run_hedge_sync()
    return {"results": [r.to_dict() for r in results]}


@router.post("/rebalance/{hedge_id}", dependencies=[Depends(require_token)])
async def rebalance_hedge(hedge_id: int, session: Session = Depends(get_session)):
    """Run one hedge sync cycle for a single hedge."""
    hedge = session.get(Hedge, hedge_id)
    if not hedge:
        raise HTTPException(status_code=404, detail="Hedge not found")
    if not hedge.active:
        raise HTTPException(status_code=409, detail="Hedge is not active")

    from lp_hedger.engine.hedge_sync import run_hedge_sync
    results = await run_hedge_sync(hedge_id)
    return results[0].to_dict()


@router.get("/circuit/{user_id}", dependencies=[Depends(require_token)])
async def circuit_status(user_id: int, session: Session = Depends(get_session)):
    if not session.get(User, user_id):
        raise HTTPException(status_code=404, detail="User not found")

    from lp_hedger.services.circuit_breaker import CircuitBreaker
    return await CircuitBreaker.for_user(user_id).status()


@router.post("/circuit/{user_id}/reset", dependencies=[Depends(require_token)])
async def circuit_reset(user_id: int, session: Session = Depends(get_session)):
    """Operator reset: close the user's circuit immediately."""
    if not session.get(User, user_id):
        raise HTTPException(status_code=404, detail="User not found")

    from lp_hedger.services.circuit_breaker import CircuitBreaker
    breaker = CircuitBreaker.for_user(user_id)
    await breaker.reset()
    return await breaker.status()


class EmergencyStopRequest(BaseModel):
    close_shorts: bool = True
    deactivate_hedges: bool = True


@router.post("/emergency-stop", dependencies=[Depends(require_token)])
async def emergency_stop(body: EmergencyStopRequest):
    """Emergency stop: close all hedge shorts and/or deactivate all hedges."""
    from lp_hedger.services.hedge_lifecycle import run_emergency_stop

    result = await run_emergency_stop(
        close_shorts=body.close_shorts,
        deactivate_hedges=body.deactivate_hedges,
    )
    return result
