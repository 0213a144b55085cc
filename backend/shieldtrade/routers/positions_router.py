"""
Position and pending-sell API routes

Positions are read-only here; they change only through executed buys and sells.
Pending sells are exits staged for owners without a custodial wallet: the
owner signs the payload, submits it, then confirms the signature here.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from shieldtrade.engine import TradingEngine
from shieldtrade.routers.dependencies import get_engine
from shieldtrade.schemas import ExecuteSellRequest, PendingSellResponse, PositionResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["positions"])


@router.get("/api/positions", response_model=List[PositionResponse])
async def list_positions(owner: str, include_closed: bool = False, engine: TradingEngine = Depends(get_engine)):
    return await engine.ctx.positions.list_by_owner(owner, include_closed=include_closed)


@router.get("/api/positions/statistics")
async def get_position_statistics(engine: TradingEngine = Depends(get_engine)):
    return await engine.ctx.positions.get_statistics()


@router.get("/api/pending-sells", response_model=List[PendingSellResponse])
async def list_pending_sells(owner: str, engine: TradingEngine = Depends(get_engine)):
    engine.ctx.pending_sells.expire_stale()
    return [p.to_dict() for p in engine.ctx.pending_sells.list_by_owner(owner)]


@router.post("/api/pending-sells/{sell_id}/execute", response_model=PendingSellResponse)
async def execute_pending_sell(sell_id: str, body: ExecuteSellRequest, engine: TradingEngine = Depends(get_engine)):
    pending = await engine.exit_executor.execute_pending_sell(sell_id, body.signature)
    return pending.to_dict()


@router.delete("/api/pending-sells/{sell_id}")
async def cancel_pending_sell(sell_id: str, engine: TradingEngine = Depends(get_engine)):
    if not engine.exit_executor.cancel_pending_sell(sell_id):
        raise HTTPException(status_code=404, detail="Pending sell not found")
    return {"message": f"Pending sell {sell_id} cancelled"}
