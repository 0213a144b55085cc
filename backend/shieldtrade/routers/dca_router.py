"""
DCA order API routes

Handles DCA order endpoints:
- Create, list and inspect orders
- Pause, resume and cancel
- Pending buys waiting for the owner's signature (list, confirm, cancel)
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from shieldtrade.engine import TradingEngine
from shieldtrade.exceptions import NotFoundError
from shieldtrade.models import DCAOrder
from shieldtrade.routers.dependencies import get_engine
from shieldtrade.schemas import (
    ConfirmBuyRequest,
    DCAOrderCreate,
    DCAOrderResponse,
    PendingBuyResponse,
)
from shieldtrade.trading_engine.dca_order_manager import order_summary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/dca", tags=["dca"])


def _order_response(order: DCAOrder) -> DCAOrderResponse:
    return DCAOrderResponse.model_validate(order).model_copy(update=order_summary(order))


@router.post("/orders", response_model=DCAOrderResponse, status_code=201)
async def create_order(body: DCAOrderCreate, engine: TradingEngine = Depends(get_engine)):
    order = await engine.ctx.orders.create_order(
        owner=body.owner,
        asset=body.asset,
        total_amount=body.total_amount,
        number_of_buys=body.number_of_buys,
        interval_minutes=body.interval_minutes,
        exit_strategy=body.exit_strategy,
        strategy_type=body.strategy_type,
        slippage_bps=body.slippage_bps,
        asset_symbol=body.asset_symbol,
        reference_price=body.reference_price,
        is_private=body.is_private,
    )
    return _order_response(order)


@router.get("/orders", response_model=List[DCAOrderResponse])
async def list_orders(owner: str, engine: TradingEngine = Depends(get_engine)):
    orders = await engine.ctx.orders.list_by_owner(owner)
    return [_order_response(o) for o in orders]


@router.get("/statistics")
async def get_statistics(engine: TradingEngine = Depends(get_engine)):
    return await engine.ctx.orders.get_statistics()


@router.get("/orders/{order_id}", response_model=DCAOrderResponse)
async def get_order(order_id: str, engine: TradingEngine = Depends(get_engine)):
    order = await engine.ctx.orders.get_order(order_id)
    if order is None:
        raise NotFoundError(f"DCA order {order_id} not found")
    return _order_response(order)


@router.post("/orders/{order_id}/pause", response_model=DCAOrderResponse)
async def pause_order(order_id: str, engine: TradingEngine = Depends(get_engine)):
    return _order_response(await engine.ctx.orders.pause_order(order_id))


@router.post("/orders/{order_id}/resume", response_model=DCAOrderResponse)
async def resume_order(order_id: str, engine: TradingEngine = Depends(get_engine)):
    return _order_response(await engine.ctx.orders.resume_order(order_id))


@router.post("/orders/{order_id}/cancel", response_model=DCAOrderResponse)
async def cancel_order(order_id: str, engine: TradingEngine = Depends(get_engine)):
    return _order_response(await engine.buy_executor.cancel_order(order_id))


@router.get("/pending-buys", response_model=List[PendingBuyResponse])
async def list_pending_buys(owner: str, engine: TradingEngine = Depends(get_engine)):
    return [p.to_dict() for p in engine.ctx.pending_buys.list_by_owner(owner)]


@router.post("/pending-buys/{order_id}/{buy_number}/confirm")
async def confirm_pending_buy(
    order_id: str,
    buy_number: int,
    body: ConfirmBuyRequest,
    engine: TradingEngine = Depends(get_engine),
):
    """Record a staged buy the owner signed and submitted themselves"""
    ok = await engine.buy_executor.execute_buy(
        order_id,
        buy_number,
        signature=body.signature,
        actual_tokens=body.token_amount,
        actual_sol=body.sol_amount,
        actual_price=body.price,
        execution_identity=body.execution_identity,
    )
    if not ok:
        raise HTTPException(status_code=409, detail=f"Buy #{buy_number} of order {order_id} could not be confirmed")
    return {"message": f"Buy #{buy_number} of order {order_id} recorded", "signature": body.signature}


@router.delete("/pending-buys/{order_id}/{buy_number}")
async def cancel_pending_buy(order_id: str, buy_number: int, engine: TradingEngine = Depends(get_engine)):
    if not engine.buy_executor.cancel_pending_buy(order_id, buy_number):
        raise HTTPException(status_code=404, detail="Pending buy not found")
    return {"message": f"Pending buy #{buy_number} of order {order_id} cancelled"}
