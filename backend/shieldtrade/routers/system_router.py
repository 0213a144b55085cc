"""
System and general API routes

Handles system-level endpoints:
- Root/health check
- Engine status (loops, counts, in-flight transactions)
- Exit strategy catalogue
"""

import logging

from fastapi import APIRouter, Depends

from shieldtrade.engine import TradingEngine
from shieldtrade.routers.dependencies import get_engine
from shieldtrade.strategies import EXIT_STRATEGIES, describe_strategy

logger = logging.getLogger(__name__)

router = APIRouter(tags=["system"])


@router.get("/")
async def root():
    return {"message": "ShieldTrade DCA API", "status": "running"}


@router.get("/api/system/status")
async def get_status(engine: TradingEngine = Depends(get_engine)):
    return await engine.get_status()


@router.get("/api/exit-strategies")
async def list_exit_strategies():
    return {name: describe_strategy(name) for name in EXIT_STRATEGIES}
