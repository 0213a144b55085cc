from fastapi import Request

from shieldtrade.engine import TradingEngine


def get_engine(request: Request) -> TradingEngine:
    """The engine built at startup and kept on app.state"""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise RuntimeError("Trading engine not initialized")
    return engine
