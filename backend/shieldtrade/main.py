import logging

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shieldtrade.config import settings
from shieldtrade.database import async_session_maker, init_db
from shieldtrade.engine import TradingEngine
from shieldtrade.exceptions import AppError
from shieldtrade.routers import dca_router, positions_router, system_router

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="ShieldTrade DCA Engine")

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(system_router.router)
app.include_router(dca_router.router)
app.include_router(positions_router.router)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Startup/Shutdown events
@app.on_event("startup")
async def startup_event():
    logger.info("🚀 Initializing database...")
    await init_db()

    engine = TradingEngine(settings, async_session_maker)
    app.state.engine = engine
    await engine.start()
    logger.info("🚀 Startup complete!")


@app.on_event("shutdown")
async def shutdown_event():
    engine = getattr(app.state, "engine", None)
    if engine is None:
        return

    logger.info("🛑 Shutting down - waiting for in-flight transactions...")
    result = await engine.stop()
    if result["ready"]:
        logger.info(f"✅ {result['message']}")
    else:
        logger.warning(f"⚠️ {result['message']}")


# WebSocket for real-time updates (buys, exits, pending actions)
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    ws_manager = app.state.engine.ctx.notifier.ws_manager
    await ws_manager.connect(websocket)
    try:
        while True:
            # Keep connection alive; clients only listen
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
