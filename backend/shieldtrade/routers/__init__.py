"""
API Routers

FastAPI routers for the trading engine. Each reads the engine from app.state.
"""
