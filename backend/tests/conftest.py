"""
Shared test fixtures for ShieldTrade backend tests.

Provides reusable fixtures for:
- Async database sessions (in-memory SQLite)
- Test settings (no .env, no settlement delays)
- An EngineContext wired to real stores and mocked external collaborators
"""

import pytest
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.pool import StaticPool
from solders.keypair import Keypair

from shieldtrade.config import Settings
from shieldtrade.services.notifier import Notifier
from shieldtrade.services.shutdown_manager import ShutdownManager
from shieldtrade.services.trade_ledger import TradeLedger
from shieldtrade.trading_engine.dca_order_manager import DCAOrderStore
from shieldtrade.trading_engine.pending_actions import PendingBuyRegistry, PendingSellRegistry
from shieldtrade.trading_engine.position_manager import PositionStore
from shieldtrade.trading_engine.trade_context import EngineContext


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def async_engine():
    """Create an in-memory async SQLite engine for testing."""
    from shieldtrade.models import Base

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    """Session factory handed to the stores, as async_session_maker is in production."""
    return async_sessionmaker(
        async_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture
async def db_session(session_factory):
    """A session for asserting on rows the code under test wrote."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        encryption_key="",
        bot_wallet_secret="",
        wallet_password="test-password",
        shielded_relayer_url="",
        private_settlement_delay_seconds=0,
        private_reclaim_delay_seconds=0,
    )


# ---------------------------------------------------------------------------
# Engine context with mocked collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def custodial_keypair():
    return Keypair()


@pytest.fixture
def mock_prices():
    prices = MagicMock()
    prices.get_price = AsyncMock(return_value=0.001)
    return prices


@pytest.fixture
def mock_aggregator():
    aggregator = MagicMock()
    aggregator.get_quote = AsyncMock(return_value={
        "inAmount": "1000000000",
        "outAmount": "1000000000",  # 1000 tokens at 6 decimals
    })
    aggregator.build_swap = AsyncMock(return_value="dW5zaWduZWQtdHg=")
    aggregator.close = AsyncMock()
    return aggregator


@pytest.fixture
def mock_ledger():
    ledger = MagicMock()
    ledger.sign_and_submit = AsyncMock(return_value="sig-123")
    ledger.get_token_decimals = AsyncMock(return_value=6)
    ledger.close = AsyncMock()
    return ledger


@pytest.fixture
def mock_signers():
    """Signer resolver with no custodial wallet: every action is staged."""
    signers = MagicMock()
    signers.has_custodial = False
    signers.custodial = None
    signers.keystore = None
    signers.resolve_for_position = AsyncMock(return_value=None)
    return signers


@pytest.fixture
def mock_notifier():
    return MagicMock(spec=Notifier)


@pytest.fixture
def engine_ctx(
    test_settings,
    session_factory,
    mock_prices,
    mock_aggregator,
    mock_ledger,
    mock_signers,
    mock_notifier,
):
    return EngineContext(
        settings=test_settings,
        positions=PositionStore(session_factory),
        orders=DCAOrderStore(session_factory),
        pending_buys=PendingBuyRegistry(),
        pending_sells=PendingSellRegistry(validity_seconds=90),
        prices=mock_prices,
        aggregator=mock_aggregator,
        ledger=mock_ledger,
        signers=mock_signers,
        notifier=mock_notifier,
        trade_ledger=TradeLedger(session_factory),
        shutdown=ShutdownManager(),
    )


@pytest.fixture
def custodial_ctx(engine_ctx, custodial_keypair):
    """Engine context whose signer resolver holds a custodial wallet."""
    engine_ctx.signers.has_custodial = True
    engine_ctx.signers.custodial = custodial_keypair
    engine_ctx.signers.resolve_for_position = AsyncMock(return_value=custodial_keypair)
    return engine_ctx


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def trading_engine(
    test_settings,
    session_factory,
    mock_prices,
    mock_aggregator,
    mock_ledger,
    mock_signers,
    mock_notifier,
):
    """A TradingEngine over the test database; its loops are never started."""
    from shieldtrade.engine import TradingEngine

    return TradingEngine(
        test_settings,
        session_factory,
        prices=mock_prices,
        aggregator=mock_aggregator,
        ledger=mock_ledger,
        signers=mock_signers,
        notifier=mock_notifier,
    )


@pytest.fixture
async def api_client(trading_engine):
    """httpx client bound to the app; startup events don't run, the engine is injected."""
    from httpx import ASGITransport, AsyncClient
    from shieldtrade.main import app

    app.state.engine = trading_engine
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    del app.state.engine
