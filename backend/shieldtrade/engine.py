"""
Trading engine container.

Builds every store, registry, collaborator and executor once at startup and
tears them down at shutdown. The FastAPI app keeps the instance on
app.state.engine; nothing in the engine is a module-level singleton.
"""

import logging
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from shieldtrade.config import Settings
from shieldtrade.exchange_clients.base import (
    LedgerClient,
    PriceProvider,
    ShieldedBalanceProvider,
    SwapAggregator,
)
from shieldtrade.exchange_clients.dexscreener_client import DexScreenerClient
from shieldtrade.exchange_clients.jupiter_client import JupiterClient
from shieldtrade.exchange_clients.shielded_pool_client import ShieldedPoolClient
from shieldtrade.exchange_clients.solana_ledger_client import SolanaLedgerClient
from shieldtrade.services.dca_scheduler import DCAScheduler
from shieldtrade.services.ephemeral_wallet_service import EphemeralWalletService
from shieldtrade.services.exit_monitor import ExitMonitor
from shieldtrade.services.notifier import Notifier, TelegramNotifier
from shieldtrade.services.shutdown_manager import ShutdownManager
from shieldtrade.services.signer_resolver import SignerResolver
from shieldtrade.services.trade_ledger import TradeLedger
from shieldtrade.trading_engine.buy_executor import DCABuyExecutor
from shieldtrade.trading_engine.dca_order_manager import DCAOrderStore
from shieldtrade.trading_engine.pending_actions import PendingBuyRegistry, PendingSellRegistry
from shieldtrade.trading_engine.position_manager import PositionStore
from shieldtrade.trading_engine.sell_executor import ExitExecutor
from shieldtrade.trading_engine.trade_context import EngineContext

logger = logging.getLogger(__name__)


class TradingEngine:
    def __init__(
        self,
        settings: Settings,
        session_factory: Callable[[], AsyncSession],
        prices: Optional[PriceProvider] = None,
        aggregator: Optional[SwapAggregator] = None,
        ledger: Optional[LedgerClient] = None,
        shielded: Optional[ShieldedBalanceProvider] = None,
        signers: Optional[SignerResolver] = None,
        notifier: Optional[Notifier] = None,
    ):
        timeout = settings.http_timeout_seconds
        ledger = ledger or SolanaLedgerClient(
            settings.solana_rpc_url,
            timeout=settings.tx_submit_timeout_seconds,
            max_retries=settings.tx_max_retries,
        )
        if shielded is None and settings.shielded_relayer_url:
            shielded = ShieldedPoolClient(settings.shielded_relayer_url, ledger, timeout=timeout)

        keystore = None
        if settings.wallet_password:
            keystore = EphemeralWalletService(session_factory, settings.wallet_password)

        self.ctx = EngineContext(
            settings=settings,
            positions=PositionStore(session_factory),
            orders=DCAOrderStore(session_factory, default_slippage_bps=settings.default_buy_slippage_bps),
            pending_buys=PendingBuyRegistry(
                ttl_seconds=settings.pending_buy_ttl_seconds,
                capacity=settings.pending_registry_capacity,
            ),
            pending_sells=PendingSellRegistry(
                validity_seconds=settings.sell_payload_validity_seconds,
                capacity=settings.pending_registry_capacity,
            ),
            prices=prices or DexScreenerClient(settings.dexscreener_api_url, timeout=timeout),
            aggregator=aggregator or JupiterClient(settings.jupiter_api_url, timeout=timeout),
            ledger=ledger,
            signers=signers or SignerResolver(settings.bot_wallet_secret, keystore),
            notifier=notifier or Notifier(
                telegram=TelegramNotifier(settings.telegram_bot_token, settings.telegram_chat_id, timeout=timeout)
            ),
            trade_ledger=TradeLedger(session_factory),
            shutdown=ShutdownManager(),
            shielded=shielded,
        )
        self.buy_executor = DCABuyExecutor(self.ctx)
        self.exit_executor = ExitExecutor(self.ctx)
        self.dca_scheduler = DCAScheduler(self.ctx, self.buy_executor)
        self.exit_monitor = ExitMonitor(self.ctx, self.exit_executor)

    @property
    def running(self) -> bool:
        return self.dca_scheduler.running or self.exit_monitor.running

    async def start(self):
        await self.dca_scheduler.start()
        await self.exit_monitor.start()
        logger.info("🚀 Trading engine started")

    async def stop(self) -> dict:
        """Refuse new submissions, wait for in-flight ones, then stop the loops and close clients."""
        result = await self.ctx.shutdown.prepare_shutdown(timeout=self.ctx.settings.shutdown_timeout_seconds)
        await self.dca_scheduler.stop()
        await self.exit_monitor.stop()
        await self.exit_executor.wait_for_reclaims()
        await self.ctx.notifier.drain()

        await self.ctx.aggregator.close()
        await self.ctx.ledger.close()
        logger.info(f"Trading engine stopped: {result['message']}")
        return result

    async def get_status(self) -> dict:
        active_orders = await self.ctx.orders.list_active()
        open_positions = await self.ctx.positions.list_open()
        return {
            "running": self.running,
            "custodial_wallet": str(self.ctx.signers.custodial.pubkey()) if self.ctx.signers.has_custodial else None,
            "private_execution": self.ctx.shielded is not None,
            "active_dca_orders": len(active_orders),
            "open_positions": len(open_positions),
            "pending_buys": len(self.ctx.pending_buys),
            "pending_sells": self.ctx.pending_sells.get_statistics(),
            "shutdown": self.ctx.shutdown.get_status(),
        }
