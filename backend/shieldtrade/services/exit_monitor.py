"""
Exit Monitor Service

Price feed for the exit executor: every price_poll_interval_seconds it
collects the assets of all open positions, fetches their prices and passes
the batch to check_positions_for_exits(). Stale pending sells are expired
by the executor at the end of each batch; old terminal ones are dropped
here once a day.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from shieldtrade.exceptions import ExternalServiceError
from shieldtrade.trading_engine.sell_executor import ExitExecutor
from shieldtrade.trading_engine.trade_context import EngineContext

logger = logging.getLogger(__name__)

SELL_CLEANUP_INTERVAL = timedelta(days=1)


class ExitMonitor:
    def __init__(self, ctx: EngineContext, executor: ExitExecutor):
        self.ctx = ctx
        self.executor = executor
        self.running = False
        self.task: Optional[asyncio.Task] = None
        self._last_cleanup: Optional[datetime] = None

    async def start(self):
        if not self.running:
            self.running = True
            self.task = asyncio.create_task(self._monitor_loop())
            logger.info("✅ Exit monitor started")

    async def stop(self):
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        logger.info("🛑 Exit monitor stopped")

    async def _monitor_loop(self):
        interval = self.ctx.settings.price_poll_interval_seconds
        while self.running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in exit monitor loop: {e}", exc_info=True)

            await asyncio.sleep(interval)

    async def fetch_prices(self, assets) -> Dict[str, float]:
        prices: Dict[str, float] = {}
        for asset in assets:
            try:
                price = await self.ctx.prices.get_price(asset)
            except ExternalServiceError as e:
                logger.warning(f"Price unavailable for {asset[:8]}...: {e}")
                continue
            if price is not None:
                prices[asset] = price
        return prices

    async def run_once(self) -> int:
        """One tick: price every open position and evaluate exits. Returns exits triggered."""
        positions = await self.ctx.positions.list_open()
        if positions:
            prices = await self.fetch_prices(sorted({p.asset for p in positions}))
            triggered = await self.executor.check_positions_for_exits(prices, positions)
        else:
            self.ctx.pending_sells.expire_stale()
            triggered = 0

        now = datetime.utcnow()
        if self._last_cleanup is None or now - self._last_cleanup >= SELL_CLEANUP_INTERVAL:
            self._last_cleanup = now
            removed = self.ctx.pending_sells.cleanup(self.ctx.settings.pending_sell_retention_days)
            if removed:
                logger.info(f"Dropped {removed} old pending sells")
        return triggered
