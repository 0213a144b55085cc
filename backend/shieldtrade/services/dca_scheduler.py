"""
DCA Scheduler Service

Background loop that, every dca_check_interval_seconds, hands each DCA order
whose next buy is due to the buy executor. Orders are processed one at a
time; a failure in one order never blocks the others.

Also runs the periodic housekeeping of the order side: finished orders past
the retention window are deleted, expired pending buys are purged.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from shieldtrade.trading_engine.buy_executor import OUTCOME_EXECUTED, OUTCOME_STAGED, DCABuyExecutor
from shieldtrade.trading_engine.trade_context import EngineContext

logger = logging.getLogger(__name__)


class DCAScheduler:
    def __init__(self, ctx: EngineContext, executor: DCABuyExecutor):
        self.ctx = ctx
        self.executor = executor
        self.running = False
        self.task: Optional[asyncio.Task] = None
        self._last_cleanup: Optional[datetime] = None

    async def start(self):
        if not self.running:
            self.running = True
            self.task = asyncio.create_task(self._monitor_loop())
            logger.info("✅ DCA scheduler started")

    async def stop(self):
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        logger.info("🛑 DCA scheduler stopped")

    async def _monitor_loop(self):
        interval = self.ctx.settings.dca_check_interval_seconds
        while self.running:
            try:
                await self.run_once()
                await self.maybe_cleanup()
            except Exception as e:
                logger.error(f"Error in DCA scheduler loop: {e}", exc_info=True)

            await asyncio.sleep(interval)

    async def run_once(self, now: Optional[datetime] = None) -> dict:
        """Process every ready order once. Returns counts per outcome."""
        orders = await self.ctx.orders.get_orders_ready_for_buy(now)
        counts = {"ready": len(orders), OUTCOME_EXECUTED: 0, OUTCOME_STAGED: 0}
        if not orders:
            return counts

        logger.info(f"DCA scheduler: {len(orders)} orders ready")
        for order in orders:
            if self.ctx.shutdown.is_shutting_down:
                logger.info("Shutdown in progress, leaving remaining DCA orders for the next run")
                break
            try:
                outcome = await self.executor.process_order(order)
            except Exception as e:
                logger.error(f"DCA order {order.id} failed: {e}", exc_info=True)
                continue
            if outcome in counts:
                counts[outcome] += 1
        return counts

    async def maybe_cleanup(self, now: Optional[datetime] = None):
        """Run cleanup when cleanup_interval_days have passed since the last one."""
        now = now or datetime.utcnow()
        interval = timedelta(days=self.ctx.settings.cleanup_interval_days)
        if self._last_cleanup is not None and now - self._last_cleanup < interval:
            return

        self._last_cleanup = now
        removed = await self.ctx.orders.cleanup(self.ctx.settings.dca_order_retention_days)
        purged = self.ctx.pending_buys.purge_expired()
        logger.info(f"DCA cleanup: removed {removed} old orders, purged {purged} expired pending buys")
