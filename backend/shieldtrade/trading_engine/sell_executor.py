"""
Exit execution.

On every batch of price ticks check_positions_for_exits() refreshes each open
position, evaluates its exit strategy and, for a triggered exit, calls
create_pending_sell(), which either:

- signs and submits the sell straight away when a signer is available
  (custodial wallet, or the position's one-time identity if private), or
- stores a PendingSell with an unsigned transaction for the owner to sign
  and later confirm through execute_pending_sell().

Only one sell per (owner, asset) is ever being built or executed at a time,
and an unsigned sell is rebuilt, never resubmitted, once it goes stale.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Set

from shieldtrade.constants import (
    LAMPORTS_PER_SOL,
    PendingSellStatus,
    SOL_MINT,
    TradeSide,
)
from shieldtrade.exceptions import (
    AppError,
    InvariantViolationError,
    NotFoundError,
    StalePayloadError,
    TransactionUnconfirmedError,
)
from shieldtrade.models import Position
from shieldtrade.services.trade_ledger import TradeEvent
from shieldtrade.trading_engine.exit_conditions import ExitDecision, evaluate_exit
from shieldtrade.trading_engine.key_locks import KeyedLock
from shieldtrade.trading_engine.pending_actions import PendingSell
from shieldtrade.trading_engine.trade_context import EngineContext

logger = logging.getLogger(__name__)


@dataclass
class SellResult:
    signature: Optional[str] = None  # Set when the sell was auto-executed
    pending: Optional[PendingSell] = None  # Set when the sell was staged for signing


def sell_quantity(position: Position, sell_percentage: float) -> float:
    """Tokens to sell: a share of the entry quantity, capped at what is still held."""
    held = position.quantity or 0.0
    if sell_percentage >= 100:
        return held
    base = position.entry_quantity or held
    return min(base * sell_percentage / 100, held)


class ExitExecutor:
    def __init__(self, ctx: EngineContext):
        self.ctx = ctx
        self._in_flight = KeyedLock()  # (owner, asset)
        self._reclaim_tasks: Set[asyncio.Task] = set()

    async def check_positions_for_exits(
        self,
        prices: Dict[str, float],
        positions: Optional[Iterable[Position]] = None,
    ) -> int:
        """
        Evaluate every open position that has a price in prices.

        Returns:
            Number of positions whose exit triggered this round
        """
        if positions is None:
            positions = await self.ctx.positions.list_open()

        triggered = 0
        for position in positions:
            price = prices.get(position.asset)
            if price is None or price <= 0:
                continue
            try:
                refreshed = await self.ctx.positions.refresh_price(position.owner, position.asset, price)
                if refreshed is None:
                    continue
                decision = evaluate_exit(refreshed, price)
                if not decision.should_exit:
                    continue
                triggered += 1
                logger.info(
                    f"Exit triggered for {refreshed.asset_symbol or refreshed.asset[:8]} "
                    f"({refreshed.owner}): {decision.reason}"
                )
                await self.create_pending_sell(refreshed, price, decision)
            except AppError as e:
                logger.error(f"Exit check failed for {position.asset} ({position.owner}): {e.message}")
            except Exception as e:
                logger.error(f"Exit check failed for {position.asset} ({position.owner}): {e}", exc_info=True)

        self.ctx.pending_sells.expire_stale()
        return triggered

    async def create_pending_sell(
        self,
        position: Position,
        current_price: float,
        decision: ExitDecision,
    ) -> Optional[SellResult]:
        """
        Build (and if possible execute) the sell for a triggered exit.

        Returns None when debounced: another sell for this position is being
        built or executed, or a still-valid pending sell already exists.
        """
        ctx = self.ctx
        key = (position.owner, position.asset)
        if self._in_flight.is_locked(key):
            return None

        async with self._in_flight.hold(key):
            existing = ctx.pending_sells.get_active(position.owner, position.asset)
            if existing is not None:
                if existing.status == PendingSellStatus.EXECUTING:
                    return None
                if not ctx.pending_sells.is_stale(existing):
                    return None
                ctx.pending_sells.mark(existing.id, PendingSellStatus.CANCELLED)
                logger.info(f"Pending sell {existing.id} went stale, rebuilding")

            quantity = sell_quantity(position, decision.sell_percentage)
            if quantity <= 0:
                logger.warning(f"Exit for {position.asset} ({position.owner}) has nothing to sell")
                return None

            signer = await ctx.signers.resolve_for_position(position)
            if signer is not None:
                payer = str(signer.pubkey())
            elif position.is_private and position.execution_identity:
                payer = position.execution_identity
            else:
                payer = position.owner

            decimals = await ctx.ledger.get_token_decimals(position.asset)
            raw_amount = int(quantity * 10 ** decimals)
            quote = await ctx.aggregator.get_quote(
                position.asset, SOL_MINT, raw_amount, ctx.settings.exit_slippage_bps
            )
            payload = await ctx.aggregator.build_swap(quote, payer)
            estimated_sol = int(quote["outAmount"]) / LAMPORTS_PER_SOL

            if signer is None:
                return SellResult(pending=self._stage_sell(
                    position, current_price, decision, quantity, estimated_sol, payload
                ))

            label = f"exit:{position.owner}:{position.asset}"
            async with ctx.shutdown.transaction_in_flight(label):
                try:
                    signature = await ctx.ledger.sign_and_submit(payload, signer)
                except TransactionUnconfirmedError as e:
                    logger.warning(f"Exit sell of {position.asset} not confirmed yet, recording it under {e.signature}")
                    signature = e.signature
                await self._apply_sell(position, decision, quantity, current_price, estimated_sol, signature)

            if position.is_private and ctx.shielded is not None:
                self._schedule_reclaim(position, signer, estimated_sol)
            return SellResult(signature=signature)

    def _stage_sell(
        self,
        position: Position,
        current_price: float,
        decision: ExitDecision,
        quantity: float,
        estimated_sol: float,
        payload: str,
    ) -> PendingSell:
        registry = self.ctx.pending_sells
        now = registry.now()
        pending = registry.put(PendingSell(
            owner=position.owner,
            asset=position.asset,
            asset_symbol=position.asset_symbol,
            sell_percentage=decision.sell_percentage,
            quantity=quantity,
            current_price=current_price,
            entry_price=position.entry_price,
            current_profit=position.profit_percent_at(current_price),
            estimated_sol=estimated_sol,
            reason=decision.reason,
            exit_strategy=position.exit_strategy,
            slippage_bps=self.ctx.settings.exit_slippage_bps,
            payload=payload,
            created_at=now,
            expires_at=now + registry.validity,
            stage_index=decision.stage_index,
        ))
        self.ctx.notifier.notify_pending_sell({k: v for k, v in pending.to_dict().items() if k != "payload"})
        self.ctx.notifier.notify_exit_triggered(
            owner=position.owner,
            asset=position.asset,
            asset_symbol=position.asset_symbol,
            reason=decision.reason,
            profit_percent=pending.current_profit,
            quantity=quantity,
        )
        logger.info(f"Staged pending sell {pending.id}: {quantity} of {position.asset[:8]}... for {position.owner}")
        return pending

    async def _apply_sell(
        self,
        position: Position,
        decision: ExitDecision,
        quantity: float,
        price: float,
        sol_received: float,
        signature: str,
    ) -> Position:
        """Mutate the position for an executed sell and emit the trade event."""
        ctx = self.ctx
        if decision.stage_index is not None:
            updated = await ctx.positions.increment_exit_stage(position.owner, position.asset, sold_quantity=quantity)
        else:
            updated = await ctx.positions.close_position(position.owner, position.asset)

        await ctx.trade_ledger.record(TradeEvent(
            owner=position.owner,
            asset=position.asset,
            asset_symbol=position.asset_symbol,
            side=TradeSide.SELL,
            quantity=quantity,
            amount=sol_received,
            price=price,
            fee=ctx.settings.estimated_network_fee_sol,
            signature=signature,
            source="exit",
        ))
        ctx.notifier.notify_exit_triggered(
            owner=position.owner,
            asset=position.asset,
            asset_symbol=position.asset_symbol,
            reason=decision.reason,
            profit_percent=position.profit_percent_at(price),
            quantity=quantity,
            signature=signature,
        )
        logger.info(
            f"Sold {quantity} of {position.asset_symbol or position.asset[:8]} for ~{sol_received:.4f} SOL "
            f"({signature}), position now {updated.status}"
        )
        return updated

    def _schedule_reclaim(self, position: Position, signer, sol_received: float):
        task = asyncio.create_task(self._reclaim_proceeds(position, signer, sol_received))
        self._reclaim_tasks.add(task)
        task.add_done_callback(self._reclaim_tasks.discard)

    async def _reclaim_proceeds(self, position: Position, signer, sol_received: float):
        """Move private sell proceeds from the one-time identity back into the shielded balance."""
        ctx = self.ctx
        await asyncio.sleep(ctx.settings.private_reclaim_delay_seconds)
        amount = sol_received - ctx.settings.private_reclaim_fee_sol
        if amount <= 0:
            logger.warning(f"Proceeds of {sol_received} SOL too small to reclaim from {signer.pubkey()}")
            return
        try:
            await ctx.shielded.deposit(signer, amount)
            remaining = await ctx.positions.get_position(position.owner, position.asset)
            keystore = ctx.signers.keystore
            if remaining is None and keystore is not None and position.execution_identity:
                await keystore.mark_drained(position.execution_identity)
            logger.info(f"Reclaimed {amount:.4f} SOL into shielded balance from {signer.pubkey()}")
        except Exception as e:
            logger.error(
                f"Failed to reclaim {amount:.4f} SOL from {signer.pubkey()}, funds remain in the identity: {e}",
                exc_info=True,
            )

    async def wait_for_reclaims(self):
        if self._reclaim_tasks:
            await asyncio.gather(*list(self._reclaim_tasks), return_exceptions=True)

    async def execute_pending_sell(self, sell_id: str, signature: str) -> PendingSell:
        """
        Confirm a pending sell the owner signed and submitted.

        Raises:
            NotFoundError: unknown id
            StalePayloadError: the payload expired before it was confirmed
            InvariantViolationError: the sell is not pending (executing, executed, cancelled)
        """
        ctx = self.ctx
        pending = ctx.pending_sells.get(sell_id)
        if pending is None:
            raise NotFoundError(f"Pending sell {sell_id} not found")

        async with self._in_flight.hold((pending.owner, pending.asset)):
            if pending.status == PendingSellStatus.PENDING and ctx.pending_sells.is_stale(pending):
                ctx.pending_sells.mark(sell_id, PendingSellStatus.EXPIRED)
            if pending.status == PendingSellStatus.EXPIRED:
                raise StalePayloadError(f"Pending sell {sell_id} expired, a fresh one will be prepared")
            if pending.status != PendingSellStatus.PENDING:
                raise InvariantViolationError(f"Pending sell {sell_id} is {pending.status.value}")

            ctx.pending_sells.mark(sell_id, PendingSellStatus.EXECUTING)
            position = await ctx.positions.get_position(pending.owner, pending.asset)
            try:
                if position is None:
                    raise NotFoundError(f"No open position for {pending.owner} / {pending.asset}")
                decision = ExitDecision(
                    should_exit=True,
                    sell_percentage=pending.sell_percentage,
                    reason=pending.reason,
                    stage_index=pending.stage_index,
                )
                await self._apply_sell(
                    position, decision, pending.quantity, pending.current_price, pending.estimated_sol, signature
                )
            except Exception:
                ctx.pending_sells.mark(sell_id, PendingSellStatus.PENDING)
                raise

            return ctx.pending_sells.mark(sell_id, PendingSellStatus.EXECUTED, signature=signature)

    def cancel_pending_sell(self, sell_id: str) -> bool:
        removed = self.ctx.pending_sells.remove(sell_id)
        if removed:
            logger.info(f"Cancelled pending sell {sell_id}")
        return removed
