"""
DCA buy execution.

For each order that is due, the scheduler calls process_order(), which sizes
the next buy and then either:

- auto-executes it with the custodial wallet (or, for private orders, a
  one-time identity funded from the shielded balance), or
- stages a PendingBuy for the owner to sign, confirmed later via execute_buy().

Both paths end in record_buy(), the single place where an executed buy
advances the order and opens or grows the position.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional, Tuple

from solders.keypair import Keypair

from shieldtrade.constants import DCAOrderStatus, LAMPORTS_PER_SOL, SOL_MINT, TradeSide
from shieldtrade.exceptions import (
    AppError,
    ExternalServiceError,
    InsufficientFundsError,
    InvariantViolationError,
    NotFoundError,
    TransactionUnconfirmedError,
    ValidationError,
)
from shieldtrade.models import DCAOrder, Position
from shieldtrade.services.trade_ledger import TradeEvent
from shieldtrade.trading_engine.dca_order_manager import BuyRecord, calculate_next_buy_amount
from shieldtrade.trading_engine.key_locks import KeyedLock
from shieldtrade.trading_engine.pending_actions import PendingBuy
from shieldtrade.trading_engine.trade_context import EngineContext

logger = logging.getLogger(__name__)

OUTCOME_EXECUTED = "executed"
OUTCOME_STAGED = "staged"
OUTCOME_SKIPPED = "skipped"


class DCABuyExecutor:
    def __init__(self, ctx: EngineContext):
        self.ctx = ctx
        self._in_flight = KeyedLock()  # (order_id, buy_number)

    async def process_order(self, order: DCAOrder) -> str:
        """
        Size and dispatch the next buy of order.

        Errors affect only this order: they are logged and the order stays due,
        so the next scheduler tick retries it.

        Returns:
            "executed", "staged" or "skipped"
        """
        # Re-read: the order may have been paused/cancelled since the scan
        order = await self.ctx.orders.get_order(order.id)
        if order is None or order.status != DCAOrderStatus.ACTIVE.value or order.remaining_buys <= 0:
            return OUTCOME_SKIPPED

        buy_number = order.current_buy + 1
        label = order.asset_symbol or order.asset[:8]

        try:
            price = await self.ctx.prices.get_price(order.asset)
        except ExternalServiceError as e:
            logger.warning(f"DCA {order.id}: price unavailable for {label}, retrying next tick: {e}")
            return OUTCOME_SKIPPED
        if price is None:
            logger.warning(f"DCA {order.id}: no price for {label}, retrying next tick")
            return OUTCOME_SKIPPED

        amount = calculate_next_buy_amount(order, price)
        if amount <= 0:
            logger.warning(f"DCA {order.id}: nothing left to spend for buy #{buy_number}")
            return OUTCOME_SKIPPED

        if not self.ctx.signers.has_custodial:
            self.stage_buy(order, buy_number, amount, price)
            return OUTCOME_STAGED

        key = (order.id, buy_number)
        if self._in_flight.is_locked(key):
            logger.info(f"DCA {order.id}: buy #{buy_number} already in flight")
            return OUTCOME_SKIPPED

        try:
            async with self._in_flight.hold(key):
                await self._auto_buy(order, buy_number, amount)
            return OUTCOME_EXECUTED
        except AppError as e:
            logger.error(f"DCA {order.id}: buy #{buy_number} of {label} failed: {e.message}")
        except Exception as e:
            logger.error(f"DCA {order.id}: buy #{buy_number} of {label} failed: {e}", exc_info=True)
        return OUTCOME_SKIPPED

    def stage_buy(self, order: DCAOrder, buy_number: int, amount: float, price: float) -> PendingBuy:
        pending = PendingBuy(
            order_id=order.id,
            buy_number=buy_number,
            owner=order.owner,
            asset=order.asset,
            asset_symbol=order.asset_symbol,
            sol_amount=amount,
            price=price,
            estimated_tokens=amount / price if price else None,
            slippage_bps=order.slippage_bps,
            exit_strategy=order.exit_strategy,
            created_at=datetime.utcnow(),
        )
        self.ctx.pending_buys.put(pending)
        self.ctx.notifier.notify_pending_buy(pending.to_dict())
        logger.info(
            f"DCA {order.id}: staged buy #{buy_number}/{order.number_of_buys} "
            f"({amount:.4f} SOL) for {order.owner} to sign"
        )
        return pending

    async def _prepare_private_signer(self, order: DCAOrder, amount: float) -> Keypair:
        """
        Fund a one-time identity from the custodial wallet's shielded balance.

        Reuses the identity of an open private position in the same asset so
        every buy of one position stays in one wallet. Nothing irreversible
        happens before the balance check passes.
        """
        ctx = self.ctx
        custodial = ctx.signers.custodial
        keystore = ctx.signers.keystore
        if ctx.shielded is None or keystore is None:
            raise ValidationError("Private execution is not configured")

        required = amount + ctx.settings.private_fee_reserve_sol
        available = await ctx.shielded.get_balance(str(custodial.pubkey()))
        if available < required:
            raise InsufficientFundsError(
                f"Shielded balance {available:.4f} SOL < required {required:.4f} SOL",
                required=required,
                available=available,
            )

        signer: Optional[Keypair] = None
        position = await ctx.positions.get_position(order.owner, order.asset)
        if position is not None and position.is_private and position.execution_identity:
            signer = await keystore.get_wallet(position.execution_identity)
        if signer is None:
            signer = await keystore.create_wallet()

        await ctx.shielded.fund(custodial, str(signer.pubkey()), amount + ctx.settings.private_funding_buffer_sol)
        logger.info(
            f"Funded execution identity {signer.pubkey()}, waiting "
            f"{ctx.settings.private_settlement_delay_seconds}s for settlement"
        )
        await asyncio.sleep(ctx.settings.private_settlement_delay_seconds)
        return signer

    async def _auto_buy(self, order: DCAOrder, buy_number: int, amount: float) -> Tuple[BuyRecord, Position]:
        ctx = self.ctx
        async with ctx.shutdown.transaction_in_flight(f"dca:{order.id}:{buy_number}"):
            if order.is_private:
                signer = await self._prepare_private_signer(order, amount)
                identity = str(signer.pubkey())
            else:
                signer = ctx.signers.custodial
                identity = None

            lamports = int(amount * LAMPORTS_PER_SOL)
            quote = await ctx.aggregator.get_quote(SOL_MINT, order.asset, lamports, order.slippage_bps)
            payload = await ctx.aggregator.build_swap(quote, str(signer.pubkey()))
            try:
                signature = await ctx.ledger.sign_and_submit(payload, signer)
            except TransactionUnconfirmedError as e:
                logger.warning(f"DCA {order.id}: buy #{buy_number} not confirmed yet, recording it under {e.signature}")
                signature = e.signature

            decimals = await ctx.ledger.get_token_decimals(order.asset)
            tokens = int(quote["outAmount"]) / (10 ** decimals)
            record = BuyRecord(
                buy_number=buy_number,
                timestamp=datetime.utcnow().isoformat(),
                sol_amount=amount,
                token_amount=tokens,
                price=amount / tokens if tokens else 0.0,
                signature=signature,
                asset=order.asset,
                execution_identity=identity,
            )
            position = await self.record_buy(order.id, record)
        return record, position

    async def _open_position(self, order: DCAOrder, record: BuyRecord) -> Position:
        return await self.ctx.positions.add_position(
            owner=order.owner,
            asset=order.asset,
            quantity=record.token_amount,
            total_cost=record.sol_amount,
            exit_strategy=order.exit_strategy,
            asset_symbol=order.asset_symbol,
            is_private=order.is_private,
            execution_identity=record.execution_identity,
        )

    async def _apply_to_position(self, order: DCAOrder, record: BuyRecord) -> Position:
        positions = self.ctx.positions
        if await positions.get_position(order.owner, order.asset) is None:
            try:
                return await self._open_position(order, record)
            except InvariantViolationError:
                logger.info(f"Position for {order.asset} opened concurrently, adding to it instead")
        try:
            return await positions.add_to_position(
                owner=order.owner,
                asset=order.asset,
                added_quantity=record.token_amount,
                added_cost=record.sol_amount,
                execution_price=record.price,
            )
        except NotFoundError:
            # Closed by an exit while this buy was landing: the tokens start a new position
            logger.info(f"Position for {order.asset} closed concurrently, opening a new one")
            return await self._open_position(order, record)

    async def record_buy(self, order_id: str, record: BuyRecord) -> Position:
        """
        Apply an executed buy to the stores.

        Advances the order (which enforces buy sequencing), then opens the
        position or re-prices the existing one, clears the matching pending
        buy and emits the trade event and notification. If the position step
        fails the order is reverted, so either both stores move or neither does.
        """
        if record.token_amount <= 0 or record.sol_amount < 0:
            raise ValidationError(
                f"Buy #{record.buy_number} needs positive tokens and non-negative SOL, "
                f"got {record.token_amount} tokens for {record.sol_amount} SOL"
            )

        ctx = self.ctx
        previous = await ctx.orders.get_order(order_id)
        if previous is None:
            raise NotFoundError(f"DCA order {order_id} not found")
        order = await ctx.orders.record_buy_execution(order_id, record)

        try:
            position = await self._apply_to_position(order, record)
        except Exception:
            await ctx.orders.revert_buy_execution(order_id, record.buy_number, previous)
            raise
        ctx.pending_buys.remove(order_id, record.buy_number)

        await ctx.trade_ledger.record(TradeEvent(
            owner=order.owner,
            asset=order.asset,
            asset_symbol=order.asset_symbol,
            side=TradeSide.BUY,
            quantity=record.token_amount,
            amount=record.sol_amount,
            price=record.price,
            fee=ctx.settings.estimated_network_fee_sol,
            signature=record.signature,
            source="dca",
        ))
        ctx.notifier.notify_dca_buy(
            owner=order.owner,
            asset=order.asset,
            asset_symbol=order.asset_symbol,
            buy_number=record.buy_number,
            number_of_buys=order.number_of_buys,
            signature=record.signature,
            token_amount=record.token_amount,
            sol_amount=record.sol_amount,
            price=record.price,
        )
        logger.info(
            f"DCA {order_id}: buy #{record.buy_number}/{order.number_of_buys} recorded "
            f"({record.sol_amount:.4f} SOL -> {record.token_amount} tokens, {record.signature})"
        )
        return position

    async def execute_buy(
        self,
        order_id: str,
        buy_number: int,
        signature: str,
        actual_tokens: float,
        actual_sol: float,
        actual_price: Optional[float] = None,
        execution_identity: Optional[str] = None,
    ) -> bool:
        """
        Confirm a staged buy the owner signed and submitted.

        Fails without mutating anything when the pending buy or its order is
        gone, when the reported amounts are unusable, or when the buy cannot
        be applied; a second confirmation of the same buy therefore fails too.
        """
        if actual_tokens <= 0 or actual_sol < 0:
            logger.warning(
                f"Refusing to confirm buy #{buy_number} of order {order_id}: "
                f"{actual_tokens} tokens for {actual_sol} SOL"
            )
            return False

        async with self._in_flight.hold((order_id, buy_number)):
            pending = self.ctx.pending_buys.get(order_id, buy_number)
            if pending is None:
                logger.warning(f"No pending buy for order {order_id} #{buy_number}")
                return False
            order = await self.ctx.orders.get_order(order_id)
            if order is None:
                logger.warning(f"Pending buy references missing order {order_id}")
                return False

            record = BuyRecord(
                buy_number=buy_number,
                timestamp=datetime.utcnow().isoformat(),
                sol_amount=actual_sol,
                token_amount=actual_tokens,
                price=actual_price or actual_sol / actual_tokens,
                signature=signature,
                asset=order.asset,
                execution_identity=execution_identity,
            )
            try:
                await self.record_buy(order_id, record)
            except AppError as e:
                logger.error(f"Failed to confirm buy #{buy_number} of order {order_id}: {e.message}")
                return False
        return True

    async def cancel_order(self, order_id: str) -> DCAOrder:
        """Cancel order and drop any buys still waiting for the owner's signature."""
        order = await self.ctx.orders.cancel_order(order_id)
        dropped = self.ctx.pending_buys.remove_for_order(order_id)
        if dropped:
            logger.info(f"Dropped {dropped} pending buy(s) of cancelled order {order_id}")
        return order

    def cancel_pending_buy(self, order_id: str, buy_number: int) -> bool:
        removed = self.ctx.pending_buys.remove(order_id, buy_number)
        if removed:
            logger.info(f"Cancelled pending buy #{buy_number} of order {order_id}")
        return removed
