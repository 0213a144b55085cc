"""
Tests for backend/shieldtrade/trading_engine/sell_executor.py

Covers:
- sell_quantity sizing
- check_positions_for_exits: staging, debounce, stale rebuild
- Auto-execution with the custodial wallet (stage vs full exit)
- execute_pending_sell confirmation, staleness and status guards
- Private sells returning proceeds to the shielded balance
"""

from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from solders.keypair import Keypair
from sqlalchemy import select

from shieldtrade.constants import PendingSellStatus, PositionStatus, SOL_MINT
from shieldtrade.exceptions import (
    ExternalServiceError,
    InvariantViolationError,
    NotFoundError,
    StalePayloadError,
)
from shieldtrade.models import Trade
from shieldtrade.trading_engine.exit_conditions import ExitDecision
from shieldtrade.trading_engine.pending_actions import PendingSellRegistry
from shieldtrade.trading_engine.sell_executor import ExitExecutor, sell_quantity

OWNER = "OwnerWallet1111111111111111111111111111111"
ASSET = "TokenMint111111111111111111111111111111111"

STAGE_ONE_PRICE = 0.0014  # +40%, past the first hodl1 stage (+30%)
STOP_PRICE = 0.0006  # -40%, below the hodl1 -35% stop


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


async def _open_position(ctx, **kwargs):
    params = dict(quantity=1000, total_cost=1.0, exit_strategy="hodl1", asset_symbol="TKN")
    params.update(kwargs)
    return await ctx.positions.add_position(OWNER, ASSET, **params)


class TestSellQuantity:
    def test_share_of_entry_quantity(self):
        pos = SimpleNamespace(quantity=750.0, entry_quantity=1000.0)
        assert sell_quantity(pos, 25) == pytest.approx(250.0)

    def test_capped_at_held(self):
        """Edge case: earlier stages sold more than their share"""
        pos = SimpleNamespace(quantity=100.0, entry_quantity=1000.0)
        assert sell_quantity(pos, 25) == pytest.approx(100.0)

    def test_full_exit_sells_everything_held(self):
        pos = SimpleNamespace(quantity=333.3, entry_quantity=1000.0)
        assert sell_quantity(pos, 100) == pytest.approx(333.3)


# ---------------------------------------------------------------------------
# Staged sells (no signer)
# ---------------------------------------------------------------------------


class TestStagedSells:
    @pytest.mark.asyncio
    async def test_stage_trigger_creates_pending_sell(self, engine_ctx):
        """Happy path: first stage fires and an unsigned sell is staged for the owner"""
        await _open_position(engine_ctx)
        executor = ExitExecutor(engine_ctx)

        triggered = await executor.check_positions_for_exits({ASSET: STAGE_ONE_PRICE})

        assert triggered == 1
        engine_ctx.aggregator.get_quote.assert_awaited_once_with(ASSET, SOL_MINT, 250_000_000, 300)
        assert engine_ctx.aggregator.build_swap.await_args.args[1] == OWNER

        [pending] = engine_ctx.pending_sells.list_by_owner(OWNER)
        assert pending.status == PendingSellStatus.PENDING
        assert pending.quantity == pytest.approx(250.0)
        assert pending.sell_percentage == 25
        assert pending.stage_index == 0
        assert pending.estimated_sol == pytest.approx(1.0)
        assert pending.current_profit == pytest.approx(40.0)

        broadcast = engine_ctx.notifier.notify_pending_sell.call_args.args[0]
        assert "payload" not in broadcast
        engine_ctx.notifier.notify_exit_triggered.assert_called_once()

        # Staging alone changes nothing on the position except the price refresh
        position = await engine_ctx.positions.get_position(OWNER, ASSET)
        assert position.quantity == 1000
        assert position.peak_profit == pytest.approx(40.0)

    @pytest.mark.asyncio
    async def test_repeated_trigger_is_debounced(self, engine_ctx):
        await _open_position(engine_ctx)
        executor = ExitExecutor(engine_ctx)

        await executor.check_positions_for_exits({ASSET: STAGE_ONE_PRICE})
        await executor.check_positions_for_exits({ASSET: STAGE_ONE_PRICE})

        assert len(engine_ctx.pending_sells) == 1
        assert engine_ctx.aggregator.build_swap.await_count == 1

    @pytest.mark.asyncio
    async def test_stale_pending_sell_is_rebuilt(self, engine_ctx):
        """Edge case: an expired payload is replaced, never resubmitted"""
        clock = FakeClock()
        engine_ctx.pending_sells = PendingSellRegistry(validity_seconds=90, clock=clock)
        await _open_position(engine_ctx)
        executor = ExitExecutor(engine_ctx)

        await executor.check_positions_for_exits({ASSET: STAGE_ONE_PRICE})
        [first] = engine_ctx.pending_sells.list_by_owner(OWNER)
        clock.advance(seconds=120)
        await executor.check_positions_for_exits({ASSET: STAGE_ONE_PRICE})

        assert first.status == PendingSellStatus.CANCELLED
        [second] = engine_ctx.pending_sells.list_by_owner(OWNER)
        assert second.id != first.id
        assert engine_ctx.aggregator.build_swap.await_count == 2

    @pytest.mark.asyncio
    async def test_executing_sell_blocks_new_one(self, engine_ctx):
        await _open_position(engine_ctx)
        executor = ExitExecutor(engine_ctx)
        await executor.check_positions_for_exits({ASSET: STAGE_ONE_PRICE})
        [pending] = engine_ctx.pending_sells.list_by_owner(OWNER)
        engine_ctx.pending_sells.mark(pending.id, PendingSellStatus.EXECUTING)

        position = await engine_ctx.positions.get_position(OWNER, ASSET)
        decision = ExitDecision(True, 25.0, "Stage 1/4", stage_index=0)
        assert await executor.create_pending_sell(position, STAGE_ONE_PRICE, decision) is None

    @pytest.mark.asyncio
    async def test_positions_without_price_are_skipped(self, engine_ctx):
        await _open_position(engine_ctx)
        executor = ExitExecutor(engine_ctx)

        assert await executor.check_positions_for_exits({"other-mint": 1.0}) == 0
        engine_ctx.aggregator.get_quote.assert_not_called()

    @pytest.mark.asyncio
    async def test_holding_position_only_refreshes(self, engine_ctx):
        await _open_position(engine_ctx)
        executor = ExitExecutor(engine_ctx)

        assert await executor.check_positions_for_exits({ASSET: 0.0011}) == 0
        position = await engine_ctx.positions.get_position(OWNER, ASSET)
        assert position.current_price == 0.0011
        assert len(engine_ctx.pending_sells) == 0


class TestExecutePendingSell:
    async def _stage(self, ctx):
        await _open_position(ctx)
        executor = ExitExecutor(ctx)
        await executor.check_positions_for_exits({ASSET: STAGE_ONE_PRICE})
        [pending] = ctx.pending_sells.list_by_owner(OWNER)
        return executor, pending

    @pytest.mark.asyncio
    async def test_confirm_applies_stage(self, engine_ctx, db_session):
        executor, pending = await self._stage(engine_ctx)

        result = await executor.execute_pending_sell(pending.id, "owner-sig")

        assert result.status == PendingSellStatus.EXECUTED
        assert result.signature == "owner-sig"
        assert result.executed_at is not None
        position = await engine_ctx.positions.get_position(OWNER, ASSET)
        assert position.status == PositionStatus.CLOSING.value
        assert position.exit_stages_completed == 1
        assert position.quantity == pytest.approx(750.0)

        trades = (await db_session.execute(select(Trade))).scalars().all()
        assert [(t.side, t.source, t.signature) for t in trades] == [("sell", "exit", "owner-sig")]

    @pytest.mark.asyncio
    async def test_confirm_twice_rejected(self, engine_ctx):
        executor, pending = await self._stage(engine_ctx)
        await executor.execute_pending_sell(pending.id, "owner-sig")

        with pytest.raises(InvariantViolationError):
            await executor.execute_pending_sell(pending.id, "owner-sig")
        position = await engine_ctx.positions.get_position(OWNER, ASSET)
        assert position.exit_stages_completed == 1

    @pytest.mark.asyncio
    async def test_confirm_stale_rejected(self, engine_ctx):
        """Failure: the payload outlived its blockhash window"""
        clock = FakeClock()
        engine_ctx.pending_sells = PendingSellRegistry(validity_seconds=90, clock=clock)
        executor, pending = await self._stage(engine_ctx)
        clock.advance(seconds=91)

        with pytest.raises(StalePayloadError):
            await executor.execute_pending_sell(pending.id, "late-sig")
        assert pending.status == PendingSellStatus.EXPIRED
        position = await engine_ctx.positions.get_position(OWNER, ASSET)
        assert position.exit_stages_completed == 0

    @pytest.mark.asyncio
    async def test_confirm_cancelled_rejected(self, engine_ctx):
        executor, pending = await self._stage(engine_ctx)
        engine_ctx.pending_sells.mark(pending.id, PendingSellStatus.CANCELLED)
        with pytest.raises(InvariantViolationError):
            await executor.execute_pending_sell(pending.id, "sig")

    @pytest.mark.asyncio
    async def test_unknown_id(self, engine_ctx):
        executor = ExitExecutor(engine_ctx)
        with pytest.raises(NotFoundError):
            await executor.execute_pending_sell("missing", "sig")

    @pytest.mark.asyncio
    async def test_failed_apply_reverts_to_pending(self, engine_ctx):
        """Edge case: the position vanished; the sell can be retried or cancelled"""
        executor, pending = await self._stage(engine_ctx)
        await engine_ctx.positions.close_position(OWNER, ASSET)

        with pytest.raises(NotFoundError):
            await executor.execute_pending_sell(pending.id, "sig")
        assert pending.status == PendingSellStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancel(self, engine_ctx):
        executor, pending = await self._stage(engine_ctx)
        assert executor.cancel_pending_sell(pending.id) is True
        assert executor.cancel_pending_sell(pending.id) is False


# ---------------------------------------------------------------------------
# Custodial auto-execution
# ---------------------------------------------------------------------------


class TestAutoSell:
    @pytest.mark.asyncio
    async def test_stage_sell_executes_immediately(self, custodial_ctx, custodial_keypair):
        ctx = custodial_ctx
        await _open_position(ctx)
        executor = ExitExecutor(ctx)

        assert await executor.check_positions_for_exits({ASSET: STAGE_ONE_PRICE}) == 1

        ctx.ledger.sign_and_submit.assert_awaited_once_with("dW5zaWduZWQtdHg=", custodial_keypair)
        assert ctx.aggregator.build_swap.await_args.args[1] == str(custodial_keypair.pubkey())
        assert len(ctx.pending_sells) == 0
        position = await ctx.positions.get_position(OWNER, ASSET)
        assert position.exit_stages_completed == 1
        assert position.quantity == pytest.approx(750.0)
        assert ctx.notifier.notify_exit_triggered.call_args.kwargs["signature"] == "sig-123"
        assert ctx.shutdown.in_flight_count == 0

    @pytest.mark.asyncio
    async def test_stop_loss_closes_position(self, custodial_ctx):
        ctx = custodial_ctx
        await _open_position(ctx)
        executor = ExitExecutor(ctx)

        await executor.check_positions_for_exits({ASSET: STOP_PRICE})

        assert await ctx.positions.get_position(OWNER, ASSET) is None
        [closed] = await ctx.positions.list_by_owner(OWNER)
        assert closed.status == PositionStatus.CLOSED.value
        assert ctx.aggregator.get_quote.await_args.args[2] == 1_000_000_000

    @pytest.mark.asyncio
    async def test_submit_failure_leaves_position(self, custodial_ctx):
        """Failure: a failed submission is logged and retried next tick"""
        ctx = custodial_ctx
        ctx.ledger.sign_and_submit = AsyncMock(side_effect=ExternalServiceError("rpc down"))
        await _open_position(ctx)
        executor = ExitExecutor(ctx)

        assert await executor.check_positions_for_exits({ASSET: STAGE_ONE_PRICE}) == 1
        position = await ctx.positions.get_position(OWNER, ASSET)
        assert position.exit_stages_completed == 0
        assert position.quantity == 1000
        assert ctx.shutdown.in_flight_count == 0

    @pytest.mark.asyncio
    async def test_one_failing_position_does_not_block_others(self, custodial_ctx):
        ctx = custodial_ctx
        await _open_position(ctx)
        await ctx.positions.add_position(OWNER, "OtherMint", quantity=1000, total_cost=1.0, exit_strategy="hodl1")
        ctx.ledger.get_token_decimals = AsyncMock(side_effect=[ExternalServiceError("boom"), 6])
        executor = ExitExecutor(ctx)

        triggered = await executor.check_positions_for_exits({ASSET: STAGE_ONE_PRICE, "OtherMint": STAGE_ONE_PRICE})

        assert triggered == 2
        assert ctx.ledger.sign_and_submit.await_count == 1


# ---------------------------------------------------------------------------
# Private sells
# ---------------------------------------------------------------------------


class TestPrivateSell:
    @pytest.fixture
    def identity(self):
        return Keypair()

    @pytest.fixture
    def private_ctx(self, custodial_ctx, identity):
        ctx = custodial_ctx
        ctx.signers.resolve_for_position = AsyncMock(return_value=identity)
        ctx.signers.keystore = MagicMock()
        ctx.signers.keystore.mark_drained = AsyncMock(return_value=True)
        ctx.shielded = MagicMock()
        ctx.shielded.deposit = AsyncMock(return_value="deposit-sig")
        return ctx

    @pytest.mark.asyncio
    async def test_full_exit_reclaims_and_drains_identity(self, private_ctx, identity):
        ctx = private_ctx
        await _open_position(ctx, is_private=True, execution_identity=str(identity.pubkey()))
        executor = ExitExecutor(ctx)

        await executor.check_positions_for_exits({ASSET: STOP_PRICE})
        await executor.wait_for_reclaims()

        assert ctx.ledger.sign_and_submit.await_args.args[1] is identity
        signer, amount = ctx.shielded.deposit.await_args.args
        assert signer is identity
        assert amount == pytest.approx(1.0 - 0.001)
        ctx.signers.keystore.mark_drained.assert_awaited_once_with(str(identity.pubkey()))

    @pytest.mark.asyncio
    async def test_partial_exit_keeps_identity(self, private_ctx, identity):
        ctx = private_ctx
        await _open_position(ctx, is_private=True, execution_identity=str(identity.pubkey()))
        executor = ExitExecutor(ctx)

        await executor.check_positions_for_exits({ASSET: STAGE_ONE_PRICE})
        await executor.wait_for_reclaims()

        ctx.shielded.deposit.assert_awaited_once()
        ctx.signers.keystore.mark_drained.assert_not_called()

    @pytest.mark.asyncio
    async def test_reclaim_failure_is_contained(self, private_ctx, identity):
        ctx = private_ctx
        ctx.shielded.deposit = AsyncMock(side_effect=ExternalServiceError("relayer down"))
        await _open_position(ctx, is_private=True, execution_identity=str(identity.pubkey()))
        executor = ExitExecutor(ctx)

        await executor.check_positions_for_exits({ASSET: STOP_PRICE})
        await executor.wait_for_reclaims()

        [closed] = await ctx.positions.list_by_owner(OWNER)
        assert closed.status == PositionStatus.CLOSED.value
        ctx.signers.keystore.mark_drained.assert_not_called()
