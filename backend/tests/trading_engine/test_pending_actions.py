"""Tests for trading_engine/pending_actions.py"""

from datetime import datetime, timedelta

import pytest

from shieldtrade.constants import PendingSellStatus
from shieldtrade.exceptions import InvariantViolationError
from shieldtrade.trading_engine.pending_actions import (
    PendingBuy,
    PendingBuyRegistry,
    PendingSell,
    PendingSellRegistry,
)

T0 = datetime(2026, 1, 1, 12, 0, 0)


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def _buy(order_id="order-1", buy_number=1, owner="owner-a", created_at=T0):
    return PendingBuy(
        order_id=order_id,
        buy_number=buy_number,
        owner=owner,
        asset="mint",
        asset_symbol="BONK",
        sol_amount=0.25,
        price=0.001,
        estimated_tokens=250.0,
        slippage_bps=200,
        exit_strategy="manual",
        created_at=created_at,
    )


def _sell(owner="owner-a", asset="mint", created_at=T0, validity=90):
    return PendingSell(
        owner=owner,
        asset=asset,
        asset_symbol="BONK",
        sell_percentage=25.0,
        quantity=250.0,
        current_price=0.002,
        entry_price=0.001,
        current_profit=100.0,
        estimated_sol=0.5,
        reason="Stage 1/4",
        exit_strategy="hodl1",
        slippage_bps=300,
        payload="dW5zaWduZWQ=",
        created_at=created_at,
        expires_at=created_at + timedelta(seconds=validity),
        stage_index=0,
    )


# ---------------------------------------------------------------------------
# PendingBuyRegistry
# ---------------------------------------------------------------------------


class TestPendingBuyRegistry:
    def test_put_and_get(self):
        registry = PendingBuyRegistry(clock=FakeClock())
        registry.put(_buy())
        assert registry.get("order-1", 1).sol_amount == 0.25
        assert registry.get("order-1", 2) is None

    def test_put_replaces_same_key(self):
        """At most one pending buy per (order_id, buy_number)"""
        registry = PendingBuyRegistry(clock=FakeClock())
        registry.put(_buy())
        replacement = _buy()
        replacement.sol_amount = 0.3
        registry.put(replacement)
        assert len(registry) == 1
        assert registry.get("order-1", 1).sol_amount == 0.3

    def test_expired_entries_disappear(self):
        clock = FakeClock()
        registry = PendingBuyRegistry(ttl_seconds=3600, clock=clock)
        registry.put(_buy())
        clock.advance(minutes=59)
        assert registry.get("order-1", 1) is not None
        clock.advance(minutes=1)
        assert registry.get("order-1", 1) is None
        assert len(registry) == 0

    def test_purge_expired(self):
        clock = FakeClock()
        registry = PendingBuyRegistry(ttl_seconds=60, clock=clock)
        registry.put(_buy(buy_number=1))
        clock.advance(seconds=30)
        registry.put(_buy(buy_number=2, created_at=clock.now))
        clock.advance(seconds=40)
        assert registry.purge_expired() == 1
        assert registry.get("order-1", 2) is not None

    def test_capacity_evicts_oldest(self):
        """Edge case: bounded memory"""
        clock = FakeClock()
        registry = PendingBuyRegistry(capacity=2, clock=clock)
        registry.put(_buy(order_id="a", created_at=T0))
        registry.put(_buy(order_id="b", created_at=T0 + timedelta(seconds=1)))
        registry.put(_buy(order_id="c", created_at=T0 + timedelta(seconds=2)))
        assert len(registry) == 2
        assert registry.get("a", 1) is None
        assert registry.get("c", 1) is not None

    def test_remove_and_remove_for_order(self):
        registry = PendingBuyRegistry(clock=FakeClock())
        registry.put(_buy(buy_number=1))
        registry.put(_buy(buy_number=2))
        registry.put(_buy(order_id="order-2"))
        assert registry.remove("order-1", 1) is True
        assert registry.remove("order-1", 1) is False
        assert registry.remove_for_order("order-1") == 1
        assert len(registry) == 1

    def test_list_by_owner(self):
        registry = PendingBuyRegistry(clock=FakeClock())
        registry.put(_buy(order_id="x", owner="owner-a", created_at=T0 + timedelta(seconds=5)))
        registry.put(_buy(order_id="y", owner="owner-a", created_at=T0))
        registry.put(_buy(order_id="z", owner="owner-b"))
        assert [p.order_id for p in registry.list_by_owner("owner-a")] == ["y", "x"]

    def test_to_dict(self):
        data = _buy().to_dict()
        assert data["created_at"] == T0.isoformat()
        assert data["buy_number"] == 1


# ---------------------------------------------------------------------------
# PendingSellRegistry
# ---------------------------------------------------------------------------


class TestPendingSellRegistry:
    def test_one_active_sell_per_position(self):
        """Failure: a second active sell for the same (owner, asset) is refused"""
        registry = PendingSellRegistry(clock=FakeClock())
        registry.put(_sell())
        with pytest.raises(InvariantViolationError) as exc_info:
            registry.put(_sell())
        assert exc_info.value.status_code == 409
        registry.put(_sell(asset="other-mint"))
        assert len(registry) == 2

    def test_new_sell_allowed_after_previous_cancelled(self):
        registry = PendingSellRegistry(clock=FakeClock())
        first = registry.put(_sell())
        registry.mark(first.id, PendingSellStatus.CANCELLED)
        second = registry.put(_sell())
        assert registry.get_active("owner-a", "mint").id == second.id

    def test_staleness(self):
        clock = FakeClock()
        registry = PendingSellRegistry(validity_seconds=90, clock=clock)
        pending = registry.put(_sell())
        assert registry.is_stale(pending) is False
        clock.advance(seconds=90)
        assert registry.is_stale(pending) is True

    def test_expire_stale_only_touches_pending(self):
        clock = FakeClock()
        registry = PendingSellRegistry(clock=clock)
        waiting = registry.put(_sell(asset="a"))
        executing = registry.put(_sell(asset="b"))
        registry.mark(executing.id, PendingSellStatus.EXECUTING)
        clock.advance(seconds=120)

        assert registry.expire_stale() == 1
        assert waiting.status == PendingSellStatus.EXPIRED
        assert executing.status == PendingSellStatus.EXECUTING

    def test_mark_executed_sets_signature_and_time(self):
        clock = FakeClock()
        registry = PendingSellRegistry(clock=clock)
        pending = registry.put(_sell())
        registry.mark(pending.id, PendingSellStatus.EXECUTED, signature="sig-9")
        assert pending.signature == "sig-9"
        assert pending.executed_at == T0
        assert pending.is_active is False

    def test_list_by_owner(self):
        registry = PendingSellRegistry(clock=FakeClock())
        active = registry.put(_sell(asset="a"))
        done = registry.put(_sell(asset="b"))
        registry.mark(done.id, PendingSellStatus.CANCELLED)
        registry.put(_sell(owner="owner-b"))

        assert [p.id for p in registry.list_by_owner("owner-a")] == [active.id]
        assert len(registry.list_by_owner("owner-a", include_inactive=True)) == 2

    def test_cleanup_drops_old_terminal_entries(self):
        clock = FakeClock()
        registry = PendingSellRegistry(clock=clock)
        old_done = registry.put(_sell(asset="a"))
        registry.mark(old_done.id, PendingSellStatus.EXECUTED)
        old_active = registry.put(_sell(asset="b"))
        clock.advance(days=8)

        assert registry.cleanup(older_than_days=7) == 1
        assert registry.get(old_done.id) is None
        assert registry.get(old_active.id) is not None

    def test_capacity_prefers_evicting_inactive(self):
        registry = PendingSellRegistry(capacity=2, clock=FakeClock())
        active = registry.put(_sell(asset="a", created_at=T0))
        done = registry.put(_sell(asset="b", created_at=T0 + timedelta(seconds=1)))
        registry.mark(done.id, PendingSellStatus.CANCELLED)
        registry.put(_sell(asset="c", created_at=T0 + timedelta(seconds=2)))

        assert registry.get(done.id) is None
        assert registry.get(active.id) is not None

    def test_statistics(self):
        registry = PendingSellRegistry(clock=FakeClock())
        registry.put(_sell(asset="a"))
        done = registry.put(_sell(asset="b"))
        registry.mark(done.id, PendingSellStatus.EXECUTED)

        stats = registry.get_statistics()
        assert stats["pending"] == 1
        assert stats["executed"] == 1
        assert stats["expired"] == 0
        assert stats["total"] == 2

    def test_to_dict(self):
        data = _sell().to_dict()
        assert data["status"] == "pending"
        assert data["expires_at"] == (T0 + timedelta(seconds=90)).isoformat()
        assert data["executed_at"] is None
