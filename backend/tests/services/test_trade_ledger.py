"""Tests for services/trade_ledger.py"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from shieldtrade.constants import TradeSide
from shieldtrade.models import Trade
from shieldtrade.services.trade_ledger import TradeEvent, TradeLedger


def _event(**kwargs):
    params = dict(
        owner="owner", asset="mint", side=TradeSide.BUY, quantity=1000.0, amount=0.25,
        price=0.00025, fee=0.000005, signature="sig-1", asset_symbol="TKN", source="dca",
    )
    params.update(kwargs)
    return TradeEvent(**params)


class TestTradeLedger:
    @pytest.mark.asyncio
    async def test_record_writes_row(self, session_factory, db_session):
        ledger = TradeLedger(session_factory)
        trade = await ledger.record(_event())

        assert trade is not None
        rows = (await db_session.execute(select(Trade))).scalars().all()
        assert len(rows) == 1
        assert rows[0].side == "buy"
        assert rows[0].amount == 0.25
        assert rows[0].source == "dca"
        assert rows[0].timestamp is not None

    @pytest.mark.asyncio
    async def test_sell_side_stored_as_value(self, session_factory, db_session):
        await TradeLedger(session_factory).record(_event(side=TradeSide.SELL, source="exit"))
        row = (await db_session.execute(select(Trade))).scalars().one()
        assert row.side == "sell"

    @pytest.mark.asyncio
    async def test_write_failure_returns_none(self):
        """Failure: a broken database never raises into the trade path"""
        factory = MagicMock(side_effect=RuntimeError("database is locked"))
        assert await TradeLedger(factory).record(_event()) is None
