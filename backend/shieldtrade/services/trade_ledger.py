"""
Trade ledger.

Write-only record of completed trades for cost-basis reporting. The engine
emits an event per fill and never reads the table back; a failed write is
logged and does not undo the trade it describes.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from shieldtrade.constants import TradeSide
from shieldtrade.models import Trade

logger = logging.getLogger(__name__)


@dataclass
class TradeEvent:
    owner: str
    asset: str
    side: TradeSide
    quantity: float
    amount: float  # SOL
    price: float
    fee: float
    signature: str
    asset_symbol: Optional[str] = None
    source: Optional[str] = None  # dca, exit


class TradeLedger:
    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self._session_factory = session_factory

    async def record(self, event: TradeEvent) -> Optional[Trade]:
        try:
            async with self._session_factory() as db:
                trade = Trade(
                    owner=event.owner,
                    asset=event.asset,
                    asset_symbol=event.asset_symbol,
                    side=event.side.value,
                    quantity=event.quantity,
                    amount=event.amount,
                    price=event.price,
                    fee=event.fee,
                    signature=event.signature,
                    source=event.source,
                    timestamp=datetime.utcnow(),
                )
                db.add(trade)
                await db.commit()
                return trade
        except Exception as e:
            logger.error(
                f"Failed to record {event.side.value} of {event.asset} ({event.signature}) in trade ledger: {e}",
                exc_info=True,
            )
            return None
