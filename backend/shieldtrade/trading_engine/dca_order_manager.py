"""
DCA Order Store

Durable table of multi-buy plans and their append-only buy audit trail.

Lifecycle:
    active <-> paused
    active -> completed (last buy recorded)
    active/paused -> cancelled

The buy index advances only through record_buy_execution(), which accepts a
record only for buy number current_buy + 1.
"""

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from shieldtrade.constants import DCAOrderStatus, DCAStrategyType
from shieldtrade.exceptions import InvariantViolationError, NotFoundError, ValidationError
from shieldtrade.models import DCAOrder
from shieldtrade.strategies.exit_strategies import is_valid_strategy
from shieldtrade.trading_engine.key_locks import KeyedLock

logger = logging.getLogger(__name__)

MIN_BUYS = 2
MAX_BUYS = 100
MIN_INTERVAL_MINUTES = 1

# Price-based sizing multiplier bounds
MIN_SIZE_FACTOR = 0.5
MAX_SIZE_FACTOR = 2.0


@dataclass
class BuyRecord:
    """One executed buy of a DCA order (stored as a dict in DCAOrder.executed_buys)."""
    buy_number: int  # 1-based
    timestamp: str  # ISO-8601 UTC
    sol_amount: float
    token_amount: float
    price: float
    signature: str
    asset: str
    execution_identity: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


# ----------------------------------------------------------------------
# Order arithmetic (pure, operate on a loaded order)
# ----------------------------------------------------------------------

def get_total_spent(order: DCAOrder) -> float:
    return sum(buy["sol_amount"] for buy in (order.executed_buys or []))


def get_remaining_budget(order: DCAOrder) -> float:
    return max(0.0, order.total_amount - get_total_spent(order))


def get_average_entry_price(order: DCAOrder) -> float:
    buys = order.executed_buys or []
    total_tokens = sum(buy["token_amount"] for buy in buys)
    if total_tokens <= 0:
        return 0.0
    return get_total_spent(order) / total_tokens


def get_progress(order: DCAOrder) -> float:
    """Percent of planned buys executed."""
    return (order.current_buy or 0) / order.number_of_buys * 100


def get_estimated_completion_time(order: DCAOrder) -> Optional[datetime]:
    remaining = order.remaining_buys
    if remaining <= 0:
        return None
    last_time = order.last_buy_at or order.created_at
    return last_time + timedelta(minutes=remaining * order.interval_minutes)


def calculate_next_buy_amount(order: DCAOrder, current_price: Optional[float] = None) -> float:
    """
    Size the next buy in SOL.

    time-based: remaining budget split evenly over remaining buys.
    price-based: the even split scaled by 1 - 2 * (price change vs reference),
    clamped to [0.5x, 2x]. A dip of 10% buys 20% more; a 10% rise buys 20%
    less. Every later buy keeps at least 0.5x of today's even split in
    reserve, and the last buy spends whatever is left, so the order always
    runs to completion. Without a reference or current price it falls back
    to the even split.
    """
    remaining_buys = order.remaining_buys
    if remaining_buys <= 0:
        return 0.0
    remaining = get_remaining_budget(order)
    if remaining_buys == 1:
        return remaining
    base_amount = remaining / remaining_buys

    if order.strategy_type != DCAStrategyType.PRICE_BASED.value:
        return base_amount
    if not current_price or not order.reference_price:
        return base_amount

    price_change = (current_price - order.reference_price) / order.reference_price
    factor = max(MIN_SIZE_FACTOR, min(MAX_SIZE_FACTOR, 1 - price_change * 2))
    reserve = base_amount * MIN_SIZE_FACTOR * (remaining_buys - 1)
    return min(base_amount * factor, remaining - reserve)


def order_summary(order: DCAOrder) -> dict:
    """Derived figures shown alongside an order in the API."""
    completion = get_estimated_completion_time(order)
    return {
        "total_spent": get_total_spent(order),
        "remaining_budget": get_remaining_budget(order),
        "average_entry_price": get_average_entry_price(order),
        "progress_percent": get_progress(order),
        "estimated_completion": completion.isoformat() if completion else None,
    }


# ----------------------------------------------------------------------
# Store
# ----------------------------------------------------------------------

class DCAOrderStore:
    def __init__(self, session_factory: Callable[[], AsyncSession], default_slippage_bps: int = 200):
        self._session_factory = session_factory
        self.default_slippage_bps = default_slippage_bps
        self._locks = KeyedLock()

    async def create_order(
        self,
        owner: str,
        asset: str,
        total_amount: float,
        number_of_buys: int,
        interval_minutes: int,
        exit_strategy: str = "manual",
        strategy_type: str = DCAStrategyType.TIME_BASED.value,
        slippage_bps: Optional[int] = None,
        asset_symbol: Optional[str] = None,
        reference_price: Optional[float] = None,
        is_private: bool = False,
    ) -> DCAOrder:
        """Create an active order whose first buy is due immediately."""
        if slippage_bps is None:
            slippage_bps = self.default_slippage_bps
        if not MIN_BUYS <= number_of_buys <= MAX_BUYS:
            raise ValidationError(f"Number of buys must be between {MIN_BUYS} and {MAX_BUYS}")
        if interval_minutes < MIN_INTERVAL_MINUTES:
            raise ValidationError(f"Interval must be at least {MIN_INTERVAL_MINUTES} minute")
        if total_amount <= 0:
            raise ValidationError("Total amount must be greater than 0")
        if slippage_bps < 0:
            raise ValidationError("Slippage must be non-negative")
        if strategy_type not in (t.value for t in DCAStrategyType):
            raise ValidationError(f"Unknown DCA strategy type: {strategy_type}")
        if not is_valid_strategy(exit_strategy):
            raise ValidationError(f"Unknown exit strategy: {exit_strategy}")

        now = datetime.utcnow()
        order = DCAOrder(
            id=str(uuid.uuid4()),
            owner=owner,
            asset=asset,
            asset_symbol=asset_symbol,
            strategy_type=strategy_type,
            total_amount=total_amount,
            number_of_buys=number_of_buys,
            interval_minutes=interval_minutes,
            exit_strategy=exit_strategy,
            slippage_bps=slippage_bps,
            is_private=is_private,
            reference_price=reference_price,
            current_buy=0,
            status=DCAOrderStatus.ACTIVE.value,
            next_buy_at=now,
            executed_buys=[],
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as db:
            db.add(order)
            await db.commit()
            await db.refresh(order)

        logger.info(
            f"Created DCA order {order.id}: {number_of_buys} buys of {asset_symbol or asset}, "
            f"{total_amount} SOL every {interval_minutes}min ({strategy_type})"
        )
        return order

    async def get_order(self, order_id: str) -> Optional[DCAOrder]:
        async with self._session_factory() as db:
            return await db.get(DCAOrder, order_id)

    async def list_by_owner(self, owner: str) -> List[DCAOrder]:
        async with self._session_factory() as db:
            query = select(DCAOrder).where(DCAOrder.owner == owner).order_by(DCAOrder.created_at.desc())
            result = await db.execute(query)
            return list(result.scalars().all())

    async def list_active(self) -> List[DCAOrder]:
        async with self._session_factory() as db:
            query = select(DCAOrder).where(DCAOrder.status == DCAOrderStatus.ACTIVE.value)
            result = await db.execute(query)
            return list(result.scalars().all())

    async def get_orders_ready_for_buy(self, now: Optional[datetime] = None) -> List[DCAOrder]:
        """Active orders whose next buy is due and that have buys remaining."""
        now = now or datetime.utcnow()
        async with self._session_factory() as db:
            query = select(DCAOrder).where(
                DCAOrder.status == DCAOrderStatus.ACTIVE.value,
                DCAOrder.next_buy_at.is_not(None),
                DCAOrder.next_buy_at <= now,
                DCAOrder.current_buy < DCAOrder.number_of_buys,
            ).order_by(DCAOrder.next_buy_at)
            result = await db.execute(query)
            return list(result.scalars().all())

    async def _transition(self, order_id: str, allowed_from: tuple, to_status: str, **changes) -> DCAOrder:
        async with self._locks.hold(order_id):
            async with self._session_factory() as db:
                order = await db.get(DCAOrder, order_id)
                if order is None:
                    raise NotFoundError(f"DCA order {order_id} not found")
                if order.status not in allowed_from:
                    raise InvariantViolationError(
                        f"DCA order {order_id} is {order.status}, cannot move to {to_status}"
                    )
                order.status = to_status
                for name, value in changes.items():
                    setattr(order, name, value)
                order.updated_at = datetime.utcnow()
                await db.commit()
                await db.refresh(order)

        logger.info(f"DCA order {order_id} -> {to_status}")
        return order

    async def pause_order(self, order_id: str) -> DCAOrder:
        return await self._transition(
            order_id, (DCAOrderStatus.ACTIVE.value,), DCAOrderStatus.PAUSED.value
        )

    async def resume_order(self, order_id: str) -> DCAOrder:
        """Resume a paused order; the next buy is one interval from now."""
        order = await self.get_order(order_id)
        if order is None:
            raise NotFoundError(f"DCA order {order_id} not found")
        next_buy_at = datetime.utcnow() + timedelta(minutes=order.interval_minutes)
        return await self._transition(
            order_id,
            (DCAOrderStatus.PAUSED.value,),
            DCAOrderStatus.ACTIVE.value,
            next_buy_at=next_buy_at,
        )

    async def cancel_order(self, order_id: str) -> DCAOrder:
        return await self._transition(
            order_id,
            (DCAOrderStatus.ACTIVE.value, DCAOrderStatus.PAUSED.value),
            DCAOrderStatus.CANCELLED.value,
            next_buy_at=None,
        )

    async def record_buy_execution(self, order_id: str, record: BuyRecord) -> DCAOrder:
        """
        Append a buy record and advance the order.

        Raises:
            NotFoundError: unknown order
            InvariantViolationError: record out of sequence, or order not accepting buys
        """
        async with self._locks.hold(order_id):
            async with self._session_factory() as db:
                order = await db.get(DCAOrder, order_id)
                if order is None:
                    raise NotFoundError(f"DCA order {order_id} not found")
                # A buy submitted before a pause/cancel still lands; only completed orders refuse
                if order.status == DCAOrderStatus.COMPLETED.value:
                    raise InvariantViolationError(f"DCA order {order_id} is already completed")
                expected = (order.current_buy or 0) + 1
                if record.buy_number != expected:
                    raise InvariantViolationError(
                        f"DCA order {order_id} expected buy #{expected}, got #{record.buy_number}"
                    )

                now = datetime.utcnow()
                # Reassign so the JSON column is flagged dirty
                order.executed_buys = list(order.executed_buys or []) + [record.to_dict()]
                order.current_buy = expected
                order.last_buy_at = now
                if order.current_buy >= order.number_of_buys:
                    order.status = DCAOrderStatus.COMPLETED.value
                    order.next_buy_at = None
                elif order.status != DCAOrderStatus.CANCELLED.value:
                    order.next_buy_at = now + timedelta(minutes=order.interval_minutes)
                order.updated_at = now
                await db.commit()
                await db.refresh(order)

        logger.info(
            f"DCA order {order_id}: recorded buy {record.buy_number}/{order.number_of_buys} "
            f"({record.sol_amount} SOL -> {record.token_amount} tokens), status={order.status}"
        )
        return order

    async def revert_buy_execution(self, order_id: str, buy_number: int, previous: DCAOrder) -> DCAOrder:
        """
        Undo record_buy_execution() for buy_number when the rest of the buy
        could not be applied.

        previous is the order as loaded before the record was appended; its
        status and schedule are restored.
        """
        async with self._locks.hold(order_id):
            async with self._session_factory() as db:
                order = await db.get(DCAOrder, order_id)
                if order is None:
                    raise NotFoundError(f"DCA order {order_id} not found")
                buys = list(order.executed_buys or [])
                if order.current_buy != buy_number or not buys or buys[-1]["buy_number"] != buy_number:
                    raise InvariantViolationError(
                        f"DCA order {order_id}: buy #{buy_number} is not the latest recorded buy"
                    )

                order.executed_buys = buys[:-1]
                order.current_buy = buy_number - 1
                order.last_buy_at = previous.last_buy_at
                order.next_buy_at = previous.next_buy_at
                # A pause/cancel that landed in between wins over the snapshot
                if order.status == DCAOrderStatus.COMPLETED.value:
                    order.status = previous.status
                order.updated_at = datetime.utcnow()
                await db.commit()
                await db.refresh(order)

        logger.warning(f"DCA order {order_id}: reverted buy #{buy_number}, status={order.status}")
        return order

    async def cleanup(self, older_than_days: int = 30) -> int:
        """Delete completed/cancelled orders created more than older_than_days ago."""
        cutoff = datetime.utcnow() - timedelta(days=older_than_days)
        async with self._session_factory() as db:
            result = await db.execute(
                delete(DCAOrder).where(
                    DCAOrder.status.in_((DCAOrderStatus.COMPLETED.value, DCAOrderStatus.CANCELLED.value)),
                    DCAOrder.created_at < cutoff,
                )
            )
            await db.commit()
            removed = result.rowcount or 0

        if removed:
            logger.info(f"Cleaned up {removed} finished DCA orders older than {older_than_days} days")
        return removed

    async def get_statistics(self) -> dict:
        async with self._session_factory() as db:
            result = await db.execute(select(DCAOrder))
            orders = result.scalars().all()

        def count(status: DCAOrderStatus) -> int:
            return sum(1 for o in orders if o.status == status.value)

        return {
            "total": len(orders),
            "active": count(DCAOrderStatus.ACTIVE),
            "paused": count(DCAOrderStatus.PAUSED),
            "completed": count(DCAOrderStatus.COMPLETED),
            "cancelled": count(DCAOrderStatus.CANCELLED),
            "total_sol_allocated": sum(o.total_amount for o in orders),
            "total_sol_spent": sum(get_total_spent(o) for o in orders),
        }
