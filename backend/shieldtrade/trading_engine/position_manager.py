"""
Position Store

Durable table of positions keyed by (owner, asset). Handles:
- Opening a position on the first confirmed buy
- Weighted-average re-pricing on subsequent buys
- Price refresh (current profit, monotonic peak profit)
- Staged exits and final close

Every mutation for one (owner, asset) pair runs under a per-key lock, so two
concurrent buys or an exit racing a buy never interleave their read-modify-write.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shieldtrade.constants import OPEN_POSITION_STATUSES, PositionStatus
from shieldtrade.exceptions import InvariantViolationError, NotFoundError, ValidationError
from shieldtrade.models import Position
from shieldtrade.strategies.exit_strategies import get_strategy
from shieldtrade.trading_engine.key_locks import KeyedLock

logger = logging.getLogger(__name__)

# Fields callers may overwrite through update_position()
REFRESHABLE_FIELDS = ("asset_symbol", "current_price", "current_profit", "peak_profit")


def weighted_entry_price(old_cost: float, old_qty: float, added_cost: float, added_qty: float) -> float:
    """New entry price after adding added_qty tokens for added_cost SOL."""
    total_qty = old_qty + added_qty
    if total_qty <= 0:
        return 0.0
    return (old_cost + added_cost) / total_qty


async def _get_open(db: AsyncSession, owner: str, asset: str) -> Optional[Position]:
    query = select(Position).where(
        Position.owner == owner,
        Position.asset == asset,
        Position.status.in_(OPEN_POSITION_STATUSES),
    )
    result = await db.execute(query)
    return result.scalars().first()


class PositionStore:
    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self._session_factory = session_factory
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_position(self, owner: str, asset: str) -> Optional[Position]:
        """Return the open position for (owner, asset), if any."""
        async with self._session_factory() as db:
            return await _get_open(db, owner, asset)

    async def list_by_owner(self, owner: str, include_closed: bool = True) -> List[Position]:
        async with self._session_factory() as db:
            query = select(Position).where(Position.owner == owner)
            if not include_closed:
                query = query.where(Position.status.in_(OPEN_POSITION_STATUSES))
            result = await db.execute(query.order_by(Position.entry_time.desc()))
            return list(result.scalars().all())

    async def list_open(self) -> List[Position]:
        async with self._session_factory() as db:
            query = select(Position).where(Position.status.in_(OPEN_POSITION_STATUSES))
            result = await db.execute(query)
            return list(result.scalars().all())

    async def get_statistics(self) -> dict:
        async with self._session_factory() as db:
            result = await db.execute(select(Position))
            positions = result.scalars().all()

        open_positions = [p for p in positions if p.status in OPEN_POSITION_STATUSES]
        return {
            "total": len(positions),
            "open": len(open_positions),
            "closing": sum(1 for p in positions if p.status == PositionStatus.CLOSING.value),
            "closed": len(positions) - len(open_positions),
            "private": sum(1 for p in open_positions if p.is_private),
            "open_cost_sol": sum(p.total_cost or 0.0 for p in open_positions),
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def add_position(
        self,
        owner: str,
        asset: str,
        quantity: float,
        total_cost: float,
        exit_strategy: str = "manual",
        asset_symbol: Optional[str] = None,
        is_private: bool = False,
        execution_identity: Optional[str] = None,
        entry_time: Optional[datetime] = None,
    ) -> Position:
        """
        Open a new position.

        Raises:
            ValidationError: non-positive quantity, negative cost, unknown strategy
            InvariantViolationError: an open position already exists for (owner, asset)
        """
        if quantity <= 0:
            raise ValidationError(f"Position quantity must be positive, got {quantity}")
        if total_cost < 0:
            raise ValidationError(f"Position cost must be non-negative, got {total_cost}")
        strategy = get_strategy(exit_strategy)

        async with self._locks.hold((owner, asset)):
            async with self._session_factory() as db:
                if await _get_open(db, owner, asset) is not None:
                    raise InvariantViolationError(f"Open position already exists for {owner} / {asset}")

                entry_price = total_cost / quantity
                position = Position(
                    owner=owner,
                    asset=asset,
                    asset_symbol=asset_symbol,
                    status=PositionStatus.ACTIVE.value,
                    entry_time=entry_time or datetime.utcnow(),
                    entry_price=entry_price,
                    quantity=quantity,
                    entry_quantity=quantity,
                    total_cost=total_cost,
                    exit_strategy=exit_strategy,
                    percentage_based=strategy.percentage_based,
                    exit_stages_completed=0,
                    peak_profit=0.0,
                    is_private=is_private,
                    execution_identity=execution_identity,
                    current_price=entry_price,
                    current_profit=0.0,
                )
                db.add(position)
                await db.commit()
                await db.refresh(position)

        logger.info(
            f"Opened position {asset_symbol or asset} for {owner}: "
            f"{quantity} @ {entry_price:.10f} SOL (strategy={exit_strategy}, private={is_private})"
        )
        return position

    async def add_to_position(
        self,
        owner: str,
        asset: str,
        added_quantity: float,
        added_cost: float,
        execution_price: float,
    ) -> Position:
        """
        Add a buy to an open position, re-pricing entry as a weighted average.

        The exit stage counter is preserved so a stage that already fired
        never fires again for the same position.
        """
        if added_quantity <= 0 or added_cost < 0:
            raise ValidationError("Added quantity must be positive and cost non-negative")

        async with self._locks.hold((owner, asset)):
            async with self._session_factory() as db:
                position = await _get_open(db, owner, asset)
                if position is None:
                    raise NotFoundError(f"No open position for {owner} / {asset}")

                old_qty = position.quantity or 0.0
                old_cost = position.total_cost or 0.0
                position.entry_price = weighted_entry_price(old_cost, old_qty, added_cost, added_quantity)
                position.quantity = old_qty + added_quantity
                position.entry_quantity = (position.entry_quantity or 0.0) + added_quantity
                position.total_cost = old_cost + added_cost
                position.current_price = execution_price
                position.current_profit = position.profit_percent_at(execution_price)
                position.updated_at = datetime.utcnow()
                await db.commit()
                await db.refresh(position)

        logger.info(
            f"Added {added_quantity} to {position.asset_symbol or asset} for {owner}: "
            f"new entry {position.entry_price:.10f} SOL, qty {position.quantity}"
        )
        return position

    async def update_position(self, owner: str, asset: str, **fields) -> Position:
        """Shallow-merge refreshable fields into the open position. Peak profit is never lowered."""
        unknown = set(fields) - set(REFRESHABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields not updatable: {', '.join(sorted(unknown))}")

        async with self._locks.hold((owner, asset)):
            async with self._session_factory() as db:
                position = await _get_open(db, owner, asset)
                if position is None:
                    raise NotFoundError(f"No open position for {owner} / {asset}")

                for name, value in fields.items():
                    if name == "peak_profit":
                        value = max(position.peak_profit or 0.0, value)
                    setattr(position, name, value)
                position.updated_at = datetime.utcnow()
                await db.commit()
                await db.refresh(position)
        return position

    async def refresh_price(self, owner: str, asset: str, price: float) -> Optional[Position]:
        """
        Record the latest observed price on the open position.

        Updates current price and profit and raises the peak profit when the
        new profit exceeds it. Returns None when no open position exists.
        """
        async with self._locks.hold((owner, asset)):
            async with self._session_factory() as db:
                position = await _get_open(db, owner, asset)
                if position is None:
                    return None

                profit = position.profit_percent_at(price)
                position.current_price = price
                position.current_profit = profit
                if profit > (position.peak_profit or 0.0):
                    position.peak_profit = profit
                await db.commit()
                await db.refresh(position)
        return position

    async def increment_exit_stage(
        self,
        owner: str,
        asset: str,
        sold_quantity: Optional[float] = None,
    ) -> Position:
        """
        Record a completed take-profit stage.

        Quantity and cost shrink pro-rata by sold_quantity. The position moves
        to closing, or to closed once every stage of its strategy is done.
        """
        async with self._locks.hold((owner, asset)):
            async with self._session_factory() as db:
                position = await _get_open(db, owner, asset)
                if position is None:
                    raise NotFoundError(f"No open position for {owner} / {asset}")

                held = position.quantity or 0.0
                if sold_quantity is not None and held > 0:
                    sold = min(max(sold_quantity, 0.0), held)
                    remaining_ratio = (held - sold) / held
                    position.quantity = held - sold
                    position.total_cost = max(0.0, (position.total_cost or 0.0) * remaining_ratio)

                position.exit_stages_completed = (position.exit_stages_completed or 0) + 1
                stages_total = len(get_strategy(position.exit_strategy).stages)
                now = datetime.utcnow()
                if position.exit_stages_completed >= stages_total or position.quantity <= 0:
                    position.status = PositionStatus.CLOSED.value
                    position.quantity = 0.0
                    position.total_cost = 0.0
                    position.closed_at = now
                else:
                    position.status = PositionStatus.CLOSING.value
                position.updated_at = now
                await db.commit()
                await db.refresh(position)

        logger.info(
            f"Exit stage {position.exit_stages_completed} done for {position.asset_symbol or asset} "
            f"({owner}), status={position.status}, remaining qty={position.quantity}"
        )
        return position

    async def close_position(self, owner: str, asset: str) -> Position:
        """Close the open position; remaining quantity and cost are zeroed."""
        async with self._locks.hold((owner, asset)):
            async with self._session_factory() as db:
                position = await _get_open(db, owner, asset)
                if position is None:
                    raise NotFoundError(f"No open position for {owner} / {asset}")

                now = datetime.utcnow()
                position.status = PositionStatus.CLOSED.value
                position.quantity = 0.0
                position.total_cost = 0.0
                position.closed_at = now
                position.updated_at = now
                await db.commit()
                await db.refresh(position)

        logger.info(f"Closed position {position.asset_symbol or asset} for {owner}")
        return position
