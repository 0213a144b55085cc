"""
Application Constants

Chain constants and status vocabularies shared by the stores and executors.
"""

from enum import Enum

# Wrapped SOL mint, the input/output side of every swap
SOL_MINT = "So11111111111111111111111111111111111111112"
LAMPORTS_PER_SOL = 1_000_000_000
SOL_DECIMALS = 9


class PositionStatus(str, Enum):
    ACTIVE = "active"  # Holding, no exit stage taken yet
    CLOSING = "closing"  # At least one partial exit taken
    CLOSED = "closed"  # Fully exited; kept for history


OPEN_POSITION_STATUSES = (PositionStatus.ACTIVE.value, PositionStatus.CLOSING.value)


class DCAStrategyType(str, Enum):
    TIME_BASED = "time-based"  # Equal split per buy
    PRICE_BASED = "price-based"  # Buy more when cheaper than the reference price


class DCAOrderStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PendingSellStatus(str, Enum):
    PENDING = "pending"  # Waiting for the owner to sign
    EXECUTING = "executing"  # Signature submitted, mutation in progress
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"  # Payload outlived its validity window


ACTIVE_PENDING_SELL_STATUSES = (PendingSellStatus.PENDING, PendingSellStatus.EXECUTING)


class EphemeralWalletStatus(str, Enum):
    ACTIVE = "active"
    DRAINED = "drained"  # Proceeds returned to the shielded balance
    BURNED = "burned"


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"
