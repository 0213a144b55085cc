"""Trading models: positions, DCA orders, trades."""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    JSON,
    String,
)

from shieldtrade.database import Base


class Position(Base):
    """
    One holding of a single asset for a single owner.

    At most one open (active/closing) position exists per (owner, asset).
    Closed positions are kept for history and never deleted.
    """
    __tablename__ = "positions"
    __table_args__ = (Index("ix_positions_owner_asset_status", "owner", "asset", "status"),)

    id = Column(Integer, primary_key=True, index=True)
    owner = Column(String, nullable=False, index=True)  # Wallet public key of the owner
    asset = Column(String, nullable=False, index=True)  # Token mint address
    asset_symbol = Column(String, nullable=True)  # Display symbol (e.g., "BONK")
    status = Column(String, default="active")  # active, closing, closed

    # Entry accounting (SOL denominated)
    entry_time = Column(DateTime, default=datetime.utcnow)
    entry_price = Column(Float, nullable=False)  # total_cost / quantity, SOL per token
    quantity = Column(Float, nullable=False, default=0.0)  # Tokens currently held
    entry_quantity = Column(Float, nullable=False, default=0.0)  # Tokens ever acquired (stage sizing base)
    total_cost = Column(Float, nullable=False, default=0.0)  # SOL paid for the held quantity

    # Exit strategy state
    exit_strategy = Column(String, nullable=False, default="manual")
    percentage_based = Column(Boolean, default=False)  # Copied from the strategy at creation
    exit_stages_completed = Column(Integer, default=0)
    peak_profit = Column(Float, default=0.0)  # Highest observed profit %, never lowered while open

    # Private execution
    is_private = Column(Boolean, default=False)
    execution_identity = Column(String, nullable=True)  # One-time wallet public key

    # Last observed market data (informational)
    current_price = Column(Float, nullable=True)
    current_profit = Column(Float, nullable=True)

    closed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def is_open(self) -> bool:
        return self.status in ("active", "closing")

    def profit_percent_at(self, price: float) -> float:
        """Profit % of this position if valued at price."""
        if not self.entry_price or self.entry_price <= 0:
            return 0.0
        return (price - self.entry_price) / self.entry_price * 100


class DCAOrder(Base):
    """
    A plan to acquire one asset through a fixed number of buys spread over time.

    current_buy is the 0-based index of the next buy; the order is completed
    exactly when current_buy == number_of_buys.
    """
    __tablename__ = "dca_orders"

    id = Column(String, primary_key=True)  # UUID
    owner = Column(String, nullable=False, index=True)
    asset = Column(String, nullable=False)  # Target token mint
    asset_symbol = Column(String, nullable=True)
    strategy_type = Column(String, default="time-based")  # time-based, price-based
    total_amount = Column(Float, nullable=False)  # SOL budget across all buys
    number_of_buys = Column(Integer, nullable=False)
    interval_minutes = Column(Integer, nullable=False)
    exit_strategy = Column(String, nullable=False, default="manual")
    slippage_bps = Column(Integer, default=200)
    is_private = Column(Boolean, default=False)
    reference_price = Column(Float, nullable=True)  # Anchor for price-based sizing

    current_buy = Column(Integer, default=0)
    status = Column(String, default="active", index=True)  # active, paused, completed, cancelled
    last_buy_at = Column(DateTime, nullable=True)
    next_buy_at = Column(DateTime, nullable=True, index=True)

    # Append-only buy audit trail: list of dicts ordered by buy_number
    executed_buys = Column(JSON, default=list)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def remaining_buys(self) -> int:
        return max(0, self.number_of_buys - (self.current_buy or 0))


class Trade(Base):
    """Completed trade written for the cost-basis ledger. Never read back by the engine."""
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, index=True)
    owner = Column(String, nullable=False, index=True)
    asset = Column(String, nullable=False, index=True)
    asset_symbol = Column(String, nullable=True)
    side = Column(String, nullable=False)  # buy, sell
    quantity = Column(Float, nullable=False)  # Tokens
    amount = Column(Float, nullable=False)  # SOL spent (buy) or received (sell)
    price = Column(Float, nullable=False)  # SOL per token
    fee = Column(Float, default=0.0)  # Estimated network fee in SOL
    signature = Column(String, nullable=True, index=True)
    source = Column(String, nullable=True)  # dca, exit, manual
    timestamp = Column(DateTime, default=datetime.utcnow)
