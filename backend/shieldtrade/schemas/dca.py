"""DCA-related Pydantic schemas"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class DCAOrderCreate(BaseModel):
    owner: str
    asset: str
    asset_symbol: Optional[str] = None
    total_amount: float = Field(gt=0)  # SOL
    number_of_buys: int = Field(ge=2, le=100)
    interval_minutes: int = Field(ge=1)
    strategy_type: str = "time-based"
    exit_strategy: str = "manual"
    slippage_bps: Optional[int] = Field(default=None, ge=0)  # None: configured default
    reference_price: Optional[float] = Field(default=None, gt=0)
    is_private: bool = False


class BuyRecordResponse(BaseModel):
    buy_number: int
    timestamp: str
    sol_amount: float
    token_amount: float
    price: float
    signature: str
    asset: str
    execution_identity: Optional[str] = None


class DCAOrderResponse(BaseModel):
    id: str
    owner: str
    asset: str
    asset_symbol: Optional[str] = None
    strategy_type: str
    total_amount: float
    number_of_buys: int
    interval_minutes: int
    exit_strategy: str
    slippage_bps: int
    is_private: bool
    reference_price: Optional[float] = None
    current_buy: int
    status: str
    last_buy_at: Optional[datetime] = None
    next_buy_at: Optional[datetime] = None
    executed_buys: List[BuyRecordResponse] = []
    created_at: datetime
    updated_at: datetime

    # Derived figures
    total_spent: float = 0.0
    remaining_budget: float = 0.0
    average_entry_price: float = 0.0
    progress_percent: float = 0.0
    estimated_completion: Optional[str] = None

    class Config:
        from_attributes = True


class PendingBuyResponse(BaseModel):
    order_id: str
    buy_number: int
    owner: str
    asset: str
    asset_symbol: Optional[str] = None
    sol_amount: float
    price: Optional[float] = None
    estimated_tokens: Optional[float] = None
    slippage_bps: int
    exit_strategy: str
    created_at: str


class ConfirmBuyRequest(BaseModel):
    signature: str
    token_amount: float = Field(gt=0)
    sol_amount: float = Field(gt=0)
    price: Optional[float] = Field(default=None, gt=0)
    execution_identity: Optional[str] = None
