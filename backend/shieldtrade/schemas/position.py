"""Position and exit-related Pydantic schemas"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class PositionResponse(BaseModel):
    id: int
    owner: str
    asset: str
    asset_symbol: Optional[str] = None
    status: str
    entry_time: datetime
    entry_price: float  # SOL per token
    quantity: float
    entry_quantity: float
    total_cost: float  # SOL
    exit_strategy: str
    percentage_based: bool
    exit_stages_completed: int
    peak_profit: float
    is_private: bool
    execution_identity: Optional[str] = None
    current_price: Optional[float] = None
    current_profit: Optional[float] = None
    closed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PendingSellResponse(BaseModel):
    id: str
    owner: str
    asset: str
    asset_symbol: Optional[str] = None
    sell_percentage: float
    quantity: float
    current_price: float
    entry_price: float
    current_profit: float
    estimated_sol: float
    reason: str
    exit_strategy: str
    slippage_bps: int
    payload: str  # Base64 unsigned transaction for the owner to sign
    status: str
    signature: Optional[str] = None
    stage_index: Optional[int] = None
    created_at: str
    expires_at: str
    executed_at: Optional[str] = None


class ExecuteSellRequest(BaseModel):
    signature: str
