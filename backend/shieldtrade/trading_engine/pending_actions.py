"""
Pending Action Staging

In-memory registries for actions that wait on the owner's signature:

- PendingBuyRegistry: next DCA buy suggestions keyed by (order_id, buy_number).
  Re-staging the same key overwrites; entries are dropped after the TTL.
- PendingSellRegistry: unsigned exit transactions keyed by UUID. At most one
  active (pending/executing) sell per (owner, asset). A prepared payload
  stops being valid after the validity window and is marked expired.

Entries are not persisted. After a restart the schedulers rebuild whatever
is still needed from the order and position stores, so a suggestion can be
lost but never executed twice by one process.

Registries are bounded: at capacity the oldest entry is evicted (terminal
sells first). All methods are synchronous, so each call is atomic on the
event loop.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from shieldtrade.constants import ACTIVE_PENDING_SELL_STATUSES, PendingSellStatus
from shieldtrade.exceptions import InvariantViolationError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass
class PendingBuy:
    order_id: str
    buy_number: int  # 1-based
    owner: str
    asset: str
    asset_symbol: Optional[str]
    sol_amount: float
    price: Optional[float]  # Price used for sizing, SOL per token
    estimated_tokens: Optional[float]
    slippage_bps: int
    exit_strategy: str
    created_at: datetime

    @property
    def key(self) -> Tuple[str, int]:
        return (self.order_id, self.buy_number)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass
class PendingSell:
    owner: str
    asset: str
    asset_symbol: Optional[str]
    sell_percentage: float
    quantity: float  # Tokens to sell
    current_price: float
    entry_price: float
    current_profit: float
    estimated_sol: float
    reason: str
    exit_strategy: str
    slippage_bps: int
    payload: str  # Base64 unsigned versioned transaction
    created_at: datetime
    expires_at: datetime
    stage_index: Optional[int] = None
    status: PendingSellStatus = PendingSellStatus.PENDING
    signature: Optional[str] = None
    executed_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_PENDING_SELL_STATUSES

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        for name in ("created_at", "expires_at", "executed_at"):
            value = getattr(self, name)
            data[name] = value.isoformat() if value else None
        return data


class PendingBuyRegistry:
    def __init__(
        self,
        ttl_seconds: int = 3600,
        capacity: int = 1000,
        clock: Clock = datetime.utcnow,
    ):
        self._entries: Dict[Tuple[str, int], PendingBuy] = {}
        self._ttl = timedelta(seconds=ttl_seconds)
        self._capacity = capacity
        self._clock = clock

    def put(self, pending: PendingBuy) -> PendingBuy:
        """Stage a buy, replacing any entry for the same (order_id, buy_number)."""
        self.purge_expired()
        if pending.key not in self._entries and len(self._entries) >= self._capacity:
            oldest = min(self._entries.values(), key=lambda p: p.created_at)
            del self._entries[oldest.key]
            logger.warning(f"Pending buy registry full, evicted {oldest.key}")
        self._entries[pending.key] = pending
        return pending

    def get(self, order_id: str, buy_number: int) -> Optional[PendingBuy]:
        pending = self._entries.get((order_id, buy_number))
        if pending is not None and self._is_expired(pending):
            del self._entries[pending.key]
            return None
        return pending

    def remove(self, order_id: str, buy_number: int) -> bool:
        return self._entries.pop((order_id, buy_number), None) is not None

    def remove_for_order(self, order_id: str) -> int:
        keys = [key for key in self._entries if key[0] == order_id]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def list_by_owner(self, owner: str) -> List[PendingBuy]:
        self.purge_expired()
        return sorted(
            (p for p in self._entries.values() if p.owner == owner),
            key=lambda p: p.created_at,
        )

    def purge_expired(self) -> int:
        expired = [key for key, p in self._entries.items() if self._is_expired(p)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info(f"Purged {len(expired)} expired pending buys")
        return len(expired)

    def _is_expired(self, pending: PendingBuy) -> bool:
        return self._clock() - pending.created_at >= self._ttl

    def __len__(self) -> int:
        return len(self._entries)


class PendingSellRegistry:
    def __init__(
        self,
        validity_seconds: int = 90,
        capacity: int = 1000,
        clock: Clock = datetime.utcnow,
    ):
        self._entries: Dict[str, PendingSell] = {}
        self.validity = timedelta(seconds=validity_seconds)
        self._capacity = capacity
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def put(self, pending: PendingSell) -> PendingSell:
        """
        Store a new pending sell.

        The caller is responsible for cancelling any existing active sell for
        the same (owner, asset) first; storing a second active one is refused.
        """
        existing = self.get_active(pending.owner, pending.asset)
        if existing is not None and existing.id != pending.id:
            raise InvariantViolationError(f"Active pending sell {existing.id} already exists for {pending.owner} / {pending.asset}")
        if pending.id not in self._entries and len(self._entries) >= self._capacity:
            self._evict_one()
        self._entries[pending.id] = pending
        return pending

    def get(self, sell_id: str) -> Optional[PendingSell]:
        return self._entries.get(sell_id)

    def get_active(self, owner: str, asset: str) -> Optional[PendingSell]:
        for pending in self._entries.values():
            if pending.owner == owner and pending.asset == asset and pending.is_active:
                return pending
        return None

    def is_stale(self, pending: PendingSell) -> bool:
        return self._clock() >= pending.expires_at

    def mark(self, sell_id: str, status: PendingSellStatus, signature: Optional[str] = None) -> PendingSell:
        pending = self._entries[sell_id]
        pending.status = status
        if signature is not None:
            pending.signature = signature
        if status == PendingSellStatus.EXECUTED:
            pending.executed_at = self._clock()
        return pending

    def remove(self, sell_id: str) -> bool:
        """Remove unconditionally, returning whether an entry existed."""
        return self._entries.pop(sell_id, None) is not None

    def list_by_owner(self, owner: str, include_inactive: bool = False) -> List[PendingSell]:
        return sorted(
            (
                p for p in self._entries.values()
                if p.owner == owner and (include_inactive or p.is_active)
            ),
            key=lambda p: p.created_at,
        )

    def expire_stale(self) -> int:
        """Mark pending entries whose payload has outlived the validity window as expired."""
        now = self._clock()
        expired = 0
        for pending in self._entries.values():
            if pending.status == PendingSellStatus.PENDING and now >= pending.expires_at:
                pending.status = PendingSellStatus.EXPIRED
                expired += 1
        if expired:
            logger.info(f"Expired {expired} stale pending sells")
        return expired

    def cleanup(self, older_than_days: int = 7) -> int:
        """Drop executed/cancelled/expired entries older than the retention window."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        old = [
            sell_id for sell_id, p in self._entries.items()
            if not p.is_active and p.created_at < cutoff
        ]
        for sell_id in old:
            del self._entries[sell_id]
        return len(old)

    def get_statistics(self) -> dict:
        stats = {status.value: 0 for status in PendingSellStatus}
        for pending in self._entries.values():
            stats[pending.status.value] += 1
        stats["total"] = len(self._entries)
        return stats

    def _evict_one(self):
        inactive = [p for p in self._entries.values() if not p.is_active]
        victim = min(inactive or self._entries.values(), key=lambda p: p.created_at)
        del self._entries[victim.id]
        logger.warning(f"Pending sell registry full, evicted {victim.id} ({victim.status.value})")

    def __len__(self) -> int:
        return len(self._entries)
