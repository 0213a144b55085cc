"""
Engine context dataclass: bundles the stores and collaborators threaded
through the buy and exit executors.
"""

from dataclasses import dataclass
from typing import Optional

from shieldtrade.config import Settings
from shieldtrade.exchange_clients.base import (
    LedgerClient,
    PriceProvider,
    ShieldedBalanceProvider,
    SwapAggregator,
)
from shieldtrade.services.notifier import Notifier
from shieldtrade.services.shutdown_manager import ShutdownManager
from shieldtrade.services.signer_resolver import SignerResolver
from shieldtrade.services.trade_ledger import TradeLedger
from shieldtrade.trading_engine.dca_order_manager import DCAOrderStore
from shieldtrade.trading_engine.pending_actions import PendingBuyRegistry, PendingSellRegistry
from shieldtrade.trading_engine.position_manager import PositionStore


@dataclass
class EngineContext:
    settings: Settings
    positions: PositionStore
    orders: DCAOrderStore
    pending_buys: PendingBuyRegistry
    pending_sells: PendingSellRegistry
    prices: PriceProvider
    aggregator: SwapAggregator
    ledger: LedgerClient
    signers: SignerResolver
    notifier: Notifier
    trade_ledger: TradeLedger
    shutdown: ShutdownManager
    shielded: Optional[ShieldedBalanceProvider] = None  # None disables the private path
