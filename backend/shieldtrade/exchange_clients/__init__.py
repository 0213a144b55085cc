"""
Collaborator adapters.

The engine depends on the abstract interfaces in base.py; concrete adapters:

- DexScreenerClient: token prices in SOL
- JupiterClient: swap quotes and unsigned swap transactions
- SolanaLedgerClient: signing and submission over Solana RPC
- ShieldedPoolClient: shielded balance, private funding and deposits
"""

from shieldtrade.exchange_clients.base import (  # noqa: F401
    LedgerClient,
    PriceProvider,
    ShieldedBalanceProvider,
    SwapAggregator,
)
