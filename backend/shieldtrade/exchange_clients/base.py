"""
Collaborator Abstract Base Classes

Interfaces the engine talks to for everything outside its own state:
pricing, swap construction, transaction submission and the shielded balance.
Executors depend only on these, so tests substitute AsyncMock objects and
production wires the DexScreener / Jupiter / Solana RPC / relayer adapters.

Conventions:
- Amounts crossing these interfaces are in SOL or UI token units (floats)
- Prices are SOL per token
- Failures (HTTP errors, timeouts, malformed responses) are raised as
  ExternalServiceError so callers can abort the current item and retry later
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from solders.keypair import Keypair


class PriceProvider(ABC):
    @abstractmethod
    async def get_price(self, asset: str) -> Optional[float]:
        """
        Get the current price of a token in SOL.

        Returns:
            Price in SOL per token, or None if the token has no usable market
        """
        pass


class SwapAggregator(ABC):
    @abstractmethod
    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> Dict[str, Any]:
        """
        Quote a swap.

        Args:
            input_mint: Mint being sold
            output_mint: Mint being bought
            amount: Input amount in the smallest unit (lamports / raw token units)
            slippage_bps: Slippage tolerance in basis points

        Returns:
            Quote dict; must contain "inAmount" and "outAmount" as raw-unit strings
        """
        pass

    @abstractmethod
    async def build_swap(self, quote: Dict[str, Any], user_public_key: str) -> str:
        """Build an unsigned swap transaction for quote, paid by user_public_key (base64)."""
        pass

    async def close(self):
        pass


class LedgerClient(ABC):
    @abstractmethod
    async def sign_and_submit(self, payload: str, signer: Keypair) -> str:
        """Sign a base64 unsigned versioned transaction and submit it. Returns the signature."""
        pass

    @abstractmethod
    async def get_token_decimals(self, mint: str) -> int:
        pass

    async def close(self):
        pass


class ShieldedBalanceProvider(ABC):
    @abstractmethod
    async def get_balance(self, wallet: str) -> float:
        """Available shielded balance of wallet, in SOL."""
        pass

    @abstractmethod
    async def fund(self, sender: Keypair, recipient: str, amount_sol: float) -> str:
        """Pay amount_sol from sender's shielded balance to a public recipient. Returns the signature."""
        pass

    @abstractmethod
    async def deposit(self, signer: Keypair, amount_sol: float) -> str:
        """Move amount_sol from signer's public balance into its shielded balance."""
        pass
