"""
Jupiter swap aggregator adapter.

Uses the free-tier lite API:
  GET  /quote  - best route for an exact-in swap
  POST /swap   - unsigned versioned transaction for a quote (base64)
"""

import logging
from typing import Any, Dict, Optional

import httpx

from shieldtrade.exceptions import ExternalServiceError
from shieldtrade.exchange_clients.base import SwapAggregator

logger = logging.getLogger(__name__)


class JupiterClient(SwapAggregator):
    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client: Optional[httpx.AsyncClient] = None

    async def initialize(self):
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
            logger.debug("Jupiter client initialized")

    async def close(self):
        if self.client:
            await self.client.aclose()
            self.client = None

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> Dict[str, Any]:
        await self.initialize()
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": slippage_bps,
            "onlyDirectRoutes": "false",
            "asLegacyTransaction": "false",
        }
        try:
            response = await self.client.get(f"{self.base_url}/quote", params=params)
            response.raise_for_status()
            quote = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Jupiter quote failed: HTTP {e.response.status_code} {e.response.text[:200]}")
            raise ExternalServiceError(f"Jupiter quote failed: HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error(f"Jupiter quote failed: {e}")
            raise ExternalServiceError(f"Jupiter quote failed: {e}") from e

        if not quote or "outAmount" not in quote:
            raise ExternalServiceError("No quote data received from Jupiter")

        logger.debug(f"Jupiter quote: {amount} {input_mint[:8]}... -> {quote['outAmount']} {output_mint[:8]}...")
        return quote

    async def build_swap(self, quote: Dict[str, Any], user_public_key: str) -> str:
        await self.initialize()
        payload = {
            "quoteResponse": quote,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
            "prioritizationFeeLamports": "auto",
        }
        try:
            response = await self.client.post(f"{self.base_url}/swap", json=payload)
            response.raise_for_status()
            swap_data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Jupiter swap failed: HTTP {e.response.status_code} {e.response.text[:200]}")
            raise ExternalServiceError(f"Jupiter swap failed: HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error(f"Jupiter swap failed: {e}")
            raise ExternalServiceError(f"Jupiter swap failed: {e}") from e

        transaction_b64 = swap_data.get("swapTransaction")
        if not transaction_b64:
            raise ExternalServiceError("No swap transaction received from Jupiter")

        logger.debug(f"Jupiter swap transaction generated for {user_public_key[:8]}...")
        return transaction_b64
