"""
DexScreener price provider.

Public (unauthenticated) endpoint:
  GET /latest/dex/tokens/{mint}

A token trades in many pairs; the price is taken from the most liquid pair
quoted in SOL (priceNative = SOL per token). Prices are cached briefly so a
burst of ticks for the same token costs one request.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

import httpx

from shieldtrade.constants import SOL_MINT
from shieldtrade.exceptions import ExternalServiceError
from shieldtrade.exchange_clients.base import PriceProvider

logger = logging.getLogger(__name__)

PRICE_CACHE_TTL_SECONDS = 10


def select_sol_price(pairs: list) -> Optional[float]:
    """Pick priceNative from the highest-liquidity SOL-quoted pair."""
    best: Optional[Dict[str, Any]] = None
    best_liquidity = -1.0
    for pair in pairs or []:
        if (pair.get("quoteToken") or {}).get("address") != SOL_MINT:
            continue
        liquidity = float((pair.get("liquidity") or {}).get("usd") or 0)
        if liquidity > best_liquidity:
            best, best_liquidity = pair, liquidity
    if best is None or not best.get("priceNative"):
        return None
    price = float(best["priceNative"])
    return price if price > 0 else None


class DexScreenerClient(PriceProvider):
    def __init__(self, base_url: str, timeout: float = 10.0, retries: int = 2):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retries = retries
        self._cache: Dict[str, Tuple[float, datetime]] = {}

    async def get_price(self, asset: str) -> Optional[float]:
        cached = self._cache.get(asset)
        if cached and datetime.utcnow() < cached[1]:
            return cached[0]

        data = await self._request(f"/tokens/{asset}")
        price = select_sol_price(data.get("pairs"))
        if price is None:
            logger.warning(f"DexScreener: no SOL-quoted pair for {asset[:8]}...")
            return None

        self._cache[asset] = (price, datetime.utcnow() + timedelta(seconds=PRICE_CACHE_TTL_SECONDS))
        return price

    async def _request(self, endpoint: str) -> Dict[str, Any]:
        """GET with retry on transport errors and 429; HTTP errors become ExternalServiceError."""
        url = f"{self.base_url}{endpoint}"
        last_error: Optional[Exception] = None

        for attempt in range(self.retries + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.get(url)

                if resp.status_code == 429:
                    logger.warning("DexScreener rate-limited (429), backing off 1s")
                    await asyncio.sleep(1.0)
                    last_error = ExternalServiceError("DexScreener rate limit")
                    continue

                resp.raise_for_status()
                return resp.json()

            except httpx.HTTPStatusError as exc:
                logger.error(
                    f"DexScreener HTTP {exc.response.status_code} for {endpoint}: {exc.response.text[:200]}"
                )
                raise ExternalServiceError(f"DexScreener HTTP {exc.response.status_code}") from exc
            except httpx.HTTPError as exc:
                last_error = exc
                if attempt < self.retries:
                    logger.warning(f"DexScreener request failed ({endpoint}), retrying: {exc}")
                    await asyncio.sleep(0.5)

        raise ExternalServiceError(f"DexScreener unavailable: {last_error}")
