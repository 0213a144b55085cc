"""
Shielded pool relayer adapter.

The relayer holds per-wallet shielded SOL balances. Requests that move
shielded funds are authorised by a detached ed25519 signature over a
canonical message, made with the sender's keypair. Deposits return an
unsigned transaction that is signed and submitted through the ledger client.

Endpoints:
  GET  /balance/{wallet}?token=SOL
  POST /upload-proof         (sender_wallet, token, amount, nonce, signature)
  POST /external-transfer    (sender_wallet, recipient_wallet, token, nonce, relayer_fee, signature)
  POST /deposit              (wallet, amount) -> unsigned_tx_base64
"""

import json
import logging
import secrets
from typing import Any, Dict, Optional

import httpx
from solders.keypair import Keypair

from shieldtrade.constants import LAMPORTS_PER_SOL
from shieldtrade.exceptions import ExternalServiceError
from shieldtrade.exchange_clients.base import LedgerClient, ShieldedBalanceProvider

logger = logging.getLogger(__name__)

RELAYER_FEE_RATE = 0.01  # 1% of the transferred amount
TOKEN = "SOL"


def sol_to_lamports(amount_sol: float) -> int:
    return int(round(amount_sol * LAMPORTS_PER_SOL))


def sign_request(signer: Keypair, fields: Dict[str, Any]) -> str:
    """Sign the canonical JSON form of fields; returns the base58 signature."""
    message = json.dumps(fields, sort_keys=True, separators=(",", ":")).encode()
    return str(signer.sign_message(message))


class ShieldedPoolClient(ShieldedBalanceProvider):
    def __init__(self, base_url: str, ledger: LedgerClient, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.ledger = ledger
        self.timeout = timeout

    async def _call(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{endpoint}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.request(method, url, **kwargs)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Relayer HTTP {e.response.status_code} for {endpoint}: {e.response.text[:200]}")
            raise ExternalServiceError(f"Shielded relayer HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error(f"Relayer request failed for {endpoint}: {e}")
            raise ExternalServiceError(f"Shielded relayer unavailable: {e}") from e

    async def get_balance(self, wallet: str) -> float:
        data = await self._call("GET", f"/balance/{wallet}", params={"token": TOKEN})
        return int(data.get("available", 0)) / LAMPORTS_PER_SOL

    async def fund(self, sender: Keypair, recipient: str, amount_sol: float) -> str:
        """Shielded -> public transfer: upload a proof, then request the external transfer."""
        sender_wallet = str(sender.pubkey())
        amount = sol_to_lamports(amount_sol)
        logger.info(f"Funding {recipient[:8]}... with {amount_sol} SOL from shielded balance")

        proof_fields = {
            "sender_wallet": sender_wallet,
            "token": TOKEN,
            "amount": amount,
            "nonce": secrets.randbelow(10**9),
        }
        proof = await self._call(
            "POST", "/upload-proof",
            json={**proof_fields, "signature": sign_request(sender, proof_fields)},
        )
        if not proof.get("success"):
            raise ExternalServiceError("Relayer rejected proof upload")

        transfer_fields = {
            "sender_wallet": sender_wallet,
            "recipient_wallet": recipient,
            "token": TOKEN,
            "nonce": proof.get("nonce", proof_fields["nonce"]),
            "relayer_fee": int(amount * RELAYER_FEE_RATE),
        }
        transfer = await self._call(
            "POST", "/external-transfer",
            json={**transfer_fields, "signature": sign_request(sender, transfer_fields)},
        )
        signature: Optional[str] = transfer.get("tx_signature")
        if not transfer.get("success") or not signature:
            raise ExternalServiceError("Private transfer failed")

        logger.info(f"Funding successful: {signature}")
        return signature

    async def deposit(self, signer: Keypair, amount_sol: float) -> str:
        wallet = str(signer.pubkey())
        data = await self._call(
            "POST", "/deposit",
            json={"wallet": wallet, "amount": sol_to_lamports(amount_sol)},
        )
        payload = data.get("unsigned_tx_base64")
        if not payload:
            raise ExternalServiceError("No deposit transaction returned by relayer")

        signature = await self.ledger.sign_and_submit(payload, signer)
        logger.info(f"Shielded {amount_sol} SOL from {wallet[:8]}...: {signature}")
        return signature
