"""
Solana RPC ledger client.

Signs unsigned versioned transactions (as returned by the swap aggregator or
the shielded-pool relayer) with a solders Keypair and submits them through
solana-py's AsyncClient. Sending is retried a bounded number of times, a
transaction the node accepted is never resent, and every RPC call is wrapped
in a timeout.
"""

import asyncio
import base64
import logging
from typing import Dict, Optional

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from shieldtrade.constants import SOL_DECIMALS, SOL_MINT
from shieldtrade.exceptions import ExternalServiceError, TransactionUnconfirmedError
from shieldtrade.exchange_clients.base import LedgerClient

logger = logging.getLogger(__name__)

LANDED_STATUSES = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)


def sign_payload(payload: str, signer: Keypair) -> VersionedTransaction:
    """Decode a base64 unsigned transaction and sign its message with signer."""
    raw = VersionedTransaction.from_bytes(base64.b64decode(payload))
    return VersionedTransaction(raw.message, [signer])


class SolanaLedgerClient(LedgerClient):
    def __init__(
        self,
        rpc_url: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        confirm: bool = True,
    ):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.confirm = confirm
        self._client: Optional[AsyncClient] = None
        self._decimals: Dict[str, int] = {SOL_MINT: SOL_DECIMALS}

    def _get_client(self) -> AsyncClient:
        if self._client is None:
            self._client = AsyncClient(self.rpc_url, commitment=Confirmed)
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def _landed_status(self, signature: Signature):
        """Return the RPC status of signature, or None when unknown or unreadable."""
        try:
            resp = await asyncio.wait_for(
                self._get_client().get_signature_statuses([signature]),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Timed out reading status of {signature}")
            return None
        except Exception as e:
            logger.warning(f"Failed to read status of {signature}: {e}")
            return None
        return resp.value[0] if resp.value else None

    async def _settle(self, signature: Signature) -> str:
        """Resolve a submitted transaction whose confirmation did not come back in time."""
        status = await self._landed_status(signature)
        if status is not None and status.err is not None:
            raise ExternalServiceError(f"Transaction {signature} failed on chain: {status.err}")
        if status is not None and status.confirmation_status in LANDED_STATUSES:
            logger.info(f"Transaction {signature} landed ({status.confirmation_status})")
            return str(signature)
        raise TransactionUnconfirmedError(str(signature))

    async def sign_and_submit(self, payload: str, signer: Keypair) -> str:
        """
        Sign and send payload, then wait for confirmation.

        Only the send is retried. Once a node has accepted the transaction it
        is never sent again: a confirmation timeout is resolved by reading the
        signature status, and raises TransactionUnconfirmedError when the
        outcome is still unknown.
        """
        try:
            tx = sign_payload(payload, signer)
        except ValueError as e:
            raise ExternalServiceError(f"Malformed transaction payload: {e}") from e

        client = self._get_client()
        opts = TxOpts(skip_preflight=False, preflight_commitment=Confirmed, max_retries=self.max_retries)
        last_error: Optional[Exception] = None
        signature: Optional[Signature] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                resp = await asyncio.wait_for(
                    client.send_raw_transaction(bytes(tx), opts=opts),
                    timeout=self.timeout,
                )
                signature = resp.value
                logger.info(f"Submitted transaction {signature} (attempt {attempt})")
                break
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(f"Transaction submit timed out after {self.timeout}s (attempt {attempt})")
            except Exception as e:
                last_error = e
                logger.warning(f"Transaction submit failed (attempt {attempt}/{self.max_retries}): {e}")
            if attempt < self.max_retries:
                await asyncio.sleep(0.5 * attempt)

        if signature is None:
            # A send that timed out (or an "already processed" resend) may still have landed
            local_signature = tx.signatures[0]
            status = await self._landed_status(local_signature)
            if status is not None and status.err is None and status.confirmation_status in LANDED_STATUSES:
                logger.info(f"Transaction {local_signature} landed despite submit errors")
                return str(local_signature)
            raise ExternalServiceError(
                f"Transaction submission failed after {self.max_retries} attempts: {last_error}"
            )

        if not self.confirm:
            return str(signature)
        try:
            await asyncio.wait_for(
                client.confirm_transaction(signature, commitment=Confirmed),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Confirmation of {signature} timed out after {self.timeout}s, checking status")
            return await self._settle(signature)
        except Exception as e:
            logger.warning(f"Confirmation of {signature} failed: {e}, checking status")
            return await self._settle(signature)
        return str(signature)

    async def get_token_decimals(self, mint: str) -> int:
        if mint in self._decimals:
            return self._decimals[mint]
        try:
            resp = await asyncio.wait_for(
                self._get_client().get_token_supply(Pubkey.from_string(mint)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExternalServiceError(f"Timed out reading decimals for {mint}") from e
        except Exception as e:
            raise ExternalServiceError(f"Failed to read decimals for {mint}: {e}") from e

        decimals = resp.value.decimals
        self._decimals[mint] = decimals
        return decimals
