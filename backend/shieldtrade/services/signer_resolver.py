"""
Signer resolution.

Decides who signs an action:
- the custodial bot wallet, when a secret is configured (auto-execution)
- a position's one-time execution identity, for private positions
- nobody, in which case the action is staged for the owner to sign
"""

import logging
from typing import Optional

from solders.keypair import Keypair

from shieldtrade.encryption import decrypt_value, is_encrypted
from shieldtrade.services.ephemeral_wallet_service import EphemeralWalletService

logger = logging.getLogger(__name__)


class SignerResolver:
    def __init__(self, bot_wallet_secret: str, keystore: Optional[EphemeralWalletService] = None):
        self._keystore = keystore
        self._custodial: Optional[Keypair] = None
        if bot_wallet_secret:
            secret = decrypt_value(bot_wallet_secret) if is_encrypted(bot_wallet_secret) else bot_wallet_secret
            self._custodial = Keypair.from_base58_string(secret)
            logger.info(f"Custodial wallet loaded: {self._custodial.pubkey()}")
        else:
            logger.info("No custodial wallet configured - actions will be staged for signing")

    @property
    def custodial(self) -> Optional[Keypair]:
        return self._custodial

    @property
    def has_custodial(self) -> bool:
        return self._custodial is not None

    @property
    def keystore(self) -> Optional[EphemeralWalletService]:
        return self._keystore

    async def resolve_for_position(self, position) -> Optional[Keypair]:
        """
        Signer for a sell from position.

        Private positions are signed by their one-time identity; a missing or
        undecryptable identity yields None so the sell is staged instead.
        """
        if self._custodial is None:
            return None
        if position.is_private and position.execution_identity:
            if self._keystore is None:
                logger.warning(f"Private position {position.id} but no keystore configured")
                return None
            signer = await self._keystore.get_wallet(position.execution_identity)
            if signer is None:
                logger.warning(f"Execution identity {position.execution_identity} unavailable for position {position.id}")
            return signer
        return self._custodial
