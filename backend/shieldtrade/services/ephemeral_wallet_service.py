"""
Ephemeral Wallet Service

Keystore for one-time execution identities used by private trades. Each
identity is a fresh Solana keypair whose base58 secret is encrypted with a
key derived from the wallet password before it touches the database.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from cryptography.fernet import InvalidToken
from solders.keypair import Keypair
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shieldtrade.constants import EphemeralWalletStatus
from shieldtrade.encryption import decrypt_with_password, encrypt_with_password
from shieldtrade.models import EphemeralWallet

logger = logging.getLogger(__name__)


class EphemeralWalletService:
    def __init__(self, session_factory: Callable[[], AsyncSession], password: str):
        self._session_factory = session_factory
        self._password = password

    async def create_wallet(self) -> Keypair:
        """Generate, encrypt and store a new one-time keypair."""
        keypair = Keypair()
        public_key = str(keypair.pubkey())
        token, salt = encrypt_with_password(str(keypair), self._password)

        async with self._session_factory() as db:
            db.add(EphemeralWallet(
                public_key=public_key,
                encrypted_secret=token,
                salt=salt,
                status=EphemeralWalletStatus.ACTIVE.value,
            ))
            await db.commit()

        logger.info(f"Created ephemeral wallet {public_key}")
        return keypair

    async def get_wallet(self, public_key: str) -> Optional[Keypair]:
        """Load and decrypt a stored keypair. None if unknown or undecryptable."""
        async with self._session_factory() as db:
            record = await self._get_record(db, public_key)
        if record is None:
            return None

        try:
            secret = decrypt_with_password(record.encrypted_secret, record.salt, self._password)
        except InvalidToken:
            logger.error(f"Failed to decrypt ephemeral wallet {public_key}")
            return None
        return Keypair.from_base58_string(secret)

    async def mark_drained(self, public_key: str) -> bool:
        async with self._session_factory() as db:
            record = await self._get_record(db, public_key)
            if record is None:
                return False
            record.status = EphemeralWalletStatus.DRAINED.value
            record.updated_at = datetime.utcnow()
            await db.commit()
        logger.info(f"Ephemeral wallet {public_key} marked drained")
        return True

    @staticmethod
    async def _get_record(db: AsyncSession, public_key: str) -> Optional[EphemeralWallet]:
        result = await db.execute(select(EphemeralWallet).where(EphemeralWallet.public_key == public_key))
        return result.scalars().first()
