"""
Encryption utilities for storing sensitive data at rest.

Two flavours, both built on Fernet (AES-128-CBC with HMAC-SHA256):

- encrypt_value / decrypt_value use the app-wide ENCRYPTION_KEY and protect
  the custodial wallet secret.
- encrypt_with_password / decrypt_with_password derive a per-record key from
  the wallet password (PBKDF2-SHA256, random salt) and protect one-time
  execution identities in the keystore.
"""

import base64
import logging
import os
from typing import Tuple

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from shieldtrade.config import settings

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 390000
SALT_LENGTH = 16

_fernet = None


def _get_fernet() -> Fernet:
    """Get or create the Fernet instance from the configured encryption key."""
    global _fernet
    if _fernet is None:
        key = settings.encryption_key
        if not key:
            raise RuntimeError(
                "ENCRYPTION_KEY not set in .env. "
                "Generate one with Fernet.generate_key() and set ENCRYPTION_KEY."
            )
        _fernet = Fernet(key.encode() if isinstance(key, str) else key)
    return _fernet


def encrypt_value(plaintext: str) -> str:
    """
    Encrypt a plaintext string and return the ciphertext as a string.

    Args:
        plaintext: The value to encrypt (e.g., a base58 wallet secret)

    Returns:
        Encrypted string (Fernet token, starts with 'gAAAAA')
    """
    if not plaintext:
        return plaintext
    f = _get_fernet()
    return f.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str) -> str:
    """Decrypt a Fernet token produced by encrypt_value()."""
    if not ciphertext:
        return ciphertext
    f = _get_fernet()
    try:
        return f.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        logger.error("Failed to decrypt value: invalid token or wrong encryption key")
        raise


def is_encrypted(value: str) -> bool:
    """Check if a value looks like a Fernet token (they start with 'gAAAAA')."""
    if not value:
        return False
    return value.startswith("gAAAAA")


def _derive_fernet(password: str, salt: bytes) -> Fernet:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return Fernet(base64.urlsafe_b64encode(kdf.derive(password.encode())))


def encrypt_with_password(plaintext: str, password: str) -> Tuple[str, str]:
    """
    Encrypt plaintext with a key derived from a password.

    Returns:
        (token, salt) where salt is urlsafe-base64 and must be stored alongside
        the token to decrypt it later.
    """
    if not password:
        raise ValueError("A password is required to encrypt execution identities")
    salt = os.urandom(SALT_LENGTH)
    token = _derive_fernet(password, salt).encrypt(plaintext.encode()).decode()
    return token, base64.urlsafe_b64encode(salt).decode()


def decrypt_with_password(token: str, salt: str, password: str) -> str:
    """Reverse encrypt_with_password(). Raises InvalidToken on a wrong password."""
    f = _derive_fernet(password, base64.urlsafe_b64decode(salt.encode()))
    try:
        return f.decrypt(token.encode()).decode()
    except InvalidToken:
        logger.error("Failed to decrypt execution identity: wrong wallet password")
        raise
