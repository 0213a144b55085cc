"""Keystore model for one-time execution identities."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String

from shieldtrade.database import Base


class EphemeralWallet(Base):
    __tablename__ = "ephemeral_wallets"

    id = Column(Integer, primary_key=True, index=True)
    public_key = Column(String, nullable=False, unique=True, index=True)
    encrypted_secret = Column(String, nullable=False)  # Fernet token, key derived from wallet password
    salt = Column(String, nullable=False)  # PBKDF2 salt (urlsafe base64)
    status = Column(String, default="active")  # active, drained, burned
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
