"""
Database Models

All model classes are re-exported here:
    from shieldtrade.models import Position, DCAOrder, ...
"""

from shieldtrade.database import Base  # noqa: F401 (re-exported for tests/conftest.py)
from shieldtrade.models.trading import DCAOrder, Position, Trade  # noqa: F401
from shieldtrade.models.wallets import EphemeralWallet  # noqa: F401
