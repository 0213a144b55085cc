from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite+aiosqlite:///./shieldtrade.db"
    database_echo: bool = False

    # Security
    encryption_key: str = ""  # Fernet key for secrets at rest
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Custodial bot wallet (base58 secret key, Fernet-encrypted when is_encrypted() says so)
    bot_wallet_secret: str = ""
    # Password used to encrypt one-time execution identities
    wallet_password: str = ""

    @field_validator("bot_wallet_secret", "wallet_password")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        """Strip stray whitespace/newlines picked up from .env files"""
        return v.strip() if v else v

    # External services
    solana_rpc_url: str = "https://api.mainnet-beta.solana.com"
    jupiter_api_url: str = "https://lite-api.jup.ag/swap/v1"
    dexscreener_api_url: str = "https://api.dexscreener.com/latest/dex"
    shielded_relayer_url: str = ""  # Empty disables the private execution path
    http_timeout_seconds: float = 10.0
    tx_submit_timeout_seconds: float = 30.0
    tx_max_retries: int = 3

    # Telegram notifications (optional)
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""

    # Scheduler intervals
    dca_check_interval_seconds: int = 60
    price_poll_interval_seconds: int = 5
    cleanup_interval_days: int = 7

    # Pending action staging
    pending_buy_ttl_seconds: int = 3600  # Unconfirmed buy suggestions are dropped after 1 hour
    sell_payload_validity_seconds: int = 90  # Unsigned transactions reference a blockhash (~60-90s)
    pending_registry_capacity: int = 1000
    pending_sell_retention_days: int = 7

    # Order bookkeeping
    dca_order_retention_days: int = 30
    default_buy_slippage_bps: int = 200
    exit_slippage_bps: int = 300

    # Private execution path
    private_fee_reserve_sol: float = 0.01  # Extra shielded balance required beyond the buy amount
    private_funding_buffer_sol: float = 0.005  # Added to funding to cover fees/rent of the one-time wallet
    private_settlement_delay_seconds: float = 10.0
    private_reclaim_delay_seconds: float = 5.0
    private_reclaim_fee_sol: float = 0.001

    # Trade ledger
    estimated_network_fee_sol: float = 0.000005

    # Shutdown
    shutdown_timeout_seconds: float = 60.0

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
