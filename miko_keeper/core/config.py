"""
Configuration management using Pydantic Settings.
Supports multiple environments: development, staging, production.

Settings are built once by the entry point and handed to every component
constructor; nothing in the package reads configuration from a global.
"""

from decimal import Decimal
from typing import Optional, List

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


NATIVE_SOL_MINT = "So11111111111111111111111111111111111111112"
TOKEN_2022_PROGRAM = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
TOKEN_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
LAMPORTS_PER_SOL = 1_000_000_000


class KeeperSettings(BaseSettings):
    """Keeper settings with environment-based configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "MIKO Keeper"
    app_version: str = "0.1.0"
    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console
    log_file: Optional[str] = None

    # Solana
    solana_rpc_url: str = "https://api.devnet.solana.com"
    solana_commitment: str = "confirmed"
    keeper_private_key: str = ""
    token_mint: str = ""
    vault_program_id: str = ""
    token_decimals: int = 9

    # Rewards
    reward_asset: str = NATIVE_SOL_MINT
    reward_decimals: int = 9
    minimum_holder_value_usd: Decimal = Decimal("100")
    holder_fetch_limit: int = 1000
    fallback_pool_ratio: Decimal = Decimal("0.001")  # reward-token price in SOL

    # Harvest
    harvest_threshold_tokens: int = 500_000  # whole MIKO units

    # Batching
    harvest_batch_size: int = Field(default=20, ge=1, le=20)
    distribution_batch_size: int = Field(default=10, ge=1)
    max_concurrent_batches: int = Field(default=4, ge=1)

    # Loop and call limits
    polling_interval_seconds: float = 60
    call_timeout_seconds: float = 30
    stage_timeout_seconds: float = 600
    max_retries: int = Field(default=3, ge=1)
    retry_delay_seconds: float = 1.0

    # Swap
    slippage_bps: int = 100
    max_price_impact_pct: float = 5.0
    pending_swap_max_age_seconds: float = 900

    # Exclusions
    excluded_addresses: List[str] = []
    pool_detection_enabled: bool = True

    keeper_min_sol_balance: int = LAMPORTS_PER_SOL // 2

    # Persistence
    database_url: str = "sqlite+aiosqlite:///./data/keeper_state.db"

    # Status API
    api_enabled: bool = True
    api_host: str = "127.0.0.1"
    api_port: int = 8080

    # External services
    birdeye_api_key: str = ""
    birdeye_base_url: str = "https://public-api.birdeye.so"
    pyth_endpoint: str = "https://hermes.pyth.network"
    jupiter_api_url: str = "https://quote-api.jup.ag/v6"

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @model_validator(mode="after")
    def validate_reward_asset(self) -> "KeeperSettings":
        if self.token_mint and self.reward_asset == self.token_mint:
            raise ValueError("reward_asset must differ from token_mint")
        return self

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def harvest_threshold(self) -> int:
        """Harvest threshold in token base units."""
        return self.harvest_threshold_tokens * 10 ** self.token_decimals


def load_settings(**overrides) -> KeeperSettings:
    """
    Build the settings object for this process.

    Raises:
        ConfigurationError: if the environment holds invalid values
    """
    try:
        return KeeperSettings(**overrides)
    except ValueError as e:
        raise ConfigurationError(f"Invalid keeper configuration: {e}")
