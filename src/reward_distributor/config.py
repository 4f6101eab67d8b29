"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
reward distributor, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from reward_distributor.amounts import AmountPolicy, AmountUnit

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

DEFAULT_REWARD_MINT = "pumpCmXqMfrsAkQ5r49WcJnRayYRqmXz6ae8H7H9Dfn"


def _parse_csv(v: object, *, name: str) -> tuple[str, ...]:
    if v is None:
        return ()
    if isinstance(v, str):
        return tuple(p.strip() for p in v.split(",") if p.strip())
    if isinstance(v, (list, tuple)):
        return tuple(str(x).strip() for x in v if str(x).strip())
    raise TypeError(f"Invalid {name} type")


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="sqlite+aiosqlite:///./reward_distributor.db",
        alias="DATABASE_URL",
        description="PostgreSQL (asyncpg) or SQLite (aiosqlite) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string (enables shared cache and cross-process wallet locks)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class SolanaSettings(BaseSettings):
    """Solana RPC settings."""

    model_config = SettingsConfigDict(env_prefix="SOLANA_", extra="ignore")

    rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com",
        alias="SOLANA_RPC_URL",
        description="Primary Solana RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="SOLANA_FALLBACK_RPC_URL",
        description="Fallback RPC endpoint, also used as secondary broadcast endpoint",
    )
    commitment: Literal["processed", "confirmed", "finalized"] = Field(
        default="confirmed",
        alias="SOLANA_COMMITMENT",
        description="Commitment level for reads and confirmations",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="SOLANA_REQUEST_TIMEOUT_SECONDS",
        ge=1.0,
        le=120.0,
        description="Per-request HTTP timeout",
    )
    max_requests_per_second: float = Field(
        default=20.0,
        alias="SOLANA_MAX_REQUESTS_PER_SECOND",
        ge=1.0,
        le=1000.0,
        description="Client-side RPC pacing",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class WalletSettings(BaseSettings):
    """Keys and addresses of the accounts the distributor operates."""

    model_config = SettingsConfigDict(env_prefix="WALLET_", extra="ignore")

    operating_secret: SecretStr | None = Field(
        default=None,
        alias="WALLET_OPERATING_SECRET",
        description="Base58 secret key of the account that receives collected fees",
    )
    treasury_secret: SecretStr | None = Field(
        default=None,
        alias="WALLET_TREASURY_SECRET",
        description="Base58 secret key of the treasury (swap signer and claim co-signer)",
    )
    treasury_address: str | None = Field(
        default=None,
        alias="WALLET_TREASURY_ADDRESS",
        description="Treasury public key",
    )
    operator_address: str | None = Field(
        default=None,
        alias="WALLET_OPERATOR_ADDRESS",
        description="Receives the operator share of fees and the claim service fee",
    )
    reward_mint: str = Field(
        default=DEFAULT_REWARD_MINT,
        alias="WALLET_REWARD_MINT",
        description="Mint of the reward token paid to holders",
    )
    coin_mint: str | None = Field(
        default=None,
        alias="WALLET_COIN_MINT",
        description="Mint of the token whose holders are rewarded",
    )


class CycleSettings(BaseSettings):
    """Distribution window timing."""

    model_config = SettingsConfigDict(env_prefix="CYCLE_", extra="ignore")

    window_ms: int = Field(
        default=600_000,
        alias="CYCLE_WINDOW_MS",
        ge=10_000,
        le=7 * 24 * 3600 * 1000,
        description="Window duration",
    )
    prep_lead_ms: int = Field(
        default=120_000,
        alias="CYCLE_PREP_LEAD_MS",
        ge=0,
        description="How long before window end the prepare phase starts",
    )
    snapshot_lead_ms: int = Field(
        default=8_000,
        alias="CYCLE_SNAPSHOT_LEAD_MS",
        ge=0,
        description="How long before window end the snapshot is due",
    )
    grace_ms: int = Field(
        default=90_000,
        alias="CYCLE_GRACE_MS",
        ge=0,
        description="How long after the snapshot deadline a late snapshot is still taken",
    )
    boot_jitter_ms: int = Field(
        default=1_500,
        alias="CYCLE_BOOT_JITTER_MS",
        ge=0,
        le=60_000,
        description="Upper bound of the random delay before the worker's first action",
    )
    post_window_slack_ms: int = Field(
        default=200,
        alias="CYCLE_POST_WINDOW_SLACK_MS",
        ge=0,
        le=60_000,
        description="Delay past window end before the worker starts the next cycle",
    )

    @model_validator(mode="after")
    def _check_leads(self) -> CycleSettings:
        if self.prep_lead_ms >= self.window_ms:
            raise ValueError("CYCLE_PREP_LEAD_MS must be shorter than CYCLE_WINDOW_MS")
        if self.snapshot_lead_ms > self.prep_lead_ms:
            raise ValueError("CYCLE_SNAPSHOT_LEAD_MS must not exceed CYCLE_PREP_LEAD_MS")
        return self


class DistributionSettings(BaseSettings):
    """Revenue split, eligibility and payout arithmetic."""

    model_config = SettingsConfigDict(env_prefix="DISTRIBUTION_", extra="ignore")

    reserve_fraction: Decimal = Field(
        default=Decimal("0.95"),
        alias="DISTRIBUTION_RESERVE_FRACTION",
        gt=Decimal("0"),
        le=Decimal("1"),
        description="Fraction of the acquired reward allocated to holders",
    )
    min_holder_balance: Decimal = Field(
        default=Decimal("10000"),
        alias="DISTRIBUTION_MIN_HOLDER_BALANCE",
        ge=Decimal("0"),
        description="Eligibility threshold in display units of the held coin",
    )
    coin_decimals: int = Field(
        default=6,
        alias="DISTRIBUTION_COIN_DECIMALS",
        ge=0,
        le=18,
        description="Decimals of the held coin",
    )
    excluded_wallets: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(),
        alias="DISTRIBUTION_EXCLUDED_WALLETS",
        description="Comma-separated owner addresses never eligible (AMM pools, treasury)",
    )
    reward_decimals: int = Field(
        default=6,
        alias="DISTRIBUTION_REWARD_DECIMALS",
        ge=0,
        le=18,
        description="Decimals of the reward token",
    )
    amount_unit: AmountUnit = Field(
        default=AmountUnit.DISPLAY,
        alias="DISTRIBUTION_AMOUNT_UNIT",
        description="Unit stored in entitlement rows: raw or display",
    )
    operator_pct: Decimal = Field(
        default=Decimal("0.10"),
        alias="DISTRIBUTION_OPERATOR_PCT",
        ge=Decimal("0"),
        le=Decimal("1"),
    )
    treasury_pct: Decimal = Field(
        default=Decimal("0.85"),
        alias="DISTRIBUTION_TREASURY_PCT",
        ge=Decimal("0"),
        le=Decimal("1"),
    )
    swap_pct: Decimal = Field(
        default=Decimal("0.95"),
        alias="DISTRIBUTION_SWAP_PCT",
        gt=Decimal("0"),
        le=Decimal("1"),
        description="Fraction of the treasury arrival that is swapped",
    )
    min_operating_buffer_lamports: int = Field(
        default=4_000_000,
        alias="DISTRIBUTION_MIN_OPERATING_BUFFER_LAMPORTS",
        ge=0,
    )
    slippage_bps: Annotated[tuple[int, ...], NoDecode] = Field(
        default=(100, 200, 300),
        alias="DISTRIBUTION_SLIPPAGE_BPS",
        description="Slippage ladder tried in order",
    )
    poll_tries: int = Field(default=18, alias="DISTRIBUTION_POLL_TRIES", ge=1, le=200)
    poll_delay_ms: int = Field(default=900, alias="DISTRIBUTION_POLL_DELAY_MS", ge=0, le=60_000)

    @field_validator("excluded_wallets", mode="before")
    @classmethod
    def _parse_excluded(cls, v: object) -> tuple[str, ...]:
        return _parse_csv(v, name="DISTRIBUTION_EXCLUDED_WALLETS")

    @field_validator("slippage_bps", mode="before")
    @classmethod
    def _parse_slippage(cls, v: object) -> tuple[int, ...]:
        parts = _parse_csv(v, name="DISTRIBUTION_SLIPPAGE_BPS")
        ladder = tuple(int(p) for p in parts)
        if not ladder:
            raise ValueError("DISTRIBUTION_SLIPPAGE_BPS must list at least one value")
        if any(b <= 0 or b > 5_000 for b in ladder):
            raise ValueError("DISTRIBUTION_SLIPPAGE_BPS values must be in (0, 5000]")
        return ladder

    @model_validator(mode="after")
    def _check_split(self) -> DistributionSettings:
        if self.operator_pct + self.treasury_pct > 1:
            raise ValueError("DISTRIBUTION_OPERATOR_PCT + DISTRIBUTION_TREASURY_PCT must not exceed 1")
        return self

    def amount_policy(self) -> AmountPolicy:
        """Build the single amount policy shared by every component."""
        return AmountPolicy(
            decimals=self.reward_decimals,
            unit=self.amount_unit,
            reserve_fraction=self.reserve_fraction,
        )


class ClaimSettings(BaseSettings):
    """Claim preview/submit admission and caching."""

    model_config = SettingsConfigDict(env_prefix="CLAIM_", extra="ignore")

    preview_ip_per_min: int = Field(default=60, alias="CLAIM_PREVIEW_IP_PER_MIN", ge=1)
    preview_wallet_per_min: int = Field(default=120, alias="CLAIM_PREVIEW_WALLET_PER_MIN", ge=1)
    submit_ip_per_min: int = Field(default=30, alias="CLAIM_SUBMIT_IP_PER_MIN", ge=1)
    submit_wallet_per_min: int = Field(default=30, alias="CLAIM_SUBMIT_WALLET_PER_MIN", ge=1)
    preview_cache_ttl_ms: int = Field(
        default=2_500,
        alias="CLAIM_PREVIEW_CACHE_TTL_MS",
        ge=0,
        le=60_000,
        description="Per-wallet micro-cache TTL for preview results",
    )
    preview_max_age_seconds: int = Field(
        default=120,
        alias="CLAIM_PREVIEW_MAX_AGE_SECONDS",
        ge=10,
        le=3600,
        description="Preview binding expiry",
    )
    service_fee_lamports: int = Field(
        default=10_000_000,
        alias="CLAIM_SERVICE_FEE_LAMPORTS",
        ge=0,
        description="Flat fee the claimant pays to the operator",
    )
    broadcast_attempts: int = Field(default=4, alias="CLAIM_BROADCAST_ATTEMPTS", ge=1, le=20)
    broadcast_base_delay_ms: int = Field(default=400, alias="CLAIM_BROADCAST_BASE_DELAY_MS", ge=0)
    confirm_timeout_seconds: float = Field(default=30.0, alias="CLAIM_CONFIRM_TIMEOUT_SECONDS", ge=0)
    lock_ttl_seconds: int = Field(
        default=120,
        alias="CLAIM_LOCK_TTL_SECONDS",
        ge=5,
        description="Expiry of a cross-process wallet lock if its holder dies",
    )
    entitlement_cache_ttl_seconds: float = Field(default=15.0, alias="CLAIM_ENTITLEMENT_CACHE_TTL_SECONDS", ge=0)
    metrics_cache_ttl_seconds: float = Field(default=10.0, alias="CLAIM_METRICS_CACHE_TTL_SECONDS", ge=0)
    hint_tolerance: Decimal = Field(default=Decimal("1e-9"), alias="CLAIM_HINT_TOLERANCE", ge=Decimal("0"))


class IntegrationSettings(BaseSettings):
    """Third-party HTTP integrations."""

    model_config = SettingsConfigDict(env_prefix="INTEGRATION_", extra="ignore")

    fee_collect_url: str = Field(
        default="https://pumpportal.fun/api/trade",
        alias="INTEGRATION_FEE_COLLECT_URL",
    )
    fee_collect_api_key: SecretStr | None = Field(default=None, alias="INTEGRATION_FEE_COLLECT_API_KEY")
    fee_log_marker: str = Field(
        default="Instruction: CollectCreatorFee",
        alias="INTEGRATION_FEE_LOG_MARKER",
        description="Log line proving the collection transaction did collect fees",
    )
    swap_api_url: str = Field(
        default="https://quote-api.jup.ag/v6",
        alias="INTEGRATION_SWAP_API_URL",
    )

    @field_validator("fee_collect_url", "swap_api_url")
    @classmethod
    def validate_http(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("Integration URLs must be HTTP(S) endpoints")
        return v.rstrip("/")


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from reward_distributor.config import get_settings

        settings = get_settings()
        print(settings.cycle.window_ms)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    solana: SolanaSettings = Field(
        default_factory=lambda: SolanaSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    wallets: WalletSettings = Field(
        default_factory=lambda: WalletSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    cycle: CycleSettings = Field(
        default_factory=lambda: CycleSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    distribution: DistributionSettings = Field(
        default_factory=lambda: DistributionSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    claims: ClaimSettings = Field(
        default_factory=lambda: ClaimSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    integrations: IntegrationSettings = Field(
        default_factory=lambda: IntegrationSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    api_port: int = Field(
        default=8080,
        alias="API_PORT",
        description="HTTP port for the claim API",
        ge=1,
        le=65535,
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "solana": {
                "rpc_url": self._redact_url(self.solana.rpc_url),
                "fallback_rpc_url": (
                    self._redact_url(self.solana.fallback_rpc_url) if self.solana.fallback_rpc_url else "(not set)"
                ),
                "commitment": self.solana.commitment,
            },
            "wallets": {
                "operating_secret": "(set)" if self.wallets.operating_secret else "(not set)",
                "treasury_secret": "(set)" if self.wallets.treasury_secret else "(not set)",
                "treasury_address": self.wallets.treasury_address or "(not set)",
                "operator_address": self.wallets.operator_address or "(not set)",
                "reward_mint": self.wallets.reward_mint,
                "coin_mint": self.wallets.coin_mint or "(not set)",
            },
            "cycle": {
                "window_ms": str(self.cycle.window_ms),
                "prep_lead_ms": str(self.cycle.prep_lead_ms),
                "snapshot_lead_ms": str(self.cycle.snapshot_lead_ms),
                "grace_ms": str(self.cycle.grace_ms),
            },
            "distribution": {
                "reserve_fraction": str(self.distribution.reserve_fraction),
                "min_holder_balance": str(self.distribution.min_holder_balance),
                "amount_unit": self.distribution.amount_unit.value,
                "reward_decimals": str(self.distribution.reward_decimals),
                "excluded_wallets": str(len(self.distribution.excluded_wallets)),
            },
            "integrations": {
                "fee_collect_api_key": "(set)" if self.integrations.fee_collect_api_key else "(not set)",
                "swap_api_url": self.integrations.swap_api_url,
            },
            "log_level": self.log_level,
            "api_port": str(self.api_port),
        }

    def validate_requirements(self, *, command: Literal["worker", "api", "prepare", "snapshot"]) -> None:
        """Validate command-specific requirements.

        A command that needs a key the environment does not provide must
        refuse to start instead of failing mid-cycle.
        """
        if not self.wallets.treasury_address:
            raise ValueError("WALLET_TREASURY_ADDRESS is required")

        if command in ("worker", "prepare"):
            if not self.wallets.operating_secret:
                raise ValueError("WALLET_OPERATING_SECRET is required to collect fees")
            if not self.wallets.treasury_secret:
                raise ValueError("WALLET_TREASURY_SECRET is required to swap into the reward token")
            if not self.wallets.operator_address:
                raise ValueError("WALLET_OPERATOR_ADDRESS is required for the operator share")

        if not self.wallets.coin_mint:
            raise ValueError("WALLET_COIN_MINT is required to collect fees and list eligible holders")

        if command == "api":
            if not self.wallets.treasury_secret:
                raise ValueError("WALLET_TREASURY_SECRET is required to co-sign claims")
            if not self.wallets.operator_address:
                raise ValueError("WALLET_OPERATOR_ADDRESS is required for the claim service fee")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password and API-key query strings from a URL."""
        if "?" in url:
            url = url.split("?", 1)[0] + "?***"
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
