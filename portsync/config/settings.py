"""
portsync runtime settings.

Tunables for the gateway components, the refresh cycle and storage, all
overridable through prefixed environment variables.
"""

from functools import lru_cache
from typing import Dict, Tuple

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConnectionSettings(BaseSettings):
    """Gateway session lifecycle settings."""

    idle_timeout_seconds: float = Field(default=1800.0, gt=0)
    watchdog_interval_seconds: float = Field(default=30.0, gt=0)
    min_attempt_interval_seconds: float = Field(default=2.0, ge=0)
    max_connect_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=2.0, gt=0)
    retry_max_delay: float = Field(default=30.0, gt=0)

    model_config = SettingsConfigDict(env_prefix="PORTSYNC_CONNECTION_")


class ThrottleSettings(BaseSettings):
    """Reference-data pacing settings (gateway allows ~60 per 10 minutes)."""

    max_requests: int = Field(default=50, gt=0)
    window_seconds: float = Field(default=600.0, gt=0)
    min_spacing_seconds: float = Field(default=2.0, ge=0)
    cooldown_seconds: float = Field(default=600.0, gt=0)

    model_config = SettingsConfigDict(env_prefix="PORTSYNC_THROTTLE_")


class RequestSettings(BaseSettings):
    """Per-request timeouts."""

    account_summary_timeout: float = Field(default=15.0, gt=0)
    contract_details_timeout: float = Field(default=5.0, gt=0)
    historical_data_timeout: float = Field(default=15.0, gt=0)
    market_data_timeout: float = Field(default=6.0, gt=0)
    download_timeout: float = Field(default=15.0, gt=0)
    cancel_settle_seconds: float = Field(default=1.0, ge=0)

    model_config = SettingsConfigDict(env_prefix="PORTSYNC_REQUEST_")


class SyncSettings(BaseSettings):
    """Refresh cycle and valuation settings."""

    auto_refresh_minutes: float = Field(default=30.0, gt=0)
    stale_after_minutes: float = Field(default=30.0, gt=0)
    # Streaming mode: how often the live account stream is written to storage
    stream_sync_seconds: float = Field(default=60.0, gt=0)
    source_tag: str = Field(default="IB")
    reporting_currencies: Tuple[str, str] = Field(default=("HKD", "USD"))
    # Units of reporting currency per one unit of the key currency
    fx_rates: Dict[str, float] = Field(
        default_factory=lambda: {
            "USD/HKD": 7.8,
            "HKD/USD": 1 / 7.8,
        }
    )

    model_config = SettingsConfigDict(env_prefix="PORTSYNC_SYNC_")


class DatabaseSettings(BaseSettings):
    """Snapshot storage settings."""

    url: str = Field(default="sqlite+aiosqlite:///data/portsync.db")
    echo: bool = Field(default=False)

    model_config = SettingsConfigDict(env_prefix="PORTSYNC_DB_")


class LoggingSettings(BaseSettings):
    """Logging Settings."""

    level: str = Field(default="INFO")
    log_dir: str = Field(default="")
    debug: bool = Field(default=False)
    # e.g. PORTSYNC_LOGGING_COMPONENT_LEVELS='{"ib.requests": "DEBUG"}'
    component_levels: Dict[str, str] = Field(default_factory=dict)

    model_config = SettingsConfigDict(env_prefix="PORTSYNC_LOGGING_")


@lru_cache
def get_connection_settings() -> ConnectionSettings:
    return ConnectionSettings()


@lru_cache
def get_throttle_settings() -> ThrottleSettings:
    return ThrottleSettings()


@lru_cache
def get_request_settings() -> RequestSettings:
    return RequestSettings()


@lru_cache
def get_sync_settings() -> SyncSettings:
    return SyncSettings()


@lru_cache
def get_database_settings() -> DatabaseSettings:
    return DatabaseSettings()


@lru_cache
def get_logging_settings() -> LoggingSettings:
    return LoggingSettings()


def clear_settings_cache() -> None:
    """Clear all cached settings (for tests that change the environment)."""
    get_connection_settings.cache_clear()
    get_throttle_settings.cache_clear()
    get_request_settings.cache_clear()
    get_sync_settings.cache_clear()
    get_database_settings.cache_clear()
    get_logging_settings.cache_clear()
