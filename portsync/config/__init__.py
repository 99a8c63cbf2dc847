"""
Configuration for portsync: the immutable gateway connection value and the
environment-backed runtime settings.
"""

from portsync.config.gateway_config import GatewayConfig
from portsync.config.settings import (
    ConnectionSettings,
    DatabaseSettings,
    LoggingSettings,
    RequestSettings,
    SyncSettings,
    ThrottleSettings,
    clear_settings_cache,
    get_connection_settings,
    get_database_settings,
    get_logging_settings,
    get_request_settings,
    get_sync_settings,
    get_throttle_settings,
)

__all__ = [
    "GatewayConfig",
    "ConnectionSettings",
    "ThrottleSettings",
    "RequestSettings",
    "SyncSettings",
    "DatabaseSettings",
    "LoggingSettings",
    "get_connection_settings",
    "get_throttle_settings",
    "get_request_settings",
    "get_sync_settings",
    "get_database_settings",
    "get_logging_settings",
    "clear_settings_cache",
]
