"""
Gateway connection configuration.

A single immutable value carrying everything needed to open a session.
Callers build it once (usually via ``GatewayConfig.from_env()``) and pass it
explicitly to the connection manager and the orchestrator.
"""

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from portsync.errors import InvalidConfigurationError
from portsync.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class GatewayConfig:
    """
    Interactive Brokers gateway connection settings.

    ``account_code`` selects the account for the streaming subscription;
    an empty string lets the gateway pick the session's default account.
    """

    host: str = "127.0.0.1"
    port: int = 4002
    client_id: int = 1
    account_code: str = ""
    connect_timeout: float = 20.0

    def __post_init__(self):
        self._validate()

    def _validate(self):
        if not self.host:
            raise InvalidConfigurationError("Gateway host must not be empty", "host", self.host)
        if not 1 <= self.port <= 65535:
            raise InvalidConfigurationError(f"Invalid port number: {self.port}", "port", self.port)
        if self.client_id < 0:
            raise InvalidConfigurationError(
                f"Client id must not be negative: {self.client_id}", "client_id", self.client_id
            )
        if self.connect_timeout <= 0:
            raise InvalidConfigurationError(
                f"Connect timeout must be positive: {self.connect_timeout}",
                "connect_timeout",
                self.connect_timeout,
            )

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "GatewayConfig":
        """
        Build a config from IB_* environment variables.

        Explicit keyword overrides win over the environment; ``None`` values
        are ignored so CLI options can be passed straight through.
        """
        env = os.environ if environ is None else environ
        try:
            values: Dict[str, Any] = {
                "host": env.get("IB_HOST", "127.0.0.1"),
                "port": int(env.get("IB_PORT", "4002")),
                "client_id": int(env.get("IB_CLIENT_ID", "1")),
                "account_code": env.get("IB_ACCOUNT", ""),
                "connect_timeout": float(env.get("IB_TIMEOUT", "20")),
            }
        except ValueError as e:
            raise InvalidConfigurationError(f"Invalid IB_* environment value: {e}") from e

        values.update({k: v for k, v in overrides.items() if v is not None})
        config = cls(**values)
        logger.debug(
            f"Gateway config loaded: {config.host}:{config.port} (client_id={config.client_id})"
        )
        return config

    def __str__(self) -> str:
        return f"{self.host}:{self.port} (client_id={self.client_id})"
