"""
Exception hierarchy for portsync.

Session-level failures (connection loss, identity conflict) abort a refresh
cycle and surface to the caller. Request, enrichment and persistence errors
are local: callers absorb and log them.
"""

from typing import Any, Optional

from portsync.errors.error_codes import ErrorCodes


class PortsyncError(Exception):
    """
    Base exception class for all portsync errors.

    Attributes:
        message: Human-readable error message
        error_code: Optional error code for reference and documentation
        details: Optional dictionary with additional error details
        suggestion: Optional suggestion text for how to fix the error
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.suggestion = suggestion
        super().__init__(message)

    def __str__(self) -> str:
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message


# --- Gateway connection errors ---


class GatewayConnectionError(PortsyncError):
    """
    Base class for failures of the shared gateway session.

    These abort the entire refresh cycle. ``retryable`` tells the connection
    manager whether a bounded backoff retry is worth attempting.
    """

    retryable = True


class ConnectionTimeoutError(GatewayConnectionError):
    """The gateway did not complete the handshake in time (unreachable)."""

    def __init__(self, host: str, port: int, timeout: float) -> None:
        super().__init__(
            f"Timed out after {timeout}s connecting to gateway at {host}:{port}",
            error_code=ErrorCodes.CONN_TIMEOUT,
            details={"host": host, "port": port, "timeout": timeout},
            suggestion="Check that TWS / IB Gateway is running and API access is enabled",
        )


class IdentityConflictError(GatewayConnectionError):
    """Another client already holds this client id (gateway error 326)."""

    retryable = False

    def __init__(self, client_id: int, message: str = "") -> None:
        super().__init__(
            f"Client id {client_id} is already in use"
            + (f": {message}" if message else ""),
            error_code=ErrorCodes.CONN_IDENTITY_CONFLICT,
            details={"client_id": client_id},
            suggestion="Close the other API client or configure a different IB_CLIENT_ID",
        )
        self.client_id = client_id


class TransportFailureError(GatewayConnectionError):
    """The socket failed mid-handshake or the session dropped."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(
            message, error_code=ErrorCodes.CONN_TRANSPORT_FAILURE, details=details
        )


class NotConnectedError(GatewayConnectionError):
    """An operation needed a live session but none exists."""

    def __init__(self, operation: str = "") -> None:
        super().__init__(
            f"No gateway session available{f' for {operation}' if operation else ''}",
            error_code=ErrorCodes.CONN_NOT_CONNECTED,
        )


# --- Request errors ---


class RequestError(PortsyncError):
    """Base class for a failed single request/response exchange."""

    def __init__(
        self,
        message: str,
        request_id: Optional[int] = None,
        kind: Optional[str] = None,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        merged = {"request_id": request_id, "kind": kind}
        merged.update(details or {})
        super().__init__(message, error_code=error_code, details=merged)
        self.request_id = request_id
        self.kind = kind


class RequestTimeoutError(RequestError):
    """A pending request saw no terminating event before its deadline."""

    def __init__(self, request_id: int, kind: str, timeout: float) -> None:
        super().__init__(
            f"{kind} request {request_id} timed out after {timeout}s",
            request_id=request_id,
            kind=kind,
            error_code=ErrorCodes.REQ_TIMEOUT,
            details={"timeout": timeout},
        )
        self.timeout = timeout


class GatewayRequestError(RequestError):
    """The gateway reported an error addressed to a specific request id."""

    def __init__(self, request_id: int, kind: str, code: int, gateway_message: str) -> None:
        super().__init__(
            f"{kind} request {request_id} failed with gateway error {code}: {gateway_message}",
            request_id=request_id,
            kind=kind,
            error_code=ErrorCodes.REQ_GATEWAY_ERROR,
            details={"gateway_code": code, "gateway_message": gateway_message},
        )
        self.code = code
        self.gateway_message = gateway_message


class RequestCancelledError(RequestError):
    """A pending request was cancelled before completion (e.g. on disconnect)."""

    def __init__(self, request_id: int, kind: str, reason: str = "cancelled") -> None:
        super().__init__(
            f"{kind} request {request_id} {reason}",
            request_id=request_id,
            kind=kind,
            error_code=ErrorCodes.REQ_CANCELLED,
        )


# --- Rate limiting ---


class RateLimitError(PortsyncError):
    """
    Raised by the throttle before a reference-data request is attempted.

    Callers skip the enrichment step for the current cycle.
    """

    def __init__(self, message: str, retry_after_seconds: float, cooldown: bool = False) -> None:
        super().__init__(
            message,
            error_code=(
                ErrorCodes.RATE_COOLDOWN_ACTIVE
                if cooldown
                else ErrorCodes.RATE_QUOTA_EXCEEDED
            ),
            details={"retry_after_seconds": retry_after_seconds, "cooldown": cooldown},
        )
        self.retry_after_seconds = retry_after_seconds
        self.cooldown = cooldown

    @property
    def remaining_minutes(self) -> int:
        # Whole minutes, rounded up
        seconds = max(self.retry_after_seconds, 0.0)
        return int(-(-seconds // 60))


# --- Enrichment / persistence ---


class EnrichmentError(PortsyncError):
    """Enrichment of a single position failed; the batch continues."""

    def __init__(self, message: str, symbol: str = "", error_code: Optional[str] = None) -> None:
        super().__init__(message, error_code=error_code, details={"symbol": symbol})
        self.symbol = symbol


class PersistenceError(PortsyncError):
    """A single sub-write (balance, portfolio or cash) failed."""

    def __init__(self, message: str, sub_operation: str, account_id: Optional[int] = None) -> None:
        super().__init__(
            message,
            error_code=ErrorCodes.PERSIST_WRITE_FAILED,
            details={"sub_operation": sub_operation, "account_id": account_id},
        )
        self.sub_operation = sub_operation
        self.account_id = account_id


class RefreshInProgressError(PortsyncError):
    """A refresh for this account is already running."""

    def __init__(self, account_id: int) -> None:
        super().__init__(
            f"A refresh for account {account_id} is already running",
            error_code=ErrorCodes.SYNC_REFRESH_IN_PROGRESS,
            details={"account_id": account_id},
        )


class SubscriptionTimeoutError(PortsyncError):
    """The account stream never signalled download complete."""

    def __init__(self, account_code: str, timeout: float) -> None:
        super().__init__(
            f"Account download for '{account_code or 'default'}' not complete after {timeout}s",
            error_code=ErrorCodes.SYNC_SUBSCRIPTION_TIMEOUT,
            details={"account_code": account_code, "timeout": timeout},
        )


# --- Configuration ---


class ConfigurationError(PortsyncError):
    """Base class for configuration problems."""


class InvalidConfigurationError(ConfigurationError):
    """Exception raised when a configuration value is invalid."""

    def __init__(self, message: str, field: str = "", value: Any = None) -> None:
        super().__init__(
            message,
            error_code=ErrorCodes.CONFIG_INVALID_VALUE,
            details={"field": field, "value": value},
        )


# --- Retry ---


class MaxRetriesExceededError(PortsyncError):
    """Exception raised when maximum retry attempts are exceeded."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None, attempts: int = 0) -> None:
        super().__init__(
            message,
            error_code=ErrorCodes.CONN_RETRIES_EXHAUSTED,
            details={"attempts": attempts},
        )
        self.last_error = last_error
        self.attempts = attempts
