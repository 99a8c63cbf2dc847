"""
Error handling framework for portsync.

Exception hierarchy, error code registry and bounded retry.
"""

from portsync.errors.error_codes import ErrorCodes
from portsync.errors.exceptions import (
    ConfigurationError,
    ConnectionTimeoutError,
    EnrichmentError,
    GatewayConnectionError,
    GatewayRequestError,
    IdentityConflictError,
    InvalidConfigurationError,
    MaxRetriesExceededError,
    NotConnectedError,
    PersistenceError,
    PortsyncError,
    RateLimitError,
    RefreshInProgressError,
    RequestCancelledError,
    RequestError,
    RequestTimeoutError,
    SubscriptionTimeoutError,
    TransportFailureError,
)
from portsync.errors.retry import RetryConfig, calculate_delay, retry_async

__all__ = [
    "ErrorCodes",
    # Base exception
    "PortsyncError",
    # Session
    "GatewayConnectionError",
    "ConnectionTimeoutError",
    "IdentityConflictError",
    "TransportFailureError",
    "NotConnectedError",
    # Requests
    "RequestError",
    "RequestTimeoutError",
    "GatewayRequestError",
    "RequestCancelledError",
    "RateLimitError",
    # Pipeline
    "EnrichmentError",
    "PersistenceError",
    "RefreshInProgressError",
    "SubscriptionTimeoutError",
    # Configuration
    "ConfigurationError",
    "InvalidConfigurationError",
    # Retry mechanism
    "MaxRetriesExceededError",
    "RetryConfig",
    "calculate_delay",
    "retry_async",
]
