"""
Central registry of error codes for portsync.

Error codes follow the pattern: CATEGORY-ErrorName

Categories:
- CONFIG: Configuration and validation errors
- CONN: Gateway session errors
- REQ: Single request/response exchange errors
- RATE: Pacing and quota errors
- ENRICH: Position enrichment errors
- PERSIST: Durable storage errors
- SYNC: Refresh cycle errors
"""


class ErrorCodes:
    """Central registry of error codes for consistent error handling."""

    # Configuration errors
    CONFIG_INVALID_VALUE = "CONFIG-InvalidValue"
    CONFIG_MISSING_FIELD = "CONFIG-MissingField"

    # Gateway session errors
    CONN_TIMEOUT = "CONN-Timeout"
    CONN_IDENTITY_CONFLICT = "CONN-IdentityConflict"
    CONN_TRANSPORT_FAILURE = "CONN-TransportFailure"
    CONN_NOT_CONNECTED = "CONN-NotConnected"
    CONN_RETRIES_EXHAUSTED = "CONN-RetriesExhausted"

    # Request errors
    REQ_TIMEOUT = "REQ-Timeout"
    REQ_GATEWAY_ERROR = "REQ-GatewayError"
    REQ_CANCELLED = "REQ-Cancelled"

    # Rate limiting
    RATE_QUOTA_EXCEEDED = "RATE-QuotaExceeded"
    RATE_COOLDOWN_ACTIVE = "RATE-CooldownActive"

    # Enrichment
    ENRICH_CONTRACT_LOOKUP_FAILED = "ENRICH-ContractLookupFailed"
    ENRICH_PREVIOUS_CLOSE_FAILED = "ENRICH-PreviousCloseFailed"

    # Persistence
    PERSIST_WRITE_FAILED = "PERSIST-WriteFailed"
    PERSIST_READ_FAILED = "PERSIST-ReadFailed"

    # Refresh cycle
    SYNC_REFRESH_IN_PROGRESS = "SYNC-RefreshInProgress"
    SYNC_SUBSCRIPTION_TIMEOUT = "SYNC-SubscriptionTimeout"
