"""
IB Error Classifier

Classifies gateway error codes into the handling categories the engine cares
about:

- pacing violations and market-data-farm disconnections start the throttle
  cooldown
- a duplicate client id is fatal to the connection attempt
- farm status notices are informational and never fail a request

Reference: https://interactivebrokers.github.io/tws-api/message_codes.html
"""

from enum import Enum

from portsync.logging import get_logger

logger = get_logger(__name__)


class IbErrorType(Enum):
    """Classification of IB errors for throttle and request handling"""

    PACING_VIOLATION = "pacing"
    CONNECTION_ERROR = "connection"
    IDENTITY_CONFLICT = "identity_conflict"  # Client id already in use
    DATA_UNAVAILABLE = "data_unavail"  # Valid request, nothing to return
    INFORMATIONAL = "info"  # Status notices, not errors
    OTHER = "other"


class IbErrorClassifier:
    """Classify IB errors by code, falling back to message keywords."""

    ERROR_MAPPINGS = {
        # === PACING VIOLATIONS ===
        100: IbErrorType.PACING_VIOLATION,  # Max rate of messages per second exceeded
        420: IbErrorType.PACING_VIOLATION,  # Invalid real-time query (pacing)
        # === CONNECTION ===
        326: IbErrorType.IDENTITY_CONFLICT,  # Client id is already in use
        502: IbErrorType.CONNECTION_ERROR,  # Couldn't connect to TWS
        504: IbErrorType.CONNECTION_ERROR,  # Not connected
        1100: IbErrorType.CONNECTION_ERROR,  # Connectivity between IB and TWS lost
        1101: IbErrorType.INFORMATIONAL,  # Connectivity restored, data lost
        1102: IbErrorType.INFORMATIONAL,  # Connectivity restored, data maintained
        # === DATA FARM STATUS ===
        2103: IbErrorType.CONNECTION_ERROR,  # Market data farm connection is broken
        2105: IbErrorType.CONNECTION_ERROR,  # HMDS data farm connection is broken
        2110: IbErrorType.CONNECTION_ERROR,  # Connectivity between TWS and server broken
        2104: IbErrorType.INFORMATIONAL,  # Market data farm connection is OK
        2106: IbErrorType.INFORMATIONAL,  # HMDS data farm connection is OK
        2107: IbErrorType.INFORMATIONAL,  # HMDS data farm connection is inactive
        2108: IbErrorType.INFORMATIONAL,  # Market data farm connection is inactive
        2119: IbErrorType.INFORMATIONAL,  # Market data farm is connecting
        2158: IbErrorType.INFORMATIONAL,  # Sec-def data farm connection is OK
        10167: IbErrorType.INFORMATIONAL,  # Displaying delayed market data
        # === HISTORICAL DATA ===
        # 162 is a generic HMDS message; it only means pacing when the text says so
        162: IbErrorType.DATA_UNAVAILABLE,
        165: IbErrorType.INFORMATIONAL,  # HMDS query message
        366: IbErrorType.INFORMATIONAL,  # No historical data query found
    }

    # Farm/connectivity drops that make further reference-data requests pointless
    COOLDOWN_CONNECTION_CODES = frozenset({1100, 2103, 2105, 2110})

    PACING_KEYWORDS = ["pacing", "violation", "max rate"]

    @classmethod
    def classify(cls, error_code: int, error_message: str) -> IbErrorType:
        message = (error_message or "").lower()

        if error_code == 162 and cls._mentions_pacing(message):
            return IbErrorType.PACING_VIOLATION

        if error_code in cls.ERROR_MAPPINGS:
            return cls.ERROR_MAPPINGS[error_code]

        if "already in use" in message:
            return IbErrorType.IDENTITY_CONFLICT

        if "historical" in message and "data" in message:
            if cls._mentions_pacing(message):
                return IbErrorType.PACING_VIOLATION
            return IbErrorType.DATA_UNAVAILABLE

        logger.debug(f"No specific classification for IB error {error_code}")
        return IbErrorType.OTHER

    @classmethod
    def _mentions_pacing(cls, message_lower: str) -> bool:
        return any(keyword in message_lower for keyword in cls.PACING_KEYWORDS)

    @classmethod
    def is_client_id_conflict(cls, error_code: int, error_message: str = "") -> bool:
        """Check if error is client ID conflict (error 326)"""
        return error_code == 326 or "already in use" in (error_message or "").lower()

    @classmethod
    def triggers_cooldown(cls, error_code: int, error_message: str = "") -> bool:
        """True for pacing violations and market-data-farm disconnections."""
        if error_code in cls.COOLDOWN_CONNECTION_CODES:
            return True
        return cls.classify(error_code, error_message) == IbErrorType.PACING_VIOLATION

    @classmethod
    def is_informational(cls, error_code: int) -> bool:
        return cls.ERROR_MAPPINGS.get(error_code) == IbErrorType.INFORMATIONAL
