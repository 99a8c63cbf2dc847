"""
Interactive Brokers gateway layer: session contract, ib_insync adapter,
connection lifecycle, pacing, request coordination and the account stream.
"""

from portsync.ib.connection import IbConnectionManager, SessionState
from portsync.ib.error_classifier import IbErrorClassifier, IbErrorType
from portsync.ib.gateway import (
    AccountValue,
    Bar,
    ContractDetails,
    ContractSpec,
    GatewaySession,
    PortfolioUpdate,
    TickType,
)
from portsync.ib.requests import (
    ACCOUNT_SUMMARY_REQ_ID,
    Channel,
    IbRequestCoordinator,
    PendingRequest,
    RequestKind,
)
from portsync.ib.subscription import AccountStreamSnapshot, AccountSubscriptionFeed, FeedState
from portsync.ib.throttle import IbRequestThrottle

__all__ = [
    "GatewaySession",
    "ContractSpec",
    "ContractDetails",
    "AccountValue",
    "PortfolioUpdate",
    "Bar",
    "TickType",
    "IbErrorClassifier",
    "IbErrorType",
    "IbConnectionManager",
    "SessionState",
    "IbRequestThrottle",
    "IbRequestCoordinator",
    "RequestKind",
    "Channel",
    "PendingRequest",
    "ACCOUNT_SUMMARY_REQ_ID",
    "AccountSubscriptionFeed",
    "AccountStreamSnapshot",
    "FeedState",
]
