"""
Gateway session contract.

``GatewaySession`` is the narrow, request-id keyed surface the engine needs
from a trading gateway: connect, account stream, single-shot requests and
asynchronous events. Events are ``eventkit.Event`` objects, the same event
primitive ib_insync is built on; handlers are attached with ``+=`` and
removed with ``-=``.

Event payloads:

- ``connected_event()``
- ``disconnected_event()``
- ``error_event(req_id, code, message)``; ``req_id`` is -1 for session-level
  notices
- ``account_value_event(AccountValue)``
- ``portfolio_position_event(PortfolioUpdate)``
- ``download_end_event(account)``
- ``account_summary_event(req_id, AccountValue)``
- ``account_summary_end_event(req_id)``
- ``contract_details_event(req_id, ContractDetails)``
- ``contract_details_end_event(req_id)``
- ``historical_bar_event(req_id, Bar)``; the last bar of a request is the
  ``finished`` sentinel
- ``tick_event(req_id, tick_type, price)``
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from eventkit import Event

# Sentinel date carried by the bar that terminates a historical request
FINISHED_BAR_MARKER = "finished"


class TickType:
    """Gateway tick type codes for the price fields we read."""

    BID = 1
    ASK = 2
    LAST = 4
    CLOSE = 9
    DELAYED_BID = 66
    DELAYED_ASK = 67
    DELAYED_LAST = 68
    DELAYED_CLOSE = 75

    LAST_TYPES = (LAST, DELAYED_LAST)
    CLOSE_TYPES = (CLOSE, DELAYED_CLOSE)
    BID_TYPES = (BID, DELAYED_BID)
    ASK_TYPES = (ASK, DELAYED_ASK)


@dataclass(frozen=True)
class ContractSpec:
    """Minimal contract description used to address requests."""

    con_id: int
    symbol: str = ""
    sec_type: str = ""
    exchange: str = ""
    currency: str = ""
    primary_exchange: str = ""
    local_symbol: str = ""


@dataclass(frozen=True)
class AccountValue:
    tag: str
    value: str
    currency: str = ""
    account: str = ""


@dataclass(frozen=True)
class PortfolioUpdate:
    contract: ContractSpec
    position: float
    market_price: Optional[float]
    market_value: Optional[float]
    average_cost: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    realized_pnl: Optional[float] = None
    account: str = ""


@dataclass(frozen=True)
class ContractDetails:
    con_id: int
    symbol: str = ""
    long_name: str = ""
    industry: str = ""
    category: str = ""
    subcategory: str = ""
    exchange: str = ""
    primary_exchange: str = ""
    sec_type: str = ""


@dataclass(frozen=True)
class Bar:
    date: str
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    close: float = 0.0
    volume: float = 0.0

    @property
    def is_finished(self) -> bool:
        return str(self.date).startswith(FINISHED_BAR_MARKER)

    @classmethod
    def finished(cls, start: str = "", end: str = "") -> "Bar":
        return cls(date=f"{FINISHED_BAR_MARKER}-{start}-{end}")


class GatewaySession(ABC):
    """
    One connection to the gateway process.

    Request methods only send; results arrive through the events. Only
    ``connect`` is awaited, and it raises ``GatewayConnectionError``
    subclasses on failure.
    """

    def __init__(self):
        self.connected_event = Event("connected")
        self.disconnected_event = Event("disconnected")
        self.error_event = Event("error")
        self.account_value_event = Event("accountValue")
        self.portfolio_position_event = Event("portfolioPosition")
        self.download_end_event = Event("downloadEnd")
        self.account_summary_event = Event("accountSummary")
        self.account_summary_end_event = Event("accountSummaryEnd")
        self.contract_details_event = Event("contractDetails")
        self.contract_details_end_event = Event("contractDetailsEnd")
        self.historical_bar_event = Event("historicalBar")
        self.tick_event = Event("tick")

    @abstractmethod
    async def connect(self, host: str, port: int, client_id: int, timeout: float) -> None:
        ...

    @abstractmethod
    def disconnect(self) -> None:
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    def subscribe_account_updates(self, subscribe: bool, account_code: str = "") -> None:
        ...

    @abstractmethod
    def request_account_summary(self, req_id: int, group: str, tags: str) -> None:
        ...

    @abstractmethod
    def cancel_account_summary(self, req_id: int) -> None:
        ...

    @abstractmethod
    def request_contract_details(self, req_id: int, con_id: int) -> None:
        ...

    @abstractmethod
    def request_historical_data(
        self,
        req_id: int,
        contract: ContractSpec,
        duration: str,
        bar_size: str,
        what_to_show: str,
        regular_hours_only: bool,
    ) -> None:
        ...

    @abstractmethod
    def cancel_historical_data(self, req_id: int) -> None:
        ...

    @abstractmethod
    def request_market_data_tick(self, req_id: int, contract: ContractSpec) -> None:
        ...

    @abstractmethod
    def cancel_market_data_tick(self, req_id: int) -> None:
        ...
