"""
Shared test fixtures for portsync.

Gateway traffic is simulated by ``FakeGateway``: responses are scripted on a
``GatewayScript`` and delivered on the next loop iteration, the way a real
gateway answers asynchronously after a request is sent.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import pytest

from portsync.config.gateway_config import GatewayConfig
from portsync.config.settings import (
    ConnectionSettings,
    RequestSettings,
    SyncSettings,
    ThrottleSettings,
)
from portsync.ib.connection import IbConnectionManager
from portsync.ib.gateway import (
    AccountValue,
    Bar,
    ContractDetails,
    ContractSpec,
    GatewaySession,
    PortfolioUpdate,
)
from portsync.ib.requests import IbRequestCoordinator
from portsync.ib.subscription import AccountSubscriptionFeed
from portsync.ib.throttle import IbRequestThrottle


@dataclass
class GatewayScript:
    """What the fake gateway answers, and a log of what it was asked."""

    connect_errors: List[BaseException] = field(default_factory=list)
    connect_delay: float = 0.0

    account_values: List[AccountValue] = field(default_factory=list)
    portfolio: List[PortfolioUpdate] = field(default_factory=list)
    send_download_end: bool = True

    account_summary: List[AccountValue] = field(default_factory=list)
    contract_details: Dict[int, List[ContractDetails]] = field(default_factory=dict)
    bars: Dict[int, List[Bar]] = field(default_factory=dict)
    ticks: Dict[int, List[Tuple[int, float]]] = field(default_factory=dict)
    request_errors: Dict[int, Tuple[int, str]] = field(default_factory=dict)
    silent_con_ids: Set[int] = field(default_factory=set)

    connect_calls: int = 0
    disconnects: int = 0
    subscribe_calls: List[Tuple[bool, str]] = field(default_factory=list)
    summary_requests: List[int] = field(default_factory=list)
    summary_cancels: List[int] = field(default_factory=list)
    details_requests: List[int] = field(default_factory=list)
    historical_requests: List[Tuple[int, str, str, bool]] = field(default_factory=list)
    tick_requests: List[int] = field(default_factory=list)
    tick_cancels: List[int] = field(default_factory=list)


class FakeGateway(GatewaySession):
    def __init__(self, script: GatewayScript):
        super().__init__()
        self.script = script
        self._connected = False

    def _later(self, callback, *args) -> None:
        asyncio.get_running_loop().call_soon(callback, *args)

    async def connect(self, host: str, port: int, client_id: int, timeout: float) -> None:
        self.script.connect_calls += 1
        if self.script.connect_delay:
            await asyncio.sleep(self.script.connect_delay)
        if self.script.connect_errors:
            raise self.script.connect_errors.pop(0)
        self._connected = True
        self.connected_event.emit()

    def disconnect(self) -> None:
        self._connected = False
        self.script.disconnects += 1

    def is_connected(self) -> bool:
        return self._connected

    def drop(self) -> None:
        """Simulate the gateway closing the socket."""
        self._connected = False
        self.disconnected_event.emit()

    # --- account stream ----------------------------------------------------

    def subscribe_account_updates(self, subscribe: bool, account_code: str = "") -> None:
        self.script.subscribe_calls.append((subscribe, account_code))
        if subscribe:
            self._later(self._stream_account, account_code)

    def _stream_account(self, account_code: str) -> None:
        for value in self.script.account_values:
            self.account_value_event.emit(value)
        for update in self.script.portfolio:
            self.portfolio_position_event.emit(update)
        if self.script.send_download_end:
            self.download_end_event.emit(account_code)

    # --- single-shot requests ----------------------------------------------

    def request_account_summary(self, req_id: int, group: str, tags: str) -> None:
        self.script.summary_requests.append(req_id)
        self._later(self._answer_summary, req_id)

    def _answer_summary(self, req_id: int) -> None:
        for value in self.script.account_summary:
            self.account_summary_event.emit(req_id, value)
        self.account_summary_end_event.emit(req_id)

    def cancel_account_summary(self, req_id: int) -> None:
        self.script.summary_cancels.append(req_id)

    def request_contract_details(self, req_id: int, con_id: int) -> None:
        self.script.details_requests.append(con_id)
        if self._answer_error(req_id, con_id):
            return
        self._later(self._answer_details, req_id, con_id)

    def _answer_details(self, req_id: int, con_id: int) -> None:
        for details in self.script.contract_details.get(con_id, []):
            self.contract_details_event.emit(req_id, details)
        self.contract_details_end_event.emit(req_id)

    def request_historical_data(
        self,
        req_id: int,
        contract: ContractSpec,
        duration: str,
        bar_size: str,
        what_to_show: str,
        regular_hours_only: bool,
    ) -> None:
        self.script.historical_requests.append(
            (contract.con_id, duration, what_to_show, regular_hours_only)
        )
        if self._answer_error(req_id, contract.con_id):
            return
        self._later(self._answer_bars, req_id, contract.con_id)

    def _answer_bars(self, req_id: int, con_id: int) -> None:
        for bar in self.script.bars.get(con_id, []):
            self.historical_bar_event.emit(req_id, bar)
        self.historical_bar_event.emit(req_id, Bar.finished())

    def cancel_historical_data(self, req_id: int) -> None:
        pass

    def request_market_data_tick(self, req_id: int, contract: ContractSpec) -> None:
        self.script.tick_requests.append(contract.con_id)
        if self._answer_error(req_id, contract.con_id):
            return
        self._later(self._answer_ticks, req_id, contract.con_id)

    def _answer_ticks(self, req_id: int, con_id: int) -> None:
        for tick_type, price in self.script.ticks.get(con_id, []):
            self.tick_event.emit(req_id, tick_type, price)

    def cancel_market_data_tick(self, req_id: int) -> None:
        self.script.tick_cancels.append(req_id)

    def _answer_error(self, req_id: int, con_id: int) -> bool:
        if con_id in self.script.silent_con_ids:
            return True
        error = self.script.request_errors.get(con_id)
        if error is None:
            return False
        self._later(self.error_event.emit, req_id, error[0], error[1])
        return True


class FakeGatewayFactory:
    """Session factory that records every session it creates."""

    def __init__(self, script: GatewayScript):
        self.script = script
        self.sessions: List[FakeGateway] = []

    def __call__(self) -> FakeGateway:
        session = FakeGateway(self.script)
        self.sessions.append(session)
        return session

    @property
    def live_sessions(self) -> List[FakeGateway]:
        return [s for s in self.sessions if s.is_connected()]


class FakeClock:
    """Manually advanced monotonic clock whose ``sleep`` advances time."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def make_position(
    con_id: int,
    symbol: str,
    sec_type: str = "STK",
    quantity: float = 100,
    price: Optional[float] = 50.0,
    currency: str = "USD",
    exchange: str = "NASDAQ",
    account: str = "DU123",
) -> PortfolioUpdate:
    return PortfolioUpdate(
        contract=ContractSpec(
            con_id=con_id,
            symbol=symbol,
            sec_type=sec_type,
            exchange=exchange,
            currency=currency,
            primary_exchange=exchange,
        ),
        position=quantity,
        market_price=price,
        market_value=None if price is None else price * quantity,
        average_cost=price,
        unrealized_pnl=0.0,
        realized_pnl=0.0,
        account=account,
    )


def daily_bars(*closes: float) -> List[Bar]:
    return [Bar(date=f"2024-01-{i + 1:02d}", close=close) for i, close in enumerate(closes)]


@pytest.fixture
def gateway_script():
    return GatewayScript()


@pytest.fixture
def session_factory(gateway_script):
    return FakeGatewayFactory(gateway_script)


@pytest.fixture
def gateway_config():
    return GatewayConfig(host="127.0.0.1", port=4002, client_id=7, account_code="DU123")


@pytest.fixture
def connection_settings():
    return ConnectionSettings(
        min_attempt_interval_seconds=0,
        max_connect_attempts=3,
        retry_base_delay=0.01,
        retry_max_delay=0.02,
    )


@pytest.fixture
def request_settings():
    return RequestSettings(
        account_summary_timeout=0.5,
        contract_details_timeout=0.5,
        historical_data_timeout=0.5,
        market_data_timeout=0.2,
        download_timeout=0.5,
        cancel_settle_seconds=0,
    )


@pytest.fixture
def throttle_settings():
    return ThrottleSettings(
        max_requests=50,
        window_seconds=600,
        min_spacing_seconds=2.0,
        cooldown_seconds=600,
    )


@pytest.fixture
def sync_settings():
    return SyncSettings(stale_after_minutes=30, auto_refresh_minutes=30)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
async def connection(session_factory, connection_settings):
    manager = IbConnectionManager(session_factory, settings=connection_settings)
    yield manager
    await manager.disconnect("test teardown")


@pytest.fixture
def coordinator(connection, request_settings):
    return IbRequestCoordinator(connection, settings=request_settings)


@pytest.fixture
def feed(connection, coordinator, request_settings):
    return AccountSubscriptionFeed(connection, coordinator, settings=request_settings)


@pytest.fixture
def throttle(throttle_settings, fake_clock):
    return IbRequestThrottle(throttle_settings, clock=fake_clock, sleep=fake_clock.sleep)
