"""
ib_insync implementation of ``GatewaySession``.

ib_insync manages its own request ids and futures. This adapter runs each
request as a task against the high-level async API and re-emits the results
on the request-id keyed events, ending every exchange with its terminating
event (``*_end`` or the ``finished`` bar). Errors ib_insync attributes to its
own requests resolve those requests with empty results; gateway error
notices are forwarded with ``req_id=-1``.
"""

import asyncio
from typing import Dict, List, Optional, Set

from ib_insync import IB, Contract, util

from portsync.errors import ConnectionTimeoutError, IdentityConflictError, TransportFailureError
from portsync.ib.error_classifier import IbErrorClassifier
from portsync.ib.gateway import (
    AccountValue,
    Bar,
    ContractDetails,
    ContractSpec,
    GatewaySession,
    PortfolioUpdate,
    TickType,
)
from portsync.logging import get_logger

logger = get_logger(__name__)

# 3 = delayed market data, which needs no paid subscription
DEFAULT_MARKET_DATA_TYPE = 3


def _to_contract(spec: ContractSpec) -> Contract:
    return Contract(
        conId=spec.con_id,
        symbol=spec.symbol,
        secType=spec.sec_type,
        exchange=spec.primary_exchange or spec.exchange or "SMART",
        currency=spec.currency,
    )


def _to_spec(contract: Contract) -> ContractSpec:
    return ContractSpec(
        con_id=contract.conId,
        symbol=contract.symbol,
        sec_type=contract.secType,
        exchange=contract.exchange,
        currency=contract.currency,
        primary_exchange=contract.primaryExchange,
        local_symbol=contract.localSymbol,
    )


def _price(value) -> Optional[float]:
    if value is None or util.isNan(value):
        return None
    return float(value)


class IbInsyncGateway(GatewaySession):
    """Gateway session backed by one ``ib_insync.IB`` instance."""

    def __init__(self, ib: Optional[IB] = None, market_data_type: int = DEFAULT_MARKET_DATA_TYPE):
        super().__init__()
        self.ib = ib or IB()
        self.market_data_type = market_data_type
        self._tasks: Dict[int, asyncio.Task] = {}
        self._tickers: Dict[int, tuple] = {}
        self._account_code = ""
        self._streaming = False
        self._connect_errors: List[tuple] = []

        self.ib.errorEvent += self._on_ib_error
        self.ib.disconnectedEvent += self._on_ib_disconnected

    # --- session -----------------------------------------------------------

    async def connect(self, host: str, port: int, client_id: int, timeout: float) -> None:
        self._connect_errors = []
        try:
            await self.ib.connectAsync(host, port, clientId=client_id, timeout=timeout, readonly=True)
        except asyncio.TimeoutError as e:
            self._raise_identity_conflict(client_id)
            raise ConnectionTimeoutError(host, port, timeout) from e
        except OSError as e:
            self._raise_identity_conflict(client_id)
            raise TransportFailureError(
                f"Transport error connecting to {host}:{port}: {e}",
                details={"host": host, "port": port},
            ) from e

        self._raise_identity_conflict(client_id)
        self.ib.reqMarketDataType(self.market_data_type)
        self.connected_event.emit()

    def _raise_identity_conflict(self, client_id: int) -> None:
        for code, message in self._connect_errors:
            if IbErrorClassifier.is_client_id_conflict(code, message):
                if self.ib.isConnected():
                    self.ib.disconnect()
                raise IdentityConflictError(client_id, message)

    def disconnect(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()
        self._tickers.clear()
        self._stop_streaming()
        self.ib.disconnect()

    def is_connected(self) -> bool:
        return self.ib.isConnected()

    def _on_ib_error(self, req_id, error_code, error_string, contract=None) -> None:
        if not self.ib.isConnected():
            self._connect_errors.append((error_code, error_string))
        self.error_event.emit(-1, error_code, error_string)

    def _on_ib_disconnected(self) -> None:
        self._stop_streaming()
        self.disconnected_event.emit()

    # --- account stream ----------------------------------------------------

    def subscribe_account_updates(self, subscribe: bool, account_code: str = "") -> None:
        if subscribe:
            if self._streaming:
                return
            self._account_code = account_code
            self._streaming = True
            self.ib.accountValueEvent += self._on_account_value
            self.ib.updatePortfolioEvent += self._on_portfolio_item
            self._spawn(0, self._account_download(account_code))
        else:
            self._stop_streaming()
            if self.ib.isConnected():
                self.ib.client.reqAccountUpdates(False, account_code)

    async def _account_download(self, account_code: str) -> None:
        await self.ib.reqAccountUpdatesAsync(account_code)
        # Replay what ib_insync already holds from its connect-time sync
        for value in self.ib.accountValues(account_code):
            self._on_account_value(value)
        for item in self.ib.portfolio(account_code):
            self._on_portfolio_item(item)
        self.download_end_event.emit(account_code)

    def _stop_streaming(self) -> None:
        if not self._streaming:
            return
        self._streaming = False
        self.ib.accountValueEvent -= self._on_account_value
        self.ib.updatePortfolioEvent -= self._on_portfolio_item
        task = self._tasks.pop(0, None)
        if task is not None:
            task.cancel()

    def _on_account_value(self, value) -> None:
        self.account_value_event.emit(
            AccountValue(tag=value.tag, value=value.value, currency=value.currency, account=value.account)
        )

    def _on_portfolio_item(self, item) -> None:
        self.portfolio_position_event.emit(
            PortfolioUpdate(
                contract=_to_spec(item.contract),
                position=item.position,
                market_price=_price(item.marketPrice),
                market_value=_price(item.marketValue),
                average_cost=_price(item.averageCost),
                unrealized_pnl=_price(item.unrealizedPNL),
                realized_pnl=_price(item.realizedPNL),
                account=item.account,
            )
        )

    # --- single-shot requests ---------------------------------------------

    def _spawn(self, req_id: int, coro) -> None:
        previous = self._tasks.pop(req_id, None)
        if previous is not None:
            previous.cancel()
        task = asyncio.ensure_future(self._guard(req_id, coro))
        self._tasks[req_id] = task

    async def _guard(self, req_id: int, coro) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"ib_insync request {req_id} failed: {e}")
            self.error_event.emit(req_id, 0, str(e))
        finally:
            if self._tasks.get(req_id) is asyncio.current_task():
                self._tasks.pop(req_id, None)

    def request_account_summary(self, req_id: int, group: str, tags: str) -> None:
        wanted: Set[str] = {t.strip() for t in tags.split(",") if t.strip()}
        self._spawn(req_id, self._account_summary(req_id, wanted))

    async def _account_summary(self, req_id: int, wanted: Set[str]) -> None:
        values = await self.ib.accountSummaryAsync(self._account_code)
        for value in values:
            if not wanted or value.tag in wanted:
                self.account_summary_event.emit(
                    req_id,
                    AccountValue(tag=value.tag, value=value.value, currency=value.currency, account=value.account),
                )
        self.account_summary_end_event.emit(req_id)

    def cancel_account_summary(self, req_id: int) -> None:
        task = self._tasks.pop(req_id, None)
        if task is not None:
            task.cancel()

    def request_contract_details(self, req_id: int, con_id: int) -> None:
        self._spawn(req_id, self._contract_details(req_id, con_id))

    async def _contract_details(self, req_id: int, con_id: int) -> None:
        details_list = await self.ib.reqContractDetailsAsync(Contract(conId=con_id))
        for cd in details_list:
            self.contract_details_event.emit(
                req_id,
                ContractDetails(
                    con_id=cd.contract.conId,
                    symbol=cd.contract.symbol,
                    long_name=cd.longName,
                    industry=cd.industry,
                    category=cd.category,
                    subcategory=cd.subcategory,
                    exchange=cd.contract.exchange,
                    primary_exchange=cd.contract.primaryExchange,
                    sec_type=cd.contract.secType,
                ),
            )
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
        self._spawn(
            req_id,
            self._historical_data(req_id, contract, duration, bar_size, what_to_show, regular_hours_only),
        )

    async def _historical_data(self, req_id, contract, duration, bar_size, what_to_show, regular_hours_only) -> None:
        bars = await self.ib.reqHistoricalDataAsync(
            _to_contract(contract),
            endDateTime="",
            durationStr=duration,
            barSizeSetting=bar_size,
            whatToShow=what_to_show,
            useRTH=regular_hours_only,
            formatDate=1,
        )
        for bar in bars or []:
            self.historical_bar_event.emit(
                req_id,
                Bar(
                    date=str(bar.date),
                    open=bar.open,
                    high=bar.high,
                    low=bar.low,
                    close=bar.close,
                    volume=bar.volume,
                ),
            )
        first = str(bars[0].date) if bars else ""
        last = str(bars[-1].date) if bars else ""
        self.historical_bar_event.emit(req_id, Bar.finished(first, last))

    def cancel_historical_data(self, req_id: int) -> None:
        task = self._tasks.pop(req_id, None)
        if task is not None:
            task.cancel()

    def request_market_data_tick(self, req_id: int, contract: ContractSpec) -> None:
        ib_contract = _to_contract(contract)
        ticker = self.ib.reqMktData(ib_contract, "", False, False)

        def on_update(t) -> None:
            for tick_type, value in (
                (TickType.LAST, t.last),
                (TickType.CLOSE, t.close),
                (TickType.BID, t.bid),
                (TickType.ASK, t.ask),
            ):
                price = _price(value)
                if price is not None and price > 0:
                    self.tick_event.emit(req_id, tick_type, price)

        ticker.updateEvent += on_update
        self._tickers[req_id] = (ib_contract, ticker, on_update)

    def cancel_market_data_tick(self, req_id: int) -> None:
        entry = self._tickers.pop(req_id, None)
        if entry is None:
            return
        ib_contract, ticker, on_update = entry
        ticker.updateEvent -= on_update
        if self.ib.isConnected():
            self.ib.cancelMktData(ib_contract)
