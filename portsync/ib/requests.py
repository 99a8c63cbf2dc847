"""
IB Request Coordinator

Single-shot request/response exchanges over the shared session:
account summary, contract details, historical bars and tick snapshots.

Each request gets an id, handlers scoped to that id, a deadline and exactly
one completion. Requests on the same channel are serialized with a lock so
at most one is in flight per channel; the account channel is shared with the
streaming account subscription, which the gateway does not allow to overlap
with an account summary.
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from eventkit import Event

from portsync.config.settings import RequestSettings, get_request_settings
from portsync.errors import (
    GatewayRequestError,
    RequestCancelledError,
    RequestTimeoutError,
)
from portsync.ib.connection import IbConnectionManager
from portsync.ib.error_classifier import IbErrorClassifier
from portsync.ib.gateway import AccountValue, Bar, ContractDetails, GatewaySession
from portsync.logging import get_logger

logger = get_logger(__name__)

# Fixed id for the singleton account-summary channel, so a stale
# subscription from a previous cycle can always be cancelled by id
ACCOUNT_SUMMARY_REQ_ID = 1

AD_HOC_ID_RANGE = (1000, 11000)


class RequestKind(Enum):
    ACCOUNT_SUMMARY = "account_summary"
    CONTRACT_DETAILS = "contract_details"
    HISTORICAL_DATA = "historical_data"
    MARKET_DATA_TICK = "market_data_tick"


class Channel(Enum):
    ACCOUNT = "account"
    CONTRACT_DETAILS = "contract_details"
    HISTORICAL_DATA = "historical_data"
    MARKET_DATA = "market_data"


CHANNEL_FOR_KIND = {
    RequestKind.ACCOUNT_SUMMARY: Channel.ACCOUNT,
    RequestKind.CONTRACT_DETAILS: Channel.CONTRACT_DETAILS,
    RequestKind.HISTORICAL_DATA: Channel.HISTORICAL_DATA,
    RequestKind.MARKET_DATA_TICK: Channel.MARKET_DATA,
}


@dataclass
class PendingRequest:
    """One outstanding exchange; ``finished`` guards every completion path."""

    request_id: int
    kind: RequestKind
    params: Dict[str, Any]
    issued_at: float
    deadline: float
    future: asyncio.Future
    results: List[Any] = field(default_factory=list)
    ticks: Dict[int, float] = field(default_factory=dict)
    handlers: List[Tuple[Event, Callable]] = field(default_factory=list)
    cancelled: bool = False
    finished: bool = False

    def resolve(self, result: Any) -> bool:
        if self.finished:
            return False
        self.finished = True
        self.future.set_result(result)
        return True

    def reject(self, error: BaseException) -> bool:
        if self.finished:
            return False
        self.finished = True
        self.future.set_exception(error)
        return True

    def expire(self) -> bool:
        """Timeout path: mark finished without leaving an unretrieved result."""
        if self.finished:
            return False
        self.finished = True
        self.future.cancel()
        return True


class IbRequestCoordinator:
    """Issue requests over the session owned by ``IbConnectionManager``."""

    def __init__(
        self,
        connection: IbConnectionManager,
        settings: Optional[RequestSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.connection = connection
        self.settings = settings or get_request_settings()
        self._sleep = sleep
        self._clock = clock
        self._pending: Dict[int, PendingRequest] = {}
        self._channel_locks: Dict[Channel, asyncio.Lock] = {
            channel: asyncio.Lock() for channel in Channel
        }

        connection.add_teardown_hook(self.cancel_all)

        # Statistics
        self.stats = {
            "issued": 0,
            "completed": 0,
            "timed_out": 0,
            "failed": 0,
            "cancelled": 0,
        }

    def channel_lock(self, channel: Channel) -> asyncio.Lock:
        return self._channel_locks[channel]

    def default_timeout(self, kind: RequestKind) -> float:
        return {
            RequestKind.ACCOUNT_SUMMARY: self.settings.account_summary_timeout,
            RequestKind.CONTRACT_DETAILS: self.settings.contract_details_timeout,
            RequestKind.HISTORICAL_DATA: self.settings.historical_data_timeout,
            RequestKind.MARKET_DATA_TICK: self.settings.market_data_timeout,
        }[kind]

    # --- public API --------------------------------------------------------

    async def issue(
        self,
        kind: RequestKind,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Issue one request and wait for its terminating event.

        Result by kind:
            ACCOUNT_SUMMARY: list of ``AccountValue``
            CONTRACT_DETAILS: list of ``ContractDetails``
            HISTORICAL_DATA: list of ``Bar`` (sentinel excluded)
            MARKET_DATA_TICK: dict of tick type -> price collected until the
                required ticks arrived or the window closed

        Raises:
            RequestTimeoutError: no terminating event before the deadline
            GatewayRequestError: the gateway reported an error for this id
            RequestCancelledError: cancelled explicitly or by disconnect
            NotConnectedError: no live session
        """
        params = dict(params or {})
        timeout = timeout if timeout is not None else self.default_timeout(kind)

        async with self._channel_locks[CHANNEL_FOR_KIND[kind]]:
            session = self.connection.get_session(kind.value)

            if kind == RequestKind.ACCOUNT_SUMMARY:
                request_id = ACCOUNT_SUMMARY_REQ_ID
                await self._cancel_stale_account_summary(session)
            else:
                request_id = self._allocate_id()

            now = self._clock()
            pending = PendingRequest(
                request_id=request_id,
                kind=kind,
                params=params,
                issued_at=now,
                deadline=now + timeout,
                future=asyncio.get_running_loop().create_future(),
            )
            self._pending[request_id] = pending
            self._register_handlers(session, pending)
            self.stats["issued"] += 1
            self.connection.touch()
            logger.debug(f"Issuing {kind.value} request {request_id} (timeout {timeout}s)")

            try:
                self._send(session, pending)
                result = await asyncio.wait_for(asyncio.shield(pending.future), timeout)
                self.stats["completed"] += 1
                return result
            except asyncio.TimeoutError:
                return self._on_timeout(session, pending, timeout)
            except asyncio.CancelledError:
                pending.expire()
                self._best_effort_cancel(pending)
                raise
            except (GatewayRequestError, RequestCancelledError):
                self.stats["failed"] += 1
                raise
            finally:
                self._teardown(pending)
                if kind in (RequestKind.ACCOUNT_SUMMARY, RequestKind.MARKET_DATA_TICK):
                    # Both are subscriptions on the gateway side
                    self._best_effort_cancel(pending)
                self.connection.touch()

    def cancel(self, request_id: int, reason: str = "cancelled") -> bool:
        """Cancel one pending request; returns False when it already finished."""
        pending = self._pending.get(request_id)
        if pending is None:
            return False
        pending.cancelled = True
        self._best_effort_cancel(pending)
        if pending.reject(RequestCancelledError(request_id, pending.kind.value, reason)):
            self.stats["cancelled"] += 1
            return True
        return False

    def cancel_all(self, reason: str = "cancelled") -> None:
        """Fail every pending request. Registered as a connection teardown hook."""
        if self._pending:
            logger.info(f"Cancelling {len(self._pending)} pending request(s): {reason}")
        for request_id in list(self._pending):
            self.cancel(request_id, reason)

    def pending_count(self) -> int:
        return len(self._pending)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "pending": len(self._pending),
            "busy_channels": [
                channel.value
                for channel, lock in self._channel_locks.items()
                if lock.locked()
            ],
        }

    # --- internals ---------------------------------------------------------

    def _allocate_id(self) -> int:
        while True:
            request_id = random.randint(*AD_HOC_ID_RANGE)
            if request_id not in self._pending:
                return request_id

    async def _cancel_stale_account_summary(self, session: GatewaySession) -> None:
        # No cancel-ack exists, so give the gateway a moment to drop it
        session.cancel_account_summary(ACCOUNT_SUMMARY_REQ_ID)
        if self.settings.cancel_settle_seconds > 0:
            await self._sleep(self.settings.cancel_settle_seconds)

    def _on_timeout(self, session: GatewaySession, pending: PendingRequest, timeout: float) -> Any:
        if pending.future.done() and not pending.future.cancelled():
            # Completed in the same loop iteration the deadline fired
            self.stats["completed"] += 1
            return pending.future.result()

        if pending.kind == RequestKind.MARKET_DATA_TICK and pending.ticks:
            # The window closed with partial quotes; callers decide if they suffice
            pending.resolve(dict(pending.ticks))
            self.stats["completed"] += 1
            return dict(pending.ticks)

        pending.expire()
        self.stats["timed_out"] += 1
        self._best_effort_cancel(pending)
        logger.warning(f"{pending.kind.value} request {pending.request_id} timed out after {timeout}s")
        raise RequestTimeoutError(pending.request_id, pending.kind.value, timeout)

    def _send(self, session: GatewaySession, pending: PendingRequest) -> None:
        p = pending.params
        rid = pending.request_id
        if pending.kind == RequestKind.ACCOUNT_SUMMARY:
            session.request_account_summary(rid, p.get("group", "All"), p["tags"])
        elif pending.kind == RequestKind.CONTRACT_DETAILS:
            session.request_contract_details(rid, p["con_id"])
        elif pending.kind == RequestKind.HISTORICAL_DATA:
            session.request_historical_data(
                rid,
                p["contract"],
                p["duration"],
                p.get("bar_size", "1 day"),
                p.get("what_to_show", "TRADES"),
                p.get("regular_hours_only", True),
            )
        elif pending.kind == RequestKind.MARKET_DATA_TICK:
            session.request_market_data_tick(rid, p["contract"])

    def _best_effort_cancel(self, pending: PendingRequest) -> None:
        if not self.connection.is_connected():
            return
        session = self.connection.get_session()
        try:
            if pending.kind == RequestKind.ACCOUNT_SUMMARY:
                session.cancel_account_summary(pending.request_id)
            elif pending.kind == RequestKind.HISTORICAL_DATA:
                session.cancel_historical_data(pending.request_id)
            elif pending.kind == RequestKind.MARKET_DATA_TICK:
                session.cancel_market_data_tick(pending.request_id)
        except Exception as e:
            logger.debug(f"Cancel of {pending.kind.value} request {pending.request_id} failed: {e}")

    def _register_handlers(self, session: GatewaySession, pending: PendingRequest) -> None:
        rid = pending.request_id

        def on_error(req_id: int, code: int, message: str) -> None:
            if req_id != rid or IbErrorClassifier.is_informational(code):
                return
            logger.debug(f"IB error {code} for {pending.kind.value} request {rid}: {message}")
            pending.reject(GatewayRequestError(rid, pending.kind.value, code, message))

        handlers: List[Tuple[Event, Callable]] = [(session.error_event, on_error)]

        if pending.kind == RequestKind.ACCOUNT_SUMMARY:

            def on_summary(req_id: int, value: AccountValue) -> None:
                if req_id == rid:
                    pending.results.append(value)

            def on_summary_end(req_id: int) -> None:
                if req_id == rid:
                    pending.resolve(list(pending.results))

            handlers += [
                (session.account_summary_event, on_summary),
                (session.account_summary_end_event, on_summary_end),
            ]

        elif pending.kind == RequestKind.CONTRACT_DETAILS:

            def on_details(req_id: int, details: ContractDetails) -> None:
                if req_id == rid:
                    pending.results.append(details)

            def on_details_end(req_id: int) -> None:
                if req_id == rid:
                    pending.resolve(list(pending.results))

            handlers += [
                (session.contract_details_event, on_details),
                (session.contract_details_end_event, on_details_end),
            ]

        elif pending.kind == RequestKind.HISTORICAL_DATA:

            def on_bar(req_id: int, bar: Bar) -> None:
                if req_id != rid:
                    return
                if bar.is_finished:
                    pending.resolve(list(pending.results))
                else:
                    pending.results.append(bar)

            handlers.append((session.historical_bar_event, on_bar))

        elif pending.kind == RequestKind.MARKET_DATA_TICK:
            required = frozenset(pending.params.get("required_ticks", ()))

            def on_tick(req_id: int, tick_type: int, price: float) -> None:
                if req_id != rid or price is None or price <= 0:
                    return
                pending.ticks[tick_type] = price
                if required and _ticks_satisfied(pending.ticks, required):
                    pending.resolve(dict(pending.ticks))

            handlers.append((session.tick_event, on_tick))

        for event, handler in handlers:
            event += handler
        pending.handlers = handlers

    def _teardown(self, pending: PendingRequest) -> None:
        for event, handler in pending.handlers:
            event -= handler
        pending.handlers = []
        self._pending.pop(pending.request_id, None)


def _ticks_satisfied(ticks: Dict[int, float], required: frozenset) -> bool:
    """
    ``required`` holds groups of interchangeable tick types (e.g. live or
    delayed last); each group needs one member present.
    """
    return all(any(t in ticks for t in group) for group in required)
