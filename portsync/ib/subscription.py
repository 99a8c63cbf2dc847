"""
Account subscription feed.

Opens the long-lived account stream and accumulates its events:

- account values keyed by tag; tags the gateway repeats once per currency
  are keyed ``tag:currency``
- positions keyed by contract id, updated in place
- cash lines from the position stream (security type ``CASH``) go to a
  separate cash accumulator
- a download-complete latch; the accumulators are a consistent snapshot
  only after it fires

States: IDLE -> SUBSCRIBING -> STREAMING -> (unsubscribe) -> IDLE
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from portsync.config.settings import RequestSettings, get_request_settings
from portsync.errors import SubscriptionTimeoutError
from portsync.ib.connection import IbConnectionManager
from portsync.ib.gateway import AccountValue, GatewaySession, PortfolioUpdate
from portsync.ib.requests import Channel, IbRequestCoordinator
from portsync.logging import get_logger, should_sample_log
from portsync.models import CASH_SEC_TYPE, RawPosition

logger = get_logger(__name__)

# Account value tags reported once per currency
CURRENCY_KEYED_TAGS = frozenset(
    {
        "CashBalance",
        "TotalCashBalance",
        "ExchangeRate",
        "NetLiquidationByCurrency",
        "UnrealizedPnL",
        "RealizedPnL",
        "StockMarketValue",
    }
)

BASE_CURRENCY = "BASE"


class FeedState(Enum):
    IDLE = "idle"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"


def account_value_key(tag: str, currency: str) -> str:
    if tag in CURRENCY_KEYED_TAGS and currency:
        return f"{tag}:{currency}"
    return tag


@dataclass
class AccountStreamSnapshot:
    """Copy of the accumulators taken after download complete."""

    account_code: str
    account_values: Dict[str, AccountValue] = field(default_factory=dict)
    positions: Dict[int, RawPosition] = field(default_factory=dict)
    cash_positions: Dict[str, float] = field(default_factory=dict)
    complete: bool = False
    taken_at: Optional[datetime] = None

    def value(self, tag: str, currency: str = "") -> Optional[str]:
        item = self.account_values.get(account_value_key(tag, currency))
        return item.value if item is not None else None

    def float_value(self, tag: str, currency: str = "") -> Optional[float]:
        raw = self.value(tag, currency)
        if raw is None or raw == "":
            return None
        try:
            return float(raw)
        except ValueError:
            return None

    def cash_by_currency(self) -> Dict[str, float]:
        """Per-currency CashBalance values, excluding the BASE aggregate."""
        balances: Dict[str, float] = {}
        for item in self.account_values.values():
            if item.tag != "CashBalance" or item.currency in ("", BASE_CURRENCY):
                continue
            try:
                balances[item.currency] = float(item.value)
            except ValueError:
                continue
        return balances


class AccountSubscriptionFeed:
    """Streaming account/portfolio/cash subscription over the shared session."""

    def __init__(
        self,
        connection: IbConnectionManager,
        coordinator: IbRequestCoordinator,
        settings: Optional[RequestSettings] = None,
    ):
        self.connection = connection
        self.coordinator = coordinator
        self.settings = settings or get_request_settings()

        self.state = FeedState.IDLE
        self.account_code = ""
        self._session: Optional[GatewaySession] = None
        self._subscribe_task: Optional[asyncio.Task] = None
        self._holds_channel = False

        self._account_values: Dict[str, AccountValue] = {}
        self._positions: Dict[int, RawPosition] = {}
        self._cash_positions: Dict[str, float] = {}
        self._download_complete = asyncio.Event()

        self.updates_received = 0
        self.subscriptions_opened = 0

        connection.add_teardown_hook(self._on_session_teardown)

    # --- public API --------------------------------------------------------

    async def subscribe(self, account_code: str = "", timeout: Optional[float] = None) -> AccountStreamSnapshot:
        """
        Open the stream and wait for download complete.

        No-op (returns the current snapshot) when already streaming the same
        account; concurrent callers during SUBSCRIBING share the one attempt.
        """
        if self.state == FeedState.STREAMING and self.account_code == account_code:
            logger.debug("Already streaming account updates")
            return self.snapshot()

        if self.state != FeedState.IDLE and self.account_code != account_code:
            logger.info(f"Switching account stream from '{self.account_code}' to '{account_code}'")
            await self.unsubscribe()

        if self._subscribe_task is None or self._subscribe_task.done():
            self._subscribe_task = asyncio.ensure_future(self._open(account_code, timeout))
        return await asyncio.shield(self._subscribe_task)

    async def unsubscribe(self) -> None:
        """Close the stream and release the account channel. Idempotent."""
        if self._subscribe_task is not None and not self._subscribe_task.done():
            if self._subscribe_task is not asyncio.current_task():
                self._subscribe_task.cancel()
        if self.state == FeedState.IDLE and self._session is None:
            return

        session = self._session
        self._detach()
        if session is not None and session.is_connected():
            session.subscribe_account_updates(False, self.account_code)
        logger.info(
            f"Account stream closed ('{self.account_code or 'default'}', "
            f"{self.updates_received} updates)"
        )
        self._reset_state()

    def snapshot(self) -> AccountStreamSnapshot:
        return AccountStreamSnapshot(
            account_code=self.account_code,
            account_values=dict(self._account_values),
            positions=dict(self._positions),
            cash_positions=dict(self._cash_positions),
            complete=self._download_complete.is_set(),
            taken_at=datetime.now(timezone.utc),
        )

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "account_code": self.account_code,
            "download_complete": self._download_complete.is_set(),
            "positions": len(self._positions),
            "account_values": len(self._account_values),
            "cash_positions": len(self._cash_positions),
            "updates_received": self.updates_received,
            "subscriptions_opened": self.subscriptions_opened,
        }

    # --- internals ---------------------------------------------------------

    async def _open(self, account_code: str, timeout: Optional[float]) -> AccountStreamSnapshot:
        timeout = timeout if timeout is not None else self.settings.download_timeout

        # The account summary request shares this channel
        await self.coordinator.channel_lock(Channel.ACCOUNT).acquire()
        self._holds_channel = True
        try:
            session = self.connection.get_session("account subscription")

            self.account_code = account_code
            self._account_values.clear()
            self._positions.clear()
            self._cash_positions.clear()
            self._download_complete.clear()
            self.updates_received = 0

            self.state = FeedState.SUBSCRIBING
            self._attach(session)
            session.subscribe_account_updates(True, account_code)
            self.subscriptions_opened += 1
            logger.info(f"Subscribing to account updates for '{account_code or 'default'}'")

            try:
                await asyncio.wait_for(self._download_complete.wait(), timeout)
            except asyncio.TimeoutError:
                raise SubscriptionTimeoutError(account_code, timeout) from None

            self.state = FeedState.STREAMING
            logger.info(
                f"Account download complete: {len(self._positions)} positions, "
                f"{len(self._account_values)} account values"
            )
            return self.snapshot()
        except BaseException:
            # Failed or cancelled before streaming; leave nothing half-open
            if self._session is not None:
                await self.unsubscribe()
            else:
                self._reset_state()
            raise

    def _attach(self, session: GatewaySession) -> None:
        self._session = session
        session.account_value_event += self._on_account_value
        session.portfolio_position_event += self._on_portfolio_position
        session.download_end_event += self._on_download_end

    def _detach(self) -> None:
        session = self._session
        self._session = None
        if session is None:
            return
        session.account_value_event -= self._on_account_value
        session.portfolio_position_event -= self._on_portfolio_position
        session.download_end_event -= self._on_download_end

    def _reset_state(self) -> None:
        self.state = FeedState.IDLE
        if self._holds_channel:
            self._holds_channel = False
            self.coordinator.channel_lock(Channel.ACCOUNT).release()

    def _on_session_teardown(self, reason: str) -> None:
        if self.state == FeedState.IDLE and self._session is None:
            return
        logger.info(f"Account stream dropped: {reason}")
        self._detach()
        if self._subscribe_task is not None and not self._subscribe_task.done():
            self._subscribe_task.cancel()
        self._reset_state()

    def _belongs_to_account(self, account: str) -> bool:
        return not self.account_code or not account or account == self.account_code

    def _on_account_value(self, value: AccountValue) -> None:
        if not self._belongs_to_account(value.account):
            return
        self._account_values[account_value_key(value.tag, value.currency)] = value
        self.updates_received += 1
        self.connection.touch()
        if should_sample_log("account_value"):
            logger.debug(f"Account value: {value.tag} = {value.value} {value.currency}")

    def _on_portfolio_position(self, update: PortfolioUpdate) -> None:
        if not self._belongs_to_account(update.account):
            return
        self.updates_received += 1
        self.connection.touch()
        contract = update.contract

        if contract.sec_type == CASH_SEC_TYPE:
            # Forex lines: symbol is the held currency, position the amount
            self._cash_positions[contract.symbol] = update.position
            return

        position = self._positions.get(contract.con_id)
        if position is None:
            position = RawPosition(
                con_id=contract.con_id,
                symbol=contract.symbol,
                sec_type=contract.sec_type,
                currency=contract.currency,
                exchange=contract.exchange,
                primary_exchange=contract.primary_exchange,
                local_symbol=contract.local_symbol,
                account_code=update.account,
            )
            self._positions[contract.con_id] = position

        position.apply_update(
            quantity=update.position,
            last_price=update.market_price,
            market_value=update.market_value,
            average_cost=update.average_cost,
            unrealized_pnl=update.unrealized_pnl,
            realized_pnl=update.realized_pnl,
        )
        if should_sample_log("portfolio_position", sample_rate=20):
            logger.debug(
                f"Position update: {contract.symbol} ({contract.sec_type}) "
                f"{update.position} @ {update.market_price}"
            )

    def _on_download_end(self, account: str) -> None:
        if not self._belongs_to_account(account):
            return
        if not self._download_complete.is_set():
            logger.debug(f"Download end for '{account or 'default'}'")
            self._download_complete.set()
