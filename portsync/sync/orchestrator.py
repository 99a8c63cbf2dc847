"""
Integration orchestrator.

One refresh cycle for one account:

    ensure_connected -> subscribe (wait for download complete) -> close the
    stream -> balance (stream, else account summary) -> enrich -> cash
    valuation -> persist -> read the snapshot back from storage

In streaming mode the account stream stays open after the first cycle and a
background task re-runs the cycle every ``stream_sync_seconds`` against the
live stream. A cycle that finds the stream gone subscribes again.

Cycles are serialized process-wide because they share one gateway session
and one account stream. A per-account guard keeps a background refresh from
starting while another refresh of the same account is running.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from portsync.config.gateway_config import GatewayConfig
from portsync.config.settings import SyncSettings, get_sync_settings
from portsync.errors import RateLimitError, RefreshInProgressError, RequestError
from portsync.enrichment.pipeline import EnrichmentPipeline
from portsync.ib.connection import IbConnectionManager
from portsync.ib.gateway import AccountValue
from portsync.ib.requests import IbRequestCoordinator, RequestKind
from portsync.ib.subscription import AccountStreamSnapshot, AccountSubscriptionFeed
from portsync.logging import get_logger, log_error, log_performance
from portsync.models import AccountBalance, AccountSnapshot, CashBalance, RefreshCategory
from portsync.persistence.fx import FxRateProvider
from portsync.persistence.sync import PersistenceSync

logger = get_logger(__name__)

ACCOUNT_SUMMARY_TAGS = "NetLiquidation,TotalCashValue,Currency"
DEFAULT_CURRENCY = "USD"


def _parse_float(raw: Optional[str]) -> Optional[float]:
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def balance_from_stream(stream: AccountStreamSnapshot) -> Optional[AccountBalance]:
    """Net liquidation from the account stream, else total cash value."""
    for tag in ("NetLiquidation", "TotalCashValue"):
        item = stream.account_values.get(tag)
        amount = _parse_float(item.value) if item is not None else None
        if amount is not None:
            return AccountBalance(
                amount=amount,
                currency=item.currency or DEFAULT_CURRENCY,
                account_code=item.account or stream.account_code,
                total_cash=stream.float_value("TotalCashValue"),
            )
    return None


def balance_from_summary(values: List[AccountValue], account_code: str = "") -> Optional[AccountBalance]:
    """Same rule applied to account-summary rows."""
    by_tag: Dict[str, AccountValue] = {}
    for value in values:
        if account_code and value.account and value.account != account_code:
            continue
        by_tag.setdefault(value.tag, value)

    currency_row = by_tag.get("Currency")
    total_cash = _parse_float(by_tag["TotalCashValue"].value) if "TotalCashValue" in by_tag else None

    for tag in ("NetLiquidation", "TotalCashValue"):
        item = by_tag.get(tag)
        amount = _parse_float(item.value) if item is not None else None
        if amount is None:
            continue
        currency = item.currency or (currency_row.value if currency_row else "") or DEFAULT_CURRENCY
        return AccountBalance(
            amount=amount,
            currency=currency,
            account_code=item.account or account_code,
            total_cash=total_cash,
        )
    return None


def cash_amounts(stream: AccountStreamSnapshot) -> Dict[str, float]:
    """
    Non-zero cash per currency: CashBalance account values first, then cash
    lines from the position stream for currencies not already covered.
    """
    amounts = {ccy: amount for ccy, amount in stream.cash_by_currency().items() if amount != 0}
    for currency, amount in stream.cash_positions.items():
        if currency not in amounts and amount != 0:
            amounts[currency] = amount
    return amounts


class IntegrationOrchestrator:
    def __init__(
        self,
        connection: IbConnectionManager,
        feed: AccountSubscriptionFeed,
        coordinator: IbRequestCoordinator,
        pipeline: EnrichmentPipeline,
        persistence: PersistenceSync,
        fx: FxRateProvider,
        settings: Optional[SyncSettings] = None,
    ):
        self.connection = connection
        self.feed = feed
        self.coordinator = coordinator
        self.pipeline = pipeline
        self.persistence = persistence
        self.fx = fx
        self.settings = settings or get_sync_settings()

        self._cycle_lock = asyncio.Lock()
        self._account_locks: Dict[int, asyncio.Lock] = {}
        self._last_results: Dict[int, Dict[str, Any]] = {}

        # Streaming mode
        self._streaming_account: Optional[int] = None
        self._stream_task: Optional[asyncio.Task] = None
        self._stream_stop = asyncio.Event()
        self.stream_syncs = 0
        self.stream_sync_failures = 0

        self.refreshes_completed = 0
        self.refreshes_failed = 0

    def _account_lock(self, account_id: int) -> asyncio.Lock:
        lock = self._account_locks.get(account_id)
        if lock is None:
            lock = self._account_locks[account_id] = asyncio.Lock()
        return lock

    def is_refreshing(self, account_id: int) -> bool:
        lock = self._account_locks.get(account_id)
        return lock is not None and lock.locked()

    async def refresh(
        self,
        account_id: int,
        config: GatewayConfig,
        manual: bool = True,
        wait: bool = True,
    ) -> AccountSnapshot:
        """
        Run one live refresh and return the snapshot as persisted.

        Args:
            account_id: Storage key of the account
            config: Gateway to use for this cycle
            manual: Operator-triggered refresh; clears the failed-bond memory
            wait: Wait for a running refresh of the same account instead of
                raising ``RefreshInProgressError``

        Raises:
            GatewayConnectionError: the session could not be established or was lost
            SubscriptionTimeoutError: the account download never completed
            RefreshInProgressError: ``wait`` is False and a refresh is running
        """
        lock = self._account_lock(account_id)
        if lock.locked() and not wait:
            raise RefreshInProgressError(account_id)

        async with lock:
            async with self._cycle_lock:
                try:
                    snapshot = await self._run_cycle(account_id, config, manual)
                except Exception as e:
                    self.refreshes_failed += 1
                    self._last_results[account_id] = {
                        "finished_at": datetime.now(timezone.utc).isoformat(),
                        "ok": False,
                        "error": str(e),
                    }
                    raise
                self.refreshes_completed += 1
                return snapshot

    @log_performance(threshold_ms=0)
    async def _run_cycle(self, account_id: int, config: GatewayConfig, manual: bool) -> AccountSnapshot:
        logger.info(f"Refreshing account {account_id} ({'manual' if manual else 'background'}) via {config}")
        await self.connection.ensure_connected(config)

        keep_stream = self._streaming_account == account_id
        try:
            stream = await self.feed.subscribe(config.account_code)
        finally:
            # The account-summary fallback needs the account channel
            if not keep_stream:
                await self.feed.unsubscribe()

        balance = balance_from_stream(stream)
        if balance is None and not keep_stream:
            balance = await self._balance_from_account_summary(config.account_code)
        elif balance is None:
            logger.warning("NetLiquidation missing from the live account stream")

        if manual:
            self.pipeline.reset_failed_bonds()
        # Positions closed today stay in the snapshot with quantity 0
        positions = await self.pipeline.enrich(list(stream.positions.values()))

        cash_balances: List[CashBalance] = [
            self.fx.value_cash(currency, amount)
            for currency, amount in sorted(cash_amounts(stream).items())
        ]

        snapshot = AccountSnapshot(
            account_id=account_id,
            balance=balance,
            positions=positions,
            cash_balances=cash_balances,
        )
        results = await self.persistence.sync(account_id, snapshot)
        self._last_results[account_id] = {
            "finished_at": datetime.now(timezone.utc).isoformat(),
            "ok": all(results.values()),
            "positions": len(positions),
            "cash_balances": len(cash_balances),
            "writes": {category.value: ok for category, ok in results.items()},
        }

        return await self.get_snapshot(account_id)

    async def _balance_from_account_summary(self, account_code: str) -> Optional[AccountBalance]:
        logger.info("NetLiquidation missing from account stream, requesting account summary")
        try:
            values = await self.coordinator.issue(
                RequestKind.ACCOUNT_SUMMARY, {"group": "All", "tags": ACCOUNT_SUMMARY_TAGS}
            )
        except (RequestError, RateLimitError) as e:
            log_error(logger, "Account summary fallback failed", e)
            return None
        balance = balance_from_summary(values, account_code)
        if balance is None:
            logger.warning("Account summary carried no NetLiquidation or TotalCashValue")
        return balance

    async def get_snapshot(self, account_id: int) -> AccountSnapshot:
        """Last persisted snapshot; never touches the gateway."""
        return await self.persistence.store.load_snapshot(account_id, self.persistence.source)

    async def needs_refresh(
        self, account_id: int, category: RefreshCategory = RefreshCategory.PORTFOLIO
    ) -> bool:
        return await self.persistence.needs_refresh(account_id, category)

    # --- streaming mode ----------------------------------------------------

    @property
    def streaming(self) -> bool:
        return self._stream_task is not None and not self._stream_task.done()

    async def start_streaming(self, account_id: int, config: GatewayConfig) -> AccountSnapshot:
        """
        Refresh once, keep the account stream open and persist it periodically.

        Streaming another account first stops the current stream. Raises
        whatever the first refresh raises; the stream is closed in that case.
        """
        if self.streaming:
            if self._streaming_account == account_id:
                return await self.get_snapshot(account_id)
            await self.stop_streaming()

        self._streaming_account = account_id
        try:
            snapshot = await self.refresh(account_id, config, manual=True)
        except Exception:
            self._streaming_account = None
            async with self._cycle_lock:
                await self.feed.unsubscribe()
            raise

        self._stream_stop.clear()
        self._stream_task = asyncio.ensure_future(self._stream_sync_loop(account_id, config))
        logger.info(
            f"Streaming account {account_id}, syncing every {self.settings.stream_sync_seconds:g}s"
        )
        return snapshot

    async def stop_streaming(self) -> None:
        """Stop the periodic sync and close the account stream. Idempotent."""
        task = self._stream_task
        self._stream_task = None
        account_id = self._streaming_account
        self._streaming_account = None
        if task is not None:
            self._stream_stop.set()
            await task
        if account_id is not None:
            async with self._cycle_lock:
                await self.feed.unsubscribe()
            logger.info(f"Stopped streaming account {account_id}")

    async def _stream_sync_loop(self, account_id: int, config: GatewayConfig) -> None:
        while True:
            try:
                await asyncio.wait_for(
                    self._stream_stop.wait(), timeout=self.settings.stream_sync_seconds
                )
                return
            except asyncio.TimeoutError:
                pass
            try:
                await self.refresh(account_id, config, manual=False, wait=False)
                self.stream_syncs += 1
            except RefreshInProgressError:
                logger.debug(f"Refresh of account {account_id} running, skipping stream sync")
            except Exception as e:
                self.stream_sync_failures += 1
                log_error(logger, f"Stream sync of account {account_id} failed", e)

    def status(self) -> Dict[str, Any]:
        return {
            "connection": self.connection.get_stats(),
            "subscription": self.feed.status(),
            "requests": self.coordinator.get_stats(),
            "throttle": self.pipeline.throttle.status(),
            "enrichment": self.pipeline.get_stats(),
            "failed_bonds": sorted(self.pipeline.failed_bonds),
            "refreshing_accounts": sorted(
                account_id for account_id, lock in self._account_locks.items() if lock.locked()
            ),
            "streaming": {
                "running": self.streaming,
                "account_id": self._streaming_account,
                "interval_seconds": self.settings.stream_sync_seconds,
                "syncs": self.stream_syncs,
                "failures": self.stream_sync_failures,
            },
            "refreshes_completed": self.refreshes_completed,
            "refreshes_failed": self.refreshes_failed,
            "last_results": dict(self._last_results),
        }
