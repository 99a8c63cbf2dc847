"""
Persistence sync.

Writes one account snapshot as three independent replace-all sub-writes
(balance, portfolio, cash) and stamps a last-refresh time per category.
"""

from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional

from portsync.config.settings import SyncSettings, get_sync_settings
from portsync.errors import PersistenceError
from portsync.logging import get_logger, log_error, log_performance
from portsync.models import AccountSnapshot, RefreshCategory
from portsync.persistence.store import SnapshotStore

logger = get_logger(__name__)


class PersistenceSync:
    def __init__(
        self,
        store: SnapshotStore,
        settings: Optional[SyncSettings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.settings = settings or get_sync_settings()
        self._clock = clock

    @property
    def source(self) -> str:
        return self.settings.source_tag

    @log_performance(threshold_ms=500)
    async def sync(self, account_id: int, snapshot: AccountSnapshot) -> Dict[RefreshCategory, bool]:
        """
        Persist ``snapshot`` for ``account_id``.

        A failing sub-write is logged and reported as ``False`` in the result;
        the remaining sub-writes are still attempted.
        """
        steps: Dict[RefreshCategory, Callable[[], Awaitable[bool]]] = {
            RefreshCategory.BALANCE: lambda: self._write_balance(account_id, snapshot),
            RefreshCategory.PORTFOLIO: lambda: self._write_positions(account_id, snapshot),
            RefreshCategory.CASH: lambda: self._write_cash(account_id, snapshot),
        }

        results: Dict[RefreshCategory, bool] = {}
        for category, step in steps.items():
            try:
                written = await step()
                if written:
                    await self.store.mark_refreshed(account_id, category, self._clock())
                results[category] = written
            except Exception as e:
                error = PersistenceError(
                    f"Failed to persist {category.value} for account {account_id}: {e}",
                    sub_operation=category.value,
                    account_id=account_id,
                )
                log_error(logger, str(error), e, sub_operation=category.value)
                results[category] = False

        logger.info(
            f"Persisted account {account_id}: "
            + ", ".join(f"{c.value}={'ok' if ok else 'failed'}" for c, ok in results.items())
        )
        return results

    async def _write_balance(self, account_id: int, snapshot: AccountSnapshot) -> bool:
        if snapshot.balance is None:
            # Keep the previous balance rather than blank it out
            logger.warning(f"No balance available for account {account_id}, skipping")
            return False
        await self.store.replace_balance(account_id, self.source, snapshot.balance)
        return True

    async def _write_positions(self, account_id: int, snapshot: AccountSnapshot) -> bool:
        count = await self.store.replace_positions(account_id, self.source, snapshot.positions)
        logger.debug(f"Wrote {count} positions for account {account_id}")
        return True

    async def _write_cash(self, account_id: int, snapshot: AccountSnapshot) -> bool:
        count = await self.store.replace_cash_balances(
            account_id, self.source, snapshot.cash_balances
        )
        logger.debug(f"Wrote {count} cash balances for account {account_id}")
        return True

    async def needs_refresh(
        self, account_id: int, category: RefreshCategory = RefreshCategory.PORTFOLIO
    ) -> bool:
        """True when ``category`` was never refreshed or is older than the staleness limit."""
        stamps = await self.store.load_last_refreshed(account_id)
        last = stamps.get(category)
        if last is None:
            return True
        age = self._clock() - last
        return age >= timedelta(minutes=self.settings.stale_after_minutes)

    async def refresh_status(self, account_id: int) -> Dict[str, Dict[str, object]]:
        stamps = await self.store.load_last_refreshed(account_id)
        status = {}
        for category in RefreshCategory:
            last = stamps.get(category)
            status[category.value] = {
                "last_refreshed": last.isoformat() if last else None,
                "needs_refresh": await self.needs_refresh(account_id, category),
            }
        return status
