"""
Automatic background refresh.

Every ``auto_refresh_minutes`` the scheduler refreshes each registered
account whose portfolio data is stale. A background refresh never waits on a
running refresh of the same account; it skips it until the next tick.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from portsync.config.gateway_config import GatewayConfig
from portsync.config.settings import SyncSettings, get_sync_settings
from portsync.errors import PortsyncError, RefreshInProgressError
from portsync.logging import get_logger, log_error
from portsync.models import RefreshCategory
from portsync.sync.orchestrator import IntegrationOrchestrator

logger = get_logger(__name__)


class AutoRefreshScheduler:
    def __init__(
        self,
        orchestrator: IntegrationOrchestrator,
        settings: Optional[SyncSettings] = None,
    ):
        self.orchestrator = orchestrator
        self.settings = settings or get_sync_settings()
        self._accounts: Dict[int, GatewayConfig] = {}
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

        self.stats: Dict[str, Any] = {
            "ticks": 0,
            "refreshed": 0,
            "skipped_fresh": 0,
            "skipped_busy": 0,
            "failed": 0,
            "last_tick": None,
        }

    @property
    def interval_seconds(self) -> float:
        return self.settings.auto_refresh_minutes * 60

    def register(self, account_id: int, config: GatewayConfig) -> None:
        self._accounts[account_id] = config
        logger.info(f"Auto refresh registered for account {account_id}")

    def unregister(self, account_id: int) -> None:
        if self._accounts.pop(account_id, None) is not None:
            logger.info(f"Auto refresh removed for account {account_id}")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        if self.running:
            logger.warning("Auto refresh already running")
            return False
        self._stop_event.clear()
        self._task = asyncio.ensure_future(self._loop())
        logger.info(f"Auto refresh started (every {self.settings.auto_refresh_minutes:g} minutes)")
        return True

    async def stop(self) -> None:
        if not self.running:
            return
        self._stop_event.set()
        task = self._task
        self._task = None
        await task
        logger.info("Auto refresh stopped")

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                self.stats["failed"] += 1
                log_error(logger, "Auto refresh tick failed", e)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def run_once(self) -> Dict[int, str]:
        """Refresh every registered account that is due; returns the outcome per account."""
        self.stats["ticks"] += 1
        self.stats["last_tick"] = datetime.now(timezone.utc).isoformat()
        outcomes: Dict[int, str] = {}

        for account_id, config in list(self._accounts.items()):
            if not await self.orchestrator.needs_refresh(account_id, RefreshCategory.PORTFOLIO):
                self.stats["skipped_fresh"] += 1
                outcomes[account_id] = "fresh"
                continue
            try:
                await self.orchestrator.refresh(account_id, config, manual=False, wait=False)
            except RefreshInProgressError:
                self.stats["skipped_busy"] += 1
                outcomes[account_id] = "busy"
                logger.info(f"Refresh already running for account {account_id}, skipping")
                continue
            except PortsyncError as e:
                self.stats["failed"] += 1
                outcomes[account_id] = "failed"
                log_error(logger, f"Background refresh of account {account_id} failed", e)
                continue
            self.stats["refreshed"] += 1
            outcomes[account_id] = "refreshed"

        return outcomes

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "running": self.running,
            "accounts": sorted(self._accounts),
            "interval_seconds": self.interval_seconds,
        }
