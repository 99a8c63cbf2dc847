"""
Process-wide sync engine.

Wires the shared components once per process: the gateway session owner,
the throttle, request coordinator, account stream, contract cache and
storage. Tests build a ``SyncEngine`` directly with fakes; applications use
``get_shared_engine()``.
"""

from typing import Any, Callable, Dict, Optional

from portsync.enrichment.contract_cache import ContractReferenceCache, ReferenceStore
from portsync.enrichment.pipeline import EnrichmentPipeline
from portsync.enrichment.reference_data import ReferenceDataProvider, YahooReferenceProvider
from portsync.ib.connection import IbConnectionManager
from portsync.ib.gateway import GatewaySession
from portsync.ib.requests import IbRequestCoordinator
from portsync.ib.subscription import AccountSubscriptionFeed
from portsync.ib.throttle import IbRequestThrottle
from portsync.logging import get_logger
from portsync.persistence.database import DatabaseManager
from portsync.persistence.fx import FxRateProvider, StaticFxRates
from portsync.persistence.store import (
    InMemorySnapshotStore,
    SnapshotStore,
    SqlReferenceStore,
    SqlSnapshotStore,
)
from portsync.persistence.sync import PersistenceSync
from portsync.sync.orchestrator import IntegrationOrchestrator
from portsync.sync.scheduler import AutoRefreshScheduler

logger = get_logger(__name__)


def default_session_factory() -> GatewaySession:
    from portsync.ib.insync_gateway import IbInsyncGateway

    return IbInsyncGateway()


class SyncEngine:
    """Holds every process-wide component and their wiring."""

    def __init__(
        self,
        session_factory: Callable[[], GatewaySession] = default_session_factory,
        db: Optional[DatabaseManager] = None,
        store: Optional[SnapshotStore] = None,
        reference_store: Optional[ReferenceStore] = None,
        reference_provider: Optional[ReferenceDataProvider] = None,
        fx: Optional[FxRateProvider] = None,
        throttle: Optional[IbRequestThrottle] = None,
    ):
        self.db = db

        self.connection = IbConnectionManager(session_factory)
        self.throttle = throttle or IbRequestThrottle()
        # Pacing and farm errors on any request start the cooldown
        self.connection.error_event += self.throttle.report_error
        self.coordinator = IbRequestCoordinator(self.connection)
        self.feed = AccountSubscriptionFeed(self.connection, self.coordinator)

        if reference_store is None and db is not None:
            reference_store = SqlReferenceStore(db)
        self.cache = ContractReferenceCache(reference_store)
        self.pipeline = EnrichmentPipeline(
            self.coordinator, self.throttle, self.cache, reference_provider
        )

        if store is None:
            store = SqlSnapshotStore(db) if db is not None else InMemorySnapshotStore()
        self.store = store
        self.persistence = PersistenceSync(store)
        self.fx = fx or StaticFxRates()

        self.orchestrator = IntegrationOrchestrator(
            self.connection,
            self.feed,
            self.coordinator,
            self.pipeline,
            self.persistence,
            self.fx,
        )
        self.scheduler = AutoRefreshScheduler(self.orchestrator)
        self._started = False

    async def start(self) -> None:
        """Create the schema and warm the contract cache. Idempotent."""
        if self._started:
            return
        if self.db is not None:
            await self.db.create_tables()
        await self.cache.warm()
        self._started = True

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.orchestrator.stop_streaming()
        await self.connection.disconnect("shutdown")
        if self.db is not None:
            await self.db.close()
        self._started = False

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.orchestrator.status(),
            "contract_cache": self.cache.get_stats(),
            "scheduler": self.scheduler.get_stats(),
        }


# Global shared engine instance
_shared_engine: Optional[SyncEngine] = None


async def get_shared_engine(database_url: Optional[str] = None) -> SyncEngine:
    """
    Get the shared engine, creating and starting it on first access.

    The gateway session, throttle window and contract cache are process-wide,
    so every caller in the process must go through this instance.
    """
    global _shared_engine

    if _shared_engine is None:
        logger.info("Creating shared sync engine")
        engine = SyncEngine(
            db=DatabaseManager(database_url),
            reference_provider=YahooReferenceProvider(),
        )
        await engine.start()
        _shared_engine = engine

    return _shared_engine


async def shutdown_shared_engine() -> None:
    """Disconnect and release the shared engine, if any."""
    global _shared_engine

    if _shared_engine is not None:
        logger.info("Shutting down shared sync engine")
        engine = _shared_engine
        _shared_engine = None
        await engine.close()
        logger.info("Shared sync engine shutdown complete")
