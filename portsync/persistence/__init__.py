"""
Durable storage of account snapshots.
"""

from portsync.persistence.database import DatabaseManager
from portsync.persistence.fx import FxRateProvider, StaticFxRates
from portsync.persistence.store import (
    InMemorySnapshotStore,
    SnapshotStore,
    SqlReferenceStore,
    SqlSnapshotStore,
)
from portsync.persistence.sync import PersistenceSync

__all__ = [
    "DatabaseManager",
    "FxRateProvider",
    "InMemorySnapshotStore",
    "PersistenceSync",
    "SnapshotStore",
    "SqlReferenceStore",
    "SqlSnapshotStore",
    "StaticFxRates",
]
