"""
Contract reference cache.

Reference data is account independent and cached per contract id for the
process lifetime. A backing ``ReferenceStore`` recovers entries persisted by
earlier runs; ``InMemoryReferenceStore`` serves tests and storage-less use.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional

from portsync.logging import get_logger, log_error
from portsync.models import ContractReference

logger = get_logger(__name__)


class ReferenceStore(ABC):
    """Durable backing for contract references."""

    @abstractmethod
    async def load_reference(self, con_id: int) -> Optional[ContractReference]:
        ...

    @abstractmethod
    async def load_all_references(self) -> Dict[int, ContractReference]:
        ...

    @abstractmethod
    async def save_reference(self, reference: ContractReference) -> None:
        ...


class InMemoryReferenceStore(ReferenceStore):
    def __init__(self, initial: Optional[Dict[int, ContractReference]] = None):
        self.references: Dict[int, ContractReference] = dict(initial or {})
        self.saves = 0

    async def load_reference(self, con_id: int) -> Optional[ContractReference]:
        return self.references.get(con_id)

    async def load_all_references(self) -> Dict[int, ContractReference]:
        return dict(self.references)

    async def save_reference(self, reference: ContractReference) -> None:
        self.saves += 1
        self.references[reference.con_id] = reference


class ContractReferenceCache:
    """In-process map in front of a ``ReferenceStore``."""

    def __init__(self, store: Optional[ReferenceStore] = None):
        self.store = store or InMemoryReferenceStore()
        self._entries: Dict[int, ContractReference] = {}
        self.hits = 0
        self.store_hits = 0
        self.misses = 0

    async def warm(self) -> int:
        """Load every stored reference into memory; returns the count."""
        stored = await self.store.load_all_references()
        for con_id, reference in stored.items():
            self._entries.setdefault(con_id, reference)
        logger.info(f"Contract reference cache warmed with {len(stored)} entries")
        return len(stored)

    async def get(self, con_id: int) -> Optional[ContractReference]:
        reference = self._entries.get(con_id)
        if reference is not None:
            self.hits += 1
            return reference

        reference = await self.store.load_reference(con_id)
        if reference is not None:
            self.store_hits += 1
            self._entries[con_id] = reference
            return reference

        self.misses += 1
        return None

    async def put(self, reference: ContractReference) -> None:
        self._entries[reference.con_id] = reference
        try:
            await self.store.save_reference(reference)
        except Exception as e:
            # The in-process entry still serves this run
            log_error(logger, f"Could not persist contract reference {reference.con_id}", e)

    def __contains__(self, con_id: int) -> bool:
        return con_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def get_stats(self) -> Dict[str, int]:
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "store_hits": self.store_hits,
            "misses": self.misses,
        }
