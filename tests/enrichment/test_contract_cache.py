"""
Tests for the contract reference cache.
"""

import pytest

from portsync.enrichment.contract_cache import (
    ContractReferenceCache,
    InMemoryReferenceStore,
    ReferenceStore,
)
from portsync.models import ContractReference


class FailingStore(InMemoryReferenceStore):
    async def save_reference(self, reference):
        raise RuntimeError("disk full")


class TestContractReferenceCache:
    async def test_miss_then_hit(self):
        cache = ContractReferenceCache()

        assert await cache.get(265598) is None
        await cache.put(ContractReference(265598, "Technology", "Computers", "United States"))
        reference = await cache.get(265598)

        assert reference.industry == "Technology"
        assert 265598 in cache
        assert cache.get_stats() == {"entries": 1, "hits": 1, "store_hits": 0, "misses": 1}

    async def test_put_writes_through_to_store(self):
        store = InMemoryReferenceStore()
        cache = ContractReferenceCache(store)

        await cache.put(ContractReference(1, "Financial", "Banks"))

        assert store.saves == 1
        assert store.references[1].category == "Banks"

    async def test_store_fallback_on_memory_miss(self):
        store = InMemoryReferenceStore({7: ContractReference(7, "Energy", "Oil")})
        cache = ContractReferenceCache(store)

        reference = await cache.get(7)

        assert reference.industry == "Energy"
        assert cache.store_hits == 1
        assert 7 in cache

    async def test_warm_loads_everything(self):
        store = InMemoryReferenceStore(
            {1: ContractReference(1, "A", "a"), 2: ContractReference(2, "B", "b")}
        )
        cache = ContractReferenceCache(store)

        assert await cache.warm() == 2
        assert len(cache) == 2

    async def test_store_failure_keeps_memory_entry(self):
        cache = ContractReferenceCache(FailingStore())

        await cache.put(ContractReference(3, "Utilities", "Electric"))

        assert (await cache.get(3)).industry == "Utilities"

    def test_store_is_abstract(self):
        with pytest.raises(TypeError):
            ReferenceStore()
