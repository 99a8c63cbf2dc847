"""
Position enrichment: contract reference data, previous close and day change.
"""

from portsync.enrichment.contract_cache import (
    ContractReferenceCache,
    InMemoryReferenceStore,
    ReferenceStore,
)
from portsync.enrichment.country import derive_country
from portsync.enrichment.day_change import DayChange, compute_day_change
from portsync.enrichment.pipeline import EnrichmentPipeline
from portsync.enrichment.reference_data import (
    ReferenceDataProvider,
    ReferenceQuote,
    YahooReferenceProvider,
)

__all__ = [
    "EnrichmentPipeline",
    "ContractReferenceCache",
    "ReferenceStore",
    "InMemoryReferenceStore",
    "ReferenceDataProvider",
    "ReferenceQuote",
    "YahooReferenceProvider",
    "DayChange",
    "compute_day_change",
    "derive_country",
]
