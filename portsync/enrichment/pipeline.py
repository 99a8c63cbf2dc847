"""
Enrichment pipeline.

Positions are processed one at a time so reference-data requests respect the
throttle's spacing. Per position:

1. skip when there is no usable contract id
2. reuse a cached ContractReference, else look the contract up
3. resolve the previous close (historical bars for equities/crypto, a brief
   tick snapshot for bonds)
4. compute the day change

A failure in any step of one position is logged and the batch continues;
only session-level errors abort the batch. A request that fails because the
session went away mid-flight counts as a session-level error.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from portsync.errors import (
    EnrichmentError,
    ErrorCodes,
    GatewayConnectionError,
    NotConnectedError,
    RateLimitError,
    RequestCancelledError,
    RequestError,
)
from portsync.enrichment.contract_cache import ContractReferenceCache
from portsync.enrichment.country import derive_country
from portsync.enrichment.day_change import compute_day_change
from portsync.enrichment.reference_data import ReferenceDataProvider
from portsync.ib.gateway import Bar, ContractSpec, TickType
from portsync.ib.requests import IbRequestCoordinator, RequestKind
from portsync.ib.throttle import IbRequestThrottle
from portsync.logging import get_logger, log_error, log_performance
from portsync.models import (
    BOND_SEC_TYPE,
    CRYPTO_SEC_TYPE,
    ContractReference,
    EnrichedPosition,
    RawPosition,
)

logger = get_logger(__name__)

CRYPTO_INDUSTRY = "Cryptocurrency"
CRYPTO_CATEGORY = "Digital Asset"


@dataclass(frozen=True)
class HistoricalPlan:
    """How to ask for daily bars for one security type."""

    durations: Tuple[str, ...]
    what_to_show: str
    regular_hours_only: bool
    bar_size: str = "1 day"


EQUITY_PLAN = HistoricalPlan(durations=("2 D", "1 W"), what_to_show="TRADES", regular_hours_only=True)
# 24/7 market with thin trade prints: wider window, midpoint bars, no RTH filter
CRYPTO_PLAN = HistoricalPlan(durations=("1 W",), what_to_show="MIDPOINT", regular_hours_only=False)


def previous_close_from_bars(bars: List[Bar]) -> Optional[float]:
    """
    Close of the bar before the latest one; the only bar's close otherwise.

    With the two-bar equity window this is the oldest bar. For the one-week
    crypto window, or an equity window widened after a short answer, the
    oldest bar can be several sessions back, so the bar just before the
    latest is used instead to keep the value a one-session previous close.
    """
    if not bars:
        return None
    if len(bars) >= 2:
        return bars[-2].close
    return bars[0].close


def contract_spec_for(position: RawPosition) -> ContractSpec:
    return ContractSpec(
        con_id=position.con_id,
        symbol=position.symbol,
        sec_type=position.sec_type,
        exchange=position.exchange,
        currency=position.currency,
        primary_exchange=position.primary_exchange,
        local_symbol=position.local_symbol,
    )


class EnrichmentPipeline:
    """Resolve reference data and previous close for raw positions."""

    def __init__(
        self,
        coordinator: IbRequestCoordinator,
        throttle: IbRequestThrottle,
        cache: ContractReferenceCache,
        reference_provider: Optional[ReferenceDataProvider] = None,
    ):
        self.coordinator = coordinator
        self.throttle = throttle
        self.cache = cache
        self.reference_provider = reference_provider
        self._failed_bonds: Set[str] = set()

        self.stats = {
            "positions": 0,
            "skipped_no_contract": 0,
            "skipped_closed": 0,
            "contract_lookups": 0,
            "cache_hits": 0,
            "previous_close_resolved": 0,
            "rate_limited": 0,
            "failures": 0,
            "fallback_quotes": 0,
        }

    @log_performance(threshold_ms=1000)
    async def enrich(self, positions: Iterable[RawPosition]) -> List[EnrichedPosition]:
        enriched: List[EnrichedPosition] = []
        for raw in positions:
            position = EnrichedPosition.from_raw(raw)
            enriched.append(position)
            self.stats["positions"] += 1

            if not raw.has_contract_id:
                self.stats["skipped_no_contract"] += 1
                logger.debug(f"Skipping enrichment for {raw.symbol}: no contract id")
                continue
            if raw.quantity == 0:
                # Closed today; kept for its realized P&L, nothing to price
                self.stats["skipped_closed"] += 1
                continue

            await self._enrich_position(position)

        await self._apply_reference_fallback(enriched)

        for position in enriched:
            self._apply_day_change(position)

        logger.info(
            f"Enriched {len(enriched)} positions "
            f"({self.stats['contract_lookups']} lookups, {self.stats['cache_hits']} cache hits)"
        )
        return enriched

    def reset_failed_bonds(self) -> None:
        """Forget bonds whose tick snapshot failed (manual refresh)."""
        if self._failed_bonds:
            logger.info(f"Retrying {len(self._failed_bonds)} previously failed bond(s)")
        self._failed_bonds.clear()

    @property
    def failed_bonds(self) -> Set[str]:
        return set(self._failed_bonds)

    # --- per position ------------------------------------------------------

    async def _enrich_position(self, position: EnrichedPosition) -> None:
        for step, name in (
            (self._resolve_reference, "contract reference"),
            (self._resolve_previous_close, "previous close"),
        ):
            try:
                await step(position)
            except GatewayConnectionError:
                raise
            except RateLimitError as e:
                self.stats["rate_limited"] += 1
                logger.info(f"Skipping {name} for {position.symbol} this cycle: {e.message}")
            except (RequestError, EnrichmentError) as e:
                if isinstance(e, RequestError) and self._session_lost():
                    raise NotConnectedError(f"{name} for {position.symbol}") from e
                self.stats["failures"] += 1
                log_error(logger, f"Could not resolve {name} for {position.symbol}", e, level=logging.WARNING)
            except Exception as e:
                self.stats["failures"] += 1
                log_error(logger, f"Unexpected failure resolving {name} for {position.symbol}", e)

    def _session_lost(self) -> bool:
        """True when a request failed because the session dropped under it."""
        return not self.coordinator.connection.is_connected()

    async def _resolve_reference(self, position: EnrichedPosition) -> None:
        reference = await self.cache.get(position.con_id)
        if reference is not None:
            self.stats["cache_hits"] += 1
        else:
            reference = await self._lookup_reference(position)
            await self.cache.put(reference)

        position.apply_reference(reference)
        if position.is_crypto:
            position.industry = position.industry or CRYPTO_INDUSTRY
            position.category = position.category or CRYPTO_CATEGORY
        if not position.country:
            position.country = derive_country(
                position.primary_exchange or position.exchange, position.symbol
            ) or None

    async def _lookup_reference(self, position: EnrichedPosition) -> ContractReference:
        self.stats["contract_lookups"] += 1
        details = await self.coordinator.issue(
            RequestKind.CONTRACT_DETAILS, {"con_id": position.con_id}
        )
        if not details:
            raise EnrichmentError(
                f"No contract details for {position.symbol} ({position.con_id})",
                symbol=position.symbol,
                error_code=ErrorCodes.ENRICH_CONTRACT_LOOKUP_FAILED,
            )

        d = details[0]
        industry = d.industry or (CRYPTO_INDUSTRY if position.is_crypto else None)
        category = d.category or (CRYPTO_CATEGORY if position.is_crypto else None)
        country = derive_country(d.primary_exchange or d.exchange, position.symbol)
        logger.debug(f"Contract details for {position.symbol}: {industry} / {category}")
        return ContractReference(
            con_id=position.con_id,
            industry=industry,
            category=category,
            country=country or None,
            long_name=d.long_name or None,
        )

    async def _resolve_previous_close(self, position: EnrichedPosition) -> None:
        if position.is_bond:
            await self._bond_previous_close(position)
        else:
            await self._historical_previous_close(position)

    async def _historical_previous_close(self, position: EnrichedPosition) -> None:
        plan = CRYPTO_PLAN if position.sec_type == CRYPTO_SEC_TYPE else EQUITY_PLAN
        contract = contract_spec_for(position)

        bars: List[Bar] = []
        for duration in plan.durations:
            await self.throttle.check_and_reserve(RequestKind.HISTORICAL_DATA.value)
            bars = await self.coordinator.issue(
                RequestKind.HISTORICAL_DATA,
                {
                    "contract": contract,
                    "duration": duration,
                    "bar_size": plan.bar_size,
                    "what_to_show": plan.what_to_show,
                    "regular_hours_only": plan.regular_hours_only,
                },
            )
            if len(bars) >= 2:
                break
            logger.debug(f"{position.symbol}: {len(bars)} bar(s) for {duration}")

        previous_close = previous_close_from_bars(bars)
        if previous_close is None:
            raise EnrichmentError(
                f"No historical bars for {position.symbol}",
                symbol=position.symbol,
                error_code=ErrorCodes.ENRICH_PREVIOUS_CLOSE_FAILED,
            )
        position.previous_close = previous_close
        self.stats["previous_close_resolved"] += 1

    async def _bond_previous_close(self, position: EnrichedPosition) -> None:
        if position.symbol in self._failed_bonds:
            logger.debug(f"Skipping bond {position.symbol}: failed earlier this process")
            return

        await self.throttle.check_and_reserve(RequestKind.MARKET_DATA_TICK.value)
        try:
            ticks = await self.coordinator.issue(
                RequestKind.MARKET_DATA_TICK,
                {
                    "contract": contract_spec_for(position),
                    "required_ticks": (TickType.LAST_TYPES, TickType.CLOSE_TYPES),
                },
            )
        except RequestCancelledError:
            raise
        except RequestError:
            # Only gateway-side failures are remembered, never a dropped session
            if not self._session_lost():
                self._failed_bonds.add(position.symbol)
            raise

        last = _first_tick(ticks, TickType.LAST_TYPES)
        if last is None:
            bid = _first_tick(ticks, TickType.BID_TYPES)
            ask = _first_tick(ticks, TickType.ASK_TYPES)
            if bid is not None and ask is not None:
                last = (bid + ask) / 2
            else:
                last = bid if bid is not None else ask
        close = _first_tick(ticks, TickType.CLOSE_TYPES)

        if last is not None:
            position.last_price = last
        if close is None:
            self._failed_bonds.add(position.symbol)
            raise EnrichmentError(
                f"No close tick for bond {position.symbol}",
                symbol=position.symbol,
                error_code=ErrorCodes.ENRICH_PREVIOUS_CLOSE_FAILED,
            )
        position.previous_close = close
        self.stats["previous_close_resolved"] += 1

    # --- batch -------------------------------------------------------------

    async def _apply_reference_fallback(self, positions: List[EnrichedPosition]) -> None:
        if self.reference_provider is None:
            return
        missing = [
            p
            for p in positions
            if p.previous_close is None
            and p.sec_type not in (BOND_SEC_TYPE, CRYPTO_SEC_TYPE)
            and p.symbol
            and p.quantity != 0
        ]
        if not missing:
            return

        exchanges: Dict[str, str] = {
            p.symbol: p.primary_exchange or p.exchange for p in missing
        }
        try:
            quotes = await self.reference_provider.get_quotes(
                [p.symbol for p in missing], exchanges
            )
        except Exception as e:
            log_error(logger, "Reference-data fallback failed", e, level=logging.WARNING)
            return

        for position in missing:
            quote = quotes.get(position.symbol)
            if quote is None:
                continue
            self.stats["fallback_quotes"] += 1
            if quote.previous_close:
                position.previous_close = quote.previous_close
            position.industry = position.industry or quote.industry
            position.category = position.category or quote.sector
            position.country = position.country or quote.country

    def _apply_day_change(self, position: EnrichedPosition) -> None:
        change = compute_day_change(
            position.sec_type, position.last_price, position.previous_close, position.quantity
        )
        if change is None:
            position.day_change = None
            position.day_change_percent = None
            return
        position.day_change = change.amount
        position.day_change_percent = change.percent

    def get_stats(self) -> Dict[str, int]:
        return {**self.stats, "failed_bonds": len(self._failed_bonds)}


def _first_tick(ticks: Dict[int, float], types: Tuple[int, ...]) -> Optional[float]:
    for tick_type in types:
        price = ticks.get(tick_type)
        if price is not None and price > 0:
            return price
    return None
