"""
Tests for the enrichment pipeline against the scripted gateway.
"""

import asyncio

import pytest

from portsync.config.settings import ThrottleSettings
from portsync.enrichment.contract_cache import ContractReferenceCache, InMemoryReferenceStore
from portsync.enrichment.pipeline import EnrichmentPipeline, previous_close_from_bars
from portsync.enrichment.reference_data import ReferenceDataProvider, ReferenceQuote
from portsync.errors import GatewayConnectionError, NotConnectedError
from portsync.ib.gateway import ContractDetails, TickType
from portsync.ib.throttle import IbRequestThrottle
from portsync.models import ContractReference, RawPosition
from tests.conftest import daily_bars


def raw(con_id, symbol, sec_type="STK", quantity=100, last_price=130.0, exchange="NASDAQ"):
    return RawPosition(
        con_id=con_id,
        symbol=symbol,
        sec_type=sec_type,
        currency="USD",
        quantity=quantity,
        last_price=last_price,
        exchange=exchange,
        primary_exchange=exchange,
    )


def details(con_id, industry="Technology", category="Computers", exchange="NASDAQ"):
    return [
        ContractDetails(
            con_id=con_id,
            long_name=f"Contract {con_id}",
            industry=industry,
            category=category,
            primary_exchange=exchange,
        )
    ]


class StubReferenceProvider(ReferenceDataProvider):
    def __init__(self, quotes):
        self.quotes = quotes
        self.calls = []

    async def get_quotes(self, symbols, exchanges=None):
        self.calls.append(list(symbols))
        return {s: self.quotes[s] for s in symbols if s in self.quotes}


class BrokenReferenceProvider(ReferenceDataProvider):
    async def get_quotes(self, symbols, exchanges=None):
        raise ConnectionError("yahoo unreachable")


@pytest.fixture
async def connected(connection, gateway_config):
    await connection.connect(gateway_config)
    return connection


@pytest.fixture
def cache():
    return ContractReferenceCache(InMemoryReferenceStore())


@pytest.fixture
def pipeline(connected, coordinator, throttle, cache):
    return EnrichmentPipeline(coordinator, throttle, cache)


class TestPreviousCloseFromBars:
    def test_second_to_last_bar(self):
        assert previous_close_from_bars(daily_bars(120.0, 125.0, 130.0)) == 125.0

    def test_week_window_uses_bar_before_latest(self):
        bars = daily_bars(110.0, 115.0, 118.0, 122.0, 125.0, 130.0)

        assert previous_close_from_bars(bars) == 125.0

    def test_single_bar(self):
        assert previous_close_from_bars(daily_bars(99.0)) == 99.0

    def test_no_bars(self):
        assert previous_close_from_bars([]) is None


class TestEquityEnrichment:
    async def test_reference_and_day_change(self, pipeline, gateway_script):
        gateway_script.contract_details = {101: details(101)}
        gateway_script.bars = {101: daily_bars(120.0, 125.0, 130.0)}

        [position] = await pipeline.enrich([raw(101, "AAPL")])

        assert position.industry == "Technology"
        assert position.category == "Computers"
        assert position.country == "United States"
        assert position.previous_close == 125.0
        assert position.day_change == pytest.approx(500.0)
        assert position.day_change_percent == pytest.approx(4.0)
        assert gateway_script.historical_requests == [(101, "2 D", "TRADES", True)]

    async def test_widens_window_when_one_bar(self, pipeline, gateway_script):
        gateway_script.contract_details = {101: details(101)}
        gateway_script.bars = {101: daily_bars(128.0)}

        [position] = await pipeline.enrich([raw(101, "AAPL")])

        assert [r[1] for r in gateway_script.historical_requests] == ["2 D", "1 W"]
        assert position.previous_close == 128.0

    async def test_cached_reference_is_reused(self, pipeline, gateway_script):
        gateway_script.contract_details = {101: details(101)}
        gateway_script.bars = {101: daily_bars(125.0, 130.0)}

        await pipeline.enrich([raw(101, "AAPL"), raw(101, "AAPL", quantity=5)])
        await pipeline.enrich([raw(101, "AAPL")])

        assert gateway_script.details_requests == [101]
        assert pipeline.get_stats()["cache_hits"] == 2

    async def test_preloaded_reference_skips_lookup(self, connected, coordinator, throttle, gateway_script):
        store = InMemoryReferenceStore({101: ContractReference(101, "Semis", "Chips", "Taiwan")})
        cache = ContractReferenceCache(store)
        await cache.warm()
        pipeline = EnrichmentPipeline(coordinator, throttle, cache)
        gateway_script.bars = {101: daily_bars(125.0, 130.0)}

        [position] = await pipeline.enrich([raw(101, "TSM")])

        assert gateway_script.details_requests == []
        assert position.country == "Taiwan"

    async def test_one_failure_does_not_abort_batch(self, pipeline, gateway_script):
        gateway_script.contract_details = {101: details(101), 303: details(303, "Energy", "Oil")}
        gateway_script.bars = {101: daily_bars(125.0, 130.0), 303: daily_bars(60.0, 65.0)}
        gateway_script.request_errors = {202: (200, "No security definition has been found")}

        positions = await pipeline.enrich(
            [raw(101, "AAPL"), raw(202, "BAD"), raw(303, "XOM", last_price=70.0)]
        )

        a, b, c = positions
        assert a.industry == "Technology" and a.previous_close == 125.0
        assert b.industry is None and b.previous_close is None and b.day_change is None
        assert c.industry == "Energy" and c.previous_close == 65.0
        assert pipeline.get_stats()["failures"] == 2

    async def test_position_without_contract_id_is_untouched(self, pipeline, gateway_script):
        [position] = await pipeline.enrich([raw(0, "MYSTERY")])

        assert position.industry is None
        assert gateway_script.details_requests == []
        assert pipeline.get_stats()["skipped_no_contract"] == 1

    async def test_lost_session_aborts_batch(self, connection, coordinator, throttle, cache):
        pipeline = EnrichmentPipeline(coordinator, throttle, cache)

        with pytest.raises(NotConnectedError):
            await pipeline.enrich([raw(101, "AAPL")])

    async def test_session_drop_mid_batch_aborts(self, pipeline, gateway_script, session_factory):
        gateway_script.contract_details = {101: details(101), 303: details(303)}
        gateway_script.bars = {101: daily_bars(125.0, 130.0)}
        gateway_script.silent_con_ids = {303}

        task = asyncio.ensure_future(pipeline.enrich([raw(101, "AAPL"), raw(303, "XOM")]))
        await asyncio.sleep(0.05)
        session_factory.sessions[0].drop()

        with pytest.raises(GatewayConnectionError):
            await task
        assert pipeline.get_stats()["failures"] == 0

    async def test_closed_position_is_not_priced(self, pipeline, gateway_script):
        gateway_script.contract_details = {101: details(101)}

        [position] = await pipeline.enrich([raw(101, "AAPL", quantity=0)])

        assert gateway_script.details_requests == []
        assert gateway_script.historical_requests == []
        assert position.quantity == 0
        assert pipeline.get_stats()["skipped_closed"] == 1


class TestCryptoEnrichment:
    async def test_crypto_plan_and_defaults(self, pipeline, gateway_script):
        gateway_script.contract_details = {
            601: [ContractDetails(con_id=601, symbol="BTC", exchange="PAXOS")]
        }
        gateway_script.bars = {601: daily_bars(60000.0, 61000.0)}

        [position] = await pipeline.enrich(
            [raw(601, "BTC", sec_type="CRYPTO", quantity=0.5, last_price=62000.0, exchange="PAXOS")]
        )

        assert gateway_script.historical_requests == [(601, "1 W", "MIDPOINT", False)]
        assert position.industry == "Cryptocurrency"
        assert position.category == "Digital Asset"
        assert position.previous_close == 60000.0
        assert position.day_change == pytest.approx(1000.0)


class TestBondEnrichment:
    async def test_bond_from_ticks(self, pipeline, gateway_script):
        gateway_script.contract_details = {501: details(501, "Government", "Treasury", "SMART")}
        gateway_script.ticks = {501: [(TickType.LAST, 101.5), (TickType.CLOSE, 100.0)]}

        [position] = await pipeline.enrich(
            [raw(501, "US-T 4 11/15/33", sec_type="BOND", quantity=10000, last_price=None, exchange="SMART")]
        )

        assert gateway_script.historical_requests == []
        assert position.last_price == 101.5
        assert position.previous_close == 100.0
        assert position.day_change == pytest.approx(150000.0)
        assert position.day_change_percent == pytest.approx(1.5)
        assert position.country == "United States"

    async def test_bond_mid_price_and_partial_window(self, pipeline, gateway_script):
        gateway_script.contract_details = {501: details(501)}
        gateway_script.ticks = {
            501: [(TickType.DELAYED_BID, 99.0), (TickType.DELAYED_ASK, 101.0), (TickType.DELAYED_CLOSE, 98.0)]
        }

        [position] = await pipeline.enrich([raw(501, "BOND1", sec_type="BOND", last_price=None)])

        assert position.last_price == 100.0
        assert position.previous_close == 98.0

    async def test_failed_bond_is_remembered_until_reset(self, pipeline, gateway_script):
        gateway_script.contract_details = {501: details(501)}
        bond = raw(501, "BOND1", sec_type="BOND", last_price=None)

        await pipeline.enrich([bond])
        await pipeline.enrich([bond])

        assert gateway_script.tick_requests == [501]
        assert pipeline.failed_bonds == {"BOND1"}

        pipeline.reset_failed_bonds()
        await pipeline.enrich([bond])

        assert gateway_script.tick_requests == [501, 501]

    async def test_session_drop_does_not_mark_bond_failed(
        self, connected, coordinator, throttle, gateway_script, session_factory
    ):
        store = InMemoryReferenceStore({501: ContractReference(501, "Government", "Treasury", "United States")})
        cache = ContractReferenceCache(store)
        await cache.warm()
        pipeline = EnrichmentPipeline(coordinator, throttle, cache)
        gateway_script.silent_con_ids = {501}
        bond = raw(501, "BOND1", sec_type="BOND", last_price=None)

        task = asyncio.ensure_future(pipeline.enrich([bond]))
        await asyncio.sleep(0.05)
        session_factory.sessions[0].drop()

        with pytest.raises(GatewayConnectionError):
            await task
        assert pipeline.failed_bonds == set()


class TestThrottledEnrichment:
    async def test_quota_exhaustion_skips_previous_close(self, connected, coordinator, cache, fake_clock, gateway_script):
        throttle = IbRequestThrottle(
            ThrottleSettings(max_requests=1, window_seconds=600, min_spacing_seconds=0, cooldown_seconds=600),
            clock=fake_clock,
            sleep=fake_clock.sleep,
        )
        pipeline = EnrichmentPipeline(coordinator, throttle, cache)
        gateway_script.contract_details = {101: details(101), 303: details(303)}
        gateway_script.bars = {101: daily_bars(125.0, 130.0), 303: daily_bars(60.0, 65.0)}

        first, second = await pipeline.enrich([raw(101, "AAPL"), raw(303, "XOM")])

        assert first.previous_close == 125.0
        assert second.previous_close is None
        # Reference lookups are not throttled
        assert second.industry == "Technology"
        assert pipeline.get_stats()["rate_limited"] == 1

    async def test_cooldown_blocks_historical_requests(self, pipeline, throttle, gateway_script):
        gateway_script.contract_details = {101: details(101)}
        gateway_script.bars = {101: daily_bars(125.0, 130.0)}
        throttle.mark_pacing_violation(162, "Historical Market Data Service error message:API historical data query cancelled")

        [position] = await pipeline.enrich([raw(101, "AAPL")])

        assert gateway_script.historical_requests == []
        assert position.industry == "Technology"
        assert position.previous_close is None


class TestReferenceFallback:
    async def test_fallback_fills_missing_close(self, connected, coordinator, throttle, cache, gateway_script):
        provider = StubReferenceProvider(
            {"0700": ReferenceQuote("0700", previous_close=298.0, sector="Communication", country="China")}
        )
        pipeline = EnrichmentPipeline(coordinator, throttle, cache, reference_provider=provider)
        gateway_script.contract_details = {202: [ContractDetails(con_id=202, primary_exchange="SEHK")]}

        [position] = await pipeline.enrich([raw(202, "0700", last_price=300.0, exchange="SEHK")])

        assert provider.calls == [["0700"]]
        assert position.previous_close == 298.0
        assert position.category == "Communication"
        assert position.country == "Hong Kong"
        assert position.day_change == pytest.approx(200.0)

    async def test_fallback_skips_bonds_and_resolved(self, connected, coordinator, throttle, cache, gateway_script):
        provider = StubReferenceProvider({})
        pipeline = EnrichmentPipeline(coordinator, throttle, cache, reference_provider=provider)
        gateway_script.contract_details = {101: details(101), 501: details(501)}
        gateway_script.bars = {101: daily_bars(125.0, 130.0)}

        await pipeline.enrich([raw(101, "AAPL"), raw(501, "BOND1", sec_type="BOND")])

        assert provider.calls == []

    async def test_provider_failure_is_tolerated(self, connected, coordinator, throttle, cache, gateway_script):
        pipeline = EnrichmentPipeline(coordinator, throttle, cache, reference_provider=BrokenReferenceProvider())
        gateway_script.contract_details = {101: details(101)}

        [position] = await pipeline.enrich([raw(101, "AAPL")])

        assert position.industry == "Technology"
        assert position.previous_close is None
