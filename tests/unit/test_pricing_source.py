"""
test_pricing_source.py - Unit tests for pricing_source.py

Tests:
- normalize_pair
- StaticPriceOracle: static prices, quote currency, updates, unknown pairs
- FallbackPriceOracle: source order, cache TTL and size, stale-cache fallback
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from loan_ledger import (
    FallbackPriceOracle, OracleCollaboratorError, PriceOracle, PriceQuote,
    StaticPriceOracle, normalize_pair,
)
from tests.fakes import FailingOracle, FakeClock, run


class TestNormalizePair:

    @pytest.mark.parametrize("raw,pair", [
        ("eth", "ETH/USD"),
        (" link ", "LINK/USD"),
        ("eth/usd", "ETH/USD"),
        ("BTC/EUR", "BTC/EUR"),
    ])
    def test_normalize(self, raw, pair):
        assert normalize_pair(raw) == pair


class TestStaticPriceOracle:

    def test_satisfies_protocol(self):
        assert isinstance(StaticPriceOracle({}), PriceOracle)

    def test_current_price(self):
        clock = FakeClock()
        oracle = StaticPriceOracle({"ETH": 3500}, clock=clock)
        quote = run(oracle.current_price("ETH/USD"))
        assert quote == PriceQuote(price=Decimal("3500"), timestamp=clock.now, source="static")

    def test_quote_currency_prices_at_one(self):
        oracle = StaticPriceOracle({"ETH": 3500})
        assert run(oracle.current_price("USD/USD")).price == Decimal("1")

    def test_unknown_pair(self):
        oracle = StaticPriceOracle({"ETH": 3500})
        with pytest.raises(OracleCollaboratorError) as exc_info:
            run(oracle.current_price("DOGE"))
        assert exc_info.value.code == "unknown_pair"

    def test_update_price(self):
        oracle = StaticPriceOracle({"ETH": 3500})
        oracle.update_price("eth", Decimal("3600"))
        assert run(oracle.current_price("ETH")).price == Decimal("3600")

    def test_quote_rejects_non_positive_price(self):
        oracle = StaticPriceOracle({"ETH": 0})
        with pytest.raises(ValueError):
            run(oracle.current_price("ETH"))


class TestFallbackPriceOracle:

    def test_requires_a_source(self):
        with pytest.raises(ValueError):
            FallbackPriceOracle([])

    def test_primary_used_first(self):
        primary = StaticPriceOracle({"ETH": 3500}, source="chainlink")
        backup = StaticPriceOracle({"ETH": 3400}, source="coingecko")
        oracle = FallbackPriceOracle([primary, backup])
        quote = run(oracle.current_price("ETH/USD"))
        assert quote.price == Decimal("3500")
        assert quote.source == "chainlink"

    def test_falls_back_when_primary_fails(self):
        primary = FailingOracle()
        backup = StaticPriceOracle({"ETH": 3400}, source="coingecko")
        oracle = FallbackPriceOracle([primary, backup])
        quote = run(oracle.current_price("ETH/USD"))
        assert quote.source == "coingecko"
        assert primary.calls == 1

    def test_cache_within_ttl(self):
        clock = FakeClock()
        primary = StaticPriceOracle({"ETH": 3500}, clock=clock)
        oracle = FallbackPriceOracle([primary], cache_ttl=timedelta(seconds=1), clock=clock)
        run(oracle.current_price("ETH"))
        primary.update_price("ETH", 3600)
        cached = run(oracle.current_price("ETH"))
        assert cached.source == "cache"
        assert cached.price == Decimal("3500")

    def test_cache_expires(self):
        clock = FakeClock()
        primary = StaticPriceOracle({"ETH": 3500}, clock=clock)
        oracle = FallbackPriceOracle([primary], cache_ttl=timedelta(seconds=1), clock=clock)
        run(oracle.current_price("ETH"))
        primary.update_price("ETH", 3600)
        clock.advance(seconds=2)
        assert run(oracle.current_price("ETH")).price == Decimal("3600")

    def test_stale_cache_served_when_all_sources_fail(self):
        clock = FakeClock()
        flaky = StaticPriceOracle({"ETH": 3500}, clock=clock)
        oracle = FallbackPriceOracle([flaky], clock=clock)
        run(oracle.current_price("ETH"))
        flaky.prices.clear()
        clock.advance(minutes=5)
        quote = run(oracle.current_price("ETH"))
        assert quote.source == "cache_fallback"
        assert quote.price == Decimal("3500")

    def test_all_sources_fail_without_cache(self):
        oracle = FallbackPriceOracle([FailingOracle(), FailingOracle()])
        with pytest.raises(OracleCollaboratorError) as exc_info:
            run(oracle.current_price("ETH"))
        assert exc_info.value.code == "unavailable"
        assert exc_info.value.retryable is True

    def test_cache_is_bounded(self):
        clock = FakeClock()
        primary = StaticPriceOracle({"ETH": 3500, "LINK": 20}, clock=clock)
        oracle = FallbackPriceOracle([primary], cache_ttl=timedelta(minutes=5), clock=clock, cache_size=1)
        run(oracle.current_price("ETH"))
        run(oracle.current_price("LINK"))
        primary.update_price("ETH", 3600)
        quote = run(oracle.current_price("ETH"))
        assert quote.source == "static"
        assert quote.price == Decimal("3600")

    def test_evicted_pair_still_has_last_known_price(self):
        clock = FakeClock()
        primary = StaticPriceOracle({"ETH": 3500, "LINK": 20}, clock=clock)
        oracle = FallbackPriceOracle([primary], cache_ttl=timedelta(minutes=5), clock=clock, cache_size=1)
        run(oracle.current_price("ETH"))
        run(oracle.current_price("LINK"))
        primary.prices.clear()
        quote = run(oracle.current_price("ETH"))
        assert quote.source == "cache_fallback"
        assert quote.price == Decimal("3500")
        assert quote.timestamp == clock.now
