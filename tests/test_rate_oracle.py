"""
Tests for the rate oracle.

Tests cover:
- SourceCircuitBreaker: state transitions, availability, stats
- Tiered lookup: fresh cache -> primary -> secondary -> stale cache -> error
- Sanity bounds on fetched rates
- Fixed-rate override
- Cache status / clear
"""

import os
import sys

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rentals.config import RentalConfig
from rentals.errors import DependencyError, ValidationError
from rentals.rate_oracle import (
    BinanceSource,
    CoinGeckoSource,
    RateFetchError,
    RateOracle,
    SourceCircuitBreaker,
    SourceCircuitState,
)


# =============================================================================
# Test helpers
# =============================================================================

class FakeClock:
    def __init__(self, now=1_700_000_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class PriceFeed:
    """MockTransport handler serving both price endpoints."""

    def __init__(self, coingecko=0.28, binance="0.27000000"):
        self.coingecko = coingecko
        self.binance = binance
        self.calls = []

    def __call__(self, request):
        host = request.url.host
        self.calls.append(host)
        if host == "api.coingecko.com":
            return self._respond(request, self.coingecko,
                                 lambda v: {"hedera-hashgraph": {"usd": v}})
        if host == "api.binance.com":
            return self._respond(request, self.binance,
                                 lambda v: {"symbol": "HBARUSDT", "price": v})
        return httpx.Response(404)

    @staticmethod
    def _respond(request, value, shape):
        if isinstance(value, int) and not isinstance(value, bool) and value >= 400:
            return httpx.Response(value)
        if isinstance(value, Exception):
            raise httpx.ConnectError(str(value), request=request)
        return httpx.Response(200, json=shape(value))


def make_oracle(feed, clock=None, **kwargs):
    client = httpx.Client(transport=httpx.MockTransport(feed))
    return RateOracle(client=client, clock=clock or FakeClock(), **kwargs)


# =============================================================================
# SourceCircuitBreaker tests
# =============================================================================

class TestSourceCircuitBreaker:

    def test_initial_state_closed(self):
        cb = SourceCircuitBreaker("coingecko")
        assert cb.state == SourceCircuitState.CLOSED
        assert cb.is_available()

    def test_opens_after_failures(self):
        cb = SourceCircuitBreaker("coingecko", max_failures=3)
        for _ in range(3):
            cb.record_failure()
        assert cb.state == SourceCircuitState.OPEN
        assert not cb.is_available()

    def test_half_open_after_timeout(self):
        clock = FakeClock()
        cb = SourceCircuitBreaker("coingecko", max_failures=2, reset_timeout=60, clock=clock)
        cb.record_failure()
        cb.record_failure()
        assert cb.state == SourceCircuitState.OPEN
        clock.advance(60)
        assert cb.state == SourceCircuitState.HALF_OPEN
        assert cb.is_available()

    def test_half_open_to_closed_after_successes(self):
        clock = FakeClock()
        cb = SourceCircuitBreaker("coingecko", max_failures=1, reset_timeout=10,
                                  half_open_success_threshold=2, clock=clock)
        cb.record_failure()
        clock.advance(10)
        assert cb.state == SourceCircuitState.HALF_OPEN
        cb.record_success()
        assert cb.state == SourceCircuitState.HALF_OPEN
        cb.record_success()
        assert cb.state == SourceCircuitState.CLOSED

    def test_half_open_failure_reopens(self):
        clock = FakeClock()
        cb = SourceCircuitBreaker("coingecko", max_failures=1, reset_timeout=10, clock=clock)
        cb.record_failure()
        clock.advance(10)
        assert cb.state == SourceCircuitState.HALF_OPEN
        cb.record_failure()
        assert cb.state == SourceCircuitState.OPEN

    def test_stats(self):
        cb = SourceCircuitBreaker("binance")
        cb.record_failure()
        stats = cb.get_stats()
        assert stats["source"] == "binance"
        assert stats["state"] == "closed"
        assert stats["failure_count"] == 1


# =============================================================================
# Price source parsing
# =============================================================================

class TestPriceSources:

    def test_coingecko_parses(self):
        client = httpx.Client(transport=httpx.MockTransport(PriceFeed(coingecko=0.31)))
        assert CoinGeckoSource().fetch(client) == 0.31

    def test_binance_parses_string_price(self):
        client = httpx.Client(transport=httpx.MockTransport(PriceFeed(binance="0.29500000")))
        assert BinanceSource().fetch(client) == 0.295

    def test_coingecko_missing_field(self):
        def handler(request):
            return httpx.Response(200, json={"other-coin": {"usd": 1.0}})
        client = httpx.Client(transport=httpx.MockTransport(handler))
        with pytest.raises(RateFetchError):
            CoinGeckoSource().fetch(client)


# =============================================================================
# RateOracle tests
# =============================================================================

class TestRateOracle:

    def test_primary_source_used(self):
        feed = PriceFeed(coingecko=0.28)
        quote = make_oracle(feed).get_quote()
        assert quote.rate == 0.28
        assert quote.source == "coingecko"
        assert not quote.degraded
        assert feed.calls == ["api.coingecko.com"]

    def test_fresh_cache_skips_network(self):
        feed = PriceFeed()
        clock = FakeClock()
        oracle = make_oracle(feed, clock=clock)
        oracle.get_quote()
        clock.advance(299)
        assert oracle.get_rate() == 0.28
        assert len(feed.calls) == 1

    def test_expired_cache_refetches(self):
        feed = PriceFeed()
        clock = FakeClock()
        oracle = make_oracle(feed, clock=clock)
        oracle.get_quote()
        clock.advance(300)
        feed.coingecko = 0.30
        assert oracle.get_rate() == 0.30
        assert len(feed.calls) == 2

    def test_falls_back_to_secondary_on_http_error(self):
        feed = PriceFeed(coingecko=503, binance="0.27")
        quote = make_oracle(feed).get_quote()
        assert quote.rate == 0.27
        assert quote.source == "binance"

    def test_falls_back_on_connection_error(self):
        feed = PriceFeed(coingecko=RuntimeError("refused"), binance="0.27")
        assert make_oracle(feed).get_quote().source == "binance"

    def test_insane_rate_treated_as_failure(self):
        feed = PriceFeed(coingecko=50.0, binance="0.26")
        quote = make_oracle(feed).get_quote()
        assert quote.rate == 0.26

    def test_all_sources_fail_no_cache(self):
        feed = PriceFeed(coingecko=500, binance=500)
        with pytest.raises(DependencyError):
            make_oracle(feed).get_quote()

    def test_stale_cache_returned_degraded(self):
        feed = PriceFeed(coingecko=0.28)
        clock = FakeClock()
        oracle = make_oracle(feed, clock=clock)
        oracle.get_quote()
        feed.coingecko = 500
        feed.binance = 500
        clock.advance(10 * 60)
        quote = oracle.get_quote()
        assert quote.rate == 0.28
        assert quote.degraded

    def test_too_stale_cache_rejected(self):
        feed = PriceFeed(coingecko=0.28)
        clock = FakeClock()
        oracle = make_oracle(feed, clock=clock)
        oracle.get_quote()
        feed.coingecko = 500
        feed.binance = 500
        clock.advance(15 * 60)
        with pytest.raises(DependencyError):
            oracle.get_quote()

    def test_open_circuit_skips_source(self):
        feed = PriceFeed(coingecko=500, binance="0.27")
        oracle = make_oracle(feed)
        for _ in range(5):
            oracle.clear_cache()
            oracle.get_quote()
        feed.calls.clear()
        oracle.clear_cache()
        assert oracle.get_quote().source == "binance"
        assert feed.calls == ["api.binance.com"]
        states = {s["source"]: s["state"] for s in oracle.get_source_statuses()}
        assert states == {"coingecko": "open", "binance": "closed"}

    def test_fixed_rate_bypasses_sources(self):
        feed = PriceFeed()
        oracle = make_oracle(feed, fixed_rate=0.1)
        quote = oracle.get_quote()
        assert quote.rate == 0.1
        assert quote.source == "fixed"
        assert feed.calls == []
        assert oracle.get_cache_status() == {"rate": 0.1, "age_seconds": 0, "source": "fixed"}

    def test_fixed_rate_out_of_range(self):
        with pytest.raises(ValidationError):
            RateOracle(fixed_rate=42.0)

    def test_cache_status_and_clear(self):
        clock = FakeClock()
        oracle = make_oracle(PriceFeed(), clock=clock)
        assert oracle.get_cache_status() is None
        oracle.get_quote()
        clock.advance(30)
        status = oracle.get_cache_status()
        assert status == {"rate": 0.28, "age_seconds": 30, "source": "coingecko"}
        oracle.clear_cache()
        assert oracle.get_cache_status() is None

    def test_from_config(self):
        config = RentalConfig(fixed_rate=0.2, rate_cache_seconds=60, rate_stale_seconds=120)
        oracle = RateOracle.from_config(config)
        assert oracle.cache_seconds == 60
        assert oracle.stale_seconds == 120
        assert oracle.get_rate() == 0.2
