"""
Rate oracle: stable-unit price of one whole settlement coin.

Tiered lookup:
1. Fresh cache (younger than 5 minutes)
2. Primary price source
3. Secondary price source
4. Stale cache up to 15 minutes old, flagged degraded
5. DependencyError

Every fetched or cached value is bounded to a sane range; anything outside
it counts as a fetch failure. A fixed_rate override bypasses all sources.

Key patterns:
- SourceCircuitBreaker: per-source breaker so a dead source is skipped
- httpx client with a bounded timeout
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx

from .config import (
    HTTP_TIMEOUT_SECONDS,
    MAX_SANE_RATE,
    MIN_SANE_RATE,
    RATE_CACHE_SECONDS,
    RATE_STALE_SECONDS,
    RentalConfig,
)
from .errors import DependencyError, ValidationError

COINGECKO_URL = "https://api.coingecko.com/api/v3/simple/price"
BINANCE_URL = "https://api.binance.com/api/v3/ticker/price"

MAX_RESPONSE_BYTES = 1_048_576


class RateFetchError(Exception):
    """A price source returned nothing usable."""


# =============================================================================
# SOURCE CIRCUIT BREAKER
# =============================================================================

class SourceCircuitState(Enum):
    """Price source circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class SourceCircuitBreaker:
    """
    Per-source circuit breaker.

    State transitions:
    - CLOSED -> OPEN: After 5 consecutive failures
    - OPEN -> HALF_OPEN: After 60s timeout
    - HALF_OPEN -> CLOSED: After 2 consecutive successes
    - HALF_OPEN -> OPEN: On any failure
    """

    def __init__(self, name: str, max_failures: int = 5,
                 reset_timeout: int = 60,
                 half_open_success_threshold: int = 2,
                 clock: Callable[[], float] = time.time):
        self.name = name
        self.max_failures = max_failures
        self.reset_timeout = reset_timeout
        self.half_open_success_threshold = half_open_success_threshold
        self._clock = clock

        self._lock = threading.RLock()
        self._state = SourceCircuitState.CLOSED
        self._failure_count = 0
        self._half_open_success_count = 0
        self._last_failure_time = 0

    @property
    def state(self) -> SourceCircuitState:
        with self._lock:
            if self._state == SourceCircuitState.OPEN:
                if int(self._clock()) - self._last_failure_time >= self.reset_timeout:
                    self._state = SourceCircuitState.HALF_OPEN
            return self._state

    def is_available(self) -> bool:
        return self.state != SourceCircuitState.OPEN

    def record_success(self) -> None:
        with self._lock:
            self._failure_count = 0
            if self._state == SourceCircuitState.HALF_OPEN:
                self._half_open_success_count += 1
                if self._half_open_success_count >= self.half_open_success_threshold:
                    self._state = SourceCircuitState.CLOSED
                    self._half_open_success_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = int(self._clock())
            if self._state == SourceCircuitState.HALF_OPEN:
                self._state = SourceCircuitState.OPEN
                self._half_open_success_count = 0
            elif self._failure_count >= self.max_failures:
                self._state = SourceCircuitState.OPEN

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "source": self.name,
                "state": self.state.value,
                "failure_count": self._failure_count,
                "last_failure_time": self._last_failure_time,
            }


# =============================================================================
# PRICE SOURCES
# =============================================================================

class PriceSource:
    """A remote endpoint quoting the coin in stable units."""

    name = "source"

    def fetch(self, client: httpx.Client) -> float:
        raise NotImplementedError

    @staticmethod
    def _get_json(client: httpx.Client, url: str, params: Dict[str, str]) -> Any:
        response = client.get(url, params=params, headers={"Accept": "application/json"})
        if response.status_code != 200:
            raise RateFetchError(f"HTTP {response.status_code}")
        if len(response.content) > MAX_RESPONSE_BYTES:
            raise RateFetchError("response too large")
        return response.json()


class CoinGeckoSource(PriceSource):
    """Primary: {"<coin id>": {"usd": 0.28}}"""

    name = "coingecko"

    def __init__(self, coin_id: str = "hedera-hashgraph", url: str = COINGECKO_URL):
        self.coin_id = coin_id
        self.url = url

    def fetch(self, client: httpx.Client) -> float:
        data = self._get_json(client, self.url, {"ids": self.coin_id, "vs_currencies": "usd"})
        entry = data.get(self.coin_id) if isinstance(data, dict) else None
        rate = entry.get("usd") if isinstance(entry, dict) else None
        if not isinstance(rate, (int, float)) or isinstance(rate, bool):
            raise RateFetchError(f"invalid rate from {self.name}: {rate!r}")
        return float(rate)


class BinanceSource(PriceSource):
    """Secondary: {"symbol": "HBARUSDT", "price": "0.28000000"}"""

    name = "binance"

    def __init__(self, symbol: str = "HBARUSDT", url: str = BINANCE_URL):
        self.symbol = symbol
        self.url = url

    def fetch(self, client: httpx.Client) -> float:
        data = self._get_json(client, self.url, {"symbol": self.symbol})
        raw = data.get("price") if isinstance(data, dict) else None
        try:
            return float(raw)
        except (TypeError, ValueError):
            raise RateFetchError(f"invalid rate from {self.name}: {raw!r}")


# =============================================================================
# RATE ORACLE
# =============================================================================

@dataclass(frozen=True)
class RateQuote:
    rate: float
    source: str
    fetched_at: int
    degraded: bool = False


class RateOracle:
    """Cached, fallback-protected price lookup. Construct one per process and inject it."""

    def __init__(self, sources: Optional[List[PriceSource]] = None,
                 client: Optional[httpx.Client] = None,
                 cache_seconds: int = RATE_CACHE_SECONDS,
                 stale_seconds: int = RATE_STALE_SECONDS,
                 min_sane_rate: float = MIN_SANE_RATE,
                 max_sane_rate: float = MAX_SANE_RATE,
                 fixed_rate: Optional[float] = None,
                 http_timeout: float = HTTP_TIMEOUT_SECONDS,
                 clock: Callable[[], float] = time.time,
                 logger: Optional[logging.Logger] = None):
        self.sources = sources if sources is not None else [CoinGeckoSource(), BinanceSource()]
        self.cache_seconds = cache_seconds
        self.stale_seconds = stale_seconds
        self.min_sane_rate = min_sane_rate
        self.max_sane_rate = max_sane_rate
        self._clock = clock
        self._logger = logger or logging.getLogger("rentals.rate_oracle")
        self._client = client
        self._http_timeout = http_timeout

        if fixed_rate is not None and not self._is_sane(fixed_rate):
            raise ValidationError(
                f"fixed rate {fixed_rate} outside sane range "
                f"[{self.min_sane_rate}, {self.max_sane_rate}]")
        self.fixed_rate = fixed_rate

        self._cache: Optional[RateQuote] = None
        self._cache_lock = threading.Lock()
        self._breakers = {
            s.name: SourceCircuitBreaker(s.name, clock=clock) for s in self.sources
        }

    @classmethod
    def from_config(cls, config: RentalConfig, **kwargs) -> "RateOracle":
        return cls(
            cache_seconds=config.rate_cache_seconds,
            stale_seconds=config.rate_stale_seconds,
            min_sane_rate=config.min_sane_rate,
            max_sane_rate=config.max_sane_rate,
            fixed_rate=config.fixed_rate,
            http_timeout=config.http_timeout,
            **kwargs,
        )

    def _log(self, msg: str, level: str = "info") -> None:
        level = "warning" if level == "warn" else level
        self._logger.log(getattr(logging, level.upper(), logging.INFO), f"rental: rate: {msg}")

    def _is_sane(self, rate: Any) -> bool:
        return (isinstance(rate, (int, float)) and not isinstance(rate, bool)
                and math.isfinite(rate)
                and self.min_sane_rate <= rate <= self.max_sane_rate)

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self._http_timeout)
        return self._client

    def close(self) -> None:
        client = self._client
        self._client = None
        if client is not None:
            client.close()

    def _fetch_from(self, source: PriceSource) -> Optional[float]:
        breaker = self._breakers[source.name]
        if not breaker.is_available():
            self._log(f"{source.name} circuit OPEN, skipping", level="debug")
            return None
        try:
            rate = source.fetch(self._http())
        except (httpx.HTTPError, RateFetchError, ValueError) as e:
            breaker.record_failure()
            self._log(f"{source.name} fetch failed: {e}", level="warn")
            return None
        if not self._is_sane(rate):
            breaker.record_failure()
            self._log(f"{source.name} rate {rate} outside sane range "
                      f"[{self.min_sane_rate}, {self.max_sane_rate}]", level="warn")
            return None
        breaker.record_success()
        return rate

    def get_quote(self) -> RateQuote:
        if self.fixed_rate is not None:
            return RateQuote(rate=self.fixed_rate, source="fixed",
                             fetched_at=int(self._clock()))

        now = int(self._clock())
        with self._cache_lock:
            cached = self._cache
        if (cached is not None and now - cached.fetched_at < self.cache_seconds
                and self._is_sane(cached.rate)):
            return cached

        for source in self.sources:
            rate = self._fetch_from(source)
            if rate is not None:
                quote = RateQuote(rate=rate, source=source.name, fetched_at=now)
                with self._cache_lock:
                    self._cache = quote
                return quote

        if (cached is not None and now - cached.fetched_at < self.stale_seconds
                and self._is_sane(cached.rate)):
            age_min = (now - cached.fetched_at) // 60
            self._log(f"all sources failed, using stale rate ({age_min} min old)",
                      level="warn")
            return RateQuote(rate=cached.rate, source=cached.source,
                             fetched_at=cached.fetched_at, degraded=True)

        raise DependencyError(
            "rate_oracle", "all rate sources failed and no usable cached rate")

    def get_rate(self) -> float:
        return self.get_quote().rate

    def get_cache_status(self) -> Optional[Dict[str, Any]]:
        if self.fixed_rate is not None:
            return {"rate": self.fixed_rate, "age_seconds": 0, "source": "fixed"}
        with self._cache_lock:
            cached = self._cache
        if cached is None:
            return None
        return {
            "rate": cached.rate,
            "age_seconds": int(self._clock()) - cached.fetched_at,
            "source": cached.source,
        }

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache = None

    def get_source_statuses(self) -> List[Dict[str, Any]]:
        return [b.get_stats() for b in self._breakers.values()]
