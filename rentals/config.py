"""
Protocol constants and runtime configuration for the rental settlement core.

Constants here are protocol-level (split basis points, system accounts,
default pricing). RentalConfig carries the per-deployment knobs and can be
built from RENTAL_* environment variables.

Environment:
    RENTAL_NETWORK - mainnet, testnet or previewnet (default: testnet)
    RENTAL_OPERATOR_ID - Ledger account acting for this process
    RENTAL_DATA_DIR - Directory holding the rental snapshot (default: ./data)
    RENTAL_HTTP_TIMEOUT - Seconds for rate/ledger fetches (default: 5)
    RENTAL_RATE_CACHE_SECONDS - Fresh rate cache TTL (default: 300)
    RENTAL_RATE_STALE_SECONDS - Max age of a degraded cached rate (default: 900)
    RENTAL_FIXED_RATE - Deterministic rate override, bypasses price sources
    RENTAL_WARNING_THRESHOLD / RENTAL_CRITICAL_THRESHOLD - Budget levels used by
        create_budget_monitor (defaults: 0.8 / 0.95)
"""

import math
import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from .errors import ValidationError


PROTOCOL_VERSION = "1.0"

# =============================================================================
# UNITS & LIMITS
# =============================================================================

# Smallest indivisible denomination per whole coin of the settlement currency
ATOMIC_UNITS_PER_COIN = 100_000_000

# Safety ceiling for stake and buffer, in stable units
MAX_STABLE_AMOUNT = 1_000_000

# One year
MAX_DURATION_MINUTES = 525_600

MAX_RENTAL_ID_LENGTH = 100
MAX_REASON_LENGTH = 1000

VALID_RENTAL_TYPES = frozenset({"flash", "session", "term"})
VALID_NETWORKS = frozenset({"mainnet", "testnet", "previewnet"})

# =============================================================================
# FEE SPLITS (basis points)
# =============================================================================

BPS_DENOMINATOR = 10_000

RENTAL_SPLIT_BPS = {
    "owner": 9200,
    "creator": 500,
    "network": 200,
    "treasury": 100,
}

# Outright sales carry no treasury cut. Not used by rental settlement.
SALE_SPLIT_BPS = {
    "owner": 9300,
    "creator": 500,
    "network": 200,
}

# =============================================================================
# TIMEOUT WINDOWS (seconds)
# =============================================================================

TIMEOUT_GRACE_SECONDS = {
    "flash": 15 * 60,
    "session": 60 * 60,
    "term": 24 * 60 * 60,
}

SETTLEMENT_WINDOW_SECONDS = 24 * 60 * 60
DEAD_ESCROW_SECONDS = 7 * 24 * 60 * 60

# =============================================================================
# SYSTEM ACCOUNTS & DEFAULTS
# =============================================================================

NETWORK_ACCOUNTS = {
    "mainnet": {"network": "0.0.800", "treasury": "0.0.8332371"},
    "testnet": {"network": "0.0.800", "treasury": "0.0.801"},
    "previewnet": {"network": "0.0.800", "treasury": "0.0.801"},
}

DEFAULT_PRICING = {
    "flash_base_fee": 0.07,
    "standard_base_fee": 5.00,
    "per_instruction": 0.05,
    "per_minute": 0.01,
    "llm_markup_bps": 150,
    "tool_markup_bps": 150,
}

DEFAULT_WARNING_THRESHOLD = 0.8
DEFAULT_CRITICAL_THRESHOLD = 0.95

RATE_CACHE_SECONDS = 5 * 60
RATE_STALE_SECONDS = 15 * 60
MIN_SANE_RATE = 0.01
MAX_SANE_RATE = 10.0
HTTP_TIMEOUT_SECONDS = 5.0

SNAPSHOT_FILENAME = "active-rentals.json"


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a number, got {raw!r}")
    if not math.isfinite(value):
        raise ValidationError(f"{name} must be finite, got {raw!r}")
    return value


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer, got {raw!r}")


@dataclass
class RentalConfig:
    """Per-deployment configuration."""
    network: str = "testnet"
    operator_id: str = ""
    data_dir: str = "data"
    http_timeout: float = HTTP_TIMEOUT_SECONDS
    rate_cache_seconds: int = RATE_CACHE_SECONDS
    rate_stale_seconds: int = RATE_STALE_SECONDS
    min_sane_rate: float = MIN_SANE_RATE
    max_sane_rate: float = MAX_SANE_RATE
    fixed_rate: Optional[float] = None
    warning_threshold: float = DEFAULT_WARNING_THRESHOLD
    critical_threshold: float = DEFAULT_CRITICAL_THRESHOLD
    grace_seconds: Dict[str, int] = field(default_factory=lambda: dict(TIMEOUT_GRACE_SECONDS))
    settlement_window_seconds: int = SETTLEMENT_WINDOW_SECONDS
    dead_escrow_seconds: int = DEAD_ESCROW_SECONDS

    def __post_init__(self):
        if self.network not in VALID_NETWORKS:
            raise ValidationError(
                f"invalid network {self.network!r} (must be one of {sorted(VALID_NETWORKS)})"
            )
        if self.http_timeout <= 0:
            raise ValidationError(f"http_timeout must be positive, got {self.http_timeout}")
        if self.rate_cache_seconds <= 0 or self.rate_stale_seconds < self.rate_cache_seconds:
            raise ValidationError(
                f"rate cache windows invalid (cache={self.rate_cache_seconds}s, "
                f"stale={self.rate_stale_seconds}s)"
            )
        if not 0 < self.min_sane_rate < self.max_sane_rate:
            raise ValidationError(
                f"sane rate range invalid [{self.min_sane_rate}, {self.max_sane_rate}]"
            )
        if not 0 <= self.warning_threshold < self.critical_threshold <= 1:
            raise ValidationError(
                f"budget thresholds invalid (warning={self.warning_threshold}, "
                f"critical={self.critical_threshold}; need 0 <= warning < critical <= 1)"
            )

    @property
    def network_account(self) -> str:
        return NETWORK_ACCOUNTS[self.network]["network"]

    @property
    def treasury_account(self) -> str:
        return NETWORK_ACCOUNTS[self.network]["treasury"]

    @property
    def snapshot_path(self) -> str:
        return os.path.join(self.data_dir, SNAPSHOT_FILENAME)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "RentalConfig":
        """Build a config from RENTAL_* environment variables."""
        env = os.environ if env is None else env
        fixed = env.get("RENTAL_FIXED_RATE")
        return cls(
            network=env.get("RENTAL_NETWORK", "testnet"),
            operator_id=env.get("RENTAL_OPERATOR_ID", ""),
            data_dir=env.get("RENTAL_DATA_DIR", "data"),
            http_timeout=_env_float(env, "RENTAL_HTTP_TIMEOUT", HTTP_TIMEOUT_SECONDS),
            rate_cache_seconds=_env_int(env, "RENTAL_RATE_CACHE_SECONDS", RATE_CACHE_SECONDS),
            rate_stale_seconds=_env_int(env, "RENTAL_RATE_STALE_SECONDS", RATE_STALE_SECONDS),
            fixed_rate=_env_float(env, "RENTAL_FIXED_RATE", 0.0) if fixed else None,
            warning_threshold=_env_float(
                env, "RENTAL_WARNING_THRESHOLD", DEFAULT_WARNING_THRESHOLD),
            critical_threshold=_env_float(
                env, "RENTAL_CRITICAL_THRESHOLD", DEFAULT_CRITICAL_THRESHOLD),
        )
