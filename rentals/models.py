"""
Data model for rentals.

A Rental is created once by the lifecycle manager and mutated only through
its state transitions. The escrow key is held in a single optional field:
set exactly once at initiation and cleared exactly once when the rental
reaches a terminal status.
"""

import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .config import DEFAULT_PRICING, VALID_RENTAL_TYPES
from .errors import ConflictError, ValidationError


# =============================================================================
# CONSTANTS
# =============================================================================

VALID_STATUSES = frozenset({"active", "completed", "terminated", "disputed", "timed_out"})
TERMINAL_STATUSES = frozenset({"completed", "terminated", "timed_out"})

VALID_MEMORY_ACCESS_LEVELS = frozenset({"sandboxed", "read_only", "full"})


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


# =============================================================================
# CONSTRAINTS & PRICING
# =============================================================================

@dataclass
class RentalConstraints:
    """Usage restrictions the renter accepted for this rental."""
    tools_blocked: List[str] = field(default_factory=list)
    memory_access_level: str = "sandboxed"
    topics_blocked: List[str] = field(default_factory=list)
    max_per_instruction_cost: float = 100
    max_daily_cost: float = 1000

    def validate(self) -> None:
        if self.memory_access_level not in VALID_MEMORY_ACCESS_LEVELS:
            raise ValidationError(
                f"invalid memory_access_level: {self.memory_access_level!r} "
                f"(must be one of {sorted(VALID_MEMORY_ACCESS_LEVELS)})"
            )
        for name in ("max_per_instruction_cost", "max_daily_cost"):
            value = getattr(self, name)
            if not _is_number(value) or not math.isfinite(value) or value < 0:
                raise ValidationError(f"invalid {name}: must be non-negative, got {value!r}")
        for name in ("tools_blocked", "topics_blocked"):
            value = getattr(self, name)
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ValidationError(f"invalid {name}: must be a list of strings")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RentalConstraints":
        return cls(**data)


@dataclass
class PricingSnapshot:
    """Pricing locked in at initiation. Never re-read from the owner's current pricing."""
    rate: float
    rate_source: str = "unknown"
    flash_base_fee: float = DEFAULT_PRICING["flash_base_fee"]
    standard_base_fee: float = DEFAULT_PRICING["standard_base_fee"]
    per_instruction: float = DEFAULT_PRICING["per_instruction"]
    per_minute: float = DEFAULT_PRICING["per_minute"]
    llm_markup_bps: int = DEFAULT_PRICING["llm_markup_bps"]
    tool_markup_bps: int = DEFAULT_PRICING["tool_markup_bps"]

    def base_fee(self, rental_type: str) -> float:
        return self.flash_base_fee if rental_type == "flash" else self.standard_base_fee

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PricingSnapshot":
        return cls(**data)


# =============================================================================
# USAGE
# =============================================================================

@dataclass(frozen=True)
class UsageReport:
    """Usage claimed at settlement time."""
    total_instructions: int
    total_tokens: int
    total_cost: float
    uptime_percentage: Optional[float] = None

    def validate(self) -> None:
        if not _is_count(self.total_instructions):
            raise ValidationError(
                f"invalid total_instructions: must be a non-negative integer, "
                f"got {self.total_instructions!r}")
        if not _is_count(self.total_tokens):
            raise ValidationError(
                f"invalid total_tokens: must be a non-negative integer, got {self.total_tokens!r}")
        if (not _is_number(self.total_cost) or not math.isfinite(self.total_cost)
                or self.total_cost < 0):
            raise ValidationError(
                f"invalid total_cost: must be non-negative, got {self.total_cost!r}")
        if self.uptime_percentage is not None:
            if (not _is_number(self.uptime_percentage)
                    or not 0 <= self.uptime_percentage <= 100):
                raise ValidationError(
                    f"invalid uptime_percentage: must be 0-100, got {self.uptime_percentage!r}")

    @classmethod
    def coerce(cls, usage: Any) -> "UsageReport":
        """Accept a UsageReport, a budget UsageSummary or a plain dict."""
        if isinstance(usage, cls):
            report = usage
        elif isinstance(usage, dict):
            try:
                report = cls(
                    total_instructions=usage["total_instructions"],
                    total_tokens=usage["total_tokens"],
                    total_cost=usage["total_cost"],
                    uptime_percentage=usage.get("uptime_percentage"),
                )
            except KeyError as e:
                raise ValidationError(f"usage missing field: {e.args[0]}")
        elif hasattr(usage, "to_usage_report"):
            report = usage.to_usage_report()
        else:
            raise ValidationError(f"unsupported usage payload: {type(usage).__name__}")
        report.validate()
        return report


# =============================================================================
# RENTAL
# =============================================================================

@dataclass
class Rental:
    """A time-bounded, escrow-backed usage grant over an agent."""
    rental_id: str
    agent_id: str
    renter: str
    owner: str
    rental_type: str
    stake_amount: float
    stake_atomic: int
    buffer_amount: float
    buffer_atomic: int
    escrow_account: str
    pricing: PricingSnapshot
    constraints: RentalConstraints
    started_at: int
    timeout_at: int
    settlement_deadline: int
    status: str = "active"
    ended_at: Optional[int] = None
    expected_duration_minutes: Optional[int] = None
    escrow_key: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        if self.rental_type not in VALID_RENTAL_TYPES:
            raise ValidationError(f"invalid rental_type: {self.rental_type!r}")
        if self.status not in VALID_STATUSES:
            raise ValidationError(f"invalid status: {self.status!r}")
        if self.timeout_at >= self.settlement_deadline:
            raise ValidationError(
                f"timeout_at ({self.timeout_at}) must precede "
                f"settlement_deadline ({self.settlement_deadline})")

    @property
    def total_escrow_atomic(self) -> int:
        return self.stake_atomic + self.buffer_atomic

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def has_escrow_key(self) -> bool:
        return self.escrow_key is not None

    def require_escrow_key(self) -> str:
        """Return the escrow key, or raise ConflictError if it was already consumed."""
        if self.escrow_key is None:
            raise ConflictError(
                self.rental_id,
                f"no escrow key for rental {self.rental_id} (already settled, "
                f"status: {self.status})",
            )
        return self.escrow_key

    def settle(self, status: str, ended_at: int) -> None:
        """Move to a terminal status and scrub the escrow key."""
        if status not in TERMINAL_STATUSES:
            raise ValidationError(f"not a terminal status: {status!r}")
        if self.is_terminal:
            raise ConflictError(
                self.rental_id,
                f"rental {self.rental_id} already {self.status}, cannot become {status}",
            )
        self.status = status
        self.ended_at = ended_at
        self.escrow_key = None

    def to_dict(self, include_secret: bool = True) -> Dict[str, Any]:
        data = asdict(self)
        if not include_secret or self.escrow_key is None:
            data.pop("escrow_key", None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Rental":
        fields = dict(data)
        fields["pricing"] = PricingSnapshot.from_dict(fields["pricing"])
        fields["constraints"] = RentalConstraints.from_dict(fields["constraints"])
        return cls(**fields)

    def copy(self) -> "Rental":
        """Deep copy, escrow key included."""
        return Rental.from_dict(self.to_dict(include_secret=True))
