"""
Budget monitor: live usage tracking against a rental's prepaid buffer.

Levels:
- ok:        below the warning threshold
- warning:   [warning, critical)
- critical:  [critical, 1.0)
- exhausted: at or above 1.0 of the buffer

A runtime checks should_stop() before admitting each instruction; it turns
true at critical so work halts before the buffer is hard-exhausted.
"""

import math
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional, Tuple

from .config import DEFAULT_CRITICAL_THRESHOLD, DEFAULT_WARNING_THRESHOLD, RentalConfig
from .errors import ValidationError
from .models import Rental, UsageReport


BUDGET_LEVELS = ("ok", "warning", "critical", "exhausted")


@dataclass(frozen=True)
class UsageEvent:
    timestamp: int
    cost: float
    tokens: int
    instructions: int


@dataclass(frozen=True)
class BudgetStatus:
    used: float
    remaining: float
    percent_used: float
    level: str


@dataclass(frozen=True)
class UsageSummary:
    """Immutable snapshot of everything recorded so far."""
    total_instructions: int
    total_tokens: int
    total_cost: float
    buffer: float
    remaining: float
    percent_used: float
    level: str
    events: Tuple[UsageEvent, ...]

    def to_usage_report(self, uptime_percentage: Optional[float] = None) -> UsageReport:
        return UsageReport(
            total_instructions=self.total_instructions,
            total_tokens=self.total_tokens,
            total_cost=self.total_cost,
            uptime_percentage=uptime_percentage,
        )


def _valid_threshold(value) -> bool:
    return (isinstance(value, (int, float)) and not isinstance(value, bool)
            and math.isfinite(value) and 0 <= value <= 1)


def _valid_count(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _decimal(value: float) -> Decimal:
    return Decimal(repr(value))


class BudgetMonitor:
    """Per-rental, in-memory accumulator of usage events versus a fixed buffer."""

    def __init__(self, buffer: float,
                 warning_threshold: float = DEFAULT_WARNING_THRESHOLD,
                 critical_threshold: float = DEFAULT_CRITICAL_THRESHOLD,
                 clock: Callable[[], float] = time.time):
        if (not isinstance(buffer, (int, float)) or isinstance(buffer, bool)
                or not math.isfinite(buffer) or buffer < 0):
            raise ValidationError(f"invalid buffer: must be non-negative, got {buffer!r}")
        if not _valid_threshold(warning_threshold):
            raise ValidationError(
                f"invalid warning_threshold: must be 0-1, got {warning_threshold!r}")
        if not _valid_threshold(critical_threshold):
            raise ValidationError(
                f"invalid critical_threshold: must be 0-1, got {critical_threshold!r}")
        if warning_threshold >= critical_threshold:
            raise ValidationError(
                f"warning_threshold ({warning_threshold}) must be < "
                f"critical_threshold ({critical_threshold})")

        self.buffer = float(buffer)
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self._clock = clock

        # Exact decimal of each float's shortest repr
        self._buffer = _decimal(buffer)
        self._warning = _decimal(warning_threshold)
        self._critical = _decimal(critical_threshold)

        self._lock = threading.Lock()
        self._events = []
        self._total_cost = Decimal(0)
        self._total_tokens = 0
        self._total_instructions = 0

    @classmethod
    def from_config(cls, buffer: float, config: RentalConfig,
                    clock: Callable[[], float] = time.time) -> "BudgetMonitor":
        """Monitor using the deployment's configured budget thresholds."""
        return cls(buffer, config.warning_threshold, config.critical_threshold, clock)

    def record_usage(self, cost: float, tokens: int, instructions: int) -> None:
        """Record one usage event (an instruction, an LLM call, a tool call)."""
        if (not isinstance(cost, (int, float)) or isinstance(cost, bool)
                or not math.isfinite(cost) or cost < 0):
            raise ValidationError(f"invalid cost: must be non-negative, got {cost!r}")
        if not _valid_count(tokens):
            raise ValidationError(f"invalid tokens: must be non-negative integer, got {tokens!r}")
        if not _valid_count(instructions):
            raise ValidationError(
                f"invalid instructions: must be non-negative integer, got {instructions!r}")

        event = UsageEvent(
            timestamp=int(self._clock()),
            cost=float(cost),
            tokens=tokens,
            instructions=instructions,
        )
        with self._lock:
            self._events.append(event)
            self._total_cost += _decimal(event.cost)
            self._total_tokens += tokens
            self._total_instructions += instructions

    def _status_locked(self) -> BudgetStatus:
        used = self._total_cost
        remaining = max(Decimal(0), self._buffer - used)
        if self._buffer == 0:
            ratio = Decimal("Infinity") if used > 0 else Decimal(0)
        else:
            ratio = used / self._buffer

        if ratio >= 1:
            level = "exhausted"
        elif ratio >= self._critical:
            level = "critical"
        elif ratio >= self._warning:
            level = "warning"
        else:
            level = "ok"

        return BudgetStatus(used=float(used), remaining=float(remaining),
                            percent_used=float(ratio), level=level)

    def get_status(self) -> BudgetStatus:
        with self._lock:
            return self._status_locked()

    def should_stop(self) -> bool:
        return self.get_status().level in ("critical", "exhausted")

    def get_usage_summary(self) -> UsageSummary:
        """Snapshot for settlement; the event list is copied."""
        with self._lock:
            status = self._status_locked()
            return UsageSummary(
                total_instructions=self._total_instructions,
                total_tokens=self._total_tokens,
                total_cost=status.used,
                buffer=self.buffer,
                remaining=status.remaining,
                percent_used=status.percent_used,
                level=status.level,
                events=tuple(self._events),
            )

    def to_usage_report(self, uptime_percentage: Optional[float] = None) -> UsageReport:
        return self.get_usage_summary().to_usage_report(uptime_percentage)


def create_budget_monitor(rental: Rental,
                          warning_threshold: Optional[float] = None,
                          critical_threshold: Optional[float] = None,
                          clock: Callable[[], float] = time.time,
                          config: Optional[RentalConfig] = None) -> BudgetMonitor:
    """
    Build a monitor sized to a rental's usage buffer.

    Thresholds not passed explicitly come from `config` (RENTAL_WARNING_THRESHOLD
    and RENTAL_CRITICAL_THRESHOLD), falling back to 0.8 / 0.95.
    """
    config = config or RentalConfig()
    return BudgetMonitor(
        rental.buffer_amount,
        config.warning_threshold if warning_threshold is None else warning_threshold,
        config.critical_threshold if critical_threshold is None else critical_threshold,
        clock,
    )
