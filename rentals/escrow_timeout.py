"""
Escrow timeout policy.

    timeout_at          = now + expected duration + grace(rental type)
    settlement_deadline = timeout_at + settlement window   (24h default)
    dead_escrow_at      = timeout_at + dead escrow window  (7 days default)

Grace by type: flash 15 min, session 1 h, term 24 h.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from .config import (
    DEAD_ESCROW_SECONDS,
    MAX_DURATION_MINUTES,
    SETTLEMENT_WINDOW_SECONDS,
    TIMEOUT_GRACE_SECONDS,
    VALID_RENTAL_TYPES,
)
from .errors import ValidationError


@dataclass(frozen=True)
class EscrowWindows:
    """Absolute timestamps (epoch seconds) bounding an escrow."""
    timeout_at: int
    settlement_deadline: int
    dead_escrow_at: int


class EscrowTimeoutPolicy:
    """Pure computation of timeout and settlement-window boundaries."""

    def __init__(self, grace_seconds: Optional[Dict[str, int]] = None,
                 settlement_window_seconds: int = SETTLEMENT_WINDOW_SECONDS,
                 dead_escrow_seconds: int = DEAD_ESCROW_SECONDS):
        self.grace_seconds = dict(TIMEOUT_GRACE_SECONDS)
        if grace_seconds:
            self.grace_seconds.update(grace_seconds)
        if settlement_window_seconds <= 0:
            raise ValidationError(
                f"settlement window must be positive, got {settlement_window_seconds}")
        if dead_escrow_seconds < settlement_window_seconds:
            raise ValidationError(
                f"dead escrow window ({dead_escrow_seconds}s) must not be shorter than "
                f"the settlement window ({settlement_window_seconds}s)")
        for rental_type, grace in self.grace_seconds.items():
            if grace < 0:
                raise ValidationError(f"grace for {rental_type} must be >= 0, got {grace}")
        self.settlement_window_seconds = settlement_window_seconds
        self.dead_escrow_seconds = dead_escrow_seconds

    def grace_for(self, rental_type: str) -> int:
        if rental_type not in VALID_RENTAL_TYPES:
            raise ValidationError(
                f"invalid rental type: {rental_type!r} (must be flash, session, or term)")
        return self.grace_seconds[rental_type]

    def compute(self, rental_type: str, expected_duration_minutes: Optional[int],
                now: int) -> EscrowWindows:
        minutes = expected_duration_minutes or 0
        if minutes < 0 or minutes > MAX_DURATION_MINUTES:
            raise ValidationError(
                f"invalid expected_duration_minutes: {minutes} (must be 0-{MAX_DURATION_MINUTES})")
        timeout_at = now + minutes * 60 + self.grace_for(rental_type)
        return EscrowWindows(
            timeout_at=timeout_at,
            settlement_deadline=timeout_at + self.settlement_window_seconds,
            dead_escrow_at=timeout_at + self.dead_escrow_seconds,
        )

    def dead_escrow_at(self, timeout_at: int) -> int:
        return timeout_at + self.dead_escrow_seconds

    @staticmethod
    def is_timed_out(timeout_at: int, now: int) -> bool:
        return now > timeout_at

    def is_dead(self, timeout_at: int, now: int) -> bool:
        """Past the horizon after which an unsettled escrow is treated as abandoned."""
        return now > self.dead_escrow_at(timeout_at)
