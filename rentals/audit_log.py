"""
Audit log boundary and rental event types.

Each rental state transition appends exactly one message to the agent's
audit topic. Events are a closed set of dataclasses, one per transition,
with every field required; the envelope adds protocol version, message
type, agent id and timestamp.
"""

import json
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Optional

from .config import PROTOCOL_VERSION


KNOWN_MESSAGE_TYPES = frozenset({
    # Agent lifecycle
    "agent_created",
    "agent_ownership_transfer",
    "agent_pricing_update",
    # Rental lifecycle
    "rental_initiated",
    "rental_instruction",
    "rental_heartbeat",
    "rental_downtime",
    "rental_completed",
    "rental_terminated",
    "rental_timeout",
    "rental_violation",
    # Sub-rental
    "subrental_initiated",
    # Disputes
    "dispute_filed",
    "dispute_assigned",
    "dispute_resolved",
    # Runtime
    "runtime_attestation",
})

_VERSION_RE = re.compile(r"^\d+\.\d+$")


def iso_timestamp(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


# =============================================================================
# EVENTS
# =============================================================================

class RentalEvent:
    """Base for the rental audit events."""

    message_type: ClassVar[str] = ""

    @property
    def acting_party(self) -> str:
        raise NotImplementedError

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["acting_party"] = self.acting_party
        return payload


@dataclass(frozen=True)
class RentalInitiated(RentalEvent):
    message_type: ClassVar[str] = "rental_initiated"

    rental_id: str
    renter: str
    owner: str
    rental_type: str
    stake_amount: float
    stake_atomic: int
    buffer_amount: float
    buffer_atomic: int
    escrow_account: str
    rate: float
    rate_source: str
    constraints: Dict[str, Any]
    expected_duration_minutes: Optional[int]
    timeout_at: int
    settlement_deadline: int
    funding_transaction_id: str

    @property
    def acting_party(self) -> str:
        return self.renter


@dataclass(frozen=True)
class RentalCompleted(RentalEvent):
    message_type: ClassVar[str] = "rental_completed"

    rental_id: str
    renter: str
    owner: str
    creator: str
    settled_by: str
    duration_minutes: int
    uptime_percentage: float
    instructions_total: int
    tokens_total: int
    actual_usage: float
    total_charged: float
    total_charged_atomic: int
    buffer_exceeded: bool
    rate: float
    distribution: Dict[str, int]
    unused_buffer_returned: float
    transaction_id: str
    timeout_settlement: bool

    @property
    def acting_party(self) -> str:
        return self.settled_by


@dataclass(frozen=True)
class RentalTerminated(RentalEvent):
    message_type: ClassVar[str] = "rental_terminated"

    rental_id: str
    terminated_by: str
    role: str
    reason: str
    duration_minutes: int
    total_charged: float
    total_charged_atomic: int
    rate: float
    distribution: Dict[str, int]
    unused_buffer_returned: float
    transaction_id: str

    @property
    def acting_party(self) -> str:
        return self.terminated_by


@dataclass(frozen=True)
class RentalTimeout(RentalEvent):
    message_type: ClassVar[str] = "rental_timeout"

    rental_id: str
    claimed_by: str
    renter: str
    owner: str
    timeout_at: int
    claimed_at: int
    duration_minutes: int
    distribution: Dict[str, int]
    transaction_id: str

    @property
    def acting_party(self) -> str:
        return self.claimed_by


# =============================================================================
# ENVELOPE
# =============================================================================

@dataclass(frozen=True)
class AuditMessage:
    protocol_version: str
    message_type: str
    agent_id: str
    timestamp: str
    payload: Dict[str, Any]

    @classmethod
    def for_event(cls, event: RentalEvent, agent_id: str, now: float) -> "AuditMessage":
        return cls(
            protocol_version=PROTOCOL_VERSION,
            message_type=event.message_type,
            agent_id=agent_id,
            timestamp=iso_timestamp(now),
            payload=event.to_payload(),
        )

    def validate(self) -> Optional[str]:
        """Return the first problem found, or None if the message is well-formed."""
        if not self.protocol_version:
            return "missing protocol_version"
        if not self.message_type:
            return "missing message_type"
        if not self.agent_id:
            return "missing agent_id"
        if not self.timestamp:
            return "missing timestamp"
        if not isinstance(self.payload, dict):
            return "missing or invalid payload"
        if not _VERSION_RE.match(self.protocol_version):
            return "invalid protocol_version format (expected MAJOR.MINOR)"
        try:
            datetime.fromisoformat(self.timestamp)
        except ValueError:
            return "invalid timestamp format (expected ISO 8601)"
        if self.message_type not in KNOWN_MESSAGE_TYPES:
            return f"unknown message type: {self.message_type}"
        return None

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True, separators=(",", ":"))


@dataclass(frozen=True)
class AuditReceipt:
    topic: str
    sequence_number: int
    timestamp: str


class AuditLog:
    """Append-only audit log consumed by the lifecycle manager."""

    def append(self, topic: str, message: AuditMessage) -> AuditReceipt:
        raise NotImplementedError
