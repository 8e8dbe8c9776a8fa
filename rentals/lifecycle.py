"""
Rental lifecycle manager: initiate, operate, and settle rentals.

State machine:

    active --complete / settle_timeout--> completed
    active --terminate-----------------> terminated
    active --claim_timeout-------------> timed_out

No transition leaves a terminal status. Every settlement moves the whole
escrow in one multi-output ledger transfer signed with the escrow key,
appends one audit event, then marks the rental terminal and scrubs the key.

Key patterns:
- One settlement primitive shared by every fund-moving path; the
  distribution always sums to the escrowed total
- Pricing (including the rate) is locked at initiation; settlement never
  re-queries the rate oracle
- Per-rental locks serialize transitions on the same rental id
- The store write is the last step of initiate; a funded escrow whose
  audit event fails is refunded before the error surfaces
"""

import logging
import math
import os
import threading
import time
from contextlib import contextmanager
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional

from .audit_log import (
    AuditLog,
    AuditMessage,
    AuditReceipt,
    RentalCompleted,
    RentalEvent,
    RentalInitiated,
    RentalTerminated,
    RentalTimeout,
)
from .budget_monitor import BudgetMonitor, create_budget_monitor
from .config import (
    ATOMIC_UNITS_PER_COIN,
    MAX_DURATION_MINUTES,
    MAX_REASON_LENGTH,
    MAX_RENTAL_ID_LENGTH,
    MAX_STABLE_AMOUNT,
    VALID_RENTAL_TYPES,
    RentalConfig,
)
from .errors import (
    ConflictError,
    DependencyError,
    PreconditionError,
    RentalError,
    RentalNotFoundError,
    ValidationError,
)
from .escrow_timeout import EscrowTimeoutPolicy
from .fee_split import Distribution, settlement_distribution, timeout_distribution
from .ledger import LedgerReceipt, LedgerService, build_transfer
from .models import PricingSnapshot, Rental, RentalConstraints, UsageReport
from .rate_oracle import RateOracle
from .rental_store import RentalStore
from .resolver import EntityInfo, EntityResolver


def to_atomic_units(amount: float, rate: float) -> int:
    """Convert a stable-unit amount to atomic units at `rate` (stable units per coin)."""
    coins = Decimal(str(amount)) / Decimal(str(rate))
    return int((coins * ATOMIC_UNITS_PER_COIN).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _validate_stable_amount(name: str, value: Any) -> float:
    if (not isinstance(value, (int, float)) or isinstance(value, bool)
            or not math.isfinite(value) or value <= 0):
        raise ValidationError(f"invalid {name}: must be a positive number, got {value!r}")
    if value > MAX_STABLE_AMOUNT:
        raise ValidationError(
            f"{name} {value} exceeds the {MAX_STABLE_AMOUNT} safety limit")
    return float(value)


class RentalLifecycleManager:
    """Drives rentals through their state machine against the ledger and audit log."""

    def __init__(self, ledger: LedgerService, audit_log: AuditLog,
                 resolver: EntityResolver, rate_oracle: RateOracle,
                 store: RentalStore, config: RentalConfig,
                 timeout_policy: Optional[EscrowTimeoutPolicy] = None,
                 clock: Callable[[], float] = time.time,
                 logger: Optional[logging.Logger] = None):
        if not config.operator_id:
            raise ValidationError("config.operator_id is required")
        self.ledger = ledger
        self.audit_log = audit_log
        self.resolver = resolver
        self.rate_oracle = rate_oracle
        self.store = store
        self.config = config
        self.operator_id = config.operator_id
        self.timeout_policy = timeout_policy or EscrowTimeoutPolicy(
            grace_seconds=config.grace_seconds,
            settlement_window_seconds=config.settlement_window_seconds,
            dead_escrow_seconds=config.dead_escrow_seconds,
        )
        self._clock = clock
        self._logger = logger or logging.getLogger("rentals.lifecycle")

        # rental id -> [lock, holders and waiters]
        self._locks: Dict[str, List[Any]] = {}
        self._locks_guard = threading.Lock()

    def _log(self, msg: str, level: str = "info") -> None:
        level = "warning" if level == "warn" else level
        self._logger.log(getattr(logging, level.upper(), logging.INFO),
                         f"rental: lifecycle: {msg}")

    @contextmanager
    def _rental_lock(self, rental_id: str) -> Iterator[None]:
        """Serialize transitions on one rental id.

        Entries are reference counted and dropped once no caller holds or
        waits on them, so the map only holds ids with a transition in flight.
        """
        with self._locks_guard:
            entry = self._locks.get(rental_id)
            if entry is None:
                entry = self._locks[rental_id] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[rental_id]

    def _now(self) -> int:
        return int(self._clock())

    def get_store(self) -> RentalStore:
        return self.store

    # =========================================================================
    # COLLABORATOR CALLS
    # =========================================================================

    def _resolve(self, agent_id: str) -> EntityInfo:
        try:
            return self.resolver.resolve(agent_id)
        except DependencyError:
            raise
        except Exception as e:
            raise DependencyError("resolver", f"failed to resolve {agent_id}: {e}") from e

    def _ledger_call(self, what: str, fn: Callable[..., LedgerReceipt], *args,
                     rental_id: Optional[str] = None) -> LedgerReceipt:
        try:
            receipt = fn(*args)
        except RentalError:
            raise
        except Exception as e:
            raise DependencyError("ledger", f"{what} failed: {e}", rental_id=rental_id) from e
        if not receipt.ok:
            raise DependencyError(
                "ledger", f"{what} failed (status: {receipt.status})", rental_id=rental_id)
        return receipt

    def _append_audit(self, topic: str, agent_id: str, event: RentalEvent) -> AuditReceipt:
        message = AuditMessage.for_event(event, agent_id, self._clock())
        problem = message.validate()
        if problem:
            raise ValidationError(f"audit message invalid: {problem}")
        try:
            return self.audit_log.append(topic, message)
        except Exception as e:
            raise DependencyError(
                "audit_log", f"append {event.message_type} failed: {e}",
                rental_id=event.rental_id) from e

    def _execute_settlement(self, rental: Rental, escrow_key: str,
                            distribution: Distribution, creator: str,
                            memo: str) -> LedgerReceipt:
        """Move the whole escrow in one signed multi-output transfer."""
        if distribution.total != rental.total_escrow_atomic:
            raise ValidationError(
                f"distribution total {distribution.total} does not match escrow "
                f"{rental.total_escrow_atomic} for rental {rental.rental_id}")
        credits = [
            (rental.owner, distribution.owner),
            (creator, distribution.creator),
            (self.config.network_account, distribution.network),
            (self.config.treasury_account, distribution.treasury),
            (rental.renter, distribution.renter_refund),
        ]
        tx = build_transfer(rental.escrow_account, credits, memo=memo)
        try:
            signed = self.ledger.sign_with_secret(tx, escrow_key)
        except Exception as e:
            raise DependencyError(
                "ledger", f"signing failed: {e}", rental_id=rental.rental_id) from e
        return self._ledger_call(f"{memo} transfer", self.ledger.transfer, signed,
                                 rental_id=rental.rental_id)

    def _finalize(self, rental: Rental, status: str, event: RentalEvent,
                  topic: str) -> Rental:
        """Append the audit event, then mark terminal and scrub the key.

        Funds have already moved, so the rental becomes terminal even when the
        audit append fails; the audit error is raised afterwards.
        """
        audit_error = None
        try:
            self._append_audit(topic, rental.agent_id, event)
        except (DependencyError, ValidationError) as e:
            audit_error = e
            self._log(f"{event.message_type} for {rental.rental_id} not audited: {e}",
                      level="error")

        try:
            settled = self.store.complete(rental.rental_id, status)
        except OSError as e:
            self._log(f"rental {rental.rental_id} settled on ledger but snapshot write "
                      f"failed: {e}", level="error")
            raise DependencyError("store", f"failed to persist {status}: {e}",
                                  rental_id=rental.rental_id) from e

        if audit_error is not None:
            raise audit_error
        return settled

    # =========================================================================
    # VALIDATION HELPERS
    # =========================================================================

    @staticmethod
    def _validate_rental_id(rental_id: Any) -> None:
        if not isinstance(rental_id, str) or not rental_id or len(rental_id) > MAX_RENTAL_ID_LENGTH:
            raise ValidationError(
                f"invalid rental_id: must be a non-empty string "
                f"(max {MAX_RENTAL_ID_LENGTH} chars)")

    @staticmethod
    def _require_settleable(rental: Rental) -> str:
        if rental.is_terminal or not rental.has_escrow_key:
            raise ConflictError(
                rental.rental_id,
                f"rental {rental.rental_id} is already settled (status: {rental.status})")
        if rental.status != "active":
            raise PreconditionError(
                f"rental {rental.rental_id} is not active (status: {rental.status})")
        return rental.require_escrow_key()

    def _minutes_since(self, started_at: int, now: int) -> int:
        return int(round(max(0, now - started_at) / 60))

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_status(self, rental_id: str) -> Rental:
        self._validate_rental_id(rental_id)
        rental = self.store.get(rental_id)
        if rental is None:
            raise RentalNotFoundError(rental_id)
        return rental

    def create_budget_monitor(self, rental_id: str) -> BudgetMonitor:
        """Budget monitor for an active rental, using the configured thresholds."""
        rental = self.get_status(rental_id)
        if rental.status != "active":
            raise PreconditionError(
                f"rental {rental_id} is not active (status: {rental.status})")
        return create_budget_monitor(rental, clock=self._clock, config=self.config)

    def get_timed_out_rentals(self) -> List[Rental]:
        """Active rentals whose timeout has passed."""
        now = self._now()
        return [r for r in self.store.get_active()
                if self.timeout_policy.is_timed_out(r.timeout_at, now)]

    def get_dead_escrows(self) -> List[Rental]:
        """Active rentals past the dead-escrow horizon."""
        now = self._now()
        return [r for r in self.store.get_active()
                if self.timeout_policy.is_dead(r.timeout_at, now)]

    # =========================================================================
    # INITIATE
    # =========================================================================

    def initiate(self, agent_id: str, rental_type: str, stake_amount: float,
                 buffer_amount: float,
                 constraints: Optional[RentalConstraints] = None,
                 expected_duration_minutes: Optional[int] = None) -> Rental:
        """
        Open a rental: fund a fresh escrow with stake + buffer and persist it.

        Args:
            agent_id: The rented agent
            rental_type: flash (single instruction), session (hours) or term (days+)
            stake_amount: Collateral in stable units, returned on clean completion
            buffer_amount: Usage buffer in stable units, unused part refunded
            constraints: Usage restrictions (defaults to sandboxed, no blocks)
            expected_duration_minutes: Optional, 1-525600

        Returns:
            The persisted active rental, escrow key included.
        """
        if not isinstance(agent_id, str) or not agent_id or len(agent_id) > MAX_RENTAL_ID_LENGTH:
            raise ValidationError(f"invalid agent_id: {agent_id!r}")
        if rental_type not in VALID_RENTAL_TYPES:
            raise ValidationError(
                f"invalid rental type: {rental_type!r} (must be flash, session, or term)")
        stake = _validate_stable_amount("stake_amount", stake_amount)
        buffer = _validate_stable_amount("buffer_amount", buffer_amount)
        if expected_duration_minutes is not None:
            if (not isinstance(expected_duration_minutes, int)
                    or isinstance(expected_duration_minutes, bool)
                    or not 1 <= expected_duration_minutes <= MAX_DURATION_MINUTES):
                raise ValidationError(
                    f"invalid expected_duration_minutes: {expected_duration_minutes!r} "
                    f"(must be 1-{MAX_DURATION_MINUTES})")
        constraints = constraints or RentalConstraints()
        constraints.validate()

        entity = self._resolve(agent_id)
        quote = self.rate_oracle.get_quote()
        if quote.degraded:
            self._log(f"initiating {agent_id} rental on a degraded rate "
                      f"({quote.rate} from {quote.source})", level="warn")

        stake_atomic = to_atomic_units(stake, quote.rate)
        buffer_atomic = to_atomic_units(buffer, quote.rate)
        if stake_atomic <= 0 or buffer_atomic <= 0:
            raise ValidationError("stake and buffer must each be at least one atomic unit")
        total_atomic = stake_atomic + buffer_atomic

        try:
            key_pair = self.ledger.generate_key_pair()
        except Exception as e:
            raise DependencyError("ledger", f"key generation failed: {e}") from e
        created = self._ledger_call("escrow account creation",
                                    self.ledger.create_account, key_pair.public_key)
        if not created.account_id:
            raise DependencyError("ledger", "escrow account creation returned no account id")
        escrow_account = created.account_id

        funding_tx = build_transfer(self.operator_id, [(escrow_account, total_atomic)],
                                    memo="rental escrow funding")
        funded = self._ledger_call("escrow funding", self.ledger.transfer, funding_tx)

        now = self._clock()
        started_at = int(now)
        rental_id = f"rental_{int(now * 1000)}_{os.urandom(6).hex()}"
        windows = self.timeout_policy.compute(rental_type, expected_duration_minutes, started_at)

        rental = Rental(
            rental_id=rental_id,
            agent_id=agent_id,
            renter=self.operator_id,
            owner=entity.owner,
            rental_type=rental_type,
            stake_amount=stake,
            stake_atomic=stake_atomic,
            buffer_amount=buffer,
            buffer_atomic=buffer_atomic,
            escrow_account=escrow_account,
            pricing=PricingSnapshot(rate=quote.rate, rate_source=quote.source),
            constraints=constraints,
            started_at=started_at,
            timeout_at=windows.timeout_at,
            settlement_deadline=windows.settlement_deadline,
            expected_duration_minutes=expected_duration_minutes,
            escrow_key=key_pair.secret,
        )

        event = RentalInitiated(
            rental_id=rental_id,
            renter=rental.renter,
            owner=rental.owner,
            rental_type=rental_type,
            stake_amount=stake,
            stake_atomic=stake_atomic,
            buffer_amount=buffer,
            buffer_atomic=buffer_atomic,
            escrow_account=escrow_account,
            rate=quote.rate,
            rate_source=quote.source,
            constraints=rental.to_dict()["constraints"],
            expected_duration_minutes=expected_duration_minutes,
            timeout_at=rental.timeout_at,
            settlement_deadline=rental.settlement_deadline,
            funding_transaction_id=funded.transaction_id,
        )

        try:
            self._append_audit(entity.audit_topic, agent_id, event)
            self.store.put(rental)
        except (DependencyError, ValidationError, OSError) as e:
            self._unwind_funded_escrow(rental, key_pair.secret, e)
            raise DependencyError(
                "audit_log" if not isinstance(e, OSError) else "store",
                f"initiation of {rental_id} aborted: {e}", rental_id=rental_id) from e

        self._log(f"initiated {rental_type} rental {rental_id} of {agent_id}: "
                  f"escrow {escrow_account} funded with {total_atomic} atomic units "
                  f"at rate {quote.rate} ({quote.source})")
        return rental

    def _unwind_funded_escrow(self, rental: Rental, escrow_key: str,
                              cause: Exception) -> None:
        """Refund a funded escrow whose initiation could not complete."""
        try:
            refund = build_transfer(rental.escrow_account,
                                    [(rental.renter, rental.total_escrow_atomic)],
                                    memo="rental initiation rollback")
            signed = self.ledger.sign_with_secret(refund, escrow_key)
            self._ledger_call("initiation rollback", self.ledger.transfer, signed,
                              rental_id=rental.rental_id)
            self._log(f"rolled back escrow {rental.escrow_account} for "
                      f"{rental.rental_id} after: {cause}", level="warn")
            return
        except Exception as e:
            self._log(f"ROLLBACK FAILED for {rental.rental_id} (escrow "
                      f"{rental.escrow_account}): {e}", level="error")

        # Escrow is still funded; its key must survive.
        if isinstance(cause, OSError):
            self._log(f"escrow key for {rental.rental_id} could not be persisted; "
                      f"escrow {rental.escrow_account} needs manual recovery",
                      level="critical")
            return
        try:
            self.store.put(rental)
            self._log(f"persisted unaudited rental {rental.rental_id} to keep its "
                      f"escrow key", level="error")
        except OSError as e:
            self._log(f"escrow key for {rental.rental_id} could not be persisted: {e}",
                      level="critical")

    # =========================================================================
    # SETTLEMENT
    # =========================================================================

    def _settle_usage(self, rental: Rental, escrow_key: str, usage: UsageReport,
                      timeout_settlement: bool) -> Rental:
        """Charge reported usage (capped at the buffer) and distribute the escrow."""
        entity = self._resolve(rental.agent_id)
        rate = rental.pricing.rate

        buffer_exceeded = usage.total_cost > rental.buffer_amount
        charged = min(usage.total_cost, rental.buffer_amount)
        charged_atomic = min(to_atomic_units(charged, rate), rental.buffer_atomic)
        distribution = settlement_distribution(rental.total_escrow_atomic, charged_atomic)

        receipt = self._execute_settlement(
            rental, escrow_key, distribution, entity.creator,
            memo="rental timeout settlement" if timeout_settlement else "rental completion")

        now = self._now()
        event = RentalCompleted(
            rental_id=rental.rental_id,
            renter=rental.renter,
            owner=rental.owner,
            creator=entity.creator,
            settled_by=self.operator_id,
            duration_minutes=self._minutes_since(rental.started_at, now),
            uptime_percentage=(usage.uptime_percentage
                               if usage.uptime_percentage is not None else 100.0),
            instructions_total=usage.total_instructions,
            tokens_total=usage.total_tokens,
            actual_usage=usage.total_cost,
            total_charged=charged,
            total_charged_atomic=charged_atomic,
            buffer_exceeded=buffer_exceeded,
            rate=rate,
            distribution=distribution.as_dict(),
            unused_buffer_returned=max(0.0, rental.buffer_amount - charged),
            transaction_id=receipt.transaction_id,
            timeout_settlement=timeout_settlement,
        )
        settled = self._finalize(rental, "completed", event, entity.audit_topic)
        self._log(f"completed rental {rental.rental_id}: charged {charged_atomic} of "
                  f"{rental.total_escrow_atomic} atomic units"
                  + (" (buffer exceeded, capped)" if buffer_exceeded else ""))
        return settled

    def complete(self, rental_id: str, usage: Any) -> Rental:
        """
        Complete a rental and distribute its escrow.

        The charge is min(reported cost, buffer), split 92/5/2/1 across owner,
        creator, network and treasury; the owner absorbs rounding dust. The
        stake and unused buffer are refunded to the renter.

        Args:
            rental_id: The rental to complete
            usage: UsageReport, a BudgetMonitor UsageSummary, or an equivalent dict
        """
        self._validate_rental_id(rental_id)
        report = UsageReport.coerce(usage)
        with self._rental_lock(rental_id):
            rental = self.get_status(rental_id)
            escrow_key = self._require_settleable(rental)
            if self.operator_id not in (rental.renter, rental.owner):
                raise PreconditionError(
                    f"only renter or owner can complete rental {rental_id} "
                    f"(caller: {self.operator_id})")
            return self._settle_usage(rental, escrow_key, report, timeout_settlement=False)

    def terminate(self, rental_id: str, reason: Optional[str] = None) -> Rental:
        """
        End a rental early. Callable by renter or owner.

        Charges elapsed minutes at the per-minute rate, capped at the base fee
        and at the buffer.
        """
        self._validate_rental_id(rental_id)
        if reason is not None and (not isinstance(reason, str) or len(reason) > MAX_REASON_LENGTH):
            raise ValidationError(
                f"invalid termination reason (max {MAX_REASON_LENGTH} chars)")

        with self._rental_lock(rental_id):
            rental = self.get_status(rental_id)
            escrow_key = self._require_settleable(rental)
            if self.operator_id not in (rental.renter, rental.owner):
                raise PreconditionError(
                    f"only renter or owner can terminate rental {rental_id} "
                    f"(renter: {rental.renter}, owner: {rental.owner}, "
                    f"caller: {self.operator_id})")
            role = "renter" if self.operator_id == rental.renter else "owner"
            entity = self._resolve(rental.agent_id)

            now = self._now()
            elapsed_minutes = max(0, now - rental.started_at) / 60
            pricing = rental.pricing
            charged = min(elapsed_minutes * pricing.per_minute,
                          pricing.base_fee(rental.rental_type),
                          rental.buffer_amount)
            charged_atomic = min(to_atomic_units(charged, pricing.rate), rental.buffer_atomic)
            distribution = settlement_distribution(rental.total_escrow_atomic, charged_atomic)

            receipt = self._execute_settlement(rental, escrow_key, distribution,
                                               entity.creator, memo="rental termination")
            event = RentalTerminated(
                rental_id=rental_id,
                terminated_by=self.operator_id,
                role=role,
                reason=reason or "manual_termination",
                duration_minutes=self._minutes_since(rental.started_at, now),
                total_charged=charged,
                total_charged_atomic=charged_atomic,
                rate=pricing.rate,
                distribution=distribution.as_dict(),
                unused_buffer_returned=max(0.0, rental.buffer_amount - charged),
                transaction_id=receipt.transaction_id,
            )
            settled = self._finalize(rental, "terminated", event, entity.audit_topic)
            self._log(f"terminated rental {rental_id} by {role}: charged "
                      f"{charged_atomic} atomic units")
            return settled

    def claim_timeout(self, rental_id: str) -> Rental:
        """
        Renter reclaims a timed-out escrow.

        Only the network and treasury cuts of the buffer are charged; owner
        and creator receive nothing.
        """
        self._validate_rental_id(rental_id)
        with self._rental_lock(rental_id):
            rental = self.get_status(rental_id)
            escrow_key = self._require_settleable(rental)
            if self.operator_id != rental.renter:
                raise PreconditionError(
                    f"only the renter can claim a timeout refund "
                    f"(renter: {rental.renter}, caller: {self.operator_id})")
            now = self._now()
            if now <= rental.timeout_at:
                remaining_min = -(-(rental.timeout_at - now) // 60)
                raise PreconditionError(
                    f"rental {rental_id} has not timed out yet "
                    f"({remaining_min} minutes remaining)")

            entity = self._resolve(rental.agent_id)
            distribution = timeout_distribution(rental.total_escrow_atomic,
                                                rental.buffer_atomic)
            receipt = self._execute_settlement(rental, escrow_key, distribution,
                                               entity.creator, memo="rental timeout refund")
            event = RentalTimeout(
                rental_id=rental_id,
                claimed_by=self.operator_id,
                renter=rental.renter,
                owner=rental.owner,
                timeout_at=rental.timeout_at,
                claimed_at=now,
                duration_minutes=self._minutes_since(rental.started_at, now),
                distribution=distribution.as_dict(),
                transaction_id=receipt.transaction_id,
            )
            settled = self._finalize(rental, "timed_out", event, entity.audit_topic)
            self._log(f"renter claimed timeout on {rental_id}: refunded "
                      f"{distribution.renter_refund} atomic units")
            return settled

    def settle_timeout(self, rental_id: str, usage: Any) -> Rental:
        """
        Owner settles a timed-out rental with usage, within the settlement window.

        Same charge and split as complete().
        """
        self._validate_rental_id(rental_id)
        report = UsageReport.coerce(usage)
        with self._rental_lock(rental_id):
            rental = self.get_status(rental_id)
            escrow_key = self._require_settleable(rental)
            if self.operator_id != rental.owner:
                raise PreconditionError(
                    f"only the owner can settle a timeout "
                    f"(owner: {rental.owner}, caller: {self.operator_id})")
            now = self._now()
            if now <= rental.timeout_at:
                raise PreconditionError(
                    f"rental {rental_id} has not timed out yet, use complete() instead")
            if now > rental.settlement_deadline:
                raise PreconditionError(
                    f"settlement deadline has passed for rental {rental_id}, "
                    f"renter should claim the timeout")
            return self._settle_usage(rental, escrow_key, report, timeout_settlement=True)
