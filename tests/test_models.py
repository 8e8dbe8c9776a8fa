"""
Tests for the rental data model and ledger value types.

Tests cover:
- Rental invariants and the single-use escrow key
- Serialization with and without the secret
- Constraint and usage validation
- Transfer construction (legs net to zero, merged credits)
- Config from environment
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rentals.config import RentalConfig
from rentals.errors import ConflictError, ValidationError
from rentals.ledger import KeyPair, TransferLeg, TransferTransaction, build_transfer
from rentals.models import PricingSnapshot, Rental, RentalConstraints, UsageReport

NOW = 1_700_000_000


def make_rental(**overrides):
    fields = dict(
        rental_id="rental_1",
        agent_id="0.0.5001",
        renter="0.0.1001",
        owner="0.0.2002",
        rental_type="flash",
        stake_amount=1.0,
        stake_atomic=1_000_000_000,
        buffer_amount=1.0,
        buffer_atomic=1_000_000_000,
        escrow_account="0.0.9009",
        pricing=PricingSnapshot(rate=0.1),
        constraints=RentalConstraints(),
        started_at=NOW,
        timeout_at=NOW + 900,
        settlement_deadline=NOW + 900 + 86400,
        escrow_key="302e-secret",
    )
    fields.update(overrides)
    return Rental(**fields)


class TestRental:

    def test_secret_not_in_repr(self):
        assert "302e-secret" not in repr(make_rental())

    def test_timeout_must_precede_deadline(self):
        with pytest.raises(ValidationError):
            make_rental(settlement_deadline=NOW + 900)

    def test_invalid_status(self):
        with pytest.raises(ValidationError):
            make_rental(status="paused")

    def test_settle_scrubs_key_once(self):
        rental = make_rental()
        assert rental.require_escrow_key() == "302e-secret"
        rental.settle("completed", NOW + 60)
        assert rental.escrow_key is None
        assert rental.is_terminal
        with pytest.raises(ConflictError):
            rental.require_escrow_key()
        with pytest.raises(ConflictError):
            rental.settle("timed_out", NOW + 120)

    def test_to_dict_secret_handling(self):
        rental = make_rental()
        assert rental.to_dict()["escrow_key"] == "302e-secret"
        assert "escrow_key" not in rental.to_dict(include_secret=False)
        assert Rental.from_dict(rental.to_dict()) == rental

    def test_total_escrow(self):
        assert make_rental().total_escrow_atomic == 2_000_000_000


class TestPricingSnapshot:

    def test_base_fee_by_type(self):
        pricing = PricingSnapshot(rate=0.1)
        assert pricing.base_fee("flash") == 0.07
        assert pricing.base_fee("session") == 5.00
        assert pricing.base_fee("term") == 5.00


class TestValidation:

    def test_constraints_memory_level(self):
        with pytest.raises(ValidationError):
            RentalConstraints(memory_access_level="root").validate()

    def test_constraints_negative_cap(self):
        with pytest.raises(ValidationError):
            RentalConstraints(max_daily_cost=-1).validate()

    def test_usage_coerce_rejects_float_counts(self):
        with pytest.raises(ValidationError):
            UsageReport.coerce({"total_instructions": 1.5, "total_tokens": 0, "total_cost": 0})


class TestBuildTransfer:

    def test_legs_net_to_zero(self):
        tx = build_transfer("0.0.9009", [("0.0.2002", 70), ("0.0.1001", 30)])
        assert sum(leg.amount for leg in tx.legs) == 0
        assert tx.amount_for("0.0.9009") == -100

    def test_merges_and_drops_zero(self):
        tx = build_transfer("0.0.9009", [("0.0.2002", 70), ("0.0.3003", 0),
                                         ("0.0.2002", 5)])
        assert tx.legs == (TransferLeg("0.0.9009", -75), TransferLeg("0.0.2002", 75))

    def test_rejects_crediting_source(self):
        with pytest.raises(ValidationError):
            build_transfer("0.0.9009", [("0.0.9009", 10)])

    def test_rejects_empty(self):
        with pytest.raises(ValidationError):
            build_transfer("0.0.9009", [("0.0.2002", 0)])

    def test_unbalanced_transaction_rejected(self):
        with pytest.raises(ValidationError):
            TransferTransaction(legs=(TransferLeg("a", -10), TransferLeg("b", 9)))

    def test_signatures_accumulate(self):
        tx = build_transfer("0.0.9009", [("0.0.2002", 1)]).with_signature("s1")
        assert tx.with_signature("s2").signatures == ("s1", "s2")

    def test_key_pair_repr_hides_secret(self):
        assert "hidden" not in repr(KeyPair(public_key="pub", secret="hidden"))


class TestRentalConfig:

    def test_defaults(self):
        config = RentalConfig.from_env({})
        assert config.network == "testnet"
        assert config.fixed_rate is None
        assert config.treasury_account == "0.0.801"

    def test_from_env(self):
        config = RentalConfig.from_env({
            "RENTAL_NETWORK": "mainnet",
            "RENTAL_OPERATOR_ID": "0.0.1001",
            "RENTAL_DATA_DIR": "/var/lib/rentals",
            "RENTAL_FIXED_RATE": "0.25",
            "RENTAL_RATE_CACHE_SECONDS": "120",
        })
        assert config.operator_id == "0.0.1001"
        assert config.fixed_rate == 0.25
        assert config.rate_cache_seconds == 120
        assert config.treasury_account == "0.0.8332371"
        assert config.snapshot_path == os.path.join("/var/lib/rentals", "active-rentals.json")

    def test_budget_thresholds_from_env(self):
        config = RentalConfig.from_env({
            "RENTAL_WARNING_THRESHOLD": "0.5",
            "RENTAL_CRITICAL_THRESHOLD": "0.75",
        })
        assert config.warning_threshold == 0.5
        assert config.critical_threshold == 0.75

    @pytest.mark.parametrize("env", [
        {"RENTAL_NETWORK": "devnet"},
        {"RENTAL_HTTP_TIMEOUT": "soon"},
        {"RENTAL_HTTP_TIMEOUT": "-1"},
        {"RENTAL_RATE_CACHE_SECONDS": "1.5"},
        {"RENTAL_FIXED_RATE": "nan"},
        {"RENTAL_WARNING_THRESHOLD": "0.99", "RENTAL_CRITICAL_THRESHOLD": "0.5"},
        {"RENTAL_WARNING_THRESHOLD": "0.9", "RENTAL_CRITICAL_THRESHOLD": "0.9"},
        {"RENTAL_CRITICAL_THRESHOLD": "1.5"},
        {"RENTAL_WARNING_THRESHOLD": "-0.1"},
    ])
    def test_invalid_env(self, env):
        with pytest.raises(ValidationError):
            RentalConfig.from_env(env)
