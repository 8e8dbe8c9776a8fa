"""Tests for tools/rental-sweeper.py."""

import importlib.util
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rentals.escrow_timeout import EscrowTimeoutPolicy
from rentals.models import PricingSnapshot, Rental, RentalConstraints
from rentals.rental_store import RentalStore

NOW = 1_700_000_000

SWEEPER_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "tools", "rental-sweeper.py")


def load_sweeper():
    spec = importlib.util.spec_from_file_location("rental_sweeper", SWEEPER_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def make_rental(rental_id="rental_1", status="active", escrow_key="302e-escrow-secret",
                timeout_at=NOW + 900):
    return Rental(
        rental_id=rental_id, agent_id="0.0.5001", renter="0.0.1001", owner="0.0.2002",
        rental_type="session", stake_amount=50.0, stake_atomic=50_000_000_000,
        buffer_amount=100.0, buffer_atomic=100_000_000_000, escrow_account="0.0.9009",
        pricing=PricingSnapshot(rate=0.1), constraints=RentalConstraints(),
        started_at=NOW - 86400, timeout_at=timeout_at,
        settlement_deadline=timeout_at + 86400, status=status, escrow_key=escrow_key,
    )


def seed(tmp_path):
    store = RentalStore(data_dir=str(tmp_path), clock=lambda: NOW)
    store.put(make_rental("rental_fresh", timeout_at=NOW + 3600))
    store.put(make_rental("rental_late", timeout_at=NOW - 600))
    store.put(make_rental("rental_dead", timeout_at=NOW - 8 * 86400))
    store.put(make_rental("rental_done", status="completed", escrow_key=None,
                          timeout_at=NOW - 30 * 86400))
    return store


class TestSweep:

    def test_classifies_active_rentals(self, tmp_path):
        sweeper = load_sweeper()
        report = sweeper.sweep(seed(tmp_path).get_all(), EscrowTimeoutPolicy(), NOW)
        assert report["active"] == 3
        assert [e["rental_id"] for e in report["timed_out"]] == ["rental_late"]
        assert [e["rental_id"] for e in report["dead_escrows"]] == ["rental_dead"]
        late = report["timed_out"][0]
        assert late["overdue_minutes"] == 10
        assert late["settlement_open"] is True
        assert "escrow_key" not in json.dumps(report)


class TestMain:

    def test_exit_code_with_dead_escrow(self, tmp_path, monkeypatch, capsys):
        sweeper = load_sweeper()
        seed(tmp_path)
        monkeypatch.setattr(sys, "argv", ["rental-sweeper.py", "--data-dir", str(tmp_path),
                                          "--json"])
        monkeypatch.setattr(sweeper.time, "time", lambda: NOW)
        assert sweeper.main() == 1
        report = json.loads(capsys.readouterr().out)
        assert len(report["dead_escrows"]) == 1

    def test_exit_code_clean(self, tmp_path, monkeypatch):
        sweeper = load_sweeper()
        RentalStore(data_dir=str(tmp_path)).put(make_rental(timeout_at=NOW + 3600))
        monkeypatch.setattr(sys, "argv", ["rental-sweeper.py", "-d", str(tmp_path)])
        monkeypatch.setattr(sweeper.time, "time", lambda: NOW)
        assert sweeper.main() == 0

    def test_missing_snapshot(self, tmp_path, monkeypatch):
        sweeper = load_sweeper()
        monkeypatch.setattr(sys, "argv", ["rental-sweeper.py", "-d", str(tmp_path / "none")])
        assert sweeper.main() == 2
        assert not (tmp_path / "none").exists()

    def test_corrupt_snapshot_left_untouched(self, tmp_path, monkeypatch):
        sweeper = load_sweeper()
        (tmp_path / "active-rentals.json").write_text("{not json")
        monkeypatch.setattr(sys, "argv", ["rental-sweeper.py", "-d", str(tmp_path)])
        assert sweeper.main() == 2
        assert sorted(os.listdir(str(tmp_path))) == ["active-rentals.json"]
        assert (tmp_path / "active-rentals.json").read_text() == "{not json"
