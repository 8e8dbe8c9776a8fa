#!/usr/bin/env python3
"""
Rental Sweeper - report timed-out and dead escrows from the rental snapshot.

Read-only: it parses the snapshot file directly and never writes to the data
directory (no store is opened, so no directory creation or corrupt-file
backup). It never moves funds. Renters act on timed-out rentals with
claim_timeout (or owners with settle_timeout inside the settlement window);
dead escrows need an operator.

Usage:
    # Human-readable summary
    ./rental-sweeper.py --data-dir /var/lib/rentals

    # JSON for cron / alerting
    ./rental-sweeper.py --json

    # Cron (alert when the exit code is 1):
    # */15 * * * * /path/to/rental-sweeper.py --json >> /var/log/rental-sweeper.log

Exit codes:
    0 - no dead escrows
    1 - at least one dead escrow
    2 - configuration or snapshot error

Environment:
    RENTAL_DATA_DIR - Directory holding active-rentals.json (default: ./data)
    RENTAL_* - see rentals.config
"""

import argparse
import json
import logging
import os
import sys
import time
from typing import Any, Dict, Iterable, List

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rentals.config import SNAPSHOT_FILENAME, RentalConfig
from rentals.errors import ValidationError
from rentals.escrow_timeout import EscrowTimeoutPolicy
from rentals.models import Rental
from rentals.rental_store import load_snapshot

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("rental-sweeper")


def _describe(rental: Rental, now: int) -> Dict[str, Any]:
    return {
        "rental_id": rental.rental_id,
        "agent_id": rental.agent_id,
        "renter": rental.renter,
        "owner": rental.owner,
        "escrow_account": rental.escrow_account,
        "escrow_atomic": rental.total_escrow_atomic,
        "timeout_at": rental.timeout_at,
        "settlement_deadline": rental.settlement_deadline,
        "overdue_minutes": max(0, now - rental.timeout_at) // 60,
        "settlement_open": now <= rental.settlement_deadline,
    }


def sweep(rentals: Iterable[Rental], policy: EscrowTimeoutPolicy,
          now: int) -> Dict[str, Any]:
    active = [r for r in rentals if r.status == "active"]
    timed_out: List[Dict[str, Any]] = []
    dead: List[Dict[str, Any]] = []
    for rental in active:
        if not policy.is_timed_out(rental.timeout_at, now):
            continue
        entry = _describe(rental, now)
        if policy.is_dead(rental.timeout_at, now):
            dead.append(entry)
        else:
            timed_out.append(entry)
    return {
        "checked_at": now,
        "active": len(active),
        "timed_out": timed_out,
        "dead_escrows": dead,
    }


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Rental Sweeper - report timed-out and dead escrows"
    )
    parser.add_argument("--data-dir", "-d", help="Snapshot directory (default: $RENTAL_DATA_DIR)")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    args = parser.parse_args()

    try:
        config = RentalConfig.from_env()
    except ValidationError as e:
        logger.error(f"invalid configuration: {e}")
        return 2
    data_dir = args.data_dir or config.data_dir

    snapshot_path = os.path.join(data_dir, SNAPSHOT_FILENAME)
    if not os.path.isfile(snapshot_path):
        logger.error(f"no rental snapshot in {data_dir}")
        return 2
    try:
        rentals, unreadable = load_snapshot(snapshot_path)
    except (OSError, ValueError) as e:
        logger.error(f"cannot read snapshot {snapshot_path}: {e}")
        return 2
    for rental_id, problem in unreadable.items():
        logger.warning(f"skipping unreadable record {rental_id}: {problem}")

    policy = EscrowTimeoutPolicy(
        grace_seconds=config.grace_seconds,
        settlement_window_seconds=config.settlement_window_seconds,
        dead_escrow_seconds=config.dead_escrow_seconds,
    )
    report = sweep(rentals.values(), policy, int(time.time()))

    if args.json:
        print(json.dumps(report, indent=2))
    else:
        print(f"rental-sweeper: {report['active']} active")
        for entry in report["timed_out"]:
            window = "settlement open" if entry["settlement_open"] else "renter may claim"
            print(f"- timed out: {entry['rental_id']} ({entry['overdue_minutes']} min, {window})")
        for entry in report["dead_escrows"]:
            print(f"- DEAD: {entry['rental_id']} escrow {entry['escrow_account']} "
                  f"holds {entry['escrow_atomic']} atomic units")

    if report["dead_escrows"]:
        logger.warning(f"{len(report['dead_escrows'])} dead escrow(s) need an operator")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
