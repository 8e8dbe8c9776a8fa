"""
Rental store: durable map of rental id -> rental record.

The snapshot file holds escrow secrets for active rentals, so losing it
means losing escrowed funds. Every mutation rewrites the whole snapshot:
serialize, write to a temp file in the same directory, fsync, then
os.replace over the canonical file. The previous snapshot stays intact
until the rename succeeds.

Records are copied on the way in and on the way out; callers never hold
the store's own objects.

Loading is fail-open: a missing or corrupt snapshot is logged and the
store starts empty. A corrupt file is left in place (never overwritten)
until the first successful write, and is first copied aside so an
operator can recover it.
"""

import json
import logging
import os
import shutil
import tempfile
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from .config import SNAPSHOT_FILENAME
from .errors import RentalNotFoundError, ValidationError
from .models import TERMINAL_STATUSES, Rental


def load_snapshot(file_path: str) -> Tuple[Dict[str, Rental], Dict[str, str]]:
    """
    Parse a snapshot file without touching anything on disk.

    Returns the readable rentals and, for each unreadable record, the reason.
    Raises OSError or ValueError when the file as a whole cannot be read.
    """
    with open(file_path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("snapshot root must be an object")

    rentals: Dict[str, Rental] = {}
    unreadable: Dict[str, str] = {}
    for rental_id, record in data.items():
        try:
            rentals[rental_id] = Rental.from_dict(record)
        except (TypeError, KeyError, ValueError) as e:
            unreadable[rental_id] = str(e)
    return rentals, unreadable


class RentalStore:
    """Crash-safe JSON snapshot of all rentals, keyed by rental id."""

    def __init__(self, data_dir: str = "data",
                 filename: str = SNAPSHOT_FILENAME,
                 clock: Callable[[], float] = time.time,
                 logger: Optional[logging.Logger] = None):
        self.data_dir = data_dir
        self.file_path = os.path.join(data_dir, filename)
        self._clock = clock
        self._logger = logger or logging.getLogger("rentals.store")
        self._lock = threading.RLock()
        self._rentals: Dict[str, Rental] = {}

        os.makedirs(data_dir, exist_ok=True)
        self._load()

    def _log(self, msg: str, level: str = "info") -> None:
        level = "warning" if level == "warn" else level
        self._logger.log(getattr(logging, level.upper(), logging.INFO),
                         f"rental: store: {msg}")

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _load(self) -> None:
        if not os.path.exists(self.file_path):
            self._log(f"no snapshot at {self.file_path}, starting empty")
            return

        try:
            rentals, unreadable = load_snapshot(self.file_path)
        except (OSError, ValueError) as e:
            backup = f"{self.file_path}.corrupt-{int(self._clock())}"
            try:
                shutil.copy2(self.file_path, backup)
            except OSError:
                backup = "(backup failed)"
            self._log(f"failed to load snapshot {self.file_path}: {e}; "
                      f"starting EMPTY, original copied to {backup}", level="error")
            return

        for rental_id, problem in unreadable.items():
            self._log(f"skipping unreadable record {rental_id}: {problem}", level="error")
        self._rentals.update(rentals)

        self._log(f"loaded {len(self._rentals)} rentals "
                  f"({len(self.get_active())} active, {len(unreadable)} skipped)")

    def _save(self) -> None:
        """Write the full snapshot atomically. Caller holds the lock."""
        snapshot = {rid: r.to_dict(include_secret=True) for rid, r in self._rentals.items()}
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=self.data_dir, prefix=".rentals-", suffix=".tmp")
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                json.dump(snapshot, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.file_path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    # =========================================================================
    # MAP OPERATIONS
    # =========================================================================

    def put(self, rental: Rental) -> None:
        with self._lock:
            previous = self._rentals.get(rental.rental_id)
            self._rentals[rental.rental_id] = rental.copy()
            try:
                self._save()
            except BaseException:
                if previous is None:
                    self._rentals.pop(rental.rental_id, None)
                else:
                    self._rentals[rental.rental_id] = previous
                raise

    def get(self, rental_id: str) -> Optional[Rental]:
        with self._lock:
            rental = self._rentals.get(rental_id)
            return rental.copy() if rental is not None else None

    def remove(self, rental_id: str) -> None:
        with self._lock:
            previous = self._rentals.pop(rental_id, None)
            if previous is None:
                return
            try:
                self._save()
            except BaseException:
                self._rentals[rental_id] = previous
                raise

    def get_active(self) -> List[Rental]:
        with self._lock:
            return [r.copy() for r in self._rentals.values() if r.status == "active"]

    def get_all(self) -> List[Rental]:
        with self._lock:
            return [r.copy() for r in self._rentals.values()]

    def complete(self, rental_id: str, status: str = "completed") -> Rental:
        """Mark a rental terminal, scrub its escrow key, and persist."""
        if status not in TERMINAL_STATUSES:
            raise ValidationError(f"not a terminal status: {status!r}")
        with self._lock:
            rental = self._rentals.get(rental_id)
            if rental is None:
                raise RentalNotFoundError(rental_id)
            updated = rental.copy()
            updated.settle(status, int(self._clock()))
            self._rentals[rental_id] = updated
            try:
                self._save()
            except BaseException:
                self._rentals[rental_id] = rental
                raise
            return updated.copy()
