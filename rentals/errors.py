"""
Error taxonomy for rental settlement.

- ValidationError: malformed or out-of-range input. Never mutates state.
- PreconditionError: wrong caller, wrong status or wrong timing window.
  Never mutates state.
- DependencyError: ledger, audit log, resolver or rate oracle failure.
- ConflictError: settlement attempted on a rental whose escrow secret has
  already been consumed.
"""

from typing import Optional


class RentalError(Exception):
    """Base class for all rental settlement errors."""


class ValidationError(RentalError, ValueError):
    """Input is malformed or out of range."""


class PreconditionError(RentalError):
    """Caller, status or timing does not allow the requested transition."""


class RentalNotFoundError(PreconditionError):
    """No rental is stored under the requested id."""

    def __init__(self, rental_id: str):
        self.rental_id = rental_id
        super().__init__(f"rental {rental_id} not found")


class DependencyError(RentalError):
    """An external collaborator failed or returned a non-success status."""

    def __init__(self, dependency: str, message: str,
                 rental_id: Optional[str] = None):
        self.dependency = dependency
        self.rental_id = rental_id
        super().__init__(f"{dependency}: {message}")


class ConflictError(RentalError):
    """The rental has already been settled (escrow secret scrubbed)."""

    def __init__(self, rental_id: str, message: str = ""):
        self.rental_id = rental_id
        super().__init__(message or f"rental {rental_id} is already settled")
