"""
Fee split engine.

All arithmetic is done in atomic units. Non-owner shares are floored from
fixed basis points; the owner's share is whatever remains, so the shares of
any charged amount always sum back to exactly that amount.
"""

from dataclasses import asdict, dataclass
from typing import Dict

from .config import BPS_DENOMINATOR, RENTAL_SPLIT_BPS
from .errors import ValidationError


@dataclass(frozen=True)
class FeeSplit:
    """Four-way split of a charged amount."""
    owner: int
    creator: int
    network: int
    treasury: int

    @property
    def total(self) -> int:
        return self.owner + self.creator + self.network + self.treasury


@dataclass(frozen=True)
class Distribution:
    """Where every atomic unit of an escrow goes at settlement."""
    owner: int
    creator: int
    network: int
    treasury: int
    renter_refund: int

    @property
    def total(self) -> int:
        return self.owner + self.creator + self.network + self.treasury + self.renter_refund

    @property
    def charged(self) -> int:
        return self.total - self.renter_refund

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def _check_amount(name: str, amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
        raise ValidationError(f"{name} must be a non-negative integer, got {amount!r}")


def _floor_bps(amount: int, bps: int) -> int:
    return amount * bps // BPS_DENOMINATOR


def split_fee(charged: int) -> FeeSplit:
    """
    Split a charged amount 92/5/2/1 across owner, creator, network and treasury.

    The owner absorbs all rounding dust.
    """
    _check_amount("charged", charged)
    creator = _floor_bps(charged, RENTAL_SPLIT_BPS["creator"])
    network = _floor_bps(charged, RENTAL_SPLIT_BPS["network"])
    treasury = _floor_bps(charged, RENTAL_SPLIT_BPS["treasury"])
    owner = charged - creator - network - treasury
    return FeeSplit(owner=owner, creator=creator, network=network, treasury=treasury)


def settlement_distribution(escrow_total: int, charged: int) -> Distribution:
    """Split `charged` and refund the rest of the escrow to the renter."""
    _check_amount("escrow_total", escrow_total)
    _check_amount("charged", charged)
    if charged > escrow_total:
        raise ValidationError(f"charged ({charged}) exceeds escrow total ({escrow_total})")
    shares = split_fee(charged)
    return Distribution(
        owner=shares.owner,
        creator=shares.creator,
        network=shares.network,
        treasury=shares.treasury,
        renter_refund=escrow_total - charged,
    )


def timeout_distribution(escrow_total: int, buffer_atomic: int) -> Distribution:
    """
    Distribution for a renter-claimed timeout.

    Only the network and treasury cuts of the buffer are charged; owner and
    creator receive nothing and the renter gets everything else.
    """
    _check_amount("escrow_total", escrow_total)
    _check_amount("buffer_atomic", buffer_atomic)
    if buffer_atomic > escrow_total:
        raise ValidationError(
            f"buffer ({buffer_atomic}) exceeds escrow total ({escrow_total})")
    network = _floor_bps(buffer_atomic, RENTAL_SPLIT_BPS["network"])
    treasury = _floor_bps(buffer_atomic, RENTAL_SPLIT_BPS["treasury"])
    return Distribution(
        owner=0,
        creator=0,
        network=network,
        treasury=treasury,
        renter_refund=escrow_total - network - treasury,
    )
