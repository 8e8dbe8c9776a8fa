"""
Ledger Service boundary.

The ledger provides account creation, key generation, signing and atomic
multi-output transfers. Consensus and cryptography live behind this
interface; this module only defines the contract and the transaction value
types the lifecycle manager builds.

Funds-moving calls are never retried here. A receipt with a non-success
status is definitive.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import ValidationError


STATUS_SUCCESS = "SUCCESS"


@dataclass(frozen=True)
class TransferLeg:
    """Signed amount in atomic units: negative debits, positive credits."""
    account: str
    amount: int


@dataclass(frozen=True)
class TransferTransaction:
    """One atomic multi-output transfer. Legs must net to zero."""
    legs: Tuple[TransferLeg, ...]
    memo: str = ""
    signatures: Tuple[str, ...] = ()

    def __post_init__(self):
        if not self.legs:
            raise ValidationError("transfer has no legs")
        total = sum(leg.amount for leg in self.legs)
        if total != 0:
            raise ValidationError(f"transfer legs do not net to zero (off by {total})")

    def with_signature(self, signature: str) -> "TransferTransaction":
        return TransferTransaction(self.legs, self.memo, self.signatures + (signature,))

    def amount_for(self, account: str) -> int:
        return sum(leg.amount for leg in self.legs if leg.account == account)


@dataclass(frozen=True)
class KeyPair:
    public_key: str
    secret: str = field(repr=False)


@dataclass(frozen=True)
class LedgerReceipt:
    status: str
    transaction_id: str = ""
    account_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS


def build_transfer(source: str, credits: Sequence[Tuple[str, int]],
                   memo: str = "") -> TransferTransaction:
    """
    Debit `source` by the sum of `credits` and credit each account.

    Credits to the same account are merged; zero-amount legs are dropped.
    """
    merged: Dict[str, int] = {}
    order: List[str] = []
    for account, amount in credits:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
            raise ValidationError(f"credit to {account} must be a non-negative integer")
        if account == source:
            raise ValidationError(f"cannot credit the source account {source}")
        if account not in merged:
            merged[account] = 0
            order.append(account)
        merged[account] += amount

    total = sum(merged.values())
    if total <= 0:
        raise ValidationError("transfer moves no funds")

    legs = [TransferLeg(source, -total)]
    legs.extend(TransferLeg(a, merged[a]) for a in order if merged[a] > 0)
    return TransferTransaction(legs=tuple(legs), memo=memo)


class LedgerService:
    """Ledger primitives consumed by the lifecycle manager."""

    def generate_key_pair(self) -> KeyPair:
        """Generate a fresh control key pair for an escrow account."""
        raise NotImplementedError

    def create_account(self, control_key: str) -> LedgerReceipt:
        """Create an account controlled by `control_key`. Receipt carries account_id."""
        raise NotImplementedError

    def sign_with_secret(self, tx: TransferTransaction, secret: str) -> TransferTransaction:
        """Return `tx` with a signature from `secret` attached."""
        raise NotImplementedError

    def transfer(self, tx: TransferTransaction) -> LedgerReceipt:
        """Submit an atomic transfer. Operator-funded legs are signed by the client."""
        raise NotImplementedError
