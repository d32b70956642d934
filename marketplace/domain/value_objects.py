"""
Value objects shared across the settlement core.

Value objects are immutable and self-validating. Identifiers are plain
prefixed strings (ord_xxx, item_xxx, lst_xxx, ven_xxx, usr_xxx) so that log
lines and database rows stay readable; the enums below are the closed
vocabularies stored in status/type columns.
"""

import enum
import uuid
from dataclasses import dataclass


def new_id(prefix: str) -> str:
    """
    Generate a prefixed identifier.

    Format: {prefix}_{12 hex chars}
    Example: ord_89baed550ed9, fee_2d32237c32c7
    """
    if not prefix or not prefix.isalpha():
        raise ValueError(f"Invalid id prefix: {prefix!r}")
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class ActorRole(str, enum.Enum):
    """Who triggered a lifecycle transition"""
    BUYER = "buyer"
    VENDOR = "vendor"
    SYSTEM = "system"  # cron jobs, webhooks


@dataclass(frozen=True)
class Actor:
    """
    The caller of an operation.

    user_id is the authenticated user (set by the upstream gateway) for
    buyers and vendors; system actors carry a descriptive name instead.
    """

    user_id: str
    role: ActorRole

    def __post_init__(self):
        if not self.user_id:
            raise ValueError("Actor user_id cannot be empty")
        if not isinstance(self.role, ActorRole):
            raise ValueError(f"Invalid actor role: {self.role!r}")

    @classmethod
    def system(cls, name: str = "system") -> "Actor":
        return cls(user_id=name, role=ActorRole.SYSTEM)

    @property
    def is_system(self) -> bool:
        return self.role == ActorRole.SYSTEM

    def __str__(self) -> str:
        return f"{self.role.value}:{self.user_id}"


class OrderStatus(str, enum.Enum):
    """Aggregate order status (derived from its items after checkout)"""
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class ItemStatus(str, enum.Enum):
    """
    Order item status.

    pending -> confirmed -> ready -> fulfilled -> completed, with cancelled and
    expired reachable from every non-terminal status. See domain/lifecycle.py
    for the transition table.
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    READY = "ready"
    FULFILLED = "fulfilled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PaymentMethod(str, enum.Enum):
    """How the buyer paid. Everything except PROCESSOR is an external payment."""
    PROCESSOR = "processor"
    CASH = "cash"
    VENMO = "venmo"
    CASHAPP = "cashapp"
    PAYPAL = "paypal"

    @property
    def is_external(self) -> bool:
        return self != PaymentMethod.PROCESSOR


class LedgerEntryType(str, enum.Enum):
    """Vendor fee ledger entry types"""
    CHARGE = "charge"  # fee owed by the vendor (positive amount)
    PAYOUT_DEDUCTION = "payout_deduction"  # withheld from a payout or paid by invoice (negative)
    MANUAL_ADJUSTMENT = "manual_adjustment"  # signed, admin-initiated


class PayoutKind(str, enum.Enum):
    SALE = "sale"
    CANCELLATION_FEE = "cancellation_fee"


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
