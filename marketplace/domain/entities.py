"""
Domain Entities - Rich business objects with identity and lifecycle.

Entities differ from value objects in that they have:
- Identity (tracked by ID, not by value)
- Mutable state (can change over time)
- Business logic (methods that enforce invariants)

The Order entity is an aggregate root - it owns its OrderItems. Items are
never deleted; cancellation is a status plus a timestamp.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .notification_types import Audience, Channel, NotificationType, Urgency
from .value_objects import (
    ItemStatus,
    LedgerEntryType,
    OrderStatus,
    PaymentMethod,
    PayoutKind,
    PayoutStatus,
)

TERMINAL_ITEM_STATUSES = frozenset({
    ItemStatus.COMPLETED,
    ItemStatus.CANCELLED,
    ItemStatus.EXPIRED,
})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_cents(name: str, value: int, allow_negative: bool = False) -> None:
    # bool is an int subclass; money is never a bool
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"{name} must be integer cents, got {value!r}")
    if not allow_negative and value < 0:
        raise InvalidInputError(f"{name} cannot be negative, got {value}")


@dataclass
class OrderItem:
    """
    Order item entity - part of the Order aggregate.

    Invariants:
    1. quantity is a positive integer
    2. subtotal_cents == quantity * unit_price_cents
    3. status only changes through OrderLifecycle transitions
    """

    id: str
    order_id: str
    listing_id: str
    vendor_id: str
    quantity: int
    unit_price_cents: int
    subtotal_cents: int
    status: ItemStatus = ItemStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    # Cancellation outcome (set once, by the cancel/expire transition)
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    refund_amount_cents: Optional[int] = None
    cancellation_fee_cents: Optional[int] = None
    platform_fee_share_cents: Optional[int] = None
    vendor_fee_share_cents: Optional[int] = None

    inventory_restored_at: Optional[datetime] = None

    def __post_init__(self):
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int) or self.quantity <= 0:
            raise InvalidInputError(f"Order item quantity must be a positive integer, got {self.quantity!r}")
        _require_cents("unit_price_cents", self.unit_price_cents)
        _require_cents("subtotal_cents", self.subtotal_cents)
        if self.subtotal_cents != self.quantity * self.unit_price_cents:
            raise InvalidInputError(
                f"Order item {self.id} subtotal {self.subtotal_cents} != "
                f"{self.quantity} x {self.unit_price_cents}"
            )

    @classmethod
    def create(
        cls,
        id: str,
        order_id: str,
        listing_id: str,
        vendor_id: str,
        quantity: int,
        unit_price_cents: int,
        **kwargs: Any
    ) -> "OrderItem":
        """Build an item, deriving the subtotal from quantity and unit price."""
        return cls(
            id=id,
            order_id=order_id,
            listing_id=listing_id,
            vendor_id=vendor_id,
            quantity=quantity,
            unit_price_cents=unit_price_cents,
            subtotal_cents=quantity * unit_price_cents,
            **kwargs
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ITEM_STATUSES

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None

    @property
    def inventory_restored(self) -> bool:
        return self.inventory_restored_at is not None

    def __repr__(self) -> str:
        return (
            f"OrderItem(id={self.id}, status={self.status.value}, "
            f"qty={self.quantity}, subtotal={self.subtotal_cents})"
        )


@dataclass
class Order:
    """
    Order aggregate root.

    Invariants (business rules enforced by domain model):
    1. total_cents == subtotal_cents + buyer_fee_cents + tip_cents
    2. subtotal_cents == sum of item subtotals (when items are loaded)
    3. tip_on_platform_fee_cents never exceeds tip_cents
    """

    id: str
    order_number: str
    buyer_id: str
    subtotal_cents: int
    buyer_fee_cents: int
    total_cents: int
    status: OrderStatus = OrderStatus.PENDING
    payment_method: PaymentMethod = PaymentMethod.PROCESSOR
    payment_reference: Optional[str] = None  # processor payment intent id
    tip_cents: int = 0
    tip_on_platform_fee_cents: int = 0
    vertical: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    items: List[OrderItem] = field(default_factory=list)

    def __post_init__(self):
        for name in ("subtotal_cents", "buyer_fee_cents", "total_cents", "tip_cents", "tip_on_platform_fee_cents"):
            _require_cents(name, getattr(self, name))

        if self.total_cents != self.subtotal_cents + self.buyer_fee_cents + self.tip_cents:
            raise InvalidInputError(
                f"Order {self.id} total {self.total_cents} != subtotal {self.subtotal_cents} "
                f"+ buyer fee {self.buyer_fee_cents} + tip {self.tip_cents}"
            )

        if self.tip_on_platform_fee_cents > self.tip_cents:
            raise InvalidInputError(
                f"Order {self.id} tip on platform fee ({self.tip_on_platform_fee_cents}) "
                f"exceeds tip ({self.tip_cents})"
            )

        if self.items:
            items_subtotal = sum(item.subtotal_cents for item in self.items)
            if items_subtotal != self.subtotal_cents:
                raise InvalidInputError(
                    f"Order {self.id} subtotal {self.subtotal_cents} != sum of item subtotals {items_subtotal}"
                )
            for item in self.items:
                if item.order_id != self.id:
                    raise InvalidInputError(
                        f"Item {item.id} belongs to order {item.order_id}, "
                        f"but is in aggregate for order {self.id}"
                    )

    @property
    def item_count(self) -> int:
        return len(self.items)

    @property
    def is_externally_paid(self) -> bool:
        return self.payment_method.is_external

    def items_for_vendor(self, vendor_id: str) -> List[OrderItem]:
        return [item for item in self.items if item.vendor_id == vendor_id]

    def vendor_ids(self) -> List[str]:
        """Distinct vendors in first-seen order"""
        seen: List[str] = []
        for item in self.items:
            if item.vendor_id not in seen:
                seen.append(item.vendor_id)
        return seen

    def derive_status(self) -> Optional[OrderStatus]:
        """
        Aggregate status implied by the items, or None if the items don't
        settle it (some still in flight).
        """
        if not self.items or any(not item.is_terminal for item in self.items):
            return None
        if any(item.status == ItemStatus.COMPLETED for item in self.items):
            return OrderStatus.COMPLETED
        return OrderStatus.CANCELLED

    def __repr__(self) -> str:
        return (
            f"Order(id={self.id}, number={self.order_number}, status={self.status.value}, "
            f"items={self.item_count}, total={self.total_cents})"
        )


@dataclass
class Listing:
    """Listing with optional managed inventory (quantity None = unlimited)"""

    id: str
    vendor_id: str
    title: str
    quantity: Optional[int] = None

    def __post_init__(self):
        if self.quantity is not None and self.quantity < 0:
            raise InvalidInputError(f"Listing {self.id} quantity cannot be negative")

    @property
    def has_unlimited_inventory(self) -> bool:
        return self.quantity is None


@dataclass
class Vendor:
    """Vendor profile (only the fields the settlement core reads)"""

    id: str
    user_id: str
    business_name: str
    payment_account_id: Optional[str] = None
    payments_enabled: bool = False

    @property
    def has_payment_account(self) -> bool:
        return bool(self.payment_account_id)


@dataclass
class UserContact:
    """Delivery addresses and notification preferences for a user"""

    id: str
    display_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    push_endpoint: Optional[str] = None
    email_order_updates: bool = True
    sms_order_updates: bool = False
    push_enabled: bool = False

    def accepts(self, channel: Channel) -> bool:
        """In-app is always on; the other channels need an address and an opt-in."""
        if channel == Channel.IN_APP:
            return True
        if channel == Channel.EMAIL:
            return self.email_order_updates and bool(self.email)
        if channel == Channel.SMS:
            return self.sms_order_updates and bool(self.phone)
        if channel == Channel.PUSH:
            return self.push_enabled and bool(self.push_endpoint)
        return False


@dataclass
class VendorFeeLedgerEntry:
    """
    Append-only vendor fee ledger entry.

    Amounts are signed: charges are positive (vendor owes), deductions are
    negative (vendor paid). Only the paid flag ever changes after insert.
    """

    id: str
    vendor_id: str
    amount_cents: int
    entry_type: LedgerEntryType
    order_id: Optional[str] = None
    description: Optional[str] = None
    paid: bool = False
    created_at: datetime = field(default_factory=utcnow)
    paid_at: Optional[datetime] = None

    def __post_init__(self):
        _require_cents("amount_cents", self.amount_cents, allow_negative=True)
        if self.entry_type == LedgerEntryType.CHARGE and self.amount_cents <= 0:
            raise InvalidInputError("Ledger charge amount must be positive")
        if self.entry_type == LedgerEntryType.PAYOUT_DEDUCTION and self.amount_cents >= 0:
            raise InvalidInputError("Ledger payout deduction amount must be negative")
        if self.entry_type == LedgerEntryType.MANUAL_ADJUSTMENT and self.amount_cents == 0:
            raise InvalidInputError("Ledger adjustment amount cannot be zero")

    @property
    def is_credit(self) -> bool:
        return self.amount_cents < 0


@dataclass
class VendorPayout:
    """Money owed to a vendor through the payment processor"""

    id: str
    vendor_id: str
    order_id: str
    order_item_id: str
    kind: PayoutKind
    gross_cents: int
    deduction_cents: int = 0
    status: PayoutStatus = PayoutStatus.PENDING
    transfer_reference: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        _require_cents("gross_cents", self.gross_cents)
        _require_cents("deduction_cents", self.deduction_cents)
        if self.deduction_cents > self.gross_cents:
            raise InvalidInputError(
                f"Payout deduction {self.deduction_cents} exceeds gross {self.gross_cents}"
            )

    @property
    def amount_cents(self) -> int:
        """Net amount transferred to the vendor"""
        return self.gross_cents - self.deduction_cents


@dataclass
class Notification:
    """Persisted notification record, owned by the recipient user"""

    id: str
    user_id: str
    type: NotificationType
    urgency: Urgency
    audience: Audience
    title: str
    message: str
    action_url: str
    channels: List[Channel] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    read_at: Optional[datetime] = None

    @property
    def is_read(self) -> bool:
        return self.read_at is not None


# Domain exceptions

class DomainError(Exception):
    """Base exception for domain layer errors"""
    code = "domain_error"


class InvalidInputError(DomainError):
    """Malformed or out-of-range input, rejected before any mutation"""
    code = "invalid_input"


class ConflictError(DomainError):
    """The stored state no longer matches what the caller expected"""
    code = "conflict"


class TransitionConflictError(ConflictError):
    """Raised when a lifecycle transition is attempted from the wrong status"""
    code = "transition_conflict"

    def __init__(self, item_id: str, current: Optional[ItemStatus], event: str):
        self.item_id = item_id
        self.current = current
        self.event = event
        current_label = current.value if current else "unknown"
        super().__init__(
            f"Cannot {event} order item {item_id} from status '{current_label}'"
        )


class InventoryAlreadyRestoredError(ConflictError):
    """Raised when inventory for an order item was already restored"""
    code = "inventory_already_restored"

    def __init__(self, item_ids: List[str]):
        self.item_ids = item_ids
        super().__init__(f"Inventory already restored for order item(s): {', '.join(item_ids)}")


class NotFoundError(DomainError):
    code = "not_found"

    entity = "Resource"

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"{self.entity} {entity_id} not found")


class OrderNotFoundError(NotFoundError):
    entity = "Order"


class OrderItemNotFoundError(NotFoundError):
    entity = "Order item"


class ListingNotFoundError(NotFoundError):
    entity = "Listing"


class VendorNotFoundError(NotFoundError):
    entity = "Vendor"


class NotificationNotFoundError(NotFoundError):
    entity = "Notification"


class NotAuthorizedError(DomainError):
    """Actor does not own the resource"""
    code = "not_authorized"


class PaymentSetupRequiredError(DomainError):
    """Vendor must finish payment-account onboarding before confirming orders"""
    code = "PAYMENT_ACCOUNT_REQUIRED"

    def __init__(self, vendor_id: str):
        self.vendor_id = vendor_id
        super().__init__(
            "Please complete your payment account setup before confirming orders. "
            "Go to Dashboard > Payment Methods to connect your account."
        )


class SignatureVerificationError(DomainError):
    """Webhook signature missing or invalid (terminal, never retried)"""
    code = "invalid_signature"
