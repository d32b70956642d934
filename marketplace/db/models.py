"""
SQLAlchemy ORM models for database tables.

Money columns are integer cents. Status/type columns store the string value
of the matching domain enum.
"""
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime stored as naive UTC.

    SQLite drops tzinfo on the way back; values are normalised to UTC on
    write and re-tagged as UTC on read so comparisons stay consistent.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


# ============================================
# Marketplace participants
# ============================================

class UserModel(Base):
    """
    Users - contact details and notification preferences.

    Authentication lives upstream; this table only holds what delivery needs.
    """
    __tablename__ = "users"

    id = Column(String(50), primary_key=True)
    display_name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(30), nullable=True)
    push_endpoint = Column(Text, nullable=True)

    # Preferences (in-app is always on)
    email_order_updates = Column(Boolean, nullable=False, default=True, server_default="1")
    sms_order_updates = Column(Boolean, nullable=False, default=False, server_default="0")
    push_enabled = Column(Boolean, nullable=False, default=False, server_default="0")

    created_at = Column(UTCDateTime(), nullable=False, default=_utcnow)


class VendorModel(Base):
    __tablename__ = "vendors"

    id = Column(String(50), primary_key=True)
    user_id = Column(String(50), ForeignKey("users.id"), nullable=False, unique=True)
    business_name = Column(String(200), nullable=False)
    payment_account_id = Column(String(100), nullable=True, unique=True)  # processor connected account
    payments_enabled = Column(Boolean, nullable=False, default=False, server_default="0")
    created_at = Column(UTCDateTime(), nullable=False, default=_utcnow)


class ListingModel(Base):
    """
    Listings - only inventory matters to the settlement core.

    quantity NULL means unlimited inventory.
    """
    __tablename__ = "listings"

    id = Column(String(50), primary_key=True)
    vendor_id = Column(String(50), ForeignKey("vendors.id"), nullable=False)
    title = Column(String(300), nullable=False)
    quantity = Column(Integer, nullable=True)

    __table_args__ = (
        CheckConstraint("quantity IS NULL OR quantity >= 0", name="ck_listings_quantity_non_negative"),
        Index("idx_listings_vendor", "vendor_id"),
    )


# ============================================
# Orders
# ============================================

class OrderModel(Base):
    __tablename__ = "orders"

    id = Column(String(50), primary_key=True)
    order_number = Column(String(30), nullable=False, unique=True)
    buyer_id = Column(String(50), ForeignKey("users.id"), nullable=False)
    vertical = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default="pending", server_default="pending")
    payment_method = Column(String(20), nullable=False, default="processor", server_default="processor")
    payment_reference = Column(String(100), nullable=True)  # processor payment intent

    subtotal_cents = Column(Integer, nullable=False)
    buyer_fee_cents = Column(Integer, nullable=False)
    tip_cents = Column(Integer, nullable=False, default=0, server_default="0")
    tip_on_platform_fee_cents = Column(Integer, nullable=False, default=0, server_default="0")
    total_cents = Column(Integer, nullable=False)

    created_at = Column(UTCDateTime(), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_orders_buyer", "buyer_id"),
        Index("idx_orders_status", "status"),
    )

    items = relationship(
        "OrderItemModel",
        back_populates="order",
        order_by="OrderItemModel.position",
    )


class OrderItemModel(Base):
    """
    Order items - never deleted; cancellation is a status plus a timestamp.

    status is only ever written through a status-guarded UPDATE.
    """
    __tablename__ = "order_items"

    id = Column(String(50), primary_key=True)
    order_id = Column(String(50), ForeignKey("orders.id"), nullable=False)
    position = Column(Integer, nullable=False, default=0)  # checkout order within the order
    listing_id = Column(String(50), ForeignKey("listings.id"), nullable=False)
    vendor_id = Column(String(50), ForeignKey("vendors.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price_cents = Column(Integer, nullable=False)
    subtotal_cents = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="pending", server_default="pending")

    created_at = Column(UTCDateTime(), nullable=False, default=_utcnow)
    expires_at = Column(UTCDateTime(), nullable=True)

    cancelled_at = Column(UTCDateTime(), nullable=True)
    cancelled_by = Column(String(20), nullable=True)  # buyer | vendor | system
    cancellation_reason = Column(Text, nullable=True)
    refund_amount_cents = Column(Integer, nullable=True)
    cancellation_fee_cents = Column(Integer, nullable=True)
    platform_fee_share_cents = Column(Integer, nullable=True)
    vendor_fee_share_cents = Column(Integer, nullable=True)

    inventory_restored_at = Column(UTCDateTime(), nullable=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        Index("idx_order_items_order", "order_id"),
        Index("idx_order_items_vendor_status", "vendor_id", "status"),
        Index("idx_order_items_status_expires", "status", "expires_at"),
    )

    order = relationship("OrderModel", back_populates="items")


# ============================================
# Settlement
# ============================================

class VendorFeeLedgerModel(Base):
    """
    Vendor fee ledger - append-only.

    Signed amounts: charges positive, deductions negative. Only `paid` and
    `paid_at` are ever updated.
    `seq` is the insert order, used to settle same-timestamp rows in the
    order they were written.
    """
    __tablename__ = "vendor_fee_ledger"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(50), nullable=False, unique=True)
    vendor_id = Column(String(50), ForeignKey("vendors.id"), nullable=False)
    order_id = Column(String(50), ForeignKey("orders.id"), nullable=True)
    amount_cents = Column(Integer, nullable=False)
    entry_type = Column(String(30), nullable=False)  # charge | payout_deduction | manual_adjustment
    description = Column(Text, nullable=True)
    paid = Column(Boolean, nullable=False, default=False, server_default="0")
    created_at = Column(UTCDateTime(), nullable=False, default=_utcnow)
    paid_at = Column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("idx_fee_ledger_vendor_paid", "vendor_id", "paid", "created_at"),
        Index("idx_fee_ledger_vendor_order", "vendor_id", "order_id"),
        # One external-payment charge per (vendor, order)
        Index(
            "uq_fee_ledger_order_charge",
            "vendor_id",
            "order_id",
            unique=True,
            sqlite_where=text("entry_type = 'charge' AND order_id IS NOT NULL"),
            postgresql_where=text("entry_type = 'charge' AND order_id IS NOT NULL"),
        ),
    )


class VendorPayoutModel(Base):
    __tablename__ = "vendor_payouts"

    id = Column(String(50), primary_key=True)
    vendor_id = Column(String(50), ForeignKey("vendors.id"), nullable=False)
    order_id = Column(String(50), ForeignKey("orders.id"), nullable=False)
    order_item_id = Column(String(50), ForeignKey("order_items.id"), nullable=False)
    kind = Column(String(30), nullable=False)  # sale | cancellation_fee
    gross_cents = Column(Integer, nullable=False)
    deduction_cents = Column(Integer, nullable=False, default=0, server_default="0")
    amount_cents = Column(Integer, nullable=False)  # gross - deduction
    status = Column(String(20), nullable=False, default="pending", server_default="pending")
    transfer_reference = Column(String(100), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_payouts_item_kind", "order_item_id", "kind", unique=True),
        Index("idx_payouts_vendor", "vendor_id"),
        Index("idx_payouts_transfer", "transfer_reference"),
    )


# ============================================
# Notifications
# ============================================

class NotificationModel(Base):
    """Persisted notifications - mutated only to set read_at"""
    __tablename__ = "notifications"

    id = Column(String(50), primary_key=True)
    user_id = Column(String(50), ForeignKey("users.id"), nullable=False)
    type = Column(String(50), nullable=False)
    urgency = Column(String(20), nullable=False)
    audience = Column(String(20), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    action_url = Column(String(500), nullable=False)
    channels = Column(JSON, nullable=False, default=list)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(UTCDateTime(), nullable=False, default=_utcnow)
    read_at = Column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("idx_notifications_user_created", "user_id", "created_at"),
        Index("idx_notifications_user_unread", "user_id", "read_at"),
    )


# ============================================
# Webhook idempotency
# ============================================

class ProcessedWebhookEventModel(Base):
    """Processor events already handled (at-least-once delivery)"""
    __tablename__ = "processed_webhook_events"

    event_id = Column(String(100), primary_key=True)
    event_type = Column(String(100), nullable=False)
    processed_at = Column(UTCDateTime(), nullable=False, default=_utcnow)
