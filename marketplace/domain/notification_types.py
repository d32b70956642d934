"""
Notification Type Registry

Central definition of all notification types with their:
- Urgency level (determines which channels fire)
- Audience (buyer or vendor)
- Templates (title, message, action URL) rendered from a typed payload

Urgency tiers:
    immediate -> push + in-app
    urgent    -> SMS + in-app
    standard  -> email + in-app
    info      -> email only

The registry is closed: every NotificationType member must have a template,
checked when this module is imported.
"""

import enum
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, FrozenSet, Optional


class Channel(str, enum.Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class Urgency(str, enum.Enum):
    IMMEDIATE = "immediate"
    URGENT = "urgent"
    STANDARD = "standard"
    INFO = "info"


class Audience(str, enum.Enum):
    BUYER = "buyer"
    VENDOR = "vendor"


URGENCY_CHANNELS: Dict[Urgency, FrozenSet[Channel]] = {
    Urgency.IMMEDIATE: frozenset({Channel.PUSH, Channel.IN_APP}),
    Urgency.URGENT: frozenset({Channel.SMS, Channel.IN_APP}),
    Urgency.STANDARD: frozenset({Channel.EMAIL, Channel.IN_APP}),
    Urgency.INFO: frozenset({Channel.EMAIL}),
}


class NotificationType(str, enum.Enum):
    # Buyer-facing
    ORDER_CONFIRMED = "order_confirmed"
    ORDER_READY = "order_ready"
    ORDER_FULFILLED = "order_fulfilled"
    ORDER_CANCELLED_BY_VENDOR = "order_cancelled_by_vendor"
    ORDER_EXPIRED = "order_expired"
    # Vendor-facing
    NEW_PAID_ORDER = "new_paid_order"
    ORDER_CANCELLED_BY_BUYER = "order_cancelled_by_buyer"
    PICKUP_CONFIRMED = "pickup_confirmed"
    PAYOUT_PROCESSED = "payout_processed"
    FEE_BALANCE_DUE = "fee_balance_due"


@dataclass(frozen=True)
class NotificationPayload:
    """Everything a template may render. Unused fields stay None."""

    order_number: Optional[str] = None
    item_title: Optional[str] = None
    vendor_name: Optional[str] = None
    buyer_name: Optional[str] = None
    amount_cents: Optional[int] = None
    reason: Optional[str] = None
    order_id: Optional[str] = None
    order_item_id: Optional[str] = None
    vertical: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


Renderer = Callable[[NotificationPayload], str]


@dataclass(frozen=True)
class NotificationTemplate:
    urgency: Urgency
    audience: Audience
    title: Renderer
    message: Renderer
    action_url: Renderer

    @property
    def channels(self) -> FrozenSet[Channel]:
        return URGENCY_CHANNELS[self.urgency]


def format_price(cents: int) -> str:
    """Format cents as "$12.34" using integer arithmetic only."""
    sign = "-" if cents < 0 else ""
    dollars, remainder = divmod(abs(cents), 100)
    return f"{sign}${dollars}.{remainder:02d}"


def _vertical_path(d: NotificationPayload) -> str:
    return (d.vertical or "farmers_market").replace("_", "-")


def _buyer_orders_url(d: NotificationPayload) -> str:
    return f"/{_vertical_path(d)}/buyer/orders"


def _vendor_dashboard_url(d: NotificationPayload) -> str:
    return f"/{_vertical_path(d)}/vendor/dashboard"


def _for_item(d: NotificationPayload) -> str:
    return f" for {d.item_title}" if d.item_title else ""


def _reason(d: NotificationPayload, label: str = "Reason") -> str:
    return f" {label}: {d.reason}" if d.reason else ""


NOTIFICATION_REGISTRY: Dict[NotificationType, NotificationTemplate] = {
    # ── Buyer-facing ─────────────────────────────────────────────────
    NotificationType.ORDER_CONFIRMED: NotificationTemplate(
        urgency=Urgency.STANDARD,
        audience=Audience.BUYER,
        title=lambda d: "Order Confirmed",
        message=lambda d: (
            f"{d.vendor_name or 'The vendor'} confirmed your order #{d.order_number}{_for_item(d)}. "
            "We'll notify you when it's ready for pickup."
        ),
        action_url=_buyer_orders_url,
    ),
    NotificationType.ORDER_READY: NotificationTemplate(
        urgency=Urgency.STANDARD,
        audience=Audience.BUYER,
        title=lambda d: "Order Ready for Pickup",
        message=lambda d: (
            f"Your order #{d.order_number} from {d.vendor_name or 'the vendor'} has been marked ready for pickup. "
            "It will be waiting for you during pickup hours."
        ),
        action_url=_buyer_orders_url,
    ),
    NotificationType.ORDER_FULFILLED: NotificationTemplate(
        urgency=Urgency.INFO,
        audience=Audience.BUYER,
        title=lambda d: "Order Complete",
        message=lambda d: (
            f"Order #{d.order_number} has been marked as picked up. "
            f"Thanks for shopping with {d.vendor_name or 'us'}!"
        ),
        action_url=_buyer_orders_url,
    ),
    NotificationType.ORDER_CANCELLED_BY_VENDOR: NotificationTemplate(
        urgency=Urgency.URGENT,
        audience=Audience.BUYER,
        title=lambda d: "Order Cancelled",
        message=lambda d: (
            f"{d.vendor_name or 'The vendor'} cancelled your order #{d.order_number}{_for_item(d)}."
            f"{_reason(d)} A refund will be processed."
        ),
        action_url=_buyer_orders_url,
    ),
    NotificationType.ORDER_EXPIRED: NotificationTemplate(
        urgency=Urgency.STANDARD,
        audience=Audience.BUYER,
        title=lambda d: "Order Expired",
        message=lambda d: (
            f"Order #{d.order_number} has expired because it wasn't confirmed in time."
            + (f" A refund of {format_price(d.amount_cents)} will be processed." if d.amount_cents else "")
        ),
        action_url=_buyer_orders_url,
    ),
    # ── Vendor-facing ────────────────────────────────────────────────
    NotificationType.NEW_PAID_ORDER: NotificationTemplate(
        urgency=Urgency.STANDARD,
        audience=Audience.VENDOR,
        title=lambda d: "New Order Received",
        message=lambda d: f"{d.buyer_name or 'A customer'} placed order #{d.order_number}{_for_item(d)}.",
        action_url=_vendor_dashboard_url,
    ),
    NotificationType.ORDER_CANCELLED_BY_BUYER: NotificationTemplate(
        urgency=Urgency.STANDARD,
        audience=Audience.VENDOR,
        title=lambda d: "Order Cancelled by Customer",
        message=lambda d: (
            f"{d.buyer_name or 'A customer'} cancelled order #{d.order_number}{_for_item(d)}.{_reason(d)}"
        ),
        action_url=_vendor_dashboard_url,
    ),
    NotificationType.PICKUP_CONFIRMED: NotificationTemplate(
        urgency=Urgency.INFO,
        audience=Audience.VENDOR,
        title=lambda d: "Pickup Confirmed",
        message=lambda d: (
            f"{d.buyer_name or 'The customer'} confirmed pickup of order #{d.order_number}{_for_item(d)}. "
            "Your payout is on its way."
        ),
        action_url=_vendor_dashboard_url,
    ),
    NotificationType.PAYOUT_PROCESSED: NotificationTemplate(
        urgency=Urgency.INFO,
        audience=Audience.VENDOR,
        title=lambda d: "Payout Processed",
        message=lambda d: (
            "A payout"
            + (f" of {format_price(d.amount_cents)}" if d.amount_cents else "")
            + " has been sent to your account."
        ),
        action_url=_vendor_dashboard_url,
    ),
    NotificationType.FEE_BALANCE_DUE: NotificationTemplate(
        urgency=Urgency.STANDARD,
        audience=Audience.VENDOR,
        title=lambda d: "Platform Fees Due",
        message=lambda d: (
            "Your outstanding platform fee balance"
            + (f" of {format_price(d.amount_cents)}" if d.amount_cents else "")
            + " is due. External payment methods are paused until it is paid."
        ),
        action_url=_vendor_dashboard_url,
    ),
}


def _check_registry_is_exhaustive() -> None:
    missing = set(NotificationType) - set(NOTIFICATION_REGISTRY)
    if missing:
        raise RuntimeError(
            "Notification registry is missing templates for: "
            + ", ".join(sorted(t.value for t in missing))
        )


_check_registry_is_exhaustive()


def get_template(notification_type: NotificationType) -> NotificationTemplate:
    return NOTIFICATION_REGISTRY[notification_type]
