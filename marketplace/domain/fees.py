"""
Fee calculator - pure, cents-only settlement arithmetic.

Money is always integer cents. Percentages are Decimal. Every sub-amount is
rounded half away from zero at the point it is computed, never after
summation: the order of operations is part of the contract, so these
functions must stay bit-exact for the same inputs and FeeSchedule.

Known property: per-item proration (flat fee share, tip share) drifts by a
few cents across multi-item orders, e.g. a 1000 cent tip over 3 items is
333 per item (999 total). The remainder is deliberately not reallocated.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Union

from .entities import InvalidInputError
from .value_objects import ItemStatus

HUNDRED = Decimal(100)

# Statuses in which the vendor has acted on the item, so a late cancel may cost a fee
VENDOR_CONFIRMED_STATUSES = frozenset({
    ItemStatus.CONFIRMED,
    ItemStatus.READY,
    ItemStatus.FULFILLED,
})

Number = Union[int, Decimal]


@dataclass(frozen=True)
class FeeSchedule:
    """All fee constants, passed explicitly to every calculation"""

    buyer_fee_percent: Decimal = Decimal("6.5")
    buyer_flat_fee_cents: int = 15
    vendor_fee_percent: Decimal = Decimal("6.5")
    vendor_flat_fee_cents: int = 15
    external_seller_fee_percent: Decimal = Decimal("3.5")
    application_fee_percent: Decimal = Decimal("13")
    cancellation_fee_percent: Decimal = Decimal("25")
    grace_period_minutes: int = 60
    balance_invoice_threshold_cents: int = 5000
    age_invoice_threshold_days: int = 40
    auto_deduct_max_percent: Decimal = Decimal("50")

    @classmethod
    def from_settings(cls, settings) -> "FeeSchedule":
        return cls(
            buyer_fee_percent=settings.buyer_fee_percent,
            buyer_flat_fee_cents=settings.buyer_flat_fee_cents,
            vendor_fee_percent=settings.vendor_fee_percent,
            vendor_flat_fee_cents=settings.vendor_flat_fee_cents,
            external_seller_fee_percent=settings.external_seller_fee_percent,
            application_fee_percent=settings.application_fee_percent,
            cancellation_fee_percent=settings.cancellation_fee_percent,
            grace_period_minutes=settings.grace_period_minutes,
            balance_invoice_threshold_cents=settings.balance_invoice_threshold_cents,
            age_invoice_threshold_days=settings.age_invoice_threshold_days,
            auto_deduct_max_percent=settings.auto_deduct_max_percent,
        )

    @property
    def grace_period(self) -> timedelta:
        return timedelta(minutes=self.grace_period_minutes)


def round_half_away(value: Number) -> int:
    """Round to whole cents, halves away from zero (2.5 -> 3, -2.5 -> -3)."""
    if isinstance(value, float):
        raise InvalidInputError("Monetary arithmetic must not use float")
    return int(Decimal(value).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _percent_of(cents: int, percent: Decimal) -> int:
    return round_half_away(Decimal(cents) * Decimal(percent) / HUNDRED)


def _check_cents(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"{name} must be integer cents, got {value!r}")
    if value < 0:
        raise InvalidInputError(f"{name} cannot be negative, got {value}")


def _check_count(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidInputError(f"{name} must be a positive integer, got {value!r}")


# ── Buyer and seller fees ───────────────────────────────────────────

def buyer_fee(subtotal_cents: int, flat_fee_cents: int, buyer_fee_percent: Decimal) -> int:
    _check_cents("subtotal_cents", subtotal_cents)
    _check_cents("flat_fee_cents", flat_fee_cents)
    return _percent_of(subtotal_cents, buyer_fee_percent) + flat_fee_cents


def seller_fee(subtotal_cents: int, seller_fee_percent: Decimal) -> int:
    _check_cents("subtotal_cents", subtotal_cents)
    return _percent_of(subtotal_cents, seller_fee_percent)


def external_total_fee(subtotal_cents: int, schedule: FeeSchedule) -> int:
    """
    Fee owed to the platform for an order paid outside the processor.

    The buyer fee was never captured, so the vendor owes it along with the
    external seller fee; both land on the vendor fee ledger.
    """
    external_buyer_fee = buyer_fee(subtotal_cents, schedule.buyer_flat_fee_cents, schedule.buyer_fee_percent)
    return external_buyer_fee + seller_fee(subtotal_cents, schedule.external_seller_fee_percent)


def flat_fee_share(flat_fee_cents: int, item_count: int) -> int:
    """Per-item share of a once-per-order flat fee (drifts, see module docstring)"""
    _check_cents("flat_fee_cents", flat_fee_cents)
    _check_count("item_count", item_count)
    return round_half_away(Decimal(flat_fee_cents) / Decimal(item_count))


# ── Cancellation ────────────────────────────────────────────────────

@dataclass(frozen=True)
class CancellationResult:
    amount_paid_cents: int
    refund_cents: int
    fee_cents: int
    platform_share_cents: int
    vendor_share_cents: int
    fee_applied: bool
    within_grace: bool
    vendor_had_confirmed: bool

    def as_full_refund(self) -> "CancellationResult":
        """Same inputs, no fee retained (vendor-initiated rejection)."""
        return replace(
            self,
            refund_cents=self.amount_paid_cents,
            fee_cents=0,
            platform_share_cents=0,
            vendor_share_cents=0,
            fee_applied=False,
        )

    def to_dict(self) -> dict:
        return {
            "amount_paid_cents": self.amount_paid_cents,
            "refund_cents": self.refund_cents,
            "fee_cents": self.fee_cents,
            "platform_share_cents": self.platform_share_cents,
            "vendor_share_cents": self.vendor_share_cents,
            "fee_applied": self.fee_applied,
            "within_grace": self.within_grace,
            "vendor_had_confirmed": self.vendor_had_confirmed,
        }


def amount_paid_for_item(subtotal_cents: int, item_count: int, schedule: FeeSchedule) -> int:
    """Item subtotal plus its buyer fee, with the flat fee prorated across the order"""
    flat_share = flat_fee_share(schedule.buyer_flat_fee_cents, item_count)
    return subtotal_cents + buyer_fee(subtotal_cents, flat_share, schedule.buyer_fee_percent)


def cancellation_fee(
    subtotal_cents: int,
    item_count: int,
    status: ItemStatus,
    order_created_at: datetime,
    now: datetime,
    schedule: FeeSchedule,
) -> CancellationResult:
    """
    Split a cancelled item's payment into refund and retained fee.

    Full refund when cancelled inside the grace window, or when the vendor
    had not yet confirmed. Otherwise CANCELLATION_FEE_PERCENT is retained and
    split between platform (APPLICATION_FEE_PERCENT) and vendor.

    `status` must be the item's status *before* the cancel transition.
    """
    _check_cents("subtotal_cents", subtotal_cents)
    _check_count("item_count", item_count)
    if order_created_at.tzinfo is None or now.tzinfo is None:
        raise InvalidInputError("cancellation timestamps must be timezone-aware")

    paid = amount_paid_for_item(subtotal_cents, item_count, schedule)
    within_grace = now < order_created_at + schedule.grace_period
    vendor_had_confirmed = status in VENDOR_CONFIRMED_STATUSES

    if within_grace or not vendor_had_confirmed:
        return CancellationResult(
            amount_paid_cents=paid,
            refund_cents=paid,
            fee_cents=0,
            platform_share_cents=0,
            vendor_share_cents=0,
            fee_applied=False,
            within_grace=within_grace,
            vendor_had_confirmed=vendor_had_confirmed,
        )

    refund_fraction = (HUNDRED - schedule.cancellation_fee_percent) / HUNDRED
    fee = paid - round_half_away(Decimal(paid) * refund_fraction)
    platform_share = _percent_of(fee, schedule.application_fee_percent)
    return CancellationResult(
        amount_paid_cents=paid,
        refund_cents=paid - fee,
        fee_cents=fee,
        platform_share_cents=platform_share,
        vendor_share_cents=fee - platform_share,
        fee_applied=True,
        within_grace=within_grace,
        vendor_had_confirmed=vendor_had_confirmed,
    )


# ── Tips ────────────────────────────────────────────────────────────

def tip_share(tip_cents: int, item_count: int) -> int:
    if tip_cents <= 0 or item_count <= 0:
        return 0
    return round_half_away(Decimal(tip_cents) / Decimal(item_count))


def vendor_tip(tip_cents: int, tip_on_platform_fee_cents: int) -> int:
    return tip_cents - tip_on_platform_fee_cents


def platform_fee_tip(total_tip_cents: int, base_subtotal_cents: int, tip_percent: Decimal) -> int:
    """
    Part of a tip attributed to the platform fee.

    The vendor is entitled to tip_percent of the base subtotal; anything the
    buyer tipped above that (the tip was computed on the fee-inclusive
    price) belongs to the platform-fee portion.
    """
    _check_cents("total_tip_cents", total_tip_cents)
    _check_cents("base_subtotal_cents", base_subtotal_cents)
    vendor_cap = _percent_of(base_subtotal_cents, tip_percent)
    return max(total_tip_cents - vendor_cap, 0)


# ── Payout ──────────────────────────────────────────────────────────

def auto_deduct_amount(payout_cents: int, owed_cents: int, max_percent: Decimal) -> int:
    """Never withhold more than max_percent of a single payout."""
    _check_cents("payout_cents", payout_cents)
    cap = _percent_of(payout_cents, max_percent)
    return min(max(owed_cents, 0), cap)


def item_payout(
    subtotal_cents: int,
    item_count: int,
    tip_cents: int,
    tip_on_platform_fee_cents: int,
    schedule: FeeSchedule,
) -> int:
    """Gross transfer owed to the vendor for one processor-paid item"""
    _check_count("item_count", item_count)
    return (
        subtotal_cents
        - seller_fee(subtotal_cents, schedule.vendor_fee_percent)
        - flat_fee_share(schedule.vendor_flat_fee_cents, item_count)
        + tip_share(vendor_tip(tip_cents, tip_on_platform_fee_cents), item_count)
    )


# ── Order quote ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class OrderPricing:
    item_subtotals_cents: List[int]
    subtotal_cents: int
    buyer_fee_cents: int
    tip_percent: Decimal
    tip_cents: int
    tip_on_platform_fee_cents: int
    total_cents: int

    @property
    def vendor_tip_cents(self) -> int:
        return vendor_tip(self.tip_cents, self.tip_on_platform_fee_cents)


def price_order(
    item_subtotals_cents: Iterable[int],
    schedule: FeeSchedule,
    tip_percent: Optional[Decimal] = None,
) -> OrderPricing:
    """
    Price a checkout.

    The buyer fee percentage applies to the subtotal and the flat fee is
    charged once per order. A tip is computed on the price the buyer sees
    (subtotal plus percentage fee); the part above tip_percent of the base
    subtotal is the tip on the platform fee.
    """
    subtotals = list(item_subtotals_cents)
    if not subtotals:
        raise InvalidInputError("Cannot price an order with no items")
    for value in subtotals:
        _check_cents("item subtotal", value)

    tip_percent = Decimal(tip_percent or 0)
    if tip_percent < 0 or tip_percent > HUNDRED:
        raise InvalidInputError(f"tip_percent must be between 0 and 100, got {tip_percent}")

    subtotal = sum(subtotals)
    fee = buyer_fee(subtotal, schedule.buyer_flat_fee_cents, schedule.buyer_fee_percent)

    displayed_subtotal = subtotal + _percent_of(subtotal, schedule.buyer_fee_percent)
    tip = _percent_of(displayed_subtotal, tip_percent)
    tip_on_platform = platform_fee_tip(tip, subtotal, tip_percent)

    return OrderPricing(
        item_subtotals_cents=subtotals,
        subtotal_cents=subtotal,
        buyer_fee_cents=fee,
        tip_percent=tip_percent,
        tip_cents=tip,
        tip_on_platform_fee_cents=tip_on_platform,
        total_cents=subtotal + fee + tip,
    )
