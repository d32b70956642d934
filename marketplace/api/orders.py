"""
Order lifecycle endpoints for vendors and buyers, plus the checkout quote.

Every mutating endpoint runs one Unit of Work; side effects (refunds,
transfers, notification delivery) are enqueued only after it commits.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.api.deps import get_buyer, get_fee_schedule, get_order_lifecycle, get_vendor
from marketplace.application.order_lifecycle_service import (
    OrderCancellationResult,
    OrderLifecycle,
    TransitionResult,
)
from marketplace.db.connection import get_db_session
from marketplace.domain.entities import OrderItem
from marketplace.domain.fees import CancellationResult, FeeSchedule, price_order
from marketplace.domain.unit_of_work import SQLAlchemyUnitOfWork
from marketplace.domain.value_objects import Actor

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================
# Pydantic Models
# ============================================

class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500, description="Shown to the other party")


class CancellationResponse(BaseModel):
    """Money outcome of cancelling one item (all amounts in cents)"""
    amount_paid_cents: int
    refund_cents: int
    fee_cents: int
    platform_share_cents: int
    vendor_share_cents: int
    fee_applied: bool
    within_grace: bool
    vendor_had_confirmed: bool

    @classmethod
    def from_result(cls, result: CancellationResult) -> "CancellationResponse":
        return cls(**result.to_dict())


class OrderItemResponse(BaseModel):
    id: str
    order_id: str
    listing_id: str
    vendor_id: str
    quantity: int
    subtotal_cents: int
    status: str
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    refund_amount_cents: Optional[int] = None
    cancellation_fee_cents: Optional[int] = None

    @classmethod
    def from_entity(cls, item: OrderItem) -> "OrderItemResponse":
        return cls(
            id=item.id,
            order_id=item.order_id,
            listing_id=item.listing_id,
            vendor_id=item.vendor_id,
            quantity=item.quantity,
            subtotal_cents=item.subtotal_cents,
            status=item.status.value,
            cancelled_at=item.cancelled_at,
            cancelled_by=item.cancelled_by,
            cancellation_reason=item.cancellation_reason,
            refund_amount_cents=item.refund_amount_cents,
            cancellation_fee_cents=item.cancellation_fee_cents,
        )


class TransitionResponse(BaseModel):
    item: OrderItemResponse
    previous_status: str
    cancellation: Optional[CancellationResponse] = None
    payout_id: Optional[str] = None
    payout_amount_cents: Optional[int] = None
    notification_id: Optional[str] = None

    @classmethod
    def from_result(cls, result: TransitionResult) -> "TransitionResponse":
        return cls(
            item=OrderItemResponse.from_entity(result.item),
            previous_status=result.previous_status.value,
            cancellation=CancellationResponse.from_result(result.cancellation) if result.cancellation else None,
            payout_id=result.payout.id if result.payout else None,
            payout_amount_cents=result.payout.amount_cents if result.payout else None,
            notification_id=result.notification.id if result.notification else None,
        )


class OrderCancellationResponse(BaseModel):
    order_id: str
    cancelled: List[TransitionResponse]
    skipped_item_ids: List[str]
    listings_restored: int
    listings_failed: int

    @classmethod
    def from_result(cls, result: OrderCancellationResult) -> "OrderCancellationResponse":
        return cls(
            order_id=result.order_id,
            cancelled=[TransitionResponse.from_result(r) for r in result.cancelled],
            skipped_item_ids=result.skipped_item_ids,
            listings_restored=result.inventory.restored,
            listings_failed=result.inventory.failed,
        )


class ExternalPaymentResponse(BaseModel):
    order_id: str
    vendor_id: str
    fee_cents: int
    ledger_entry_id: str
    payment_required: bool


class QuoteRequest(BaseModel):
    """Checkout quote: one subtotal per cart line"""
    item_subtotals_cents: List[int] = Field(..., min_length=1, description="Line subtotals in cents")
    tip_percent: Decimal = Field(Decimal("0"), ge=0, le=100)


class QuoteResponse(BaseModel):
    subtotal_cents: int
    buyer_fee_cents: int
    tip_cents: int
    tip_on_platform_fee_cents: int
    vendor_tip_cents: int
    total_cents: int


# ============================================
# Vendor endpoints
# ============================================

@router.post("/vendor/order-items/{item_id}/confirm", response_model=TransitionResponse)
async def confirm_item(
    item_id: str,
    actor: Actor = Depends(get_vendor),
    lifecycle: OrderLifecycle = Depends(get_order_lifecycle),
    db: AsyncSession = Depends(get_db_session)
):
    """Vendor accepts an order item. 400 PAYMENT_ACCOUNT_REQUIRED until onboarding is complete."""
    async with SQLAlchemyUnitOfWork(db) as uow:
        result = await lifecycle.confirm(uow, item_id, actor)
    return TransitionResponse.from_result(result)


@router.post("/vendor/order-items/{item_id}/ready", response_model=TransitionResponse)
async def mark_item_ready(
    item_id: str,
    actor: Actor = Depends(get_vendor),
    lifecycle: OrderLifecycle = Depends(get_order_lifecycle),
    db: AsyncSession = Depends(get_db_session)
):
    async with SQLAlchemyUnitOfWork(db) as uow:
        result = await lifecycle.mark_ready(uow, item_id, actor)
    return TransitionResponse.from_result(result)


@router.post("/vendor/order-items/{item_id}/fulfill", response_model=TransitionResponse)
async def fulfill_item(
    item_id: str,
    actor: Actor = Depends(get_vendor),
    lifecycle: OrderLifecycle = Depends(get_order_lifecycle),
    db: AsyncSession = Depends(get_db_session)
):
    async with SQLAlchemyUnitOfWork(db) as uow:
        result = await lifecycle.fulfill(uow, item_id, actor)
    return TransitionResponse.from_result(result)


@router.post("/vendor/order-items/{item_id}/reject", response_model=TransitionResponse)
async def reject_item(
    item_id: str,
    request: CancelRequest,
    actor: Actor = Depends(get_vendor),
    lifecycle: OrderLifecycle = Depends(get_order_lifecycle),
    db: AsyncSession = Depends(get_db_session)
):
    """Vendor cancels an item; the buyer always gets a full refund."""
    async with SQLAlchemyUnitOfWork(db) as uow:
        result = await lifecycle.cancel(uow, item_id, actor, reason=request.reason)
    return TransitionResponse.from_result(result)


@router.post("/vendor/orders/{order_id}/confirm-external-payment", response_model=ExternalPaymentResponse)
async def confirm_external_payment(
    order_id: str,
    actor: Actor = Depends(get_vendor),
    lifecycle: OrderLifecycle = Depends(get_order_lifecycle),
    db: AsyncSession = Depends(get_db_session)
):
    """Vendor confirms a cash/P2P payment; platform fees go to their fee ledger."""
    async with SQLAlchemyUnitOfWork(db) as uow:
        confirmation = await lifecycle.confirm_external_payment(uow, order_id, actor)
    return ExternalPaymentResponse(
        order_id=confirmation.order_id,
        vendor_id=confirmation.vendor_id,
        fee_cents=confirmation.fee_cents,
        ledger_entry_id=confirmation.ledger_entry.id,
        payment_required=confirmation.payment_required,
    )


# ============================================
# Buyer endpoints
# ============================================

@router.post("/buyer/order-items/{item_id}/complete", response_model=TransitionResponse)
async def complete_item(
    item_id: str,
    actor: Actor = Depends(get_buyer),
    lifecycle: OrderLifecycle = Depends(get_order_lifecycle),
    db: AsyncSession = Depends(get_db_session)
):
    """Buyer confirms pickup."""
    async with SQLAlchemyUnitOfWork(db) as uow:
        result = await lifecycle.complete(uow, item_id, actor)
    return TransitionResponse.from_result(result)


@router.get("/buyer/order-items/{item_id}/cancellation-preview", response_model=CancellationResponse)
async def preview_cancellation(
    item_id: str,
    actor: Actor = Depends(get_buyer),
    lifecycle: OrderLifecycle = Depends(get_order_lifecycle),
    db: AsyncSession = Depends(get_db_session)
):
    """What cancelling now would refund. Nothing is changed."""
    async with SQLAlchemyUnitOfWork(db) as uow:
        result = await lifecycle.preview_cancellation(uow, item_id, actor)
    return CancellationResponse.from_result(result)


@router.post("/buyer/order-items/{item_id}/cancel", response_model=TransitionResponse)
async def cancel_item(
    item_id: str,
    request: CancelRequest,
    actor: Actor = Depends(get_buyer),
    lifecycle: OrderLifecycle = Depends(get_order_lifecycle),
    db: AsyncSession = Depends(get_db_session)
):
    async with SQLAlchemyUnitOfWork(db) as uow:
        result = await lifecycle.cancel(uow, item_id, actor, reason=request.reason)
    return TransitionResponse.from_result(result)


@router.post("/buyer/orders/{order_id}/cancel", response_model=OrderCancellationResponse)
async def cancel_order(
    order_id: str,
    request: CancelRequest,
    actor: Actor = Depends(get_buyer),
    lifecycle: OrderLifecycle = Depends(get_order_lifecycle),
    db: AsyncSession = Depends(get_db_session)
):
    """Cancel every open item of an order in one transaction."""
    async with SQLAlchemyUnitOfWork(db) as uow:
        result = await lifecycle.cancel_order(uow, order_id, actor, reason=request.reason)
    return OrderCancellationResponse.from_result(result)


# ============================================
# Checkout quote
# ============================================

@router.post("/pricing/quote", response_model=QuoteResponse)
async def quote(
    request: QuoteRequest,
    schedule: FeeSchedule = Depends(get_fee_schedule)
):
    """Price a cart: buyer fee, tip and total the buyer will be charged."""
    pricing = price_order(request.item_subtotals_cents, schedule, tip_percent=request.tip_percent)
    return QuoteResponse(
        subtotal_cents=pricing.subtotal_cents,
        buyer_fee_cents=pricing.buyer_fee_cents,
        tip_cents=pricing.tip_cents,
        tip_on_platform_fee_cents=pricing.tip_on_platform_fee_cents,
        vendor_tip_cents=pricing.vendor_tip_cents,
        total_cents=pricing.total_cents,
    )
