"""Vendor fee balance endpoint"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.api.deps import get_current_user_id, get_fee_ledger
from marketplace.application.fee_ledger_service import VendorFeeLedger
from marketplace.db.connection import get_db_session
from marketplace.domain.entities import NotAuthorizedError, VendorFeeLedgerEntry
from marketplace.domain.unit_of_work import SQLAlchemyUnitOfWork

logger = logging.getLogger(__name__)

router = APIRouter()


class LedgerEntryResponse(BaseModel):
    id: str
    order_id: Optional[str] = None
    amount_cents: int
    entry_type: str
    description: Optional[str] = None
    paid: bool
    created_at: datetime
    paid_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, entry: VendorFeeLedgerEntry) -> "LedgerEntryResponse":
        return cls(
            id=entry.id,
            order_id=entry.order_id,
            amount_cents=entry.amount_cents,
            entry_type=entry.entry_type.value,
            description=entry.description,
            paid=entry.paid,
            created_at=entry.created_at,
            paid_at=entry.paid_at,
        )


class FeeBalanceResponse(BaseModel):
    vendor_id: str
    balance_cents: int
    oldest_unpaid_at: Optional[datetime] = None
    requires_payment: bool
    can_use_external_payments: bool
    external_payments_blocked_reason: Optional[str] = None
    recent_entries: List[LedgerEntryResponse]


@router.get("/vendor/fees", response_model=FeeBalanceResponse)
async def get_fee_balance(
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    ledger: VendorFeeLedger = Depends(get_fee_ledger),
    db: AsyncSession = Depends(get_db_session)
):
    """Outstanding platform fees for the calling vendor."""
    async with SQLAlchemyUnitOfWork(db) as uow:
        vendor = await uow.vendors.get_by_user_id(user_id)
        if vendor is None:
            raise NotAuthorizedError(f"User {user_id} is not a vendor")

        balance = await ledger.balance(uow, vendor.id)
        eligibility = await ledger.can_use_external_payments(uow, vendor.id)
        recent = await uow.fee_ledger.list_recent(vendor.id, limit=limit)

    return FeeBalanceResponse(
        vendor_id=vendor.id,
        balance_cents=balance.balance_cents,
        oldest_unpaid_at=balance.oldest_unpaid_at,
        requires_payment=ledger.payment_required(balance),
        can_use_external_payments=eligibility.allowed,
        external_payments_blocked_reason=eligibility.reason,
        recent_entries=[LedgerEntryResponse.from_entity(entry) for entry in recent],
    )
