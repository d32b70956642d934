"""
Vendor fee ledger repository.

Append-only: rows are inserted and later flagged paid, never edited or
deleted. Unpaid reads are ordered oldest first (created_at, then
the insert sequence) because settlement consumes charges in that order.
"""

import logging
from datetime import datetime
from typing import List

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.interfaces import IFeeLedgerRepository
from marketplace.db.models import VendorFeeLedgerModel
from marketplace.domain.entities import ConflictError, VendorFeeLedgerEntry
from marketplace.domain.value_objects import LedgerEntryType

logger = logging.getLogger(__name__)


class FeeLedgerRepository(IFeeLedgerRepository):

    def __init__(self, db_session: AsyncSession):
        self._db = db_session

    async def add(self, entry: VendorFeeLedgerEntry) -> VendorFeeLedgerEntry:
        self._db.add(VendorFeeLedgerModel(
            id=entry.id,
            vendor_id=entry.vendor_id,
            order_id=entry.order_id,
            amount_cents=entry.amount_cents,
            entry_type=entry.entry_type.value,
            description=entry.description,
            paid=entry.paid,
            created_at=entry.created_at,
            paid_at=entry.paid_at,
        ))
        try:
            await self._db.flush()
        except IntegrityError as e:
            raise ConflictError(
                f"Vendor {entry.vendor_id} already has a fee charge for order {entry.order_id}"
            ) from e
        logger.debug(
            f"📒 Ledger {entry.entry_type.value} {entry.amount_cents} for vendor {entry.vendor_id} "
            f"(paid={entry.paid})"
        )
        return entry

    async def list_unpaid(self, vendor_id: str) -> List[VendorFeeLedgerEntry]:
        stmt = (
            select(VendorFeeLedgerModel)
            .where(VendorFeeLedgerModel.vendor_id == vendor_id)
            .where(VendorFeeLedgerModel.paid.is_(False))
            .order_by(VendorFeeLedgerModel.created_at, VendorFeeLedgerModel.seq)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return [self._from_orm(row) for row in result.scalars().all()]

    async def mark_paid(self, entry_ids: List[str], at: datetime) -> int:
        if not entry_ids:
            return 0
        stmt = (
            update(VendorFeeLedgerModel)
            .where(VendorFeeLedgerModel.id.in_(entry_ids))
            .where(VendorFeeLedgerModel.paid.is_(False))
            .values(paid=True, paid_at=at)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        return result.rowcount

    async def list_recent(self, vendor_id: str, limit: int = 20) -> List[VendorFeeLedgerEntry]:
        stmt = (
            select(VendorFeeLedgerModel)
            .where(VendorFeeLedgerModel.vendor_id == vendor_id)
            .order_by(VendorFeeLedgerModel.created_at.desc(), VendorFeeLedgerModel.seq.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return [self._from_orm(row) for row in result.scalars().all()]

    async def has_charge_for_order(self, vendor_id: str, order_id: str) -> bool:
        stmt = (
            select(VendorFeeLedgerModel.id)
            .where(VendorFeeLedgerModel.vendor_id == vendor_id)
            .where(VendorFeeLedgerModel.order_id == order_id)
            .where(VendorFeeLedgerModel.entry_type == LedgerEntryType.CHARGE.value)
            .limit(1)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none() is not None

    def _from_orm(self, row: VendorFeeLedgerModel) -> VendorFeeLedgerEntry:
        return VendorFeeLedgerEntry(
            id=row.id,
            vendor_id=row.vendor_id,
            order_id=row.order_id,
            amount_cents=row.amount_cents,
            entry_type=LedgerEntryType(row.entry_type),
            description=row.description,
            paid=row.paid,
            created_at=row.created_at,
            paid_at=row.paid_at,
        )
