"""Vendor payout repository"""

import logging
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.interfaces import IPayoutRepository
from marketplace.db.models import VendorPayoutModel
from marketplace.domain.entities import ConflictError, VendorPayout
from marketplace.domain.value_objects import PayoutKind, PayoutStatus

logger = logging.getLogger(__name__)


class PayoutRepository(IPayoutRepository):

    def __init__(self, db_session: AsyncSession):
        self._db = db_session

    async def add(self, payout: VendorPayout) -> VendorPayout:
        """
        Raises:
            ConflictError: If a payout of the same kind already exists for the item
        """
        self._db.add(VendorPayoutModel(
            id=payout.id,
            vendor_id=payout.vendor_id,
            order_id=payout.order_id,
            order_item_id=payout.order_item_id,
            kind=payout.kind.value,
            gross_cents=payout.gross_cents,
            deduction_cents=payout.deduction_cents,
            amount_cents=payout.amount_cents,
            status=payout.status.value,
            transfer_reference=payout.transfer_reference,
            created_at=payout.created_at,
        ))
        try:
            await self._db.flush()
        except IntegrityError as e:
            raise ConflictError(
                f"A {payout.kind.value} payout already exists for order item {payout.order_item_id}"
            ) from e

        logger.info(
            f"💸 Payout {payout.id} ({payout.kind.value}) for vendor {payout.vendor_id}: "
            f"gross={payout.gross_cents} deduction={payout.deduction_cents} net={payout.amount_cents}"
        )
        return payout

    async def get_by_id(self, payout_id: str) -> Optional[VendorPayout]:
        stmt = (
            select(VendorPayoutModel)
            .where(VendorPayoutModel.id == payout_id)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        row = result.scalar_one_or_none()
        return self._from_orm(row) if row is not None else None

    async def get_for_item(self, order_item_id: str, kind: PayoutKind) -> Optional[VendorPayout]:
        stmt = (
            select(VendorPayoutModel)
            .where(VendorPayoutModel.order_item_id == order_item_id)
            .where(VendorPayoutModel.kind == kind.value)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        row = result.scalar_one_or_none()
        return self._from_orm(row) if row is not None else None

    async def list_for_vendor(self, vendor_id: str, limit: int = 20) -> List[VendorPayout]:
        stmt = (
            select(VendorPayoutModel)
            .where(VendorPayoutModel.vendor_id == vendor_id)
            .order_by(VendorPayoutModel.created_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return [self._from_orm(row) for row in result.scalars().all()]

    async def update_status(
        self,
        payout_id: str,
        status: PayoutStatus,
        transfer_reference: Optional[str] = None
    ) -> bool:
        values = {"status": status.value}
        if transfer_reference is not None:
            values["transfer_reference"] = transfer_reference
        stmt = (
            update(VendorPayoutModel)
            .where(VendorPayoutModel.id == payout_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        return result.rowcount == 1

    def _from_orm(self, row: VendorPayoutModel) -> VendorPayout:
        return VendorPayout(
            id=row.id,
            vendor_id=row.vendor_id,
            order_id=row.order_id,
            order_item_id=row.order_item_id,
            kind=PayoutKind(row.kind),
            gross_cents=row.gross_cents,
            deduction_cents=row.deduction_cents,
            status=PayoutStatus(row.status),
            transfer_reference=row.transfer_reference,
            created_at=row.created_at,
        )
