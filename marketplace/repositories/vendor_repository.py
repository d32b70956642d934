"""Vendor repository"""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.interfaces import IVendorRepository
from marketplace.db.models import VendorModel
from marketplace.domain.entities import Vendor

logger = logging.getLogger(__name__)


class VendorRepository(IVendorRepository):

    def __init__(self, db_session: AsyncSession):
        self._db = db_session

    async def get_by_id(self, vendor_id: str) -> Optional[Vendor]:
        return await self._get_one(VendorModel.id == vendor_id)

    async def get_by_user_id(self, user_id: str) -> Optional[Vendor]:
        return await self._get_one(VendorModel.user_id == user_id)

    async def get_by_payment_account_id(self, account_id: str) -> Optional[Vendor]:
        return await self._get_one(VendorModel.payment_account_id == account_id)

    async def save(self, vendor: Vendor) -> Vendor:
        self._db.add(VendorModel(
            id=vendor.id,
            user_id=vendor.user_id,
            business_name=vendor.business_name,
            payment_account_id=vendor.payment_account_id,
            payments_enabled=vendor.payments_enabled,
        ))
        await self._db.flush()
        return vendor

    async def set_payments_enabled(self, vendor_id: str, enabled: bool) -> None:
        stmt = (
            update(VendorModel)
            .where(VendorModel.id == vendor_id)
            .values(payments_enabled=enabled)
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(stmt)
        logger.info(f"🏦 Vendor {vendor_id} payments_enabled={enabled}")

    async def _get_one(self, condition) -> Optional[Vendor]:
        stmt = select(VendorModel).where(condition).execution_options(populate_existing=True)
        result = await self._db.execute(stmt)
        db_vendor = result.scalar_one_or_none()
        if db_vendor is None:
            return None
        return Vendor(
            id=db_vendor.id,
            user_id=db_vendor.user_id,
            business_name=db_vendor.business_name,
            payment_account_id=db_vendor.payment_account_id,
            payments_enabled=db_vendor.payments_enabled,
        )
