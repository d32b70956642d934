"""
Listing repository.

increment_quantity is the only write path for restoring stock. It is one
UPDATE with the addition done by the database, so concurrent restores from
different cancelled items can never lose an increment.
"""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.interfaces import IListingRepository
from marketplace.db.models import ListingModel
from marketplace.domain.entities import Listing

logger = logging.getLogger(__name__)


class ListingRepository(IListingRepository):

    def __init__(self, db_session: AsyncSession):
        self._db = db_session

    async def get_by_id(self, listing_id: str) -> Optional[Listing]:
        stmt = (
            select(ListingModel)
            .where(ListingModel.id == listing_id)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        db_listing = result.scalar_one_or_none()
        if db_listing is None:
            return None
        return Listing(
            id=db_listing.id,
            vendor_id=db_listing.vendor_id,
            title=db_listing.title,
            quantity=db_listing.quantity,
        )

    async def save(self, listing: Listing) -> Listing:
        self._db.add(ListingModel(
            id=listing.id,
            vendor_id=listing.vendor_id,
            title=listing.title,
            quantity=listing.quantity,
        ))
        await self._db.flush()
        return listing

    async def exists(self, listing_id: str) -> bool:
        result = await self._db.execute(
            select(ListingModel.id).where(ListingModel.id == listing_id)
        )
        return result.scalar_one_or_none() is not None

    async def increment_quantity(self, listing_id: str, quantity: int) -> int:
        stmt = (
            update(ListingModel)
            .where(ListingModel.id == listing_id)
            .where(ListingModel.quantity.is_not(None))
            .values(quantity=ListingModel.quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        return result.rowcount
