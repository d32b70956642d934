"""
Inventory Reconciler - puts reserved stock back when order items are
cancelled or expire.

Stock is decremented at checkout, outside this service. Restoration is
protected twice:

1. Each item is claimed first (inventory_restored_at set by a guarded
   UPDATE), so one item can never be restored twice.
2. The listing quantity is increased by a single atomic UPDATE, so
   concurrent restores for the same listing never lose an increment.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from marketplace.domain.entities import (
    InvalidInputError,
    InventoryAlreadyRestoredError,
    ListingNotFoundError,
    OrderItem,
    OrderNotFoundError,
    utcnow,
)
from marketplace.domain.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


@dataclass
class RestoreSummary:
    """Outcome of restoring a whole order (partial failure is reported, not retried)"""
    order_id: str
    restored: int = 0
    failed: int = 0
    restored_listing_ids: List[str] = field(default_factory=list)
    failed_listing_ids: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.failed == 0


class InventoryReconciler:
    """
    Application service for inventory restoration.

    All operations run inside the caller's Unit of Work: the claim and the
    increment commit or roll back together with the lifecycle transition
    that caused them.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    async def restore(self, uow: AbstractUnitOfWork, listing_id: str, quantity: int) -> bool:
        """
        Add quantity back to a listing.

        Args:
            uow: Unit of Work for transaction
            listing_id: Listing to restore
            quantity: Units to add back (positive)

        Returns:
            True if stock was incremented, False for unlimited-inventory
            listings (a successful no-op)

        Raises:
            InvalidInputError: If quantity is not a positive integer
            ListingNotFoundError: If the listing does not exist
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidInputError(f"Restore quantity must be a positive integer, got {quantity!r}")

        updated = await uow.listings.increment_quantity(listing_id, quantity)
        if updated:
            logger.info(f"📦 Restored {quantity} unit(s) to listing {listing_id}")
            return True

        # No row matched: either unlimited inventory or no such listing
        if not await uow.listings.exists(listing_id):
            raise ListingNotFoundError(listing_id)

        logger.debug(f"Listing {listing_id} has unlimited inventory, nothing to restore")
        return False

    async def restore_for_item(
        self,
        uow: AbstractUnitOfWork,
        item: OrderItem,
        at: Optional[datetime] = None
    ) -> bool:
        """
        Claim and restore a single item's reservation.

        Raises:
            InventoryAlreadyRestoredError: If the item was already restored
            ListingNotFoundError: If the listing is gone (the claim is released)
        """
        at = at or self._clock()
        claimed = await uow.order_items.claim_inventory_restoration([item.id], at)
        if claimed != 1:
            raise InventoryAlreadyRestoredError([item.id])

        try:
            return await self.restore(uow, item.listing_id, item.quantity)
        except ListingNotFoundError:
            await uow.order_items.release_inventory_restoration([item.id])
            raise

    async def restore_for_order(
        self,
        uow: AbstractUnitOfWork,
        order_id: str,
        at: Optional[datetime] = None
    ) -> RestoreSummary:
        """
        Restore every still-reserved item of an order, one increment per listing.

        Items already in a terminal status or already restored are skipped.
        Quantities are summed per listing first, so a listing that appears
        on several items is restored exactly once for the order.

        Returns:
            RestoreSummary with restored vs failed listing counts

        Raises:
            OrderNotFoundError: If the order does not exist
            InventoryAlreadyRestoredError: If a concurrent restore claimed
                some of the items first (nothing is applied)
        """
        at = at or self._clock()
        items = await uow.order_items.list_for_order(order_id)
        if not items and await uow.orders.get_by_id(order_id) is None:
            raise OrderNotFoundError(order_id)

        summary = RestoreSummary(order_id=order_id)
        reserved = [item for item in items if not item.is_terminal and not item.inventory_restored]
        if not reserved:
            logger.info(f"Order {order_id} has no reserved inventory to restore")
            return summary

        claimed = await uow.order_items.claim_inventory_restoration([item.id for item in reserved], at)
        if claimed != len(reserved):
            raise InventoryAlreadyRestoredError([item.id for item in reserved])

        by_listing: Dict[str, List[OrderItem]] = OrderedDict()
        for item in reserved:
            by_listing.setdefault(item.listing_id, []).append(item)

        for listing_id, listing_items in by_listing.items():
            quantity = sum(item.quantity for item in listing_items)
            try:
                await self.restore(uow, listing_id, quantity)
            except ListingNotFoundError:
                logger.error(f"❌ Cannot restore {quantity} unit(s) for order {order_id}: listing {listing_id} not found")
                await uow.order_items.release_inventory_restoration([item.id for item in listing_items])
                summary.failed += 1
                summary.failed_listing_ids.append(listing_id)
                continue
            summary.restored += 1
            summary.restored_listing_ids.append(listing_id)

        logger.info(
            f"📦 Order {order_id} inventory: {summary.restored} listing(s) restored, {summary.failed} failed"
        )
        return summary
