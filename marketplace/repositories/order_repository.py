"""
Order and order item repositories using SQLAlchemy.

Lifecycle writes never go through the ORM unit of work: status changes are a
single status-guarded UPDATE so that, of several concurrent triggers on the
same item, exactly one sees its guard match. Reads use populate_existing so
a row updated by such a statement is never served stale from the identity map.
"""

import enum
import logging
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.interfaces import IOrderItemRepository, IOrderRepository
from marketplace.db.models import OrderItemModel, OrderModel
from marketplace.domain.entities import InvalidInputError, Order, OrderItem
from marketplace.domain.value_objects import ItemStatus, OrderStatus, PaymentMethod

logger = logging.getLogger(__name__)

# Columns a transition may write alongside the status
TRANSITION_FIELDS = frozenset({
    "cancelled_at",
    "cancelled_by",
    "cancellation_reason",
    "refund_amount_cents",
    "cancellation_fee_cents",
    "platform_fee_share_cents",
    "vendor_fee_share_cents",
})


def item_from_orm(db_item: OrderItemModel) -> OrderItem:
    """Convert ORM OrderItemModel → domain OrderItem"""
    return OrderItem(
        id=db_item.id,
        order_id=db_item.order_id,
        listing_id=db_item.listing_id,
        vendor_id=db_item.vendor_id,
        quantity=db_item.quantity,
        unit_price_cents=db_item.unit_price_cents,
        subtotal_cents=db_item.subtotal_cents,
        status=ItemStatus(db_item.status),
        created_at=db_item.created_at,
        expires_at=db_item.expires_at,
        cancelled_at=db_item.cancelled_at,
        cancelled_by=db_item.cancelled_by,
        cancellation_reason=db_item.cancellation_reason,
        refund_amount_cents=db_item.refund_amount_cents,
        cancellation_fee_cents=db_item.cancellation_fee_cents,
        platform_fee_share_cents=db_item.platform_fee_share_cents,
        vendor_fee_share_cents=db_item.vendor_fee_share_cents,
        inventory_restored_at=db_item.inventory_restored_at,
    )


class OrderRepository(IOrderRepository):
    """SQLAlchemy implementation of IOrderRepository."""

    def __init__(self, db_session: AsyncSession):
        self._db = db_session

    async def save(self, order: Order) -> Order:
        """
        Insert an order and its items.

        Raises:
            InvalidInputError: If the order id or number already exists
        """
        db_order = self._to_orm(order)
        self._db.add(db_order)
        try:
            await self._db.flush()
        except IntegrityError as e:
            logger.error(f"Order {order.id} could not be saved: {e.orig}")
            raise InvalidInputError(f"Order {order.id} ({order.order_number}) already exists") from e

        logger.info(f"💾 Saved order {order.id} with {order.item_count} item(s)")
        return order

    async def get_by_id(self, order_id: str) -> Optional[Order]:
        stmt = (
            select(OrderModel)
            .where(OrderModel.id == order_id)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        db_order = result.scalar_one_or_none()
        if db_order is None:
            return None

        # Items are read by their own query so guarded UPDATEs are always visible
        items_stmt = (
            select(OrderItemModel)
            .where(OrderItemModel.order_id == order_id)
            .order_by(OrderItemModel.position)
            .execution_options(populate_existing=True)
        )
        db_items = (await self._db.execute(items_stmt)).scalars().all()
        return self._from_orm(db_order, db_items)

    async def set_status(
        self,
        order_id: str,
        status: OrderStatus,
        payment_reference: Optional[str] = None
    ) -> None:
        values = {"status": status.value}
        if payment_reference is not None:
            values["payment_reference"] = payment_reference
        stmt = (
            update(OrderModel)
            .where(OrderModel.id == order_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(stmt)
        logger.debug(f"Order {order_id} status -> {status.value}")

    def _to_orm(self, order: Order) -> OrderModel:
        """Convert domain Order → ORM OrderModel (items included)"""
        return OrderModel(
            id=order.id,
            order_number=order.order_number,
            buyer_id=order.buyer_id,
            vertical=order.vertical,
            status=order.status.value,
            payment_method=order.payment_method.value,
            payment_reference=order.payment_reference,
            subtotal_cents=order.subtotal_cents,
            buyer_fee_cents=order.buyer_fee_cents,
            tip_cents=order.tip_cents,
            tip_on_platform_fee_cents=order.tip_on_platform_fee_cents,
            total_cents=order.total_cents,
            created_at=order.created_at,
            items=[
                OrderItemModel(
                    id=item.id,
                    order_id=order.id,
                    position=position,
                    listing_id=item.listing_id,
                    vendor_id=item.vendor_id,
                    quantity=item.quantity,
                    unit_price_cents=item.unit_price_cents,
                    subtotal_cents=item.subtotal_cents,
                    status=item.status.value,
                    created_at=item.created_at,
                    expires_at=item.expires_at,
                )
                for position, item in enumerate(order.items)
            ],
        )

    def _from_orm(self, db_order: OrderModel, db_items: List[OrderItemModel]) -> Order:
        """Convert ORM OrderModel → domain Order"""
        return Order(
            id=db_order.id,
            order_number=db_order.order_number,
            buyer_id=db_order.buyer_id,
            subtotal_cents=db_order.subtotal_cents,
            buyer_fee_cents=db_order.buyer_fee_cents,
            total_cents=db_order.total_cents,
            status=OrderStatus(db_order.status),
            payment_method=PaymentMethod(db_order.payment_method),
            payment_reference=db_order.payment_reference,
            tip_cents=db_order.tip_cents,
            tip_on_platform_fee_cents=db_order.tip_on_platform_fee_cents,
            vertical=db_order.vertical,
            created_at=db_order.created_at,
            items=[item_from_orm(db_item) for db_item in db_items],
        )


class OrderItemRepository(IOrderItemRepository):
    """SQLAlchemy implementation of IOrderItemRepository."""

    def __init__(self, db_session: AsyncSession):
        self._db = db_session

    async def get_by_id(self, item_id: str) -> Optional[OrderItem]:
        stmt = (
            select(OrderItemModel)
            .where(OrderItemModel.id == item_id)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        db_item = result.scalar_one_or_none()
        return item_from_orm(db_item) if db_item is not None else None

    async def list_for_order(self, order_id: str) -> List[OrderItem]:
        stmt = (
            select(OrderItemModel)
            .where(OrderItemModel.order_id == order_id)
            .order_by(OrderItemModel.position)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return [item_from_orm(row) for row in result.scalars().all()]

    async def transition_status(
        self,
        item_id: str,
        expected: ItemStatus,
        new: ItemStatus,
        **fields: Any
    ) -> bool:
        unknown = set(fields) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Cannot write {sorted(unknown)} during a status transition")

        values = {
            key: value.value if isinstance(value, enum.Enum) else value
            for key, value in fields.items()
        }
        values["status"] = new.value

        stmt = (
            update(OrderItemModel)
            .where(OrderItemModel.id == item_id)
            .where(OrderItemModel.status == expected.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)

        if result.rowcount != 1:
            logger.warning(
                f"⚠️  Guarded transition {expected.value} -> {new.value} matched no row for item {item_id}"
            )
            return False

        logger.info(f"🔄 Item {item_id}: {expected.value} -> {new.value}")
        return True

    async def claim_inventory_restoration(self, item_ids: List[str], at: datetime) -> int:
        if not item_ids:
            return 0
        stmt = (
            update(OrderItemModel)
            .where(OrderItemModel.id.in_(item_ids))
            .where(OrderItemModel.inventory_restored_at.is_(None))
            .values(inventory_restored_at=at)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        return result.rowcount

    async def release_inventory_restoration(self, item_ids: List[str]) -> None:
        if not item_ids:
            return
        stmt = (
            update(OrderItemModel)
            .where(OrderItemModel.id.in_(item_ids))
            .values(inventory_restored_at=None)
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(stmt)

    async def list_expired_pending(self, now: datetime, limit: int) -> List[OrderItem]:
        stmt = (
            select(OrderItemModel)
            .where(OrderItemModel.status == ItemStatus.PENDING.value)
            .where(OrderItemModel.expires_at.is_not(None))
            .where(OrderItemModel.expires_at <= now)
            .order_by(OrderItemModel.expires_at)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return [item_from_orm(row) for row in result.scalars().all()]
