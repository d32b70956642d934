"""
Order Lifecycle - drives order items through the state machine and applies
the effects of every transition.

Each transition runs in the caller's Unit of Work:

1. Load item, order and vendor; authorize the actor
2. Decide the target status from the transition table (illegal -> conflict)
3. Compute money effects (cancellation split) before writing
4. Write the status with a status-guarded UPDATE (lost race -> conflict)
5. Apply effects: inventory restore, payout rows, ledger deduction,
   order aggregate status, notification row
6. Register post-commit hooks for processor refunds/transfers and delivery

A retried webhook or a double-click hits step 2 or step 4 and is rejected
without mutating anything.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

import httpx

from marketplace.application.fee_ledger_service import VendorFeeLedger
from marketplace.application.inventory_service import InventoryReconciler, RestoreSummary
from marketplace.application.notification_service import NotificationDispatcher
from marketplace.clients.payment_client import PaymentProcessorClient
from marketplace.config import settings
from marketplace.domain.entities import (
    ConflictError,
    DomainError,
    InvalidInputError,
    ListingNotFoundError,
    Notification,
    NotAuthorizedError,
    Order,
    OrderItem,
    OrderItemNotFoundError,
    OrderNotFoundError,
    PaymentSetupRequiredError,
    TransitionConflictError,
    Vendor,
    VendorFeeLedgerEntry,
    VendorNotFoundError,
    VendorPayout,
    utcnow,
)
from marketplace.domain.fees import (
    CancellationResult,
    FeeSchedule,
    cancellation_fee,
    external_total_fee,
    item_payout,
)
from marketplace.domain.lifecycle import EVENT_ROLES, LifecycleEvent, next_status, resolve_notification
from marketplace.domain.notification_types import Audience, NotificationPayload, NotificationType, get_template
from marketplace.domain.unit_of_work import AbstractUnitOfWork
from marketplace.domain.value_objects import (
    Actor,
    ActorRole,
    ItemStatus,
    OrderStatus,
    PayoutKind,
    new_id,
)
from marketplace.infrastructure.task_queue import TaskQueue, get_task_queue

logger = logging.getLogger(__name__)

PaymentClientFactory = Callable[[httpx.AsyncClient], PaymentProcessorClient]
UnitOfWorkFactory = Callable[[], AbstractUnitOfWork]


@dataclass
class TransitionResult:
    item: OrderItem
    previous_status: ItemStatus
    cancellation: Optional[CancellationResult] = None
    payout: Optional[VendorPayout] = None
    notification: Optional[Notification] = None


@dataclass
class OrderCancellationResult:
    order_id: str
    inventory: RestoreSummary
    cancelled: List[TransitionResult] = field(default_factory=list)
    skipped_item_ids: List[str] = field(default_factory=list)  # already terminal


@dataclass
class ExpirySummary:
    expired: int = 0
    conflicts: int = 0
    failed: int = 0
    expired_item_ids: List[str] = field(default_factory=list)


@dataclass
class ExternalPaymentConfirmation:
    order_id: str
    vendor_id: str
    fee_cents: int
    ledger_entry: VendorFeeLedgerEntry
    payment_required: bool


def _default_payment_client(http_client: httpx.AsyncClient) -> PaymentProcessorClient:
    return PaymentProcessorClient(http_client, settings)


class OrderLifecycle:
    """
    Application service owning every order item status change.

    Collaborators are injected so tests can replace the queue, the processor
    client and the clock.
    """

    def __init__(
        self,
        schedule: FeeSchedule,
        inventory: InventoryReconciler,
        ledger: VendorFeeLedger,
        notifier: NotificationDispatcher,
        task_queue: Optional[TaskQueue] = None,
        payment_client_factory: PaymentClientFactory = _default_payment_client,
        require_payment_account: bool = False,
        clock: Callable[[], datetime] = utcnow
    ):
        self._schedule = schedule
        self._inventory = inventory
        self._ledger = ledger
        self._notifier = notifier
        self._task_queue = task_queue
        self._payment_client_factory = payment_client_factory
        self._require_payment_account = require_payment_account
        self._clock = clock

    @property
    def task_queue(self) -> TaskQueue:
        return self._task_queue or get_task_queue()

    # ── Transitions ─────────────────────────────────────────────────

    async def confirm(self, uow: AbstractUnitOfWork, item_id: str, actor: Actor) -> TransitionResult:
        """
        Vendor accepts the item.

        Raises:
            PaymentSetupRequiredError: If the vendor has not connected a
                payment account and the marketplace requires one
        """
        return await self._transition(uow, item_id, actor, LifecycleEvent.CONFIRM)

    async def mark_ready(self, uow: AbstractUnitOfWork, item_id: str, actor: Actor) -> TransitionResult:
        return await self._transition(uow, item_id, actor, LifecycleEvent.MARK_READY)

    async def fulfill(self, uow: AbstractUnitOfWork, item_id: str, actor: Actor) -> TransitionResult:
        """Vendor hands the item over (from confirmed or ready)."""
        return await self._transition(uow, item_id, actor, LifecycleEvent.FULFILL)

    async def complete(self, uow: AbstractUnitOfWork, item_id: str, actor: Actor) -> TransitionResult:
        """Buyer confirms pickup; processor-paid items are settled to the vendor."""
        return await self._transition(uow, item_id, actor, LifecycleEvent.COMPLETE)

    async def cancel(
        self,
        uow: AbstractUnitOfWork,
        item_id: str,
        actor: Actor,
        reason: Optional[str] = None
    ) -> TransitionResult:
        """
        Cancel an item (buyer cancellation or vendor rejection).

        A buyer cancelling after the grace period, once the vendor has
        confirmed, pays the cancellation fee. A vendor rejection is always a
        full refund.
        """
        return await self._transition(uow, item_id, actor, LifecycleEvent.CANCEL, reason)

    async def expire(
        self,
        uow: AbstractUnitOfWork,
        item_id: str,
        actor: Optional[Actor] = None
    ) -> TransitionResult:
        return await self._transition(
            uow, item_id, actor or Actor.system("expiry"), LifecycleEvent.EXPIRE,
            "Order was not confirmed in time"
        )

    async def _transition(
        self,
        uow: AbstractUnitOfWork,
        item_id: str,
        actor: Actor,
        event: LifecycleEvent,
        reason: Optional[str] = None
    ) -> TransitionResult:
        now = self._clock()

        # 1. Load and authorize
        item, order, vendor = await self._load(uow, item_id)
        self._authorize(actor, event, order, vendor)

        # 2. Decide
        previous = item.status
        new_status = next_status(item.id, previous, event)

        if (
            event == LifecycleEvent.CONFIRM
            and self._require_payment_account
            and not vendor.has_payment_account
        ):
            logger.warning(f"⚠️  Vendor {vendor.id} tried to confirm item {item.id} without a payment account")
            raise PaymentSetupRequiredError(vendor.id)

        # 3. Money effects of ending the item
        cancellation = None
        fields = {}
        if new_status in (ItemStatus.CANCELLED, ItemStatus.EXPIRED):
            cancellation = cancellation_fee(
                item.subtotal_cents,
                order.item_count,
                previous,
                order.created_at,
                now,
                self._schedule,
            )
            if event == LifecycleEvent.CANCEL and actor.role == ActorRole.VENDOR:
                cancellation = cancellation.as_full_refund()
            fields = {
                "cancelled_at": now,
                "cancelled_by": actor.role.value,
                "cancellation_reason": reason,
                "refund_amount_cents": cancellation.refund_cents,
                "cancellation_fee_cents": cancellation.fee_cents,
                "platform_fee_share_cents": cancellation.platform_share_cents,
                "vendor_fee_share_cents": cancellation.vendor_share_cents,
            }

        # 4. Guarded write
        applied = await uow.order_items.transition_status(item.id, previous, new_status, **fields)
        if not applied:
            current = await uow.order_items.get_by_id(item.id)
            raise TransitionConflictError(item.id, current.status if current else None, event.value)

        # 5. Effects
        payout = None
        if cancellation is not None:
            await self._restore_inventory(uow, item, now)
            payout = await self._settle_cancellation(uow, order, item, vendor, cancellation)
        elif new_status == ItemStatus.COMPLETED:
            payout = await self._settle_completion(uow, order, item, vendor)

        await self._update_order_status(uow, order.id)

        notification = await self._notify_transition(
            uow, order, item, vendor, previous, new_status, actor, cancellation, reason
        )

        logger.info(
            f"✅ Item {item.id} {previous.value} -> {new_status.value} by {actor}"
            + (f" (refund {cancellation.refund_cents}, fee {cancellation.fee_cents})" if cancellation else "")
        )
        return TransitionResult(
            item=await uow.order_items.get_by_id(item.id),
            previous_status=previous,
            cancellation=cancellation,
            payout=payout,
            notification=notification,
        )

    # ── Whole-order operations ──────────────────────────────────────

    async def cancel_order(
        self,
        uow: AbstractUnitOfWork,
        order_id: str,
        actor: Actor,
        reason: Optional[str] = None
    ) -> OrderCancellationResult:
        """
        Cancel every non-terminal item of an order.

        Inventory is restored once for the whole order (one increment per
        listing) before the items are cancelled; the per-item transitions
        then see the items as already restored.

        Raises:
            OrderNotFoundError: If the order does not exist
            NotAuthorizedError: If the actor is not the buyer (or the system)
        """
        order = await uow.orders.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        if not actor.is_system and (actor.role != ActorRole.BUYER or actor.user_id != order.buyer_id):
            raise NotAuthorizedError(f"{actor} cannot cancel order {order_id}")

        inventory = await self._inventory.restore_for_order(uow, order_id, self._clock())
        result = OrderCancellationResult(order_id=order_id, inventory=inventory)

        for item in order.items:
            if item.is_terminal:
                result.skipped_item_ids.append(item.id)
                continue
            result.cancelled.append(
                await self._transition(uow, item.id, actor, LifecycleEvent.CANCEL, reason)
            )

        logger.info(
            f"🛑 Order {order_id} cancelled by {actor}: {len(result.cancelled)} item(s), "
            f"{len(result.skipped_item_ids)} already closed"
        )
        return result

    async def expire_overdue(
        self,
        uow_factory: UnitOfWorkFactory,
        now: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> ExpirySummary:
        """
        Expire pending items whose confirmation window has passed.

        Each item is expired in its own transaction, so one conflict (the
        buyer cancelled meanwhile) does not roll back the rest of the batch.

        Args:
            uow_factory: Creates a fresh Unit of Work per transaction
            now: Cut-off (defaults to the clock)
            limit: Batch size (defaults to EXPIRY_BATCH_SIZE)
        """
        now = now or self._clock()
        limit = limit or settings.expiry_batch_size

        async with uow_factory() as uow:
            overdue = await uow.order_items.list_expired_pending(now, limit)

        summary = ExpirySummary()
        for item in overdue:
            try:
                async with uow_factory() as uow:
                    await self.expire(uow, item.id)
            except ConflictError as e:
                summary.conflicts += 1
                logger.info(f"Item {item.id} changed before it could expire: {e}")
            except DomainError as e:
                summary.failed += 1
                logger.error(f"❌ Failed to expire item {item.id}: {e}")
            else:
                summary.expired += 1
                summary.expired_item_ids.append(item.id)

        if overdue:
            logger.info(
                f"⏰ Expiry sweep: {summary.expired} expired, {summary.conflicts} conflict(s), "
                f"{summary.failed} failed"
            )
        return summary

    async def confirm_external_payment(
        self,
        uow: AbstractUnitOfWork,
        order_id: str,
        actor: Actor
    ) -> ExternalPaymentConfirmation:
        """
        Vendor confirms they received a cash/P2P payment for their items.

        The platform never captured its fees on this order, so the buyer fee
        and the external seller fee on the vendor's subtotal are charged to
        the vendor's fee ledger, once per (vendor, order).

        Raises:
            OrderNotFoundError: If the order does not exist
            InvalidInputError: If the order was paid through the processor
            NotAuthorizedError: If the actor has no open items in the order
            ConflictError: If this vendor already confirmed this order
        """
        order = await uow.orders.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        if not order.is_externally_paid:
            raise InvalidInputError(f"Order {order_id} was paid through the payment processor")

        vendor = await uow.vendors.get_by_user_id(actor.user_id) if actor.role == ActorRole.VENDOR else None
        if vendor is None:
            raise NotAuthorizedError(f"{actor} is not a vendor")

        items = [
            item for item in order.items_for_vendor(vendor.id)
            if item.status not in (ItemStatus.CANCELLED, ItemStatus.EXPIRED)
        ]
        if not items:
            raise NotAuthorizedError(f"Vendor {vendor.id} has no open items in order {order_id}")

        if await uow.fee_ledger.has_charge_for_order(vendor.id, order.id):
            raise ConflictError(f"External payment for order {order.order_number} was already confirmed")

        vendor_subtotal = sum(item.subtotal_cents for item in items)
        fee = external_total_fee(vendor_subtotal, self._schedule)
        entry = await self._ledger.record_charge(
            uow,
            vendor.id,
            order.id,
            fee,
            f"Platform fees for order {order.order_number} paid by {order.payment_method.value}"
        )

        if order.status == OrderStatus.PENDING:
            await uow.orders.set_status(order.id, OrderStatus.PAID)

        balance = await self._ledger.balance(uow, vendor.id)
        payment_required = self._ledger.payment_required(balance)
        if payment_required:
            await self._notifier.dispatch(
                uow,
                vendor.user_id,
                NotificationType.FEE_BALANCE_DUE,
                NotificationPayload(
                    amount_cents=balance.balance_cents,
                    order_number=order.order_number,
                    order_id=order.id,
                    vertical=order.vertical,
                )
            )

        logger.info(
            f"💵 Vendor {vendor.id} confirmed external payment for order {order.id}: fee {fee} "
            f"(balance {balance.balance_cents}, payment required={payment_required})"
        )
        return ExternalPaymentConfirmation(
            order_id=order.id,
            vendor_id=vendor.id,
            fee_cents=fee,
            ledger_entry=entry,
            payment_required=payment_required,
        )

    async def preview_cancellation(
        self,
        uow: AbstractUnitOfWork,
        item_id: str,
        actor: Actor
    ) -> CancellationResult:
        """What cancelling now would refund, without changing anything."""
        item, order, vendor = await self._load(uow, item_id)
        self._authorize(actor, LifecycleEvent.CANCEL, order, vendor)
        if item.is_terminal:
            raise TransitionConflictError(item.id, item.status, LifecycleEvent.CANCEL.value)

        result = cancellation_fee(
            item.subtotal_cents,
            order.item_count,
            item.status,
            order.created_at,
            self._clock(),
            self._schedule,
        )
        if actor.role == ActorRole.VENDOR:
            result = result.as_full_refund()
        return result

    # ── Helpers ─────────────────────────────────────────────────────

    async def _load(self, uow: AbstractUnitOfWork, item_id: str):
        item = await uow.order_items.get_by_id(item_id)
        if item is None:
            raise OrderItemNotFoundError(item_id)
        order = await uow.orders.get_by_id(item.order_id)
        if order is None:
            raise OrderNotFoundError(item.order_id)
        vendor = await uow.vendors.get_by_id(item.vendor_id)
        if vendor is None:
            raise VendorNotFoundError(item.vendor_id)
        return item, order, vendor

    @staticmethod
    def _authorize(actor: Actor, event: LifecycleEvent, order: Order, vendor: Vendor) -> None:
        if actor.is_system:
            return
        if actor.role not in EVENT_ROLES[event]:
            raise NotAuthorizedError(f"A {actor.role.value} cannot {event.value} order items")
        if actor.role == ActorRole.BUYER and actor.user_id != order.buyer_id:
            raise NotAuthorizedError(f"{actor} does not own order {order.id}")
        if actor.role == ActorRole.VENDOR and actor.user_id != vendor.user_id:
            raise NotAuthorizedError(f"{actor} is not the vendor for this item")

    async def _restore_inventory(self, uow: AbstractUnitOfWork, item: OrderItem, now: datetime) -> None:
        if item.inventory_restored:
            logger.debug(f"Inventory for item {item.id} already restored")
            return
        try:
            await self._inventory.restore_for_item(uow, item, now)
        except ListingNotFoundError:
            logger.warning(
                f"⚠️  Listing {item.listing_id} is gone, {item.quantity} unit(s) from item {item.id} not restored"
            )

    async def _settle_cancellation(
        self,
        uow: AbstractUnitOfWork,
        order: Order,
        item: OrderItem,
        vendor: Vendor,
        cancellation: CancellationResult
    ) -> Optional[VendorPayout]:
        """Credit the vendor's fee share and refund the buyer through the processor."""
        if order.is_externally_paid:
            # Nothing was captured; the vendor settles with the buyer directly
            return None

        payout = None
        if cancellation.vendor_share_cents > 0:
            payout = VendorPayout(
                id=new_id("pay"),
                vendor_id=vendor.id,
                order_id=order.id,
                order_item_id=item.id,
                kind=PayoutKind.CANCELLATION_FEE,
                gross_cents=cancellation.vendor_share_cents,
                created_at=self._clock(),
            )
            await uow.payouts.add(payout)
            self._schedule_transfer(uow, vendor, payout)

        if cancellation.refund_cents > 0:
            if order.payment_reference:
                self._schedule_refund(uow, order, item, cancellation.refund_cents)
            else:
                logger.info(f"Order {order.id} has no captured payment, no refund issued for item {item.id}")
        return payout

    async def _settle_completion(
        self,
        uow: AbstractUnitOfWork,
        order: Order,
        item: OrderItem,
        vendor: Vendor
    ) -> Optional[VendorPayout]:
        """Pay the vendor for a picked-up item, withholding owed fees."""
        if order.is_externally_paid:
            # Fees for external orders were charged to the ledger at confirmation
            return None

        gross = item_payout(
            item.subtotal_cents,
            order.item_count,
            order.tip_cents,
            order.tip_on_platform_fee_cents,
            self._schedule,
        )
        if gross <= 0:
            # Fees exceed the item price; nothing to transfer or withhold from
            logger.info(f"Item {item.id} payout is {gross} cents after fees, no payout recorded")
            return None

        deduction = await self._ledger.apply_auto_deduction(uow, vendor.id, gross, order.id)
        payout = VendorPayout(
            id=new_id("pay"),
            vendor_id=vendor.id,
            order_id=order.id,
            order_item_id=item.id,
            kind=PayoutKind.SALE,
            gross_cents=gross,
            deduction_cents=deduction,
            created_at=self._clock(),
        )
        await uow.payouts.add(payout)
        self._schedule_transfer(uow, vendor, payout)
        return payout

    async def _update_order_status(self, uow: AbstractUnitOfWork, order_id: str) -> None:
        order = await uow.orders.get_by_id(order_id)
        derived = order.derive_status()
        if derived is not None and derived != order.status:
            await uow.orders.set_status(order_id, derived)
            logger.info(f"📋 Order {order_id} is now {derived.value}")

    async def _notify_transition(
        self,
        uow: AbstractUnitOfWork,
        order: Order,
        item: OrderItem,
        vendor: Vendor,
        previous: ItemStatus,
        new_status: ItemStatus,
        actor: Actor,
        cancellation: Optional[CancellationResult],
        reason: Optional[str]
    ) -> Optional[Notification]:
        notification_type = resolve_notification(previous, new_status, actor.role)
        if notification_type is None:
            return None

        listing = await uow.listings.get_by_id(item.listing_id)
        buyer = await uow.users.get_by_id(order.buyer_id)
        payload = NotificationPayload(
            order_number=order.order_number,
            item_title=listing.title if listing else None,
            vendor_name=vendor.business_name,
            buyer_name=buyer.display_name if buyer else None,
            amount_cents=cancellation.refund_cents if cancellation else None,
            reason=reason,
            order_id=order.id,
            order_item_id=item.id,
            vertical=order.vertical,
        )

        audience = get_template(notification_type).audience
        recipient = order.buyer_id if audience == Audience.BUYER else vendor.user_id
        return await self._notifier.dispatch(uow, recipient, notification_type, payload)

    def _schedule_transfer(self, uow: AbstractUnitOfWork, vendor: Vendor, payout: VendorPayout) -> None:
        if payout.amount_cents <= 0:
            return
        if not vendor.payment_account_id:
            logger.warning(
                f"⚠️  Payout {payout.id} stays pending: vendor {vendor.id} has no payment account"
            )
            return

        destination = vendor.payment_account_id
        idempotency_key = f"transfer-{payout.order_id}-{payout.order_item_id}"

        async def transfer():
            async with httpx.AsyncClient() as http_client:
                await self._payment_client_factory(http_client).create_transfer(
                    destination,
                    payout.amount_cents,
                    idempotency_key=idempotency_key,
                    transfer_group=payout.order_id,
                    metadata={
                        "payout_id": payout.id,
                        "order_id": payout.order_id,
                        "order_item_id": payout.order_item_id,
                    },
                )

        uow.add_post_commit_hook(lambda: self.task_queue.enqueue(f"transfer:{payout.id}", transfer))

    def _schedule_refund(self, uow: AbstractUnitOfWork, order: Order, item: OrderItem, amount_cents: int) -> None:
        payment_reference = order.payment_reference
        idempotency_key = f"refund-{item.id}"

        async def refund():
            async with httpx.AsyncClient() as http_client:
                await self._payment_client_factory(http_client).create_refund(
                    payment_reference,
                    amount_cents,
                    idempotency_key=idempotency_key,
                    metadata={"order_id": order.id, "order_item_id": item.id},
                )

        uow.add_post_commit_hook(lambda: self.task_queue.enqueue(f"refund:{item.id}", refund))


def build_order_lifecycle(
    task_queue: Optional[TaskQueue] = None,
    schedule: Optional[FeeSchedule] = None
) -> OrderLifecycle:
    """Wire the lifecycle and its collaborators from settings."""
    schedule = schedule or FeeSchedule.from_settings(settings)
    return OrderLifecycle(
        schedule=schedule,
        inventory=InventoryReconciler(),
        ledger=VendorFeeLedger(schedule),
        notifier=NotificationDispatcher(task_queue=task_queue),
        task_queue=task_queue,
        require_payment_account=settings.require_payment_account_to_confirm,
    )
