"""
Tests for OrderLifecycle.

Drives order items through the state machine against a real database and
checks the money, inventory, ledger and notification effects of each step.
Side effects are captured by RecordingQueue and run on demand against
FakePaymentClient.
"""
import asyncio
from datetime import timedelta

import pytest

from marketplace.application.order_lifecycle_service import TransitionResult
from marketplace.domain.entities import (
    ConflictError,
    InvalidInputError,
    NotAuthorizedError,
    OrderItemNotFoundError,
    PaymentSetupRequiredError,
    TransitionConflictError,
)
from marketplace.domain.notification_types import Channel, NotificationType
from marketplace.domain.value_objects import (
    Actor,
    ActorRole,
    ItemStatus,
    OrderStatus,
    PaymentMethod,
    PayoutKind,
)

from tests.factories import (
    BUYER_ID,
    PAYMENT_ACCOUNT_ID,
    T0,
    VENDOR_ID,
    VENDOR_USER_ID,
    seed_listing,
    seed_order,
    seed_parties,
)

BUYER = Actor(BUYER_ID, ActorRole.BUYER)
VENDOR = Actor(VENDOR_USER_ID, ActorRole.VENDOR)


async def _seed_single_item(uow_factory, payment_account_id=PAYMENT_ACCOUNT_ID, **order_kwargs):
    async with uow_factory() as uow:
        await seed_parties(uow, payment_account_id=payment_account_id)
        await seed_listing(uow, quantity=5)
        return await seed_order(uow, [("item_1", "lst_eggs", 1, 1000)], **order_kwargs)


async def _confirm(uow_factory, lifecycle, item_id="item_1"):
    async with uow_factory() as uow:
        return await lifecycle.confirm(uow, item_id, VENDOR)


def _side_effects(queue, prefix):
    return [name for name in queue.names if name.startswith(prefix)]


class TestForwardTransitions:

    @pytest.mark.asyncio
    async def test_pickup_flow_pays_the_vendor(self, uow_factory, lifecycle, queue, payments):
        await _seed_single_item(uow_factory)

        confirmed = await _confirm(uow_factory, lifecycle)
        assert confirmed.previous_status == ItemStatus.PENDING
        assert confirmed.item.status == ItemStatus.CONFIRMED
        assert confirmed.notification.type == NotificationType.ORDER_CONFIRMED
        assert confirmed.notification.user_id == BUYER_ID

        async with uow_factory() as uow:
            ready = await lifecycle.mark_ready(uow, "item_1", VENDOR)
        assert ready.notification.type == NotificationType.ORDER_READY

        async with uow_factory() as uow:
            await lifecycle.fulfill(uow, "item_1", VENDOR)

        async with uow_factory() as uow:
            completed = await lifecycle.complete(uow, "item_1", BUYER)

        assert completed.item.status == ItemStatus.COMPLETED
        assert completed.notification.type == NotificationType.PICKUP_CONFIRMED
        assert completed.notification.user_id == VENDOR_USER_ID
        assert completed.payout.kind == PayoutKind.SALE
        assert completed.payout.gross_cents == 920
        assert completed.payout.deduction_cents == 0
        assert _side_effects(queue, "transfer:") == [f"transfer:{completed.payout.id}"]

        async with uow_factory() as uow:
            order = await uow.orders.get_by_id("ord_1")
        assert order.status == OrderStatus.COMPLETED

        await queue.run_all()
        assert payments.transfers == [{
            "destination": PAYMENT_ACCOUNT_ID,
            "amount_cents": 920,
            "idempotency_key": "transfer-ord_1-item_1",
            "transfer_group": "ord_1",
            "metadata": {
                "payout_id": completed.payout.id,
                "order_id": "ord_1",
                "order_item_id": "item_1",
            },
        }]

    @pytest.mark.asyncio
    async def test_fulfill_straight_from_confirmed(self, uow_factory, lifecycle):
        await _seed_single_item(uow_factory)
        await _confirm(uow_factory, lifecycle)

        async with uow_factory() as uow:
            result = await lifecycle.fulfill(uow, "item_1", VENDOR)

        assert result.previous_status == ItemStatus.CONFIRMED
        assert result.item.status == ItemStatus.FULFILLED

    @pytest.mark.asyncio
    async def test_completion_withholds_owed_fees(self, uow_factory, lifecycle, ledger):
        await _seed_single_item(uow_factory)
        async with uow_factory() as uow:
            await ledger.record_charge(uow, VENDOR_ID, None, 1000, "Earlier cash order")

        await _confirm(uow_factory, lifecycle)
        async with uow_factory() as uow:
            await lifecycle.fulfill(uow, "item_1", VENDOR)
        async with uow_factory() as uow:
            result = await lifecycle.complete(uow, "item_1", BUYER)

        # At most half of the 920 payout goes to the fee balance
        assert result.payout.deduction_cents == 460
        assert result.payout.amount_cents == 460

        async with uow_factory() as uow:
            assert (await ledger.balance(uow, VENDOR_ID)).balance_cents == 540

    @pytest.mark.asyncio
    async def test_external_order_completion_creates_no_payout(self, uow_factory, lifecycle, queue):
        await _seed_single_item(uow_factory, payment_method=PaymentMethod.CASH)
        await _confirm(uow_factory, lifecycle)
        async with uow_factory() as uow:
            await lifecycle.fulfill(uow, "item_1", VENDOR)
        async with uow_factory() as uow:
            result = await lifecycle.complete(uow, "item_1", BUYER)

        assert result.payout is None
        assert _side_effects(queue, "transfer:") == []

    @pytest.mark.asyncio
    async def test_item_cheaper_than_its_fees_completes_without_payout(self, uow_factory, lifecycle, ledger, queue):
        async with uow_factory() as uow:
            await seed_parties(uow)
            await seed_listing(uow, quantity=5)
            await seed_order(uow, [("item_1", "lst_eggs", 1, 10)])
            await ledger.record_charge(uow, VENDOR_ID, None, 1000, "Earlier cash order")

        await _confirm(uow_factory, lifecycle)
        async with uow_factory() as uow:
            await lifecycle.fulfill(uow, "item_1", VENDOR)
        async with uow_factory() as uow:
            # 10 - 1 seller fee - 15 flat fee leaves nothing to pay out
            result = await lifecycle.complete(uow, "item_1", BUYER)

        assert result.item.status == ItemStatus.COMPLETED
        assert result.payout is None
        assert _side_effects(queue, "transfer:") == []

        async with uow_factory() as uow:
            assert (await ledger.balance(uow, VENDOR_ID)).balance_cents == 1000
            assert (await uow.orders.get_by_id("ord_1")).status == OrderStatus.COMPLETED


class TestConcurrentTriggers:

    @pytest.mark.asyncio
    async def test_transition_lost_to_a_committed_one_is_rejected(
        self, uow_factory, lifecycle, notifier, monkeypatch
    ):
        await _seed_single_item(uow_factory)

        load = lifecycle._load
        raced = []

        async def load_then_buyer_cancels(uow, item_id):
            loaded = await load(uow, item_id)
            if not raced:
                raced.append(item_id)
                async with uow_factory() as other:
                    await lifecycle.cancel(other, item_id, BUYER)
            return loaded

        monkeypatch.setattr(lifecycle, "_load", load_then_buyer_cancels)

        # The confirm saw a pending item, but the cancel committed first
        with pytest.raises(TransitionConflictError) as exc_info:
            await _confirm(uow_factory, lifecycle)

        assert exc_info.value.current == ItemStatus.CANCELLED
        async with uow_factory() as uow:
            item = await uow.order_items.get_by_id("item_1")
            buyer_inbox = await notifier.list_for_user(uow, BUYER_ID)
        assert item.status == ItemStatus.CANCELLED
        assert item.cancelled_by == "buyer"
        assert buyer_inbox == []

    @pytest.mark.asyncio
    async def test_simultaneous_confirms_apply_once(self, uow_factory, lifecycle, notifier):
        await _seed_single_item(uow_factory)

        results = await asyncio.gather(
            _confirm(uow_factory, lifecycle),
            _confirm(uow_factory, lifecycle),
            return_exceptions=True,
        )

        succeeded = [r for r in results if isinstance(r, TransitionResult)]
        rejected = [r for r in results if isinstance(r, TransitionConflictError)]
        assert len(succeeded) == 1
        assert len(rejected) == 1

        async with uow_factory() as uow:
            buyer_inbox = await notifier.list_for_user(uow, BUYER_ID)
        assert [n.type for n in buyer_inbox] == [NotificationType.ORDER_CONFIRMED]


class TestTransitionGuards:

    @pytest.mark.asyncio
    async def test_confirm_requires_payment_account(self, uow_factory, lifecycle, queue):
        await _seed_single_item(uow_factory, payment_account_id=None)

        with pytest.raises(PaymentSetupRequiredError) as exc_info:
            await _confirm(uow_factory, lifecycle)

        assert exc_info.value.code == "PAYMENT_ACCOUNT_REQUIRED"
        assert queue.names == []
        async with uow_factory() as uow:
            assert (await uow.order_items.get_by_id("item_1")).status == ItemStatus.PENDING

    @pytest.mark.asyncio
    async def test_only_the_items_vendor_may_confirm(self, uow_factory, lifecycle):
        await _seed_single_item(uow_factory)

        async with uow_factory() as uow:
            with pytest.raises(NotAuthorizedError):
                await lifecycle.confirm(uow, "item_1", Actor("usr_other_vendor", ActorRole.VENDOR))
            with pytest.raises(NotAuthorizedError):
                await lifecycle.confirm(uow, "item_1", BUYER)

    @pytest.mark.asyncio
    async def test_only_the_buyer_may_complete(self, uow_factory, lifecycle):
        await _seed_single_item(uow_factory)
        await _confirm(uow_factory, lifecycle)
        async with uow_factory() as uow:
            await lifecycle.fulfill(uow, "item_1", VENDOR)

        async with uow_factory() as uow:
            with pytest.raises(NotAuthorizedError):
                await lifecycle.complete(uow, "item_1", Actor("usr_stranger", ActorRole.BUYER))
            with pytest.raises(NotAuthorizedError):
                await lifecycle.complete(uow, "item_1", VENDOR)

    @pytest.mark.asyncio
    async def test_second_confirm_conflicts(self, uow_factory, lifecycle, queue):
        await _seed_single_item(uow_factory)
        await _confirm(uow_factory, lifecycle)
        queued = list(queue.names)

        with pytest.raises(TransitionConflictError) as exc_info:
            await _confirm(uow_factory, lifecycle)

        assert exc_info.value.current == ItemStatus.CONFIRMED
        assert queue.names == queued

    @pytest.mark.asyncio
    async def test_out_of_order_transition_conflicts(self, uow_factory, lifecycle):
        await _seed_single_item(uow_factory)

        async with uow_factory() as uow:
            with pytest.raises(ConflictError):
                await lifecycle.complete(uow, "item_1", BUYER)

    @pytest.mark.asyncio
    async def test_unknown_item(self, uow_factory, lifecycle):
        async with uow_factory() as uow:
            with pytest.raises(OrderItemNotFoundError):
                await lifecycle.confirm(uow, "item_missing", VENDOR)


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_within_grace_refunds_everything(self, uow_factory, lifecycle, clock, queue, payments):
        await _seed_single_item(uow_factory)
        await _confirm(uow_factory, lifecycle)
        clock.advance(minutes=30)

        async with uow_factory() as uow:
            result = await lifecycle.cancel(uow, "item_1", BUYER, reason="Changed plans")

        assert result.cancellation.refund_cents == 1080
        assert result.cancellation.fee_cents == 0
        assert result.payout is None
        assert result.item.status == ItemStatus.CANCELLED
        assert result.item.cancelled_by == "buyer"
        assert result.item.cancellation_reason == "Changed plans"
        assert result.item.refund_amount_cents == 1080
        assert result.item.inventory_restored
        assert result.notification.type == NotificationType.ORDER_CANCELLED_BY_BUYER
        assert result.notification.user_id == VENDOR_USER_ID

        async with uow_factory() as uow:
            assert (await uow.listings.get_by_id("lst_eggs")).quantity == 6
            assert (await uow.orders.get_by_id("ord_1")).status == OrderStatus.CANCELLED

        assert _side_effects(queue, "refund:") == ["refund:item_1"]
        await queue.run_all()
        assert payments.refunds == [{
            "payment_reference": "pi_123",
            "amount_cents": 1080,
            "idempotency_key": "refund-item_1",
            "metadata": {"order_id": "ord_1", "order_item_id": "item_1"},
        }]
        assert payments.transfers == []

    @pytest.mark.asyncio
    async def test_late_cancel_after_confirmation_retains_fee(self, uow_factory, lifecycle, clock, queue, payments):
        await _seed_single_item(uow_factory)
        await _confirm(uow_factory, lifecycle)
        clock.advance(hours=2)

        async with uow_factory() as uow:
            result = await lifecycle.cancel(uow, "item_1", BUYER)

        assert result.cancellation.refund_cents == 810
        assert result.cancellation.fee_cents == 270
        assert result.item.platform_fee_share_cents == 35
        assert result.item.vendor_fee_share_cents == 235
        assert result.payout.kind == PayoutKind.CANCELLATION_FEE
        assert result.payout.amount_cents == 235

        async with uow_factory() as uow:
            stored = await uow.payouts.get_for_item("item_1", PayoutKind.CANCELLATION_FEE)
        assert stored.gross_cents == 235

        await queue.run_all()
        assert [r["amount_cents"] for r in payments.refunds] == [810]
        assert [t["amount_cents"] for t in payments.transfers] == [235]

    @pytest.mark.asyncio
    async def test_late_cancel_of_unconfirmed_item_is_free(self, uow_factory, lifecycle, clock):
        await _seed_single_item(uow_factory)
        clock.advance(hours=5)

        async with uow_factory() as uow:
            result = await lifecycle.cancel(uow, "item_1", BUYER)

        assert result.cancellation.refund_cents == 1080
        assert result.payout is None

    @pytest.mark.asyncio
    async def test_vendor_rejection_is_a_full_refund(self, uow_factory, lifecycle, clock, queue):
        await _seed_single_item(uow_factory)
        await _confirm(uow_factory, lifecycle)
        clock.advance(hours=3)

        async with uow_factory() as uow:
            result = await lifecycle.cancel(uow, "item_1", VENDOR, reason="Sold out")

        assert result.cancellation.refund_cents == 1080
        assert result.cancellation.fee_cents == 0
        assert result.payout is None
        assert result.item.cancelled_by == "vendor"
        assert result.notification.type == NotificationType.ORDER_CANCELLED_BY_VENDOR
        assert result.notification.user_id == BUYER_ID
        # urgent, but the buyer has not opted into SMS
        assert result.notification.channels == [Channel.IN_APP]
        assert "Reason: Sold out" in result.notification.message

    @pytest.mark.asyncio
    async def test_multi_item_cancel_prorates_flat_fee(self, uow_factory, lifecycle):
        async with uow_factory() as uow:
            await seed_parties(uow)
            await seed_listing(uow, quantity=0)
            await seed_order(uow, [
                ("item_1", "lst_eggs", 1, 1000),
                ("item_2", "lst_eggs", 1, 1000),
                ("item_3", "lst_eggs", 1, 1000),
            ])

        refunds = []
        for item_id in ("item_1", "item_2", "item_3"):
            async with uow_factory() as uow:
                result = await lifecycle.cancel(uow, item_id, BUYER)
            refunds.append(result.cancellation.refund_cents)

        assert refunds == [1070, 1070, 1070]
        async with uow_factory() as uow:
            assert (await uow.listings.get_by_id("lst_eggs")).quantity == 3

    @pytest.mark.asyncio
    async def test_external_order_cancel_moves_no_money(self, uow_factory, lifecycle, clock, queue):
        await _seed_single_item(uow_factory, payment_method=PaymentMethod.VENMO)
        await _confirm(uow_factory, lifecycle)
        clock.advance(hours=2)

        async with uow_factory() as uow:
            result = await lifecycle.cancel(uow, "item_1", BUYER)

        assert result.cancellation.fee_cents == 270
        assert result.payout is None
        assert _side_effects(queue, "refund:") == []
        assert _side_effects(queue, "transfer:") == []

    @pytest.mark.asyncio
    async def test_cancel_with_deleted_listing_still_cancels(self, uow_factory, lifecycle):
        async with uow_factory() as uow:
            await seed_parties(uow)
            await seed_order(uow, [("item_1", "lst_deleted", 1, 1000)])

        async with uow_factory() as uow:
            result = await lifecycle.cancel(uow, "item_1", BUYER)

        assert result.item.status == ItemStatus.CANCELLED
        assert not result.item.inventory_restored

    @pytest.mark.asyncio
    async def test_cannot_cancel_twice(self, uow_factory, lifecycle, queue):
        await _seed_single_item(uow_factory)
        async with uow_factory() as uow:
            await lifecycle.cancel(uow, "item_1", BUYER)

        with pytest.raises(TransitionConflictError):
            async with uow_factory() as uow:
                await lifecycle.cancel(uow, "item_1", BUYER)

        assert _side_effects(queue, "refund:") == ["refund:item_1"]
        async with uow_factory() as uow:
            assert (await uow.listings.get_by_id("lst_eggs")).quantity == 6

    @pytest.mark.asyncio
    async def test_preview_changes_nothing(self, uow_factory, lifecycle, clock):
        await _seed_single_item(uow_factory)
        await _confirm(uow_factory, lifecycle)
        clock.advance(hours=2)

        async with uow_factory() as uow:
            buyer_view = await lifecycle.preview_cancellation(uow, "item_1", BUYER)
            vendor_view = await lifecycle.preview_cancellation(uow, "item_1", VENDOR)

        assert buyer_view.refund_cents == 810
        assert buyer_view.fee_cents == 270
        assert vendor_view.refund_cents == 1080

        async with uow_factory() as uow:
            assert (await uow.order_items.get_by_id("item_1")).status == ItemStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_preview_of_closed_item_conflicts(self, uow_factory, lifecycle):
        await _seed_single_item(uow_factory)
        async with uow_factory() as uow:
            await lifecycle.cancel(uow, "item_1", BUYER)

        async with uow_factory() as uow:
            with pytest.raises(TransitionConflictError):
                await lifecycle.preview_cancellation(uow, "item_1", BUYER)


class TestOrderCancellation:

    @pytest.mark.asyncio
    async def test_cancel_order_restores_once_per_listing(self, uow_factory, lifecycle):
        async with uow_factory() as uow:
            await seed_parties(uow)
            await seed_listing(uow, quantity=0)
            await seed_order(uow, [
                ("item_1", "lst_eggs", 2, 500),
                ("item_2", "lst_eggs", 3, 500),
                ("item_3", "lst_eggs", 1, 500),
            ])

        async with uow_factory() as uow:
            await lifecycle.cancel(uow, "item_3", BUYER)

        async with uow_factory() as uow:
            result = await lifecycle.cancel_order(uow, "ord_1", BUYER, reason="Can't make pickup")

        assert [r.item.id for r in result.cancelled] == ["item_1", "item_2"]
        assert result.skipped_item_ids == ["item_3"]
        assert result.inventory.restored_listing_ids == ["lst_eggs"]

        async with uow_factory() as uow:
            assert (await uow.listings.get_by_id("lst_eggs")).quantity == 6
            assert (await uow.orders.get_by_id("ord_1")).status == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_only_the_buyer_cancels_an_order(self, uow_factory, lifecycle):
        await _seed_single_item(uow_factory)

        async with uow_factory() as uow:
            with pytest.raises(NotAuthorizedError):
                await lifecycle.cancel_order(uow, "ord_1", VENDOR)


class TestExpiry:

    @pytest.mark.asyncio
    async def test_expire_overdue_items(self, uow_factory, lifecycle, clock, queue):
        async with uow_factory() as uow:
            await seed_parties(uow)
            await seed_listing(uow, quantity=0)
            await seed_order(
                uow, [("item_1", "lst_eggs", 1, 1000)],
                expires_at=T0 + timedelta(hours=24),
            )
            await seed_order(
                uow, [("item_2", "lst_eggs", 1, 1000)],
                order_id="ord_2",
                expires_at=T0 + timedelta(hours=24),
            )
            await seed_order(
                uow, [("item_3", "lst_eggs", 1, 1000)],
                order_id="ord_3",
                expires_at=T0 + timedelta(hours=72),
            )
        await _confirm(uow_factory, lifecycle, "item_2")
        clock.advance(hours=25)

        summary = await lifecycle.expire_overdue(uow_factory, now=clock.now)

        # item_2 was confirmed in time; item_3 is not due yet
        assert summary.expired == 1
        assert summary.expired_item_ids == ["item_1"]
        assert summary.conflicts == 0 and summary.failed == 0

        async with uow_factory() as uow:
            item = await uow.order_items.get_by_id("item_1")
            assert item.status == ItemStatus.EXPIRED
            assert item.cancelled_by == "system"
            assert item.refund_amount_cents == 1080
            assert (await uow.listings.get_by_id("lst_eggs")).quantity == 1
            assert (await uow.orders.get_by_id("ord_1")).status == OrderStatus.CANCELLED

        assert "refund:item_1" in queue.names

        again = await lifecycle.expire_overdue(uow_factory, now=clock.now)
        assert again.expired == 0

    @pytest.mark.asyncio
    async def test_buyers_cannot_expire_items(self, uow_factory, lifecycle):
        await _seed_single_item(uow_factory)

        async with uow_factory() as uow:
            with pytest.raises(NotAuthorizedError):
                await lifecycle.expire(uow, "item_1", BUYER)


class TestExternalPayment:

    @pytest.mark.asyncio
    async def test_confirm_external_payment_charges_the_ledger(self, uow_factory, lifecycle, ledger):
        await _seed_single_item(uow_factory, payment_method=PaymentMethod.CASH)

        async with uow_factory() as uow:
            result = await lifecycle.confirm_external_payment(uow, "ord_1", VENDOR)

        assert result.fee_cents == 115
        assert result.ledger_entry.order_id == "ord_1"
        assert result.payment_required is False

        async with uow_factory() as uow:
            assert (await ledger.balance(uow, VENDOR_ID)).balance_cents == 115
            assert (await uow.orders.get_by_id("ord_1")).status == OrderStatus.PAID

    @pytest.mark.asyncio
    async def test_external_payment_is_charged_once(self, uow_factory, lifecycle, ledger):
        await _seed_single_item(uow_factory, payment_method=PaymentMethod.CASH)
        async with uow_factory() as uow:
            await lifecycle.confirm_external_payment(uow, "ord_1", VENDOR)

        with pytest.raises(ConflictError):
            async with uow_factory() as uow:
                await lifecycle.confirm_external_payment(uow, "ord_1", VENDOR)

        async with uow_factory() as uow:
            assert (await ledger.balance(uow, VENDOR_ID)).balance_cents == 115

    @pytest.mark.asyncio
    async def test_large_balance_notifies_vendor(self, uow_factory, lifecycle, queue):
        async with uow_factory() as uow:
            await seed_parties(uow)
            await seed_listing(uow)
            await seed_order(uow, [("item_1", "lst_eggs", 1, 50000)], payment_method=PaymentMethod.PAYPAL)

        async with uow_factory() as uow:
            result = await lifecycle.confirm_external_payment(uow, "ord_1", VENDOR)
            inbox = await uow.notifications.list_for_user(VENDOR_USER_ID)

        assert result.payment_required is True
        assert [n.type for n in inbox] == [NotificationType.FEE_BALANCE_DUE]
        assert _side_effects(queue, "deliver:email:") == [f"deliver:email:{inbox[0].id}"]

    @pytest.mark.asyncio
    async def test_processor_orders_are_rejected(self, uow_factory, lifecycle):
        await _seed_single_item(uow_factory)

        async with uow_factory() as uow:
            with pytest.raises(InvalidInputError):
                await lifecycle.confirm_external_payment(uow, "ord_1", VENDOR)

    @pytest.mark.asyncio
    async def test_only_vendors_on_the_order_confirm_payment(self, uow_factory, lifecycle):
        await _seed_single_item(uow_factory, payment_method=PaymentMethod.CASH)

        async with uow_factory() as uow:
            with pytest.raises(NotAuthorizedError):
                await lifecycle.confirm_external_payment(uow, "ord_1", BUYER)
            with pytest.raises(NotAuthorizedError):
                await lifecycle.confirm_external_payment(uow, "ord_1", Actor("usr_nobody", ActorRole.VENDOR))
