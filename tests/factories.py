"""
Test data builders and fakes shared by the test modules.
"""
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from marketplace.domain.entities import Listing, Order, OrderItem, UserContact, Vendor
from marketplace.domain.fees import FeeSchedule, buyer_fee
from marketplace.domain.value_objects import PaymentMethod

T0 = datetime(2026, 5, 2, 15, 0, tzinfo=timezone.utc)

BUYER_ID = "usr_buyer"
VENDOR_USER_ID = "usr_vendor"
VENDOR_ID = "ven_sunny"
PAYMENT_ACCOUNT_ID = "acct_sunny"

# (item_id, listing_id, quantity, unit_price_cents)
Line = Tuple[str, str, int, int]


class FakeClock:
    """Settable clock; every call can advance by `step` to keep ledger rows ordered."""

    def __init__(self, start: datetime = T0, step: timedelta = timedelta(0)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingQueue:
    """Stands in for TaskQueue: records enqueued side effects, runs them on demand."""

    def __init__(self):
        self.tasks = []

    def enqueue(self, name, factory) -> bool:
        self.tasks.append((name, factory))
        return True

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self.tasks]

    async def run_all(self) -> None:
        tasks, self.tasks = self.tasks, []
        for _, factory in tasks:
            await factory()


async def seed_parties(
    uow,
    payment_account_id: Optional[str] = PAYMENT_ACCOUNT_ID,
    buyer_sms: bool = False
) -> None:
    await uow.users.save(UserContact(
        id=BUYER_ID,
        display_name="Jamie Rivera",
        email="jamie@example.com",
        phone="+15555550100",
        sms_order_updates=buyer_sms,
    ))
    await uow.users.save(UserContact(
        id=VENDOR_USER_ID,
        display_name="Pat Okafor",
        email="pat@sunnyacres.example",
    ))
    await uow.vendors.save(Vendor(
        id=VENDOR_ID,
        user_id=VENDOR_USER_ID,
        business_name="Sunny Acres Farm",
        payment_account_id=payment_account_id,
        payments_enabled=payment_account_id is not None,
    ))


async def seed_listing(uow, listing_id: str = "lst_eggs", quantity: Optional[int] = 10, title: str = "Dozen eggs") -> Listing:
    listing = Listing(id=listing_id, vendor_id=VENDOR_ID, title=title, quantity=quantity)
    await uow.listings.save(listing)
    return listing


async def seed_order(
    uow,
    lines: List[Line],
    order_id: str = "ord_1",
    created_at: datetime = T0,
    payment_method: PaymentMethod = PaymentMethod.PROCESSOR,
    payment_reference: Optional[str] = "pi_123",
    tip_cents: int = 0,
    tip_on_platform_fee_cents: int = 0,
    expires_at: Optional[datetime] = None,
    schedule: FeeSchedule = FeeSchedule(),
) -> Order:
    items = [
        OrderItem.create(
            id=item_id,
            order_id=order_id,
            listing_id=listing_id,
            vendor_id=VENDOR_ID,
            quantity=quantity,
            unit_price_cents=unit_price,
            created_at=created_at,
            expires_at=expires_at,
        )
        for item_id, listing_id, quantity, unit_price in lines
    ]
    subtotal = sum(item.subtotal_cents for item in items)
    fee = buyer_fee(subtotal, schedule.buyer_flat_fee_cents, schedule.buyer_fee_percent)
    order = Order(
        id=order_id,
        order_number=f"FM-{order_id.split('_')[-1].upper()}",
        buyer_id=BUYER_ID,
        subtotal_cents=subtotal,
        buyer_fee_cents=fee,
        total_cents=subtotal + fee + tip_cents,
        payment_method=payment_method,
        payment_reference=payment_reference if payment_method == PaymentMethod.PROCESSOR else None,
        tip_cents=tip_cents,
        tip_on_platform_fee_cents=tip_on_platform_fee_cents,
        vertical="farmers_market",
        created_at=created_at,
        items=items,
    )
    await uow.orders.save(order)
    return order


class FakePaymentClient:
    """Records processor calls made by queued refund and transfer tasks."""

    def __init__(self):
        self.refunds = []
        self.transfers = []

    async def create_refund(self, payment_reference, amount_cents, idempotency_key, metadata=None):
        self.refunds.append({
            "payment_reference": payment_reference,
            "amount_cents": amount_cents,
            "idempotency_key": idempotency_key,
            "metadata": metadata,
        })

    async def create_transfer(self, destination_account, amount_cents, idempotency_key,
                              transfer_group=None, metadata=None):
        self.transfers.append({
            "destination": destination_account,
            "amount_cents": amount_cents,
            "idempotency_key": idempotency_key,
            "transfer_group": transfer_group,
            "metadata": metadata,
        })
