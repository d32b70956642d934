"""
Pytest configuration and shared fixtures.
"""
import pytest
import pytest_asyncio

from marketplace.application.fee_ledger_service import VendorFeeLedger
from marketplace.application.inventory_service import InventoryReconciler
from marketplace.application.notification_service import NotificationDispatcher
from marketplace.application.order_lifecycle_service import OrderLifecycle
from marketplace.db.connection import close_db, init_db
from marketplace.domain.fees import FeeSchedule
from marketplace.infrastructure.expiry_scheduler import new_unit_of_work
from marketplace.infrastructure.task_queue import reset_task_queue

from tests.factories import FakeClock, FakePaymentClient, RecordingQueue


@pytest_asyncio.fixture(scope="function", autouse=True)
async def clean_database(tmp_path):
    """
    Fresh SQLite database for each test.

    Every test gets its own file under tmp_path, so nothing leaks between
    tests and no cleanup of the working directory is needed.
    """
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'marketplace_test.db'}")
    reset_task_queue()

    yield

    await close_db()
    reset_task_queue()


@pytest.fixture
def uow_factory():
    return new_unit_of_work


@pytest.fixture
def schedule():
    return FeeSchedule()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def payments():
    return FakePaymentClient()


@pytest.fixture
def notifier(queue, clock):
    return NotificationDispatcher(task_queue=queue, clock=clock)


@pytest.fixture
def ledger(schedule, clock):
    return VendorFeeLedger(schedule, clock=clock)


@pytest.fixture
def lifecycle(schedule, clock, queue, notifier, ledger, payments):
    return OrderLifecycle(
        schedule=schedule,
        inventory=InventoryReconciler(clock=clock),
        ledger=ledger,
        notifier=notifier,
        task_queue=queue,
        payment_client_factory=lambda http_client: payments,
        require_payment_account=True,
        clock=clock,
    )
