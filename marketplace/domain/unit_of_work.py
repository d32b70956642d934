"""
Unit of Work pattern for transaction management.

The Unit of Work pattern ensures:
1. A lifecycle transition and all of its effects (status, refund figures,
   inventory, ledger, payout rows, notification rows) commit together
2. Atomic commit (all or nothing)
3. Post-commit hooks run AFTER successful commit (side-effect enqueueing:
   notification delivery, processor refunds and transfers)
4. Proper resource cleanup

Nothing registered as a hook is delivered for a rolled-back transition.
"""

import inspect
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, List

from sqlalchemy.ext.asyncio import AsyncSession

if TYPE_CHECKING:
    from marketplace.core.interfaces import (
        IFeeLedgerRepository,
        IListingRepository,
        INotificationRepository,
        IOrderItemRepository,
        IOrderRepository,
        IPayoutRepository,
        IUserRepository,
        IVendorRepository,
        IWebhookEventRepository,
    )

logger = logging.getLogger(__name__)


class AbstractUnitOfWork(ABC):
    """
    Abstract Unit of Work for transaction management.

    Provides:
    - Transaction boundaries (commit/rollback)
    - Repository access
    - Post-commit hooks for side effects
    """

    orders: 'IOrderRepository'
    order_items: 'IOrderItemRepository'
    listings: 'IListingRepository'
    vendors: 'IVendorRepository'
    users: 'IUserRepository'
    fee_ledger: 'IFeeLedgerRepository'
    payouts: 'IPayoutRepository'
    notifications: 'INotificationRepository'
    webhook_events: 'IWebhookEventRepository'

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """
        Exit async context.

        On success: commits and runs post-commit hooks
        On exception: rolls back (no hooks run)
        """
        try:
            if exc_type is None:
                await self.commit()
            else:
                await self.rollback()
        finally:
            await self.close()

    @abstractmethod
    async def commit(self):
        """Commit transaction and execute post-commit hooks"""
        pass

    @abstractmethod
    async def rollback(self):
        pass

    @abstractmethod
    async def close(self):
        pass

    @abstractmethod
    def add_post_commit_hook(self, hook: Callable):
        """
        Register a post-commit hook.

        Hook will be called AFTER successful commit. It may be a plain
        callable or return an awaitable.
        """
        pass


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    """SQLAlchemy implementation of Unit of Work."""

    def __init__(self, session: AsyncSession):
        self._session = session
        self._post_commit_hooks: List[Callable] = []

        # Import here to avoid circular dependencies
        from marketplace.repositories.fee_ledger_repository import FeeLedgerRepository
        from marketplace.repositories.listing_repository import ListingRepository
        from marketplace.repositories.notification_repository import NotificationRepository
        from marketplace.repositories.order_repository import OrderItemRepository, OrderRepository
        from marketplace.repositories.payout_repository import PayoutRepository
        from marketplace.repositories.user_repository import UserRepository
        from marketplace.repositories.vendor_repository import VendorRepository
        from marketplace.repositories.webhook_event_repository import WebhookEventRepository

        self.orders = OrderRepository(session)
        self.order_items = OrderItemRepository(session)
        self.listings = ListingRepository(session)
        self.vendors = VendorRepository(session)
        self.users = UserRepository(session)
        self.fee_ledger = FeeLedgerRepository(session)
        self.payouts = PayoutRepository(session)
        self.notifications = NotificationRepository(session)
        self.webhook_events = WebhookEventRepository(session)

    @property
    def session(self) -> AsyncSession:
        return self._session

    async def commit(self):
        """
        Commit transaction and execute post-commit hooks.

        Hooks run in registration order. Hook failures are logged but don't
        affect the transaction, which is already committed.
        """
        try:
            await self._session.commit()
            logger.debug(f"✅ Transaction committed, running {len(self._post_commit_hooks)} post-commit hooks")

            for hook in self._post_commit_hooks:
                try:
                    result = hook()
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"❌ Post-commit hook failed: {e}", exc_info=True)

        finally:
            self._post_commit_hooks.clear()

    async def rollback(self):
        """Discard pending changes; registered hooks never run."""
        try:
            await self._session.rollback()
            logger.debug("↩️  Transaction rolled back")
        finally:
            self._post_commit_hooks.clear()

    async def close(self):
        await self._session.close()

    def add_post_commit_hook(self, hook: Callable):
        """
        Add a post-commit hook.

        Example:
            uow.add_post_commit_hook(
                lambda: task_queue.enqueue("refund", make_refund)
            )
        """
        self._post_commit_hooks.append(hook)


def get_unit_of_work(session: AsyncSession) -> AbstractUnitOfWork:
    """
    Factory function for Unit of Work.

    Usage in FastAPI:
        async def endpoint(db: AsyncSession = Depends(get_db_session)):
            async with get_unit_of_work(db) as uow:
                await lifecycle.confirm(uow, item_id, actor)
                # Commit happens on context exit
    """
    return SQLAlchemyUnitOfWork(session)
