"""
Core interfaces for the settlement core's storage backend.

The application services depend only on these interfaces. Implementations
must express every mutation the services rely on for correctness as a
conditional or atomic storage operation: the core never assumes it has
exclusive access to a row.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, List, Optional

if TYPE_CHECKING:
    from marketplace.domain.entities import (
        Listing,
        Notification,
        Order,
        OrderItem,
        UserContact,
        Vendor,
        VendorFeeLedgerEntry,
        VendorPayout,
    )
    from marketplace.domain.value_objects import ItemStatus, OrderStatus, PayoutKind, PayoutStatus


class IOrderRepository(ABC):
    """Interface for order aggregates"""

    @abstractmethod
    async def save(self, order: 'Order') -> 'Order':
        """Insert an order together with its items."""
        pass

    @abstractmethod
    async def get_by_id(self, order_id: str) -> Optional['Order']:
        """Get an order with its items loaded (items in checkout order)."""
        pass

    @abstractmethod
    async def set_status(
        self,
        order_id: str,
        status: 'OrderStatus',
        payment_reference: Optional[str] = None
    ) -> None:
        pass


class IOrderItemRepository(ABC):
    """
    Interface for order items.

    transition_status and claim_inventory_restoration are the storage-level
    guards that serialize concurrent triggers on the same item.
    """

    @abstractmethod
    async def get_by_id(self, item_id: str) -> Optional['OrderItem']:
        pass

    @abstractmethod
    async def list_for_order(self, order_id: str) -> List['OrderItem']:
        pass

    @abstractmethod
    async def transition_status(
        self,
        item_id: str,
        expected: 'ItemStatus',
        new: 'ItemStatus',
        **fields: Any
    ) -> bool:
        """
        Set status to `new` only if the stored status is still `expected`.

        Args:
            item_id: Order item identifier
            expected: Status the caller read before deciding on the transition
            new: Target status
            **fields: Additional columns written in the same UPDATE

        Returns:
            True if the row was updated, False if the guard did not match
        """
        pass

    @abstractmethod
    async def claim_inventory_restoration(self, item_ids: List[str], at: datetime) -> int:
        """
        Mark items as restored unless already marked.

        Returns:
            Number of items claimed (fewer than requested means a conflict)
        """
        pass

    @abstractmethod
    async def release_inventory_restoration(self, item_ids: List[str]) -> None:
        """Undo a claim whose restore could not be applied."""
        pass

    @abstractmethod
    async def list_expired_pending(self, now: datetime, limit: int) -> List['OrderItem']:
        """Pending items whose expires_at is at or before `now`, oldest first."""
        pass


class IListingRepository(ABC):

    @abstractmethod
    async def get_by_id(self, listing_id: str) -> Optional['Listing']:
        pass

    @abstractmethod
    async def save(self, listing: 'Listing') -> 'Listing':
        pass

    @abstractmethod
    async def exists(self, listing_id: str) -> bool:
        pass

    @abstractmethod
    async def increment_quantity(self, listing_id: str, quantity: int) -> int:
        """
        Atomically add `quantity` to a managed-inventory listing.

        Returns:
            Rows updated: 0 when the listing is unlimited or missing
        """
        pass


class IVendorRepository(ABC):

    @abstractmethod
    async def get_by_id(self, vendor_id: str) -> Optional['Vendor']:
        pass

    @abstractmethod
    async def get_by_user_id(self, user_id: str) -> Optional['Vendor']:
        pass

    @abstractmethod
    async def get_by_payment_account_id(self, account_id: str) -> Optional['Vendor']:
        pass

    @abstractmethod
    async def save(self, vendor: 'Vendor') -> 'Vendor':
        pass

    @abstractmethod
    async def set_payments_enabled(self, vendor_id: str, enabled: bool) -> None:
        pass


class IUserRepository(ABC):

    @abstractmethod
    async def get_by_id(self, user_id: str) -> Optional['UserContact']:
        pass

    @abstractmethod
    async def save(self, user: 'UserContact') -> 'UserContact':
        pass


class IFeeLedgerRepository(ABC):
    """
    Interface for the append-only vendor fee ledger.

    Amounts are never updated; only the paid flag changes.
    """

    @abstractmethod
    async def add(self, entry: 'VendorFeeLedgerEntry') -> 'VendorFeeLedgerEntry':
        pass

    @abstractmethod
    async def list_unpaid(self, vendor_id: str) -> List['VendorFeeLedgerEntry']:
        """Unpaid entries, oldest first."""
        pass

    @abstractmethod
    async def mark_paid(self, entry_ids: List[str], at: datetime) -> int:
        pass

    @abstractmethod
    async def list_recent(self, vendor_id: str, limit: int = 20) -> List['VendorFeeLedgerEntry']:
        """Newest first."""
        pass

    @abstractmethod
    async def has_charge_for_order(self, vendor_id: str, order_id: str) -> bool:
        pass


class IPayoutRepository(ABC):

    @abstractmethod
    async def add(self, payout: 'VendorPayout') -> 'VendorPayout':
        pass

    @abstractmethod
    async def get_by_id(self, payout_id: str) -> Optional['VendorPayout']:
        pass

    @abstractmethod
    async def get_for_item(self, order_item_id: str, kind: 'PayoutKind') -> Optional['VendorPayout']:
        pass

    @abstractmethod
    async def list_for_vendor(self, vendor_id: str, limit: int = 20) -> List['VendorPayout']:
        pass

    @abstractmethod
    async def update_status(
        self,
        payout_id: str,
        status: 'PayoutStatus',
        transfer_reference: Optional[str] = None
    ) -> bool:
        """Returns False when the payout does not exist."""
        pass


class INotificationRepository(ABC):

    @abstractmethod
    async def add(self, notification: 'Notification') -> 'Notification':
        pass

    @abstractmethod
    async def get_by_id(self, notification_id: str) -> Optional['Notification']:
        pass

    @abstractmethod
    async def list_for_user(
        self,
        user_id: str,
        limit: int = 50,
        unread_only: bool = False
    ) -> List['Notification']:
        """Newest first."""
        pass

    @abstractmethod
    async def count_unread(self, user_id: str) -> int:
        pass

    @abstractmethod
    async def mark_read(self, notification_id: str, user_id: str, at: datetime) -> bool:
        """Set read_at once. Returns False if missing, not owned, or already read."""
        pass


class IWebhookEventRepository(ABC):

    @abstractmethod
    async def record(self, event_id: str, event_type: str) -> bool:
        """
        Record a processed processor event.

        Returns:
            True if recorded, False if the event id was already processed
        """
        pass
