"""Core module containing repository interfaces."""

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

__all__ = [
    "IFeeLedgerRepository",
    "IListingRepository",
    "INotificationRepository",
    "IOrderItemRepository",
    "IOrderRepository",
    "IPayoutRepository",
    "IUserRepository",
    "IVendorRepository",
    "IWebhookEventRepository",
]
