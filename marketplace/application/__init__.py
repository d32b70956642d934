"""
Application layer - Use cases and business logic orchestration.

This layer contains:
- OrderLifecycle (the order item state machine and its effects)
- InventoryReconciler, VendorFeeLedger, NotificationDispatcher
- Payment processor webhook handling

No direct dependencies on frameworks (FastAPI, etc.)
"""
