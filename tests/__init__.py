"""
Tests for the pickup marketplace settlement service

Tests are organized by component:
- test_fees.py: FeeCalculator scenarios and properties
- test_lifecycle_state_machine.py: transition table and notification resolution
- test_notification_registry.py / test_notification_dispatcher.py: registry and dispatch
- test_inventory.py, test_fee_ledger.py, test_order_lifecycle.py: services against SQLite
- test_task_queue.py, test_payment_webhooks.py, test_api.py: runtime and HTTP surface
"""
