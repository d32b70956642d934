"""
Payment Webhook Service - applies payment processor events.

The processor delivers events at least once. Two failure classes are kept
apart:

- Signature verification failures are terminal: the caller answers 400 and
  the processor does not retry.
- Handler failures propagate: the Unit of Work rolls back (including the
  processed-event marker) and the caller answers 500 so the processor
  retries with backoff.

Idempotency is keyed by event id. The marker row is written in the same
transaction as the event's effects, so an event is either fully applied
and marked, or neither.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from marketplace.application.fee_ledger_service import VendorFeeLedger
from marketplace.application.notification_service import NotificationDispatcher
from marketplace.config import DEV_SECRET_PLACEHOLDER, Settings, settings as default_settings
from marketplace.domain.entities import (
    InvalidInputError,
    OrderNotFoundError,
    SignatureVerificationError,
    VendorNotFoundError,
)
from marketplace.domain.notification_types import NotificationPayload, NotificationType
from marketplace.domain.unit_of_work import AbstractUnitOfWork
from marketplace.domain.value_objects import OrderStatus, PayoutStatus

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
VENDOR_FEE_PAYMENT = "vendor_fee_payment"


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    status: str  # processed | duplicate | ignored

    def to_dict(self) -> Dict[str, str]:
        return {"event_id": self.event_id, "event_type": self.event_type, "status": self.status}


def compute_signature(payload: bytes, secret: str) -> str:
    """Header value the processor sends for a payload: sha256=<hex hmac>."""
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


class PaymentWebhookService:
    """Verifies and applies payment processor webhook events."""

    def __init__(
        self,
        ledger: VendorFeeLedger,
        notifier: NotificationDispatcher,
        settings: Settings = default_settings
    ):
        self._ledger = ledger
        self._notifier = notifier
        self._settings = settings
        self._handlers: Dict[str, Callable] = {
            "checkout.session.completed": self._on_checkout_completed,
            "account.updated": self._on_account_updated,
            "transfer.created": self._on_transfer_created,
            "transfer.reversed": self._on_transfer_reversed,
        }

    def verify_signature(self, payload: bytes, signature_header: Optional[str]) -> None:
        """
        Check the X-Signature-256 header against the raw request body.

        Raises:
            SignatureVerificationError: If the header is missing, malformed or wrong
        """
        secret = self._settings.payment_webhook_secret
        if not secret:
            logger.error("PAYMENT_WEBHOOK_SECRET not configured - cannot validate webhook signature")
            raise SignatureVerificationError("Webhook secret not configured")

        if secret == DEV_SECRET_PLACEHOLDER:
            logger.warning("⚠️  Validating payment webhooks with the development placeholder secret")

        # Always compare, even for a malformed header, to keep timing uniform
        provided = signature_header or ""
        expected = compute_signature(payload, secret)
        if not provided.startswith(SIGNATURE_PREFIX) or not hmac.compare_digest(expected, provided):
            logger.warning("❌ Invalid payment webhook signature")
            raise SignatureVerificationError("Invalid signature")

    async def handle_event(self, uow: AbstractUnitOfWork, event: Dict[str, Any]) -> WebhookResult:
        """
        Apply one verified event.

        Args:
            uow: Unit of Work; committed by the caller
            event: Parsed event body ({"id", "type", "data": {"object": ...}})

        Returns:
            WebhookResult with status processed, duplicate or ignored

        Raises:
            InvalidInputError: If the event has no id or type
            DomainError: If a referenced order/vendor is missing (processor retries)
        """
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise InvalidInputError("Webhook event must have an id and a type")

        event_id = event["id"]
        event_type = event["type"]

        if not await uow.webhook_events.record(event_id, event_type):
            logger.info(f"Webhook event {event_id} ({event_type}) already processed")
            return WebhookResult(event_id, event_type, "duplicate")

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug(f"Ignoring webhook event {event_id} of type {event_type}")
            return WebhookResult(event_id, event_type, "ignored")

        obj = (event.get("data") or {}).get("object") or {}
        await handler(uow, event_id, obj)
        logger.info(f"✅ Webhook event {event_id} ({event_type}) processed")
        return WebhookResult(event_id, event_type, "processed")

    # ── Handlers ────────────────────────────────────────────────────

    async def _on_checkout_completed(self, uow: AbstractUnitOfWork, event_id: str, obj: Dict[str, Any]) -> None:
        metadata = obj.get("metadata") or {}

        if metadata.get("kind") == VENDOR_FEE_PAYMENT:
            vendor_id = metadata.get("vendor_id")
            if not vendor_id:
                raise InvalidInputError(f"Fee payment event {event_id} has no vendor_id")
            amount = obj.get("amount_total")
            await self._ledger.record_payment(uow, vendor_id, amount, obj.get("id") or event_id)
            return

        order_id = metadata.get("order_id")
        if not order_id:
            raise InvalidInputError(f"Checkout event {event_id} has no order_id")

        order = await uow.orders.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        if order.status != OrderStatus.PENDING:
            logger.info(f"Order {order_id} already {order.status.value}, checkout event {event_id} changes nothing")
            return

        await uow.orders.set_status(order.id, OrderStatus.PAID, payment_reference=obj.get("payment_intent"))
        logger.info(f"💳 Order {order.id} paid ({order.total_cents} cents)")

        for vendor_id in order.vendor_ids():
            vendor = await uow.vendors.get_by_id(vendor_id)
            if vendor is None:
                raise VendorNotFoundError(vendor_id)
            items = order.items_for_vendor(vendor_id)
            await self._notifier.dispatch(
                uow,
                vendor.user_id,
                NotificationType.NEW_PAID_ORDER,
                NotificationPayload(
                    order_number=order.order_number,
                    vendor_name=vendor.business_name,
                    amount_cents=sum(item.subtotal_cents for item in items),
                    order_id=order.id,
                    vertical=order.vertical,
                )
            )

    async def _on_account_updated(self, uow: AbstractUnitOfWork, event_id: str, obj: Dict[str, Any]) -> None:
        account_id = obj.get("id")
        vendor = await uow.vendors.get_by_payment_account_id(account_id) if account_id else None
        if vendor is None:
            # Accounts created outside the marketplace are not ours to track
            logger.info(f"No vendor for payment account {account_id} (event {event_id})")
            return

        enabled = bool(obj.get("charges_enabled")) and bool(obj.get("payouts_enabled", True))
        if enabled != vendor.payments_enabled:
            await uow.vendors.set_payments_enabled(vendor.id, enabled)
            logger.info(f"🏦 Vendor {vendor.id} payments {'enabled' if enabled else 'disabled'}")

    async def _on_transfer_created(self, uow: AbstractUnitOfWork, event_id: str, obj: Dict[str, Any]) -> None:
        payout_id = (obj.get("metadata") or {}).get("payout_id")
        if not payout_id:
            logger.info(f"Transfer {obj.get('id')} has no payout_id (event {event_id})")
            return

        payout = await uow.payouts.get_by_id(payout_id)
        if payout is None:
            logger.warning(f"⚠️  Transfer {obj.get('id')} references unknown payout {payout_id}")
            return

        await uow.payouts.update_status(payout.id, PayoutStatus.COMPLETED, transfer_reference=obj.get("id"))

        vendor = await uow.vendors.get_by_id(payout.vendor_id)
        order = await uow.orders.get_by_id(payout.order_id)
        if vendor is not None:
            await self._notifier.dispatch(
                uow,
                vendor.user_id,
                NotificationType.PAYOUT_PROCESSED,
                NotificationPayload(
                    order_number=order.order_number if order else None,
                    vendor_name=vendor.business_name,
                    amount_cents=payout.amount_cents,
                    order_id=payout.order_id,
                    order_item_id=payout.order_item_id,
                    vertical=order.vertical if order else None,
                )
            )

    async def _on_transfer_reversed(self, uow: AbstractUnitOfWork, event_id: str, obj: Dict[str, Any]) -> None:
        payout_id = (obj.get("metadata") or {}).get("payout_id")
        if not payout_id:
            return
        if await uow.payouts.update_status(payout_id, PayoutStatus.FAILED, transfer_reference=obj.get("id")):
            logger.warning(f"⚠️  Transfer {obj.get('id')} for payout {payout_id} was reversed")
