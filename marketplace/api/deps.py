"""
Shared FastAPI dependencies: caller identity and service wiring.

Authentication happens upstream; the gateway forwards the authenticated
user id in X-User-Id. Whether that user acts as buyer or vendor follows
from the route, and ownership is checked by the services.
"""
import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from marketplace.application.fee_ledger_service import VendorFeeLedger
from marketplace.application.notification_service import NotificationDispatcher
from marketplace.application.order_lifecycle_service import OrderLifecycle, build_order_lifecycle
from marketplace.application.payment_webhook_service import PaymentWebhookService
from marketplace.config import settings
from marketplace.domain.fees import FeeSchedule
from marketplace.domain.value_objects import Actor, ActorRole

logger = logging.getLogger(__name__)


async def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """
    Read the authenticated user id forwarded by the gateway.

    Raises:
        HTTPException: 401 if the header is missing
    """
    if not x_user_id or not x_user_id.strip():
        logger.warning("API request rejected: missing X-User-Id header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header"
        )
    return x_user_id.strip()


async def get_buyer(user_id: str = Depends(get_current_user_id)) -> Actor:
    return Actor(user_id=user_id, role=ActorRole.BUYER)


async def get_vendor(user_id: str = Depends(get_current_user_id)) -> Actor:
    return Actor(user_id=user_id, role=ActorRole.VENDOR)


async def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """
    Check the cron bearer token. An empty CRON_SECRET (development) accepts any caller.

    Raises:
        HTTPException: 401 if the token is missing or wrong
    """
    if not settings.cron_secret:
        return

    token = authorization[7:].strip() if authorization and authorization.startswith("Bearer ") else ""
    if not hmac.compare_digest(token, settings.cron_secret):
        logger.warning("❌ Cron request rejected: invalid bearer token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret",
            headers={"WWW-Authenticate": "Bearer"}
        )


def get_fee_schedule() -> FeeSchedule:
    return FeeSchedule.from_settings(settings)


def get_order_lifecycle(schedule: FeeSchedule = Depends(get_fee_schedule)) -> OrderLifecycle:
    return build_order_lifecycle(schedule=schedule)


def get_fee_ledger(schedule: FeeSchedule = Depends(get_fee_schedule)) -> VendorFeeLedger:
    return VendorFeeLedger(schedule)


def get_notification_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher()


def get_webhook_service(
    ledger: VendorFeeLedger = Depends(get_fee_ledger),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher)
) -> PaymentWebhookService:
    return PaymentWebhookService(ledger, notifier)
