"""Payment processor webhook endpoint"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.api.deps import get_webhook_service
from marketplace.application.payment_webhook_service import PaymentWebhookService
from marketplace.db.connection import get_db_session
from marketplace.domain.entities import DomainError, InvalidInputError
from marketplace.domain.unit_of_work import SQLAlchemyUnitOfWork

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/payments")
async def handle_payment_webhook(
    request: Request,
    service: PaymentWebhookService = Depends(get_webhook_service),
    db: AsyncSession = Depends(get_db_session)
):
    """
    Receive a payment processor event.

    Responses tell the processor whether to retry:
    - 400: bad signature or unparseable body (terminal, not retried)
    - 500: the event could not be applied (retried with backoff)
    - 200: applied, duplicate, or ignored
    """
    raw_body = await request.body()

    # Raises SignatureVerificationError -> 400
    service.verify_signature(raw_body, request.headers.get("X-Signature-256"))

    try:
        event = json.loads(raw_body)
    except ValueError:
        logger.warning("Invalid payment webhook payload: not JSON")
        raise InvalidInputError("Webhook body is not valid JSON")

    try:
        async with SQLAlchemyUnitOfWork(db) as uow:
            result = await service.handle_event(uow, event)
    except InvalidInputError:
        raise
    except DomainError as e:
        logger.error(f"❌ Payment webhook {event.get('id')} ({event.get('type')}) failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Event could not be processed"
        )

    return result.to_dict()
