"""Processed webhook event repository (idempotency on processor event id)"""

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.interfaces import IWebhookEventRepository
from marketplace.db.models import ProcessedWebhookEventModel

logger = logging.getLogger(__name__)


class WebhookEventRepository(IWebhookEventRepository):

    def __init__(self, db_session: AsyncSession):
        self._db = db_session

    async def record(self, event_id: str, event_type: str) -> bool:
        existing = await self._db.execute(
            select(ProcessedWebhookEventModel.event_id)
            .where(ProcessedWebhookEventModel.event_id == event_id)
        )
        if existing.scalar_one_or_none() is not None:
            return False

        # A concurrent delivery of the same event loses on the primary key
        try:
            self._db.add(ProcessedWebhookEventModel(event_id=event_id, event_type=event_type))
            await self._db.flush()
        except IntegrityError:
            # Nothing else has been written for this event yet
            await self._db.rollback()
            logger.info(f"Event {event_id} recorded concurrently, treating as duplicate")
            return False
        return True
