"""In-app notification inbox"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.api.deps import get_current_user_id, get_notification_dispatcher
from marketplace.application.notification_service import NotificationDispatcher
from marketplace.db.connection import get_db_session
from marketplace.domain.entities import Notification
from marketplace.domain.unit_of_work import SQLAlchemyUnitOfWork

logger = logging.getLogger(__name__)

router = APIRouter()


class NotificationResponse(BaseModel):
    id: str
    type: str
    urgency: str
    title: str
    message: str
    action_url: str
    channels: List[str]
    data: Dict[str, Any]
    created_at: datetime
    read_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, notification: Notification) -> "NotificationResponse":
        return cls(
            id=notification.id,
            type=notification.type.value,
            urgency=notification.urgency.value,
            title=notification.title,
            message=notification.message,
            action_url=notification.action_url,
            channels=[channel.value for channel in notification.channels],
            data=notification.data,
            created_at=notification.created_at,
            read_at=notification.read_at,
        )


class NotificationListResponse(BaseModel):
    notifications: List[NotificationResponse]
    unread_count: int


@router.get("/notifications", response_model=NotificationListResponse)
async def list_notifications(
    limit: int = Query(50, ge=1, le=200),
    unread_only: bool = False,
    user_id: str = Depends(get_current_user_id),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
    db: AsyncSession = Depends(get_db_session)
):
    """Newest first, with the caller's unread count."""
    async with SQLAlchemyUnitOfWork(db) as uow:
        notifications = await notifier.list_for_user(uow, user_id, limit=limit, unread_only=unread_only)
        unread = await notifier.unread_count(uow, user_id)

    return NotificationListResponse(
        notifications=[NotificationResponse.from_entity(n) for n in notifications],
        unread_count=unread,
    )


@router.post("/notifications/{notification_id}/read", response_model=NotificationResponse)
async def mark_notification_read(
    notification_id: str,
    user_id: str = Depends(get_current_user_id),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
    db: AsyncSession = Depends(get_db_session)
):
    async with SQLAlchemyUnitOfWork(db) as uow:
        notification = await notifier.mark_read(uow, notification_id, user_id)
    return NotificationResponse.from_entity(notification)
