"""Notification repository - rows are created once and only ever marked read"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.interfaces import INotificationRepository
from marketplace.db.models import NotificationModel
from marketplace.domain.entities import Notification
from marketplace.domain.notification_types import Audience, Channel, NotificationType, Urgency


class NotificationRepository(INotificationRepository):

    def __init__(self, db_session: AsyncSession):
        self._db = db_session

    async def add(self, notification: Notification) -> Notification:
        self._db.add(NotificationModel(
            id=notification.id,
            user_id=notification.user_id,
            type=notification.type.value,
            urgency=notification.urgency.value,
            audience=notification.audience.value,
            title=notification.title,
            message=notification.message,
            action_url=notification.action_url,
            channels=[channel.value for channel in notification.channels],
            data=notification.data,
            created_at=notification.created_at,
            read_at=notification.read_at,
        ))
        await self._db.flush()
        return notification

    async def get_by_id(self, notification_id: str) -> Optional[Notification]:
        stmt = (
            select(NotificationModel)
            .where(NotificationModel.id == notification_id)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        row = result.scalar_one_or_none()
        return self._from_orm(row) if row is not None else None

    async def list_for_user(
        self,
        user_id: str,
        limit: int = 50,
        unread_only: bool = False
    ) -> List[Notification]:
        stmt = select(NotificationModel).where(NotificationModel.user_id == user_id)
        if unread_only:
            stmt = stmt.where(NotificationModel.read_at.is_(None))
        stmt = (
            stmt.order_by(NotificationModel.created_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return [self._from_orm(row) for row in result.scalars().all()]

    async def count_unread(self, user_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(NotificationModel)
            .where(NotificationModel.user_id == user_id)
            .where(NotificationModel.read_at.is_(None))
        )
        result = await self._db.execute(stmt)
        return result.scalar_one()

    async def mark_read(self, notification_id: str, user_id: str, at: datetime) -> bool:
        stmt = (
            update(NotificationModel)
            .where(NotificationModel.id == notification_id)
            .where(NotificationModel.user_id == user_id)
            .where(NotificationModel.read_at.is_(None))
            .values(read_at=at)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        return result.rowcount == 1

    def _from_orm(self, row: NotificationModel) -> Notification:
        return Notification(
            id=row.id,
            user_id=row.user_id,
            type=NotificationType(row.type),
            urgency=Urgency(row.urgency),
            audience=Audience(row.audience),
            title=row.title,
            message=row.message,
            action_url=row.action_url,
            channels=[Channel(value) for value in row.channels or []],
            data=dict(row.data or {}),
            created_at=row.created_at,
            read_at=row.read_at,
        )
