"""
Notification Dispatcher - turns lifecycle events into notifications.

For each event the registry supplies the rendered title, message, action URL,
urgency and audience. The dispatcher:

1. Persists one Notification row (this *is* the in-app delivery)
2. Resolves external channels from the urgency tier, filtered by the
   recipient's preferences
3. Registers one post-commit hook per external channel that enqueues the
   delivery on the side-effect queue

Delivery never runs inside the triggering transaction and its failures never
reach the lifecycle transition: the queue retries and logs them.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional

import httpx

from marketplace.clients.delivery import Transport, build_transport
from marketplace.config import Settings, settings as default_settings
from marketplace.domain.entities import (
    Notification,
    NotificationNotFoundError,
    UserContact,
    utcnow,
)
from marketplace.domain.notification_types import (
    Channel,
    NotificationPayload,
    NotificationType,
    get_template,
)
from marketplace.domain.unit_of_work import AbstractUnitOfWork
from marketplace.domain.value_objects import new_id
from marketplace.infrastructure.task_queue import TaskQueue, get_task_queue

logger = logging.getLogger(__name__)

TransportFactory = Callable[[Channel, httpx.AsyncClient, Settings], Transport]

# Fixed delivery order so logs and tests are deterministic
CHANNEL_ORDER = [Channel.IN_APP, Channel.PUSH, Channel.SMS, Channel.EMAIL]


class NotificationDispatcher:
    """Application service for notification dispatch and the in-app inbox."""

    def __init__(
        self,
        task_queue: Optional[TaskQueue] = None,
        transport_factory: TransportFactory = build_transport,
        settings: Settings = default_settings,
        clock: Callable[[], datetime] = utcnow
    ):
        self._task_queue = task_queue
        self._transport_factory = transport_factory
        self._settings = settings
        self._clock = clock

    @property
    def task_queue(self) -> TaskQueue:
        return self._task_queue or get_task_queue()

    async def dispatch(
        self,
        uow: AbstractUnitOfWork,
        user_id: str,
        notification_type: NotificationType,
        payload: NotificationPayload
    ) -> Optional[Notification]:
        """
        Render, persist and schedule delivery of one notification.

        Args:
            uow: Unit of Work of the triggering transition
            user_id: Recipient
            notification_type: Registry key
            payload: Values for the template renderers

        Returns:
            The persisted notification, or None if the recipient is unknown
        """
        template = get_template(notification_type)

        contact = await uow.users.get_by_id(user_id)
        if contact is None:
            logger.warning(f"⚠️  Cannot notify unknown user {user_id} ({notification_type.value})")
            return None

        if not payload.vertical:
            payload = replace(payload, vertical=self._settings.default_vertical)

        channels = [
            channel for channel in CHANNEL_ORDER
            if channel in template.channels and contact.accepts(channel)
        ]

        notification = Notification(
            id=new_id("ntf"),
            user_id=user_id,
            type=notification_type,
            urgency=template.urgency,
            audience=template.audience,
            title=template.title(payload),
            message=template.message(payload),
            action_url=template.action_url(payload),
            channels=channels,
            data=payload.to_dict(),
            created_at=self._clock(),
        )
        await uow.notifications.add(notification)

        for channel in channels:
            if channel == Channel.IN_APP:
                continue
            uow.add_post_commit_hook(self._enqueue_hook(channel, contact, notification))

        logger.info(
            f"🔔 Notification {notification.id} ({notification_type.value}) for user {user_id} "
            f"via {', '.join(c.value for c in channels) or 'no channel'}"
        )
        return notification

    def _enqueue_hook(self, channel: Channel, contact: UserContact, notification: Notification):
        def enqueue():
            self.task_queue.enqueue(
                f"deliver:{channel.value}:{notification.id}",
                self._delivery_task(channel, contact, notification)
            )
        return enqueue

    def _delivery_task(self, channel: Channel, contact: UserContact, notification: Notification):
        async def deliver():
            async with httpx.AsyncClient() as http_client:
                transport = self._transport_factory(channel, http_client, self._settings)
                await transport.send(contact, notification)
        return deliver

    # ── Inbox ───────────────────────────────────────────────────────

    async def list_for_user(
        self,
        uow: AbstractUnitOfWork,
        user_id: str,
        limit: int = 50,
        unread_only: bool = False
    ) -> List[Notification]:
        return await uow.notifications.list_for_user(user_id, limit=limit, unread_only=unread_only)

    async def unread_count(self, uow: AbstractUnitOfWork, user_id: str) -> int:
        return await uow.notifications.count_unread(user_id)

    async def mark_read(
        self,
        uow: AbstractUnitOfWork,
        notification_id: str,
        user_id: str
    ) -> Notification:
        """
        Set read_at once. Marking an already-read notification is a no-op.

        Raises:
            NotificationNotFoundError: If missing or owned by another user
        """
        existing = await uow.notifications.get_by_id(notification_id)
        if existing is None or existing.user_id != user_id:
            raise NotificationNotFoundError(notification_id)

        if existing.read_at is None:
            await uow.notifications.mark_read(notification_id, user_id, self._clock())
            existing = await uow.notifications.get_by_id(notification_id)
        return existing
