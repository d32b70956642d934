"""
Notification delivery transports: email, SMS and push.

Each transport sends one rendered notification to one user over HTTP. A
transport with no credentials configured logs and skips (returns False) so
local development needs no third-party accounts. HTTP failures raise
DeliveryError; the task queue decides whether to retry.

In-app delivery is the persisted notification row itself and has no
transport.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from marketplace.config import Settings
from marketplace.domain.entities import Notification, UserContact
from marketplace.domain.notification_types import Channel

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Exception raised when a delivery transport request fails"""
    def __init__(self, channel: Channel, message: str, status_code: Optional[int] = None):
        self.channel = channel
        self.status_code = status_code
        super().__init__(f"{channel.value} delivery failed: {message}")


class Transport(ABC):
    channel: Channel

    def __init__(self, http_client: httpx.AsyncClient, settings: Settings):
        self._http_client = http_client
        self._settings = settings

    @abstractmethod
    def is_configured(self) -> bool:
        pass

    @abstractmethod
    def address_for(self, contact: UserContact) -> Optional[str]:
        pass

    @abstractmethod
    async def _send(self, address: str, notification: Notification) -> httpx.Response:
        pass

    async def send(self, contact: UserContact, notification: Notification) -> bool:
        """
        Deliver a notification to a user.

        Returns:
            True if sent, False if skipped (transport unconfigured or no address)

        Raises:
            DeliveryError: If the provider request fails
        """
        if not self.is_configured():
            logger.info(f"{self.channel.value} transport not configured, skipping notification {notification.id}")
            return False

        address = self.address_for(contact)
        if not address:
            logger.info(f"User {contact.id} has no {self.channel.value} address, skipping notification {notification.id}")
            return False

        try:
            response = await self._send(address, notification)
        except httpx.RequestError as e:
            raise DeliveryError(self.channel, f"request error: {e}") from e

        if response.status_code >= 400:
            raise DeliveryError(self.channel, f"HTTP {response.status_code}", response.status_code)

        logger.info(f"📤 Sent {notification.type.value} via {self.channel.value} (notification {notification.id})")
        return True

    def _absolute_url(self, notification: Notification) -> str:
        return f"{self._settings.public_base_url.rstrip('/')}{notification.action_url}"


class EmailTransport(Transport):
    """Email via a Resend-compatible HTTP API"""
    channel = Channel.EMAIL

    def is_configured(self) -> bool:
        return bool(self._settings.email_api_key)

    def address_for(self, contact: UserContact) -> Optional[str]:
        return contact.email

    async def _send(self, address: str, notification: Notification) -> httpx.Response:
        link = self._absolute_url(notification)
        return await self._http_client.post(
            self._settings.email_api_url,
            headers={"Authorization": f"Bearer {self._settings.email_api_key}"},
            json={
                "from": self._settings.email_from,
                "to": [address],
                "subject": notification.title,
                "text": f"{notification.message}\n\n{link}",
            },
            timeout=self._settings.delivery_timeout,
        )


class SmsTransport(Transport):
    """SMS via a Twilio-compatible REST API"""
    channel = Channel.SMS

    def is_configured(self) -> bool:
        return bool(
            self._settings.sms_account_sid
            and self._settings.sms_auth_token
            and self._settings.sms_from_number
        )

    def address_for(self, contact: UserContact) -> Optional[str]:
        return contact.phone

    async def _send(self, address: str, notification: Notification) -> httpx.Response:
        sid = self._settings.sms_account_sid
        return await self._http_client.post(
            f"{self._settings.sms_api_url.rstrip('/')}/Accounts/{sid}/Messages.json",
            auth=(sid, self._settings.sms_auth_token),
            data={
                "To": address,
                "From": self._settings.sms_from_number,
                "Body": f"{notification.title}: {notification.message}",
            },
            timeout=self._settings.delivery_timeout,
        )


class PushTransport(Transport):
    """Web push via a push gateway that holds the VAPID keys"""
    channel = Channel.PUSH

    def is_configured(self) -> bool:
        return bool(self._settings.push_gateway_url)

    def address_for(self, contact: UserContact) -> Optional[str]:
        return contact.push_endpoint

    async def _send(self, address: str, notification: Notification) -> httpx.Response:
        headers = {}
        if self._settings.push_gateway_token:
            headers["Authorization"] = f"Bearer {self._settings.push_gateway_token}"
        return await self._http_client.post(
            self._settings.push_gateway_url,
            headers=headers,
            json={
                "subscription": address,
                "title": notification.title,
                "body": notification.message,
                "url": notification.action_url,
                "tag": notification.type.value,
            },
            timeout=self._settings.delivery_timeout,
        )


TRANSPORTS = {
    Channel.EMAIL: EmailTransport,
    Channel.SMS: SmsTransport,
    Channel.PUSH: PushTransport,
}


def build_transport(channel: Channel, http_client: httpx.AsyncClient, settings: Settings) -> Transport:
    """
    Raises:
        ValueError: For in-app, which is delivered by persisting the row
    """
    try:
        transport_cls = TRANSPORTS[channel]
    except KeyError:
        raise ValueError(f"No transport for channel {channel.value}")
    return transport_cls(http_client, settings)
