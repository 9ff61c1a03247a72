"""
Notification Module

Writes client notifications to the notifications table (the in-app channel)
and fans them out to optional push channels: simulated SMS and email through
the log, and an HTTP webhook for external gateways.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
from abc import ABC, abstractmethod
import logging
import uuid

import requests

from .storage import StorageInterface, StorageRecord
from .exceptions import NotificationDeliveryError
from .logging_config import get_correlation_id

logger = logging.getLogger("ngnasoro.notifications")


class NotificationUrgency(Enum):
    """How prominently the client app should surface a notification"""
    INFO = "info"
    WARN = "warn"
    URGENT = "urgent"


class NotificationChannel(Enum):
    """Push channels a notification can be fanned out to"""
    SMS = "sms"
    EMAIL = "email"
    WEBHOOK = "webhook"


class NotificationType(Enum):
    LOAN_PAYMENT_REMINDER = "loan_payment_reminder"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_STATUS = "loan_status"
    PAYMENT_RECEIVED = "payment_received"


REQUIRED_FIELDS = ("user_id", "type", "title", "message", "action_url")


@dataclass
class Notification(StorageRecord):
    """Notification row as shown in the client app"""
    user_id: str
    notification_type: str
    title: str
    message: str
    action_url: str
    urgency: NotificationUrgency = NotificationUrgency.INFO
    read: bool = False
    read_at: Optional[datetime] = None
    deliveries: Dict[str, str] = field(default_factory=dict)

    def payload(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "type": self.notification_type,
            "title": self.title,
            "message": self.message,
            "action_url": self.action_url
        }


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    channel: NotificationChannel

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass


class LogChannelProvider(ChannelProvider):
    """Simulated SMS or email delivery that only writes to the log"""

    def __init__(self, channel: NotificationChannel, log: Optional[logging.Logger] = None):
        self.channel = channel
        self.log = log or logger

    def send(self, notification: Notification) -> bool:
        self.log.info(
            "%s to user %s: %s | %s",
            self.channel.value.upper(), notification.user_id,
            notification.title, notification.message[:100]
        )
        return True


class WebhookChannelProvider(ChannelProvider):
    """Webhook channel provider for external SMS/email gateways"""

    channel = NotificationChannel.WEBHOOK

    def __init__(self, url: str, timeout: int = 10):
        self.url = url
        self.timeout = timeout

    def send(self, notification: Notification) -> bool:
        """Send notification via webhook POST"""
        payload = notification.payload()
        payload.update({
            "notification_id": notification.id,
            "urgency": notification.urgency.value,
            "timestamp": notification.created_at.isoformat()
        })
        headers = {"Content-Type": "application/json"}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id
        try:
            response = requests.post(
                self.url,
                json=payload,
                timeout=self.timeout,
                headers=headers
            )
        except requests.RequestException as e:
            logger.warning("Webhook delivery of %s failed: %s", notification.id, e)
            return False

        if not response.ok:
            logger.warning(
                "Webhook delivery of %s rejected with HTTP %s",
                notification.id, response.status_code
            )
        return response.ok


class NotificationSink(ABC):
    """Anything that accepts notification payloads"""

    @abstractmethod
    def write(self, payload: Dict[str, Any],
              urgency: NotificationUrgency = NotificationUrgency.INFO) -> Notification:
        """
        Persist a notification

        Raises:
            NotificationDeliveryError: The notification could not be stored
        """
        pass


class NotificationCenter(NotificationSink):
    """
    Stores notifications and pushes them to the registered channel providers
    """

    def __init__(self, storage: StorageInterface,
                 providers: Optional[List[ChannelProvider]] = None):
        self.storage = storage
        self.providers: List[ChannelProvider] = list(providers or [])
        self.notifications_table = "notifications"

    def register_provider(self, provider: ChannelProvider) -> None:
        self.providers.append(provider)

    def write(self, payload: Dict[str, Any],
              urgency: NotificationUrgency = NotificationUrgency.INFO) -> Notification:
        """
        Store a notification and fan it out

        The stored row is the delivery that counts; push channels are best
        effort and their failures are only recorded on the row.

        Args:
            payload: {user_id, type, title, message, action_url}
            urgency: Display urgency for the client app

        Returns:
            The stored Notification
        """
        missing = [name for name in REQUIRED_FIELDS if not payload.get(name)]
        if missing:
            raise NotificationDeliveryError(
                f"Notification payload missing fields: {', '.join(missing)}"
            )

        now = datetime.now(timezone.utc)
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=str(payload["user_id"]),
            notification_type=str(payload["type"]),
            title=payload["title"],
            message=payload["message"],
            action_url=payload["action_url"],
            urgency=urgency
        )

        try:
            self.storage.save(
                self.notifications_table, notification.id, self._notification_to_dict(notification)
            )
        except Exception as e:
            raise NotificationDeliveryError(
                f"Could not store notification for user {notification.user_id}: {e}"
            ) from e

        if self.providers:
            self._fan_out(notification)

        return notification

    def _fan_out(self, notification: Notification) -> None:
        for provider in self.providers:
            try:
                delivered = provider.send(notification)
            except Exception:
                logger.exception(
                    "Channel %s raised while delivering %s",
                    provider.channel.value, notification.id
                )
                delivered = False
            notification.deliveries[provider.channel.value] = "sent" if delivered else "failed"

        self.storage.update_where(
            self.notifications_table,
            notification.id,
            {},
            {"deliveries": notification.deliveries}
        )

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        data = self.storage.load(self.notifications_table, notification_id)
        if data:
            return self._notification_from_dict(data)
        return None

    def get_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50
    ) -> List[Notification]:
        """Get notifications for a user, newest first"""
        filters: Dict[str, Any] = {"user_id": user_id}
        if unread_only:
            filters["read"] = False

        notifications_data = self.storage.find(self.notifications_table, filters)
        notifications = [self._notification_from_dict(data) for data in notifications_data]

        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications[:limit]

    def mark_as_read(self, notification_id: str) -> bool:
        """Mark notification as read. Returns False if it does not exist."""
        if not self.storage.exists(self.notifications_table, notification_id):
            return False
        now = datetime.now(timezone.utc)
        self.storage.update_where(
            self.notifications_table,
            notification_id,
            {"read": False},
            {"read": True, "read_at": now.isoformat(), "updated_at": now.isoformat()}
        )
        return True

    def get_unread_count(self, user_id: str) -> int:
        return len(self.storage.find(self.notifications_table, {"user_id": user_id, "read": False}))

    def _notification_to_dict(self, notification: Notification) -> Dict:
        """Convert notification to dictionary"""
        result = notification.to_dict()
        result["urgency"] = notification.urgency.value
        result["read_at"] = notification.read_at.isoformat() if notification.read_at else None
        return result

    def _notification_from_dict(self, data: Dict) -> Notification:
        """Convert dictionary to notification"""
        data = dict(data)
        data["urgency"] = NotificationUrgency(data["urgency"])
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        data["updated_at"] = datetime.fromisoformat(data["updated_at"])
        if data.get("read_at"):
            data["read_at"] = datetime.fromisoformat(data["read_at"])
        return Notification(**data)


def build_notification_center(
    storage: StorageInterface,
    sms_enabled: bool = False,
    email_enabled: bool = False,
    webhook_url: Optional[str] = None,
    webhook_timeout: int = 10
) -> NotificationCenter:
    """Notification center with the channel providers switched on in configuration"""
    providers: List[ChannelProvider] = []
    if sms_enabled:
        providers.append(LogChannelProvider(NotificationChannel.SMS))
    if email_enabled:
        providers.append(LogChannelProvider(NotificationChannel.EMAIL))
    if webhook_url:
        providers.append(WebhookChannelProvider(webhook_url, timeout=webhook_timeout))
    return NotificationCenter(storage, providers)
