"""
Notification Dispatcher for the Telemetry Worker.

Sends user-facing alerts through Amazon SNS mobile push. Each device has its
own SNS topic (``<topic_arn_prefix><deviceId>``) to which the mobile app
subscribes its FCM endpoints, so the notification topic is simply the device
identifier.

Delivery is fire-and-forget: the publish call is made once and no delivery
receipt is awaited. Messages carry a 24 hour time-to-live; the push service
may drop them after that.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from worker.telemetry.models import Notification

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when a notification could not be handed to the push channel."""


class NotificationDispatcher(ABC):
    """Abstract base for push notification delivery."""

    @abstractmethod
    def notify(self, notification: Notification) -> None:
        """Send one notification. Raises ``NotificationError`` on failure."""
        ...


def build_push_message(notification: Notification) -> dict[str, str]:
    """Build the SNS ``MessageStructure='json'`` body for a notification.

    The ``GCM`` entry is the FCM payload delivered to Android/iOS app
    endpoints; ``default`` is used by any other subscription protocol.
    """
    fcm_payload = {
        "notification": {
            "title": notification.title,
            "body": notification.body,
            "sound": "default",
        },
        "data": {
            "device_id": notification.device_id,
            "condition": notification.condition.value,
        },
        "priority": notification.priority.value,
        "time_to_live": notification.ttl_seconds,
    }
    return {
        "default": f"{notification.title} {notification.body}",
        "GCM": json.dumps(fcm_payload),
    }


class SnsNotificationDispatcher(NotificationDispatcher):
    """Publishes notifications to per-device SNS topics.

    Parameters
    ----------
    sns_client : boto3 SNS client
        Pre-configured client.
    topic_arn_prefix : str
        ARN prefix to which the device identifier is appended, e.g.
        ``arn:aws:sns:us-east-1:123456789012:device-``.
    """

    def __init__(self, sns_client: Any, topic_arn_prefix: str) -> None:
        self._sns_client = sns_client
        self._topic_arn_prefix = topic_arn_prefix

    def topic_arn(self, topic: str) -> str:
        return f"{self._topic_arn_prefix}{topic}"

    def notify(self, notification: Notification) -> None:
        topic_arn = self.topic_arn(notification.topic)
        try:
            response = self._sns_client.publish(
                TopicArn=topic_arn,
                Subject=notification.title[:100],
                Message=json.dumps(build_push_message(notification)),
                MessageStructure="json",
                MessageAttributes={
                    "priority": {
                        "DataType": "String",
                        "StringValue": notification.priority.value,
                    },
                    "AWS.SNS.MOBILE.FCM.TTL": {
                        "DataType": "String",
                        "StringValue": str(notification.ttl_seconds),
                    },
                },
            )
        except Exception as exc:
            raise NotificationError(
                f"failed to publish {notification.condition.value} "
                f"to {topic_arn}: {exc}"
            ) from exc

        logger.info(
            "Published %s notification for device=%s message_id=%s",
            notification.condition.value,
            notification.device_id,
            response.get("MessageId", ""),
        )


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Dispatcher used when push delivery is disabled. Logs and keeps nothing."""

    def notify(self, notification: Notification) -> None:
        logger.info(
            "Notification (not sent): topic=%s title=%r",
            notification.topic,
            notification.title,
        )
