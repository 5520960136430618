"""
Notification Sinks.

Implementations of INotificationSink. The HTTP sink wraps an httpx client
and posts each notification to the notification service, which stores it
and decides on email from the recipient's preferences.

Usage:
    >>> with HttpNotificationSink("http://notifications:8000") as sink:
    ...     sink.persist_and_maybe_email("user-1", notification)
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from crowdtest.domain.interfaces.collaborators import INotificationSink
from crowdtest.domain.models.events import Notification

logger = logging.getLogger(__name__)


class LoggingNotificationSink(INotificationSink):
    """Sink for deployments without a notification service: logs and forgets."""

    def persist_and_maybe_email(self, recipient_id: str, notification: Notification) -> None:
        logger.info(
            f"Notification for {recipient_id}: [{notification.notification_type}] "
            f"{notification.title} - {notification.message}"
        )


class HttpNotificationSink(INotificationSink):
    """
    Notification service client.

    Attributes:
        base_url: Notification service address
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def __enter__(self) -> "HttpNotificationSink":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def persist_and_maybe_email(self, recipient_id: str, notification: Notification) -> None:
        """
        POST the notification to /notifications.

        The event_id travels as an idempotency key so a retried delivery is
        not stored twice by the service.

        Raises:
            httpx.HTTPStatusError: Service answered with an error status
            httpx.TransportError: Service unreachable
        """
        body: dict[str, Any] = {
            "user_id": recipient_id,
            "type": notification.notification_type,
            "title": notification.title,
            "message": notification.message,
            "data": notification.to_dict()["data"],
        }
        headers = {}
        if notification.event_id:
            headers["Idempotency-Key"] = notification.event_id

        response = self._client.post(
            f"{self.base_url}/notifications",
            json=body,
            headers=headers,
        )
        response.raise_for_status()
        logger.debug(f"Delivered {notification.notification_type} to {recipient_id}")
