"""
Tests for the notification sinks.

The HTTP sink is exercised against httpx.MockTransport, so no network is
involved.

Run with: pytest tests/test_notification_sink.py -v
"""

import json
import logging

import httpx
import pytest

from crowdtest.domain.models import Notification
from crowdtest.infrastructure.notifications import HttpNotificationSink, LoggingNotificationSink


@pytest.fixture
def notification() -> Notification:
    return Notification(
        recipient_id="customer-1",
        notification_type="session_completed",
        title="Test Session Completed",
        message='A tester has completed your test "Checkout flow"',
        data={"test_id": "t-1", "session_id": "s-1", "rating": 5},
        event_id="evt-1",
    )


class TestHttpNotificationSink:
    """Tests for HttpNotificationSink."""

    def test_posts_notification(self, notification):
        """The sink POSTs the JSON body with the event id as idempotency key."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(201, json={"id": "n-1"})

        with HttpNotificationSink("http://notify:8000/", transport=httpx.MockTransport(handler)) as sink:
            sink.persist_and_maybe_email("customer-1", notification)

        [request] = requests
        assert request.method == "POST"
        assert str(request.url) == "http://notify:8000/notifications"
        assert request.headers["Idempotency-Key"] == "evt-1"
        assert json.loads(request.content) == {
            "user_id": "customer-1",
            "type": "session_completed",
            "title": "Test Session Completed",
            "message": 'A tester has completed your test "Checkout flow"',
            "data": {"test_id": "t-1", "session_id": "s-1", "rating": 5},
        }

    def test_no_idempotency_key_without_event_id(self):
        """Ad-hoc notifications carry no idempotency header."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["headers"] = request.headers
            return httpx.Response(200)

        sink = HttpNotificationSink(transport=httpx.MockTransport(handler))
        try:
            sink.persist_and_maybe_email(
                "tester-1",
                Notification(recipient_id="tester-1", notification_type="test_cancelled", title="t", message="m"),
            )
        finally:
            sink.close()

        assert "Idempotency-Key" not in seen["headers"]

    def test_error_status_raises(self, notification):
        """A 5xx from the service raises so the outbox marks the event failed."""
        transport = httpx.MockTransport(lambda request: httpx.Response(503))

        with HttpNotificationSink(transport=transport) as sink:
            with pytest.raises(httpx.HTTPStatusError):
                sink.persist_and_maybe_email("customer-1", notification)

    def test_transport_error_raises(self, notification):
        """An unreachable service surfaces as an httpx transport error."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with HttpNotificationSink(transport=httpx.MockTransport(handler)) as sink:
            with pytest.raises(httpx.TransportError):
                sink.persist_and_maybe_email("customer-1", notification)


class TestLoggingNotificationSink:
    """Tests for LoggingNotificationSink."""

    def test_logs_notification(self, notification, caplog):
        """The notification title is logged at INFO."""
        with caplog.at_level(logging.INFO, logger="crowdtest.infrastructure.notifications"):
            LoggingNotificationSink().persist_and_maybe_email("customer-1", notification)

        assert "Test Session Completed" in caplog.text
        assert "customer-1" in caplog.text
