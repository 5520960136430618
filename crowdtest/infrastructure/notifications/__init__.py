"""Notification service adapters."""

from .sinks import LoggingNotificationSink, HttpNotificationSink

__all__ = ["LoggingNotificationSink", "HttpNotificationSink"]
