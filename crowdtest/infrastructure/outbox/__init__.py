"""Outbox delivery of owner and participant notifications."""

from .processor import OutboxProcessor

__all__ = ["OutboxProcessor"]
