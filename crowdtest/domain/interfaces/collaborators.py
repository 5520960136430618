"""
Collaborator Interfaces.

Narrow seams to everything outside the orchestration core: live transport
connections, room access checks and the notification service.
"""

from abc import ABC, abstractmethod

from crowdtest.domain.models.actor import Actor
from crowdtest.domain.models.events import Notification, RealtimeEvent


class IConnection(ABC):
    """
    One live transport channel (websocket, SSE stream, ...).

    send() is called while the registry holds a per-connection lock, so it
    must hand the event to the transport without blocking on the network.
    """

    @property
    @abstractmethod
    def connection_id(self) -> str:
        """Stable identifier of this connection."""

    @abstractmethod
    def send(self, event: RealtimeEvent) -> None:
        """Queue an event for delivery. Raising marks the connection dead."""


class IRoomAccessPolicy(ABC):
    """Decides who may observe a crowd test's live room."""

    @abstractmethod
    def can_observe(self, actor: Actor, test_id: str) -> bool:
        """True if the actor may join the test's room."""


class INotificationSink(ABC):
    """External notification service: persistence, email, push."""

    @abstractmethod
    def persist_and_maybe_email(self, recipient_id: str, notification: Notification) -> None:
        """
        Store the notification for the recipient and email it if their
        preferences ask for it.

        Raises:
            Exception: Any delivery failure; the outbox processor retries
        """
