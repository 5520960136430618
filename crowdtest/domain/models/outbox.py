"""
Outbox Pattern Domain Model.

Owner and participant notifications are written to the outbox in the same
transaction as the state change they report. The outbox processor hands
them to the notification sink after commit, so a failing email or push
never rolls back a session or an earning.
"""

from dataclasses import dataclass, field
from typing import Dict, Any, Optional, TYPE_CHECKING
from datetime import datetime
from enum import Enum
import uuid

from .events import Notification

if TYPE_CHECKING:
    from .crowd_test import CrowdTest
    from .session import Session


class OutboxEventType(Enum):
    """Notification kinds queued through the outbox."""
    SESSION_COMPLETED = "session_completed"   # owner: a tester finished
    TEST_COMPLETED = "test_completed"         # owner: every slot completed
    TEST_CANCELLED = "test_cancelled"         # participant: test was cancelled
    SESSION_CANCELLED = "session_cancelled"   # participant: owner/system cancelled


class OutboxStatus(Enum):
    """Outbox event processing status."""
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


@dataclass
class OutboxEvent:
    """
    Outbox Event Entity.

    Attributes:
        id: Database primary key (auto-generated)
        event_id: UUID for idempotency
        event_type: Notification kind
        aggregate_type: Entity type ('CrowdTest' or 'Session')
        aggregate_id: Entity ID
        recipient_id: Actor that receives the notification
        payload: title, message and notification data
        status: Current processing status
        retry_count: Number of failed delivery attempts
        max_retries: Maximum retry attempts
        created_at: When the event was created
        claimed_at: When a processor last claimed the event
        processed_at: When the event was delivered
        last_error: Last error message if failed
    """

    id: Optional[int] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_type: OutboxEventType = OutboxEventType.SESSION_COMPLETED
    aggregate_type: str = ""
    aggregate_id: str = ""
    recipient_id: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)

    status: OutboxStatus = OutboxStatus.PENDING
    retry_count: int = 0
    max_retries: int = 5

    created_at: datetime = field(default_factory=datetime.now)
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def can_retry(self) -> bool:
        """Check if the event can be retried."""
        return (
            self.status in [OutboxStatus.PENDING, OutboxStatus.FAILED]
            and self.retry_count < self.max_retries
        )

    def mark_processing(self, at: Optional[datetime] = None) -> None:
        """Mark as claimed by a processor, starting its lease at `at`."""
        self.status = OutboxStatus.PROCESSING
        self.claimed_at = at or datetime.now()

    def mark_processed(self) -> None:
        """Mark as successfully processed."""
        self.status = OutboxStatus.PROCESSED
        self.processed_at = datetime.now()

    def mark_failed(self, error: str) -> None:
        """Mark as failed with error message."""
        self.status = OutboxStatus.FAILED
        self.retry_count += 1
        self.last_error = error

    def reset_for_retry(self) -> None:
        """Put a failed or abandoned event back in the queue, keeping its retry count."""
        self.status = OutboxStatus.PENDING
        self.claimed_at = None

    def to_notification(self) -> Notification:
        """Build the user-facing notification this event delivers."""
        return Notification(
            recipient_id=self.recipient_id,
            notification_type=self.event_type.value,
            title=self.payload.get("title", ""),
            message=self.payload.get("message", ""),
            data=dict(self.payload.get("data", {})),
            event_id=self.event_id,
        )

    # ═══════════════════════════════════════════════════════════════════════════
    # Factory Methods
    # ═══════════════════════════════════════════════════════════════════════════

    @classmethod
    def create_session_completed(
        cls,
        test: "CrowdTest",
        session: "Session",
        max_retries: int = 5,
    ) -> "OutboxEvent":
        """Owner notification: a tester completed a session."""
        return cls(
            event_type=OutboxEventType.SESSION_COMPLETED,
            aggregate_type="Session",
            aggregate_id=session.id,
            recipient_id=test.owner_id,
            max_retries=max_retries,
            payload={
                "title": "Test Session Completed",
                "message": f'A tester has completed your test "{test.title}"',
                "data": {
                    "test_id": test.id,
                    "session_id": session.id,
                    "participant_id": session.participant_id,
                    "rating": session.rating,
                },
            },
        )

    @classmethod
    def create_test_completed(
        cls,
        test: "CrowdTest",
        completed_sessions: int,
        max_retries: int = 5,
    ) -> "OutboxEvent":
        """Owner notification: the test received all its completions."""
        return cls(
            event_type=OutboxEventType.TEST_COMPLETED,
            aggregate_type="CrowdTest",
            aggregate_id=test.id,
            recipient_id=test.owner_id,
            max_retries=max_retries,
            payload={
                "title": "Test Completed",
                "message": (
                    f'Your test "{test.title}" has been completed by '
                    f"{completed_sessions} testers"
                ),
                "data": {
                    "test_id": test.id,
                    "completed_sessions": completed_sessions,
                },
            },
        )

    @classmethod
    def create_test_cancelled(
        cls,
        test: "CrowdTest",
        session: "Session",
        max_retries: int = 5,
    ) -> "OutboxEvent":
        """Participant notification: the test the session belongs to was cancelled."""
        return cls(
            event_type=OutboxEventType.TEST_CANCELLED,
            aggregate_type="CrowdTest",
            aggregate_id=test.id,
            recipient_id=session.participant_id,
            max_retries=max_retries,
            payload={
                "title": "Test Cancelled",
                "message": f'The test "{test.title}" has been cancelled by the customer',
                "data": {
                    "test_id": test.id,
                    "session_id": session.id,
                },
            },
        )

    @classmethod
    def create_session_cancelled(
        cls,
        test: "CrowdTest",
        session: "Session",
        cancelled_by: str,
        max_retries: int = 5,
    ) -> "OutboxEvent":
        """Participant notification: someone else cancelled the session."""
        return cls(
            event_type=OutboxEventType.SESSION_CANCELLED,
            aggregate_type="Session",
            aggregate_id=session.id,
            recipient_id=session.participant_id,
            max_retries=max_retries,
            payload={
                "title": "Session Cancelled",
                "message": f'Your session for "{test.title}" was cancelled',
                "data": {
                    "test_id": test.id,
                    "session_id": session.id,
                    "cancelled_by": cancelled_by,
                },
            },
        )
