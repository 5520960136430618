"""
Participant Session Domain Model.

State machine:

    PENDING ──► IN_PROGRESS ──► COMPLETED
       │             │
       │             ├────────► FAILED
       │             │
       └─────────────┴────────► CANCELLED

PENDING may also move straight to FAILED (expiry before start).
COMPLETED, FAILED and CANCELLED are terminal; a terminal session is
never modified again.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional
import uuid


class SessionStatus(Enum):
    """Participant session status."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_SESSION_STATUSES: FrozenSet[SessionStatus] = frozenset({
    SessionStatus.PENDING,
    SessionStatus.IN_PROGRESS,
})

TERMINAL_SESSION_STATUSES: FrozenSet[SessionStatus] = frozenset({
    SessionStatus.COMPLETED,
    SessionStatus.FAILED,
    SessionStatus.CANCELLED,
})

# Sessions that hold one of the test's slots
SLOT_HOLDING_STATUSES: FrozenSet[SessionStatus] = frozenset({
    SessionStatus.PENDING,
    SessionStatus.IN_PROGRESS,
    SessionStatus.COMPLETED,
})

SESSION_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.PENDING: frozenset({
        SessionStatus.IN_PROGRESS,
        SessionStatus.FAILED,
        SessionStatus.CANCELLED,
    }),
    SessionStatus.IN_PROGRESS: frozenset({
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.CANCELLED,
    }),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}

# Keys a participant may send with a progress update
PROGRESS_FIELDS: FrozenSet[str] = frozenset({
    "feedback",
    "task_results",
    "progress",
    "current_task",
})


@dataclass
class Session:
    """
    Participant Session Entity.

    One participant's attempt at a crowd test. Created by admission, mutated
    only through the session service, immutable once terminal.

    Attributes:
        id: Session identifier (UUID string)
        test_id: Crowd test the session belongs to
        participant_id: Tester who owns the session
        status: Current lifecycle status
        started_at: When work started (IN_PROGRESS)
        completed_at: When the session reached COMPLETED
        ended_at: When the session was cancelled or failed
        duration_seconds: Whole seconds between started_at and completed_at
        rating: Optional 1-5 rating given on completion
        feedback: Free-text feedback
        task_results: Per-task results, merged by progress updates
        progress: Arbitrary progress payload, merged by progress updates
        device_info: Client device description given at admission
        failure_reason: Why the session failed
        cancelled_by: Actor that cancelled the session
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    test_id: str = ""
    participant_id: str = ""
    status: SessionStatus = SessionStatus.PENDING

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None

    rating: Optional[int] = None
    feedback: Optional[str] = None
    task_results: Dict[str, Any] = field(default_factory=dict)
    progress: Dict[str, Any] = field(default_factory=dict)
    device_info: Dict[str, Any] = field(default_factory=dict)

    failure_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_SESSION_STATUSES

    def can_transition_to(self, target: SessionStatus) -> bool:
        return target in SESSION_TRANSITIONS[self.status]

    def elapsed_seconds(self, now: datetime) -> int:
        """Whole seconds since the session started (0 if never started)."""
        if self.started_at is None:
            return 0
        return max(int((now - self.started_at).total_seconds()), 0)
