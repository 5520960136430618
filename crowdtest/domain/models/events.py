"""
Realtime Events.

Tagged union of immutable payloads pushed to live connections. Every event
has a fixed `kind` and renders to a flat JSON-ready dict; transports only
ever see `to_dict()` output.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, ClassVar, Dict, Optional, Union


def _render(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _render(v) for k, v in value.items()}
    return value


@dataclass(frozen=True)
class _RealtimeEvent:
    kind: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for the wire."""
        data: Dict[str, Any] = {"kind": self.kind}
        for f in fields(self):
            data[f.name] = _render(getattr(self, f.name))
        return data


@dataclass(frozen=True)
class ParticipantJoined(_RealtimeEvent):
    kind: ClassVar[str] = "participant_joined"

    test_id: str
    session_id: str
    participant_id: str
    current_participants: int
    max_participants: int
    at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ProgressUpdated(_RealtimeEvent):
    kind: ClassVar[str] = "progress_updated"

    test_id: str
    session_id: str
    participant_id: str
    progress: Dict[str, Any] = field(default_factory=dict)
    current_task: Optional[str] = None
    at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class SessionCompleted(_RealtimeEvent):
    kind: ClassVar[str] = "session_completed"

    test_id: str
    session_id: str
    participant_id: str
    duration_seconds: int
    rating: Optional[int] = None
    at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class SessionCancelled(_RealtimeEvent):
    kind: ClassVar[str] = "session_cancelled"

    test_id: str
    session_id: str
    participant_id: str
    cancelled_by: str
    at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class SessionFailed(_RealtimeEvent):
    kind: ClassVar[str] = "session_failed"

    test_id: str
    session_id: str
    participant_id: str
    reason: str
    at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class TestStatusChanged(_RealtimeEvent):
    __test__: ClassVar[bool] = False

    kind: ClassVar[str] = "test_status_changed"

    test_id: str
    previous_status: str
    status: str
    at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ParticipantLeft(_RealtimeEvent):
    kind: ClassVar[str] = "participant_left"

    test_id: str
    actor_id: str
    at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class Notification(_RealtimeEvent):
    """User-facing notification, delivered live and persisted by the sink."""

    kind: ClassVar[str] = "notification"

    recipient_id: str
    notification_type: str
    title: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    event_id: Optional[str] = None
    at: datetime = field(default_factory=datetime.now)


RealtimeEvent = Union[
    ParticipantJoined,
    ProgressUpdated,
    SessionCompleted,
    SessionCancelled,
    SessionFailed,
    TestStatusChanged,
    ParticipantLeft,
    Notification,
]
