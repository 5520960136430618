"""Domain Models - Entities, Value Objects, and Events."""

from .actor import Actor, Role
from .crowd_test import (
    CrowdTest,
    CrowdTestStatus,
    JOINABLE_STATUSES,
    OPEN_STATUSES,
    TERMINAL_TEST_STATUSES,
)
from .session import (
    Session,
    SessionStatus,
    ACTIVE_SESSION_STATUSES,
    TERMINAL_SESSION_STATUSES,
    SLOT_HOLDING_STATUSES,
    PROGRESS_FIELDS,
)
from .earning import (
    Earning,
    EarningStatus,
    ParticipantProfile,
)
from .events import (
    RealtimeEvent,
    ParticipantJoined,
    ProgressUpdated,
    SessionCompleted,
    SessionCancelled,
    SessionFailed,
    TestStatusChanged,
    ParticipantLeft,
    Notification,
)
from .outbox import (
    OutboxEvent,
    OutboxEventType,
    OutboxStatus,
)
from .integrity import (
    IntegrityIssue,
    IntegrityIssueType,
    IntegritySeverity,
    IntegrityReport,
    RepairAction,
)

__all__ = [
    # Actors
    "Actor",
    "Role",
    # Crowd test
    "CrowdTest",
    "CrowdTestStatus",
    "JOINABLE_STATUSES",
    "OPEN_STATUSES",
    "TERMINAL_TEST_STATUSES",
    # Session
    "Session",
    "SessionStatus",
    "ACTIVE_SESSION_STATUSES",
    "TERMINAL_SESSION_STATUSES",
    "SLOT_HOLDING_STATUSES",
    "PROGRESS_FIELDS",
    # Earnings
    "Earning",
    "EarningStatus",
    "ParticipantProfile",
    # Realtime events
    "RealtimeEvent",
    "ParticipantJoined",
    "ProgressUpdated",
    "SessionCompleted",
    "SessionCancelled",
    "SessionFailed",
    "TestStatusChanged",
    "ParticipantLeft",
    "Notification",
    # Outbox Pattern
    "OutboxEvent",
    "OutboxEventType",
    "OutboxStatus",
    # Reconciliation
    "IntegrityIssue",
    "IntegrityIssueType",
    "IntegritySeverity",
    "IntegrityReport",
    "RepairAction",
]
