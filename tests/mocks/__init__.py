"""
Shared test doubles.

- collaborators.py: fake connections and notification sinks
- storage.py: failure-injecting units of work and pipelines

Usage:
    from tests.mocks import RecordingConnection, RecordingNotificationSink
"""

from tests.mocks.collaborators import (
    RecordingConnection,
    FailingConnection,
    RecordingNotificationSink,
    FailingNotificationSink,
    DyingNotificationSink,
    WorkerKilled,
)
from tests.mocks.storage import (
    SimulatedConflict,
    FlakyUnitOfWork,
    BrokenPipeline,
)

__all__ = [
    "RecordingConnection",
    "FailingConnection",
    "RecordingNotificationSink",
    "FailingNotificationSink",
    "DyingNotificationSink",
    "WorkerKilled",
    "SimulatedConflict",
    "FlakyUnitOfWork",
    "BrokenPipeline",
]
