"""Domain Interfaces - storage and collaborator seams."""

from .repositories import (
    ICrowdTestRepository,
    ISessionRepository,
    IEarningRepository,
    IProfileRepository,
    IOutboxRepository,
)
from .unit_of_work import IUnitOfWork
from .collaborators import (
    IConnection,
    IRoomAccessPolicy,
    INotificationSink,
)

__all__ = [
    # Repositories
    "ICrowdTestRepository",
    "ISessionRepository",
    "IEarningRepository",
    "IProfileRepository",
    "IOutboxRepository",
    # Transactions
    "IUnitOfWork",
    # Collaborators
    "IConnection",
    "IRoomAccessPolicy",
    "INotificationSink",
]
