"""SQLAlchemy repository implementations."""

from .crowd_test_repository import SQLAlchemyCrowdTestRepository
from .session_repository import SQLAlchemySessionRepository
from .earning_repository import SQLAlchemyEarningRepository, SQLAlchemyProfileRepository
from .outbox_repository import SQLAlchemyOutboxRepository

__all__ = [
    "SQLAlchemyCrowdTestRepository",
    "SQLAlchemySessionRepository",
    "SQLAlchemyEarningRepository",
    "SQLAlchemyProfileRepository",
    "SQLAlchemyOutboxRepository",
]
