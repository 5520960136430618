"""
Unit of Work Interface.

A unit of work is one transaction over all repositories. Services obtain a
fresh instance from a factory for every operation and drive it with
commit()/rollback().
"""

from abc import ABC, abstractmethod
from typing import Optional

from .repositories import (
    ICrowdTestRepository,
    ISessionRepository,
    IEarningRepository,
    IProfileRepository,
    IOutboxRepository,
)


class IUnitOfWork(ABC):
    """
    Transaction boundary over every repository.

    Repositories are available between __enter__ and __exit__. Leaving the
    context without commit() discards the changes.
    """

    tests: ICrowdTestRepository
    sessions: ISessionRepository
    earnings: IEarningRepository
    profiles: IProfileRepository
    outbox: IOutboxRepository

    @abstractmethod
    def __enter__(self) -> "IUnitOfWork":
        """Begin the unit of work."""

    @abstractmethod
    def __exit__(self, exc_type, exc_val, exc_tb) -> Optional[bool]:
        """End the unit of work, discarding uncommitted changes."""

    @abstractmethod
    def commit(self) -> None:
        """Make every change since the last commit durable."""

    @abstractmethod
    def rollback(self) -> None:
        """Discard every change since the last commit."""

    def is_transient_error(self, error: BaseException) -> bool:
        """
        True if `error` is a storage conflict worth retrying (lock timeout,
        deadlock, serialization failure).
        """
        return False
