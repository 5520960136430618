"""
Repository Interfaces.

Every mutation that guards an invariant is a single conditional operation
on the store (try_reserve_slot, release_slot, transition_status,
transition, update_progress). Implementations must never answer these by
reading a value in Python and writing it back.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from crowdtest.domain.models.crowd_test import CrowdTest, CrowdTestStatus
from crowdtest.domain.models.session import Session, SessionStatus
from crowdtest.domain.models.earning import Earning, ParticipantProfile
from crowdtest.domain.models.outbox import OutboxEvent


class ICrowdTestRepository(ABC):
    """Storage for crowd tests and their slot counters."""

    @abstractmethod
    def get(self, test_id: str) -> Optional[CrowdTest]:
        """Get a test by id."""

    @abstractmethod
    def add(self, test: CrowdTest) -> CrowdTest:
        """Insert a new test."""

    @abstractmethod
    def update_details(self, test_id: str, **fields: Any) -> bool:
        """
        Update descriptive fields (title, reward_per_participant) of a DRAFT test.

        Returns:
            False if the test is missing or no longer DRAFT
        """

    @abstractmethod
    def delete(self, test_id: str) -> bool:
        """Delete a test. Returns False if it did not exist."""

    @abstractmethod
    def list_by_owner(self, owner_id: str) -> List[CrowdTest]:
        """List tests owned by a customer, newest first."""

    @abstractmethod
    def list_all(self, limit: int = 1000) -> List[CrowdTest]:
        """List tests (for reconciliation)."""

    @abstractmethod
    def try_reserve_slot(
        self,
        test_id: str,
        joinable: Iterable[CrowdTestStatus],
    ) -> bool:
        """
        Atomically take one slot.

        Increments current_participants only if it is below max_participants
        and the status is one of `joinable`.

        Returns:
            True if a slot was taken
        """

    @abstractmethod
    def release_slot(self, test_id: str) -> bool:
        """Atomically give one slot back, never going below zero."""

    @abstractmethod
    def set_participant_count(self, test_id: str, count: int) -> bool:
        """Overwrite the slot counter (reconciliation repair only)."""

    @abstractmethod
    def transition_status(
        self,
        test_id: str,
        expected: Iterable[CrowdTestStatus],
        target: CrowdTestStatus,
        **fields: Any,
    ) -> bool:
        """
        Move a test to `target` only if its status is one of `expected`.

        Extra keyword fields (published_at, completed_at) are written in the
        same statement.
        """


class ISessionRepository(ABC):
    """Storage for participant sessions."""

    @abstractmethod
    def add(self, session: Session) -> Session:
        """
        Insert a new session.

        Raises:
            DuplicateActiveSessionError: If the participant already holds a
                non-terminal session on the same test
        """

    @abstractmethod
    def get(self, session_id: str) -> Optional[Session]:
        """Get a session by id."""

    @abstractmethod
    def find_active(self, test_id: str, participant_id: str) -> Optional[Session]:
        """Find the participant's non-terminal session on a test, if any."""

    @abstractmethod
    def transition(
        self,
        session_id: str,
        expected: Iterable[SessionStatus],
        target: SessionStatus,
        **fields: Any,
    ) -> bool:
        """Move a session to `target` only if its status is one of `expected`."""

    @abstractmethod
    def update_progress(self, session_id: str, **fields: Any) -> bool:
        """Write progress fields only while the session is IN_PROGRESS."""

    @abstractmethod
    def count_by_status(self, test_id: str, statuses: Iterable[SessionStatus]) -> int:
        """Count a test's sessions whose status is in `statuses`."""

    @abstractmethod
    def list_by_test(
        self,
        test_id: str,
        statuses: Optional[Iterable[SessionStatus]] = None,
    ) -> List[Session]:
        """List a test's sessions, optionally filtered by status."""

    @abstractmethod
    def list_by_status(self, status: SessionStatus, limit: int = 1000) -> List[Session]:
        """List sessions in one status across all tests, oldest first."""

    @abstractmethod
    def has_participated(self, test_id: str, participant_id: str) -> bool:
        """True if the participant has any session, in any status, on the test."""

    @abstractmethod
    def average_rating(self, participant_id: str) -> Optional[float]:
        """Mean rating over the participant's COMPLETED sessions with a rating."""


class IEarningRepository(ABC):
    """Storage for earnings, keyed uniquely by session."""

    @abstractmethod
    def add(self, earning: Earning) -> Earning:
        """Insert an earning. A second earning for the same session is rejected by the store."""

    @abstractmethod
    def get_by_session(self, session_id: str) -> Optional[Earning]:
        """Get the earning created for a session."""

    @abstractmethod
    def list_by_participant(self, participant_id: str) -> List[Earning]:
        """List a participant's earnings, newest first."""


class IProfileRepository(ABC):
    """Storage for participant reputation aggregates."""

    @abstractmethod
    def get(self, participant_id: str) -> Optional[ParticipantProfile]:
        """Get a profile."""

    @abstractmethod
    def record_completion(
        self,
        participant_id: str,
        amount: Decimal,
        average_rating: Optional[float],
    ) -> ParticipantProfile:
        """
        Add one completion to the profile, creating it if needed.

        completed_count and total_earnings are incremented in the store;
        average_rating is overwritten with the recomputed mean.
        """


class IOutboxRepository(ABC):
    """Storage for outbox notification events."""

    @abstractmethod
    def add(self, event: OutboxEvent) -> OutboxEvent:
        """Add a new outbox event."""

    @abstractmethod
    def get_pending(self, limit: int = 100) -> List[OutboxEvent]:
        """Get pending events for processing, ordered by created_at."""

    @abstractmethod
    def get_failed_for_retry(self, limit: int = 50) -> List[OutboxEvent]:
        """Get failed events that can be retried."""

    @abstractmethod
    def get_stale_claims(self, claimed_before: datetime, limit: int = 50) -> List[OutboxEvent]:
        """PROCESSING events claimed at or before `claimed_before` and never settled."""

    @abstractmethod
    def update(self, event: OutboxEvent) -> OutboxEvent:
        """Update event status."""

    @abstractmethod
    def delete_processed(self, before: datetime, limit: int = 1000) -> int:
        """Delete processed events older than a given time."""

    @abstractmethod
    def list_by_recipient(self, recipient_id: str) -> List[OutboxEvent]:
        """List events addressed to one actor, oldest first."""
