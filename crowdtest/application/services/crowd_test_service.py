"""
Crowd Test Service - owner-driven test lifecycle.

    DRAFT ─publish─► PUBLISHED ─start─► RUNNING ◄─resume─ PAUSED
                         │                 └───pause───────►│
                         └──────── complete / cancel ◄──────┘

Status changes are conditional updates guarded by the expected current
status. Every change publishes TestStatusChanged to the test room after
commit. Cancelling a test cancels its active sessions, releases their
slots and queues a notification for each affected participant.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TYPE_CHECKING

from crowdtest.domain.errors import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
)
from crowdtest.domain.interfaces.unit_of_work import IUnitOfWork
from crowdtest.domain.models.actor import Actor, Role
from crowdtest.domain.models.crowd_test import (
    CrowdTest,
    CrowdTestStatus,
    OPEN_STATUSES,
)
from crowdtest.domain.models.events import RealtimeEvent, SessionCancelled, TestStatusChanged
from crowdtest.domain.models.outbox import OutboxEvent
from crowdtest.domain.models.session import (
    ACTIVE_SESSION_STATUSES,
    Session,
    SessionStatus,
    SLOT_HOLDING_STATUSES,
)
from crowdtest.application.services.transactions import TransactionRunner
from crowdtest.application.validators import (
    validate_capacity,
    validate_reward,
    validate_test_id,
    validate_title,
)

if TYPE_CHECKING:
    from crowdtest.infrastructure.realtime import ConnectionRegistry

logger = logging.getLogger(__name__)


@dataclass
class TestOverview:
    """Snapshot of a test and who is working on it."""

    __test__ = False

    test: CrowdTest
    active_count: int = 0
    completed_count: int = 0
    participants: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test": self.test.to_dict(),
            "active_count": self.active_count,
            "completed_count": self.completed_count,
            "participants": list(self.participants),
        }


class CrowdTestService:
    """
    Creates crowd tests and moves them through their lifecycle.

    Usage:
        service = CrowdTestService(uow_factory, broadcaster=registry)
        test = service.create_test(owner, "Checkout flow", 10, Decimal("25.00"))
        service.publish(owner, test.id)
    """

    def __init__(
        self,
        uow_factory: Callable[[], IUnitOfWork],
        broadcaster: Optional["ConnectionRegistry"] = None,
        max_retries: int = 3,
        backoff_seconds: float = 0.05,
        clock: Callable[[], datetime] = datetime.now,
        outbox_max_retries: int = 5,
    ):
        self._runner = TransactionRunner(uow_factory, max_retries, backoff_seconds)
        self._broadcaster = broadcaster
        self._clock = clock
        self._outbox_max_retries = outbox_max_retries

    # ═══════════════════════════════════════════════════════════════════════════
    # Authoring
    # ═══════════════════════════════════════════════════════════════════════════

    def create_test(
        self,
        actor: Actor,
        title: str,
        max_participants: int,
        reward_per_participant: Any,
    ) -> CrowdTest:
        """
        Create a DRAFT test owned by `actor`.

        Raises:
            ForbiddenError: If the actor is not a customer
            InvalidInputError: If title, capacity or reward are invalid
        """
        if actor.role != Role.CUSTOMER:
            raise ForbiddenError("Only customers can create tests")

        test = CrowdTest(
            owner_id=actor.actor_id,
            title=validate_title(title),
            max_participants=validate_capacity(max_participants),
            reward_per_participant=validate_reward(reward_per_participant),
            created_at=self._clock(),
        )
        created = self._runner.run("create test", lambda uow: uow.tests.add(test))
        logger.info(f"Test {created.id} created by {actor.actor_id} with {created.max_participants} slots")
        return created

    def update_details(
        self,
        actor: Actor,
        test_id: str,
        title: Optional[str] = None,
        reward_per_participant: Any = None,
    ) -> CrowdTest:
        """Change title or reward while the test is still a DRAFT."""
        test_id = validate_test_id(test_id)
        fields: Dict[str, Any] = {}
        if title is not None:
            fields["title"] = validate_title(title)
        if reward_per_participant is not None:
            fields["reward_per_participant"] = validate_reward(reward_per_participant)

        def work(uow: IUnitOfWork) -> CrowdTest:
            test = self._load_owned(uow, actor, test_id)
            if not fields:
                return test
            if not uow.tests.update_details(test_id, **fields):
                raise InvalidTransitionError(f"Test is {test.status.value}; only drafts can be edited")
            return uow.tests.get(test_id)

        return self._runner.run("update test", work)

    def delete(self, actor: Actor, test_id: str) -> None:
        """
        Delete a test that never had a session.

        Raises:
            InvalidTransitionError: If the test is RUNNING or has sessions
        """
        test_id = validate_test_id(test_id)

        def work(uow: IUnitOfWork) -> None:
            test = self._load_owned(uow, actor, test_id)
            if test.status == CrowdTestStatus.RUNNING:
                raise InvalidTransitionError("Cannot delete a running test")
            if uow.sessions.list_by_test(test_id):
                raise InvalidTransitionError("Cannot delete a test that has sessions")
            uow.tests.delete(test_id)

        self._runner.run("delete test", work)
        logger.info(f"Test {test_id} deleted by {actor.actor_id}")

    # ═══════════════════════════════════════════════════════════════════════════
    # Status Transitions
    # ═══════════════════════════════════════════════════════════════════════════

    def publish(self, actor: Actor, test_id: str) -> CrowdTest:
        return self._change_status(
            actor, test_id, [CrowdTestStatus.DRAFT], CrowdTestStatus.PUBLISHED,
            published_at=self._clock(),
        )

    def start(self, actor: Actor, test_id: str) -> CrowdTest:
        return self._change_status(actor, test_id, [CrowdTestStatus.PUBLISHED], CrowdTestStatus.RUNNING)

    def pause(self, actor: Actor, test_id: str) -> CrowdTest:
        """Close admission until resumed. Running sessions continue."""
        return self._change_status(actor, test_id, [CrowdTestStatus.RUNNING], CrowdTestStatus.PAUSED)

    def resume(self, actor: Actor, test_id: str) -> CrowdTest:
        return self._change_status(actor, test_id, [CrowdTestStatus.PAUSED], CrowdTestStatus.RUNNING)

    def complete(self, actor: Actor, test_id: str) -> CrowdTest:
        """Close a published, running or paused test manually."""
        return self._change_status(
            actor, test_id, OPEN_STATUSES, CrowdTestStatus.COMPLETED,
            completed_at=self._clock(),
        )

    def cancel(self, actor: Actor, test_id: str) -> CrowdTest:
        """
        Cancel a non-terminal test.

        Active sessions are cancelled in the same transaction, their slots
        released, and each participant is notified through the outbox.
        """
        test_id = validate_test_id(test_id)
        expected = [CrowdTestStatus.DRAFT, *OPEN_STATUSES]

        def work(uow: IUnitOfWork) -> Tuple[CrowdTest, CrowdTestStatus, List[Session]]:
            test = self._load_owned(uow, actor, test_id)
            self._apply_status(uow, test, expected, CrowdTestStatus.CANCELLED)

            now = self._clock()
            cancelled: List[Session] = []
            for session in uow.sessions.list_by_test(test_id, ACTIVE_SESSION_STATUSES):
                if not uow.sessions.transition(
                    session.id,
                    ACTIVE_SESSION_STATUSES,
                    SessionStatus.CANCELLED,
                    ended_at=now,
                    cancelled_by=actor.actor_id,
                ):
                    continue
                uow.tests.release_slot(test_id)
                uow.outbox.add(OutboxEvent.create_test_cancelled(
                    test, session, max_retries=self._outbox_max_retries
                ))
                cancelled.append(uow.sessions.get(session.id))
            return uow.tests.get(test_id), test.status, cancelled

        test, previous, sessions = self._runner.run("cancel test", work)
        logger.info(f"Test {test_id} cancelled by {actor.actor_id}; {len(sessions)} active sessions cancelled")

        for session in sessions:
            self._publish(test_id, SessionCancelled(
                test_id=test_id,
                session_id=session.id,
                participant_id=session.participant_id,
                cancelled_by=actor.actor_id,
                at=session.ended_at,
            ))
        self._publish_status(test, previous)
        return test

    # ═══════════════════════════════════════════════════════════════════════════
    # Queries
    # ═══════════════════════════════════════════════════════════════════════════

    def get_test(self, actor: Actor, test_id: str) -> CrowdTest:
        """Owners and admins see any test; everyone else only non-drafts."""
        test_id = validate_test_id(test_id)
        with self._runner.uow_factory() as uow:
            test = uow.tests.get(test_id)
        if test is None:
            raise NotFoundError("Test", test_id)
        if test.status == CrowdTestStatus.DRAFT and not self._can_manage(actor, test):
            raise NotFoundError("Test", test_id)
        return test

    def list_owned(self, actor: Actor) -> List[CrowdTest]:
        with self._runner.uow_factory() as uow:
            return uow.tests.list_by_owner(actor.actor_id)

    def overview(self, actor: Actor, test_id: str) -> TestOverview:
        """
        Counts and participant list of a test, as fetched by a room observer.

        Raises:
            ForbiddenError: Unless the actor is the owner, an admin or has
                participated in the test
        """
        test_id = validate_test_id(test_id)
        with self._runner.uow_factory() as uow:
            test = uow.tests.get(test_id)
            if test is None:
                raise NotFoundError("Test", test_id)
            if not (
                self._can_manage(actor, test)
                or uow.sessions.has_participated(test_id, actor.actor_id)
            ):
                raise ForbiddenError("Not authorized to view this test")

            sessions = uow.sessions.list_by_test(test_id, SLOT_HOLDING_STATUSES)

        participants: List[str] = []
        for session in sessions:
            if session.participant_id not in participants:
                participants.append(session.participant_id)

        return TestOverview(
            test=test,
            active_count=sum(1 for s in sessions if s.is_active),
            completed_count=sum(1 for s in sessions if s.status == SessionStatus.COMPLETED),
            participants=participants,
        )

    # ═══════════════════════════════════════════════════════════════════════════
    # Helpers
    # ═══════════════════════════════════════════════════════════════════════════

    @staticmethod
    def _can_manage(actor: Actor, test: CrowdTest) -> bool:
        return test.is_owned_by(actor.actor_id) or actor.is_admin

    def _load_owned(self, uow: IUnitOfWork, actor: Actor, test_id: str) -> CrowdTest:
        test = uow.tests.get(test_id)
        if test is None:
            raise NotFoundError("Test", test_id)
        if not self._can_manage(actor, test):
            raise ForbiddenError("Only the test owner can do this")
        return test

    @staticmethod
    def _apply_status(
        uow: IUnitOfWork,
        test: CrowdTest,
        expected: Iterable[CrowdTestStatus],
        target: CrowdTestStatus,
        **fields: Any,
    ) -> None:
        expected = list(expected)
        if test.status not in expected:
            raise InvalidTransitionError(current=test.status.value, target=target.value)
        if not uow.tests.transition_status(test.id, expected, target, **fields):
            current = uow.tests.get(test.id)
            raise InvalidTransitionError(
                current=current.status.value if current else None,
                target=target.value,
            )

    def _change_status(
        self,
        actor: Actor,
        test_id: str,
        expected: Iterable[CrowdTestStatus],
        target: CrowdTestStatus,
        **fields: Any,
    ) -> CrowdTest:
        test_id = validate_test_id(test_id)

        def work(uow: IUnitOfWork) -> Tuple[CrowdTest, CrowdTestStatus]:
            test = self._load_owned(uow, actor, test_id)
            self._apply_status(uow, test, expected, target, **fields)
            return uow.tests.get(test_id), test.status

        test, previous = self._runner.run(f"{target.value} test", work)
        logger.info(f"Test {test_id} moved {previous.value} -> {test.status.value} by {actor.actor_id}")
        self._publish_status(test, previous)
        return test

    def _publish_status(self, test: CrowdTest, previous: CrowdTestStatus) -> None:
        self._publish(test.id, TestStatusChanged(
            test_id=test.id,
            previous_status=previous.value,
            status=test.status.value,
            at=self._clock(),
        ))

    def _publish(self, test_id: str, event: RealtimeEvent) -> None:
        if self._broadcaster is not None:
            self._broadcaster.publish_to_test_room(test_id, event)
