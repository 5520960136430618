"""
Capacity Admission Controller.

Admits a tester into a crowd test without ever overbooking it. Admission is
one transaction holding two guarded writes:

  1. try_reserve_slot: current_participants += 1 WHERE current < max AND
     status IN (published, running)
  2. insert the session (the active-pair unique index rejects duplicates)

If either write fails the transaction rolls back and the slot is not
taken. Rejections are returned as values (Rejected) rather than raised so
callers can map them without exception handling; to_error() turns one
back into the matching DomainError.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union, TYPE_CHECKING

from crowdtest.domain.errors import (
    CapacityExceededError,
    DomainError,
    DuplicateActiveSessionError,
    ErrorCode,
    ForbiddenError,
    InvalidInputError,
    NotFoundError,
    NotPublishedError,
    RateLimitedError,
    TransientStorageError,
    error_for_code,
)
from crowdtest.domain.interfaces.unit_of_work import IUnitOfWork
from crowdtest.domain.models.actor import Actor, Role
from crowdtest.domain.models.crowd_test import CrowdTest, JOINABLE_STATUSES
from crowdtest.domain.models.events import ParticipantJoined
from crowdtest.domain.models.session import Session, SessionStatus
from crowdtest.application.services.transactions import TransactionRunner
from crowdtest.application.validators import validate_test_id
from crowdtest.infrastructure.ratelimit import SensitiveOperation

if TYPE_CHECKING:
    from crowdtest.infrastructure.ratelimit import FixedWindowRateLimiter
    from crowdtest.infrastructure.realtime import ConnectionRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Admitted:
    """The tester holds a slot and a new session."""

    session: Session
    test: CrowdTest

    @property
    def admitted(self) -> bool:
        return True


@dataclass(frozen=True)
class Rejected:
    """
    Admission was refused.

    Attributes:
        reason: Error code explaining the refusal
        message: User-safe message
        retry_after: Seconds until a rate-limited caller may retry
    """

    reason: ErrorCode
    message: str = ""
    retry_after: Optional[float] = None

    @property
    def admitted(self) -> bool:
        return False

    def to_error(self) -> DomainError:
        if self.reason == ErrorCode.RATE_LIMITED:
            return RateLimitedError(self.retry_after or 0.0, self.message or None)
        return error_for_code(self.reason, self.message or None)

    @classmethod
    def from_error(cls, error: DomainError) -> "Rejected":
        return cls(
            reason=error.code,
            message=error.message,
            retry_after=getattr(error, "retry_after", None),
        )


AdmissionResult = Union[Admitted, Rejected]


class AdmissionController:
    """
    Reserves capacity and creates sessions.

    Usage:
        controller = AdmissionController(uow_factory, broadcaster=registry)
        result = controller.try_admit(Actor.tester("t-1"), test_id)
        if result.admitted:
            session = result.session
    """

    def __init__(
        self,
        uow_factory: Callable[[], IUnitOfWork],
        broadcaster: Optional["ConnectionRegistry"] = None,
        rate_limiter: Optional["FixedWindowRateLimiter"] = None,
        max_retries: int = 3,
        backoff_seconds: float = 0.05,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._runner = TransactionRunner(uow_factory, max_retries, backoff_seconds)
        self._broadcaster = broadcaster
        self._rate_limiter = rate_limiter
        self._clock = clock

    def try_admit(
        self,
        actor: Actor,
        test_id: str,
        device_info: Optional[Dict[str, Any]] = None,
        start_immediately: bool = True,
    ) -> AdmissionResult:
        """
        Try to admit `actor` into a test.

        Args:
            actor: Authenticated caller; must be a TESTER
            test_id: Test to join
            device_info: Client device description stored on the session
            start_immediately: Create the session IN_PROGRESS (default) or PENDING

        Returns:
            Admitted(session, test) or Rejected(reason)
        """
        try:
            test_id = validate_test_id(test_id)
        except InvalidInputError as e:
            return Rejected.from_error(e)

        if self._rate_limiter is not None:
            try:
                self._rate_limiter.check(actor.actor_id, SensitiveOperation.SESSION_START)
            except RateLimitedError as e:
                return Rejected.from_error(e)

        if actor.role != Role.TESTER:
            return Rejected(ErrorCode.FORBIDDEN, "Only testers can join tests")

        try:
            session, test = self._runner.run(
                "admission",
                lambda uow: self._admit(uow, actor, test_id, device_info or {}, start_immediately),
            )
        except TransientStorageError:
            logger.warning(f"Admission of {actor.actor_id} to test {test_id} gave up on storage conflicts")
            return Rejected(ErrorCode.CAPACITY_EXCEEDED, CapacityExceededError.default_message)
        except DomainError as e:
            logger.debug(f"Admission of {actor.actor_id} to test {test_id} rejected: {e}")
            return Rejected.from_error(e)

        logger.info(
            f"Admitted {actor.actor_id} to test {test_id}: session {session.id} "
            f"({test.current_participants}/{test.max_participants})"
        )
        if self._broadcaster is not None:
            self._broadcaster.publish_to_test_room(test_id, ParticipantJoined(
                test_id=test_id,
                session_id=session.id,
                participant_id=session.participant_id,
                current_participants=test.current_participants,
                max_participants=test.max_participants,
                at=self._clock(),
            ))
        return Admitted(session=session, test=test)

    def _admit(
        self,
        uow: IUnitOfWork,
        actor: Actor,
        test_id: str,
        device_info: Dict[str, Any],
        start_immediately: bool,
    ):
        test = uow.tests.get(test_id)
        if test is None:
            raise NotFoundError("Test", test_id)
        if test.is_owned_by(actor.actor_id):
            raise ForbiddenError("You cannot join your own test")
        if not test.is_joinable:
            raise NotPublishedError()
        if uow.sessions.find_active(test_id, actor.actor_id) is not None:
            raise DuplicateActiveSessionError()

        if not uow.tests.try_reserve_slot(test_id, JOINABLE_STATUSES):
            current = uow.tests.get(test_id)
            if current is None:
                raise NotFoundError("Test", test_id)
            if not current.is_joinable:
                raise NotPublishedError()
            raise CapacityExceededError()

        now = self._clock()
        session = uow.sessions.add(Session(
            test_id=test_id,
            participant_id=actor.actor_id,
            status=SessionStatus.IN_PROGRESS if start_immediately else SessionStatus.PENDING,
            started_at=now if start_immediately else None,
            device_info=dict(device_info),
            created_at=now,
        ))
        return session, uow.tests.get(test_id)
