"""
Session Service - the participant session state machine.

Every transition is a conditional update guarded by the expected current
status, executed through TransactionRunner. When the guard misses, the
session is re-read inside the same transaction to report why:
SessionAlreadyTerminalError if another caller ended it first, otherwise
InvalidTransitionError.

Live events go out only after the transaction committed.

Authorization:
    start / update_progress / complete   participant
    cancel                               participant, test owner, SYSTEM
    fail                                 participant, SYSTEM
    get_session                          participant, test owner, ADMIN
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, TYPE_CHECKING

from crowdtest.domain.errors import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    SessionAlreadyTerminalError,
)
from crowdtest.domain.interfaces.unit_of_work import IUnitOfWork
from crowdtest.domain.models.actor import Actor
from crowdtest.domain.models.crowd_test import CrowdTest
from crowdtest.domain.models.events import (
    ProgressUpdated,
    RealtimeEvent,
    SessionCancelled,
    SessionCompleted,
    SessionFailed,
    TestStatusChanged,
)
from crowdtest.domain.models.outbox import OutboxEvent
from crowdtest.domain.models.session import (
    ACTIVE_SESSION_STATUSES,
    Session,
    SessionStatus,
)
from crowdtest.application.services.completion_pipeline import (
    CompletionOutcome,
    CompletionPipeline,
)
from crowdtest.application.services.transactions import TransactionRunner
from crowdtest.application.validators import (
    validate_feedback,
    validate_progress_update,
    validate_rating,
    validate_reason,
    validate_session_id,
)

if TYPE_CHECKING:
    from crowdtest.infrastructure.realtime import ConnectionRegistry

logger = logging.getLogger(__name__)


class SessionService:
    """
    Drives sessions through PENDING -> IN_PROGRESS -> COMPLETED / FAILED,
    with CANCELLED reachable from any non-terminal state.

    Usage:
        service = SessionService(uow_factory, CompletionPipeline(), broadcaster=registry)
        service.update_progress(actor, session_id, {"current_task": "checkout"})
        session = service.complete(actor, session_id, rating=5)
    """

    def __init__(
        self,
        uow_factory: Callable[[], IUnitOfWork],
        pipeline: CompletionPipeline,
        broadcaster: Optional["ConnectionRegistry"] = None,
        max_retries: int = 3,
        backoff_seconds: float = 0.05,
        clock: Callable[[], datetime] = datetime.now,
        outbox_max_retries: int = 5,
    ):
        self._runner = TransactionRunner(uow_factory, max_retries, backoff_seconds)
        self._pipeline = pipeline
        self._broadcaster = broadcaster
        self._clock = clock
        self._outbox_max_retries = outbox_max_retries

    # ═══════════════════════════════════════════════════════════════════════════
    # Transitions
    # ═══════════════════════════════════════════════════════════════════════════

    def start(self, actor: Actor, session_id: str) -> Session:
        """Move a PENDING session to IN_PROGRESS."""
        session_id = validate_session_id(session_id)

        def work(uow: IUnitOfWork) -> Session:
            session, _ = self._load(uow, session_id)
            self._require_participant(actor, session)
            self._require_transition(session, SessionStatus.IN_PROGRESS)
            return self._transition(
                uow,
                session,
                [SessionStatus.PENDING],
                SessionStatus.IN_PROGRESS,
                started_at=self._clock(),
            )

        session = self._runner.run("start session", work)
        logger.info(f"Session {session.id} started by {session.participant_id} on test {session.test_id}")
        return session

    def update_progress(self, actor: Actor, session_id: str, partial: Dict[str, Any]) -> Session:
        """
        Merge a progress update into an IN_PROGRESS session.

        task_results and progress are merged key by key; feedback is
        replaced; current_task is kept under progress["current_task"].

        Raises:
            SessionAlreadyTerminalError: If the session has ended
            InvalidTransitionError: If the session has not started yet
        """
        session_id = validate_session_id(session_id)
        update = validate_progress_update(partial)

        def work(uow: IUnitOfWork) -> Session:
            session, _ = self._load(uow, session_id)
            self._require_participant(actor, session)
            self._require_in_progress(session)

            fields: Dict[str, Any] = {}
            if "feedback" in update:
                fields["feedback"] = update["feedback"]
            if "task_results" in update:
                fields["task_results"] = {**session.task_results, **update["task_results"]}
            if "progress" in update or "current_task" in update:
                progress = {**session.progress, **update.get("progress", {})}
                if "current_task" in update:
                    progress["current_task"] = update["current_task"]
                fields["progress"] = progress

            if not uow.sessions.update_progress(session_id, **fields):
                self._raise_for_missed_guard(uow, session_id, SessionStatus.IN_PROGRESS)
            return uow.sessions.get(session_id)

        session = self._runner.run("update progress", work)
        self._publish(session.test_id, ProgressUpdated(
            test_id=session.test_id,
            session_id=session.id,
            participant_id=session.participant_id,
            progress=dict(session.progress),
            current_task=session.progress.get("current_task"),
            at=self._clock(),
        ))
        return session

    def complete(
        self,
        actor: Actor,
        session_id: str,
        rating: Optional[int] = None,
        feedback: Optional[str] = None,
    ) -> Session:
        """
        Complete an IN_PROGRESS session and apply its side effects.

        The transition and the completion pipeline share one transaction;
        if the pipeline fails the session stays IN_PROGRESS.

        Returns:
            The completed session
        """
        session_id = validate_session_id(session_id)
        rating = validate_rating(rating)
        feedback = validate_feedback(feedback)

        def work(uow: IUnitOfWork) -> Tuple[Session, CrowdTest, CompletionOutcome]:
            session, test = self._load(uow, session_id)
            self._require_participant(actor, session)
            self._require_transition(session, SessionStatus.COMPLETED)

            now = self._clock()
            fields: Dict[str, Any] = {
                "completed_at": now,
                "duration_seconds": session.elapsed_seconds(now),
                "rating": rating,
            }
            if feedback is not None:
                fields["feedback"] = feedback

            completed = self._transition(
                uow, session, [SessionStatus.IN_PROGRESS], SessionStatus.COMPLETED, **fields
            )
            return completed, test, self._pipeline.run(uow, completed)

        session, test_before, outcome = self._runner.run("complete session", work)

        logger.info(
            f"Session {session.id} completed by {session.participant_id} on test {session.test_id} "
            f"in {session.duration_seconds}s (rating={session.rating})"
        )
        self._publish(session.test_id, SessionCompleted(
            test_id=session.test_id,
            session_id=session.id,
            participant_id=session.participant_id,
            duration_seconds=session.duration_seconds or 0,
            rating=session.rating,
            at=session.completed_at,
        ))
        if outcome.test_completed:
            self._publish(session.test_id, TestStatusChanged(
                test_id=session.test_id,
                previous_status=test_before.status.value,
                status=outcome.test.status.value,
                at=self._clock(),
            ))
        return session

    def cancel(self, actor: Actor, session_id: str) -> Session:
        """
        Cancel a non-terminal session and give its slot back.

        The participant, the test owner or SYSTEM may cancel. When someone
        other than the participant cancels, the participant is notified
        through the outbox.
        """
        session_id = validate_session_id(session_id)

        def work(uow: IUnitOfWork) -> Session:
            session, test = self._load(uow, session_id)
            is_participant = actor.actor_id == session.participant_id
            if not (is_participant or test.is_owned_by(actor.actor_id) or actor.is_system):
                raise ForbiddenError("Not authorized to cancel this session")
            self._require_transition(session, SessionStatus.CANCELLED)

            cancelled = self._transition(
                uow,
                session,
                ACTIVE_SESSION_STATUSES,
                SessionStatus.CANCELLED,
                ended_at=self._clock(),
                cancelled_by=actor.actor_id,
            )
            uow.tests.release_slot(session.test_id)

            if not is_participant:
                uow.outbox.add(OutboxEvent.create_session_cancelled(
                    test, cancelled, actor.actor_id, max_retries=self._outbox_max_retries
                ))
            return cancelled

        session = self._runner.run("cancel session", work)
        logger.info(
            f"Session {session.id} of {session.participant_id} on test {session.test_id} "
            f"cancelled by {actor.actor_id}"
        )
        self._publish(session.test_id, SessionCancelled(
            test_id=session.test_id,
            session_id=session.id,
            participant_id=session.participant_id,
            cancelled_by=actor.actor_id,
            at=session.ended_at,
        ))
        return session

    def fail(self, actor: Actor, session_id: str, reason: Optional[str] = None) -> Session:
        """
        Mark a non-terminal session FAILED and give its slot back.

        Used by the participant (abandon) and by SYSTEM (inactivity expiry).
        """
        session_id = validate_session_id(session_id)
        reason = validate_reason(reason) or "unspecified"

        def work(uow: IUnitOfWork) -> Session:
            session, _ = self._load(uow, session_id)
            if not (actor.actor_id == session.participant_id or actor.is_system):
                raise ForbiddenError("Not authorized to fail this session")
            self._require_transition(session, SessionStatus.FAILED)

            failed = self._transition(
                uow,
                session,
                ACTIVE_SESSION_STATUSES,
                SessionStatus.FAILED,
                ended_at=self._clock(),
                failure_reason=reason,
            )
            uow.tests.release_slot(session.test_id)
            return failed

        session = self._runner.run("fail session", work)
        logger.info(
            f"Session {session.id} of {session.participant_id} on test {session.test_id} "
            f"failed: {reason}"
        )
        self._publish(session.test_id, SessionFailed(
            test_id=session.test_id,
            session_id=session.id,
            participant_id=session.participant_id,
            reason=reason,
            at=session.ended_at,
        ))
        return session

    # ═══════════════════════════════════════════════════════════════════════════
    # Queries
    # ═══════════════════════════════════════════════════════════════════════════

    def get_session(self, actor: Actor, session_id: str) -> Session:
        session_id = validate_session_id(session_id)
        with self._runner.uow_factory() as uow:
            session, test = self._load(uow, session_id)
        if not (
            actor.actor_id == session.participant_id
            or test.is_owned_by(actor.actor_id)
            or actor.is_admin
        ):
            raise ForbiddenError("Not authorized to view this session")
        return session

    # ═══════════════════════════════════════════════════════════════════════════
    # Helpers
    # ═══════════════════════════════════════════════════════════════════════════

    def _load(self, uow: IUnitOfWork, session_id: str) -> Tuple[Session, CrowdTest]:
        session = uow.sessions.get(session_id)
        if session is None:
            raise NotFoundError("Session", session_id)
        test = uow.tests.get(session.test_id)
        if test is None:
            raise NotFoundError("Test", session.test_id)
        return session, test

    @staticmethod
    def _require_participant(actor: Actor, session: Session) -> None:
        if actor.actor_id != session.participant_id:
            raise ForbiddenError("Only the session's participant can do this")

    @staticmethod
    def _require_transition(session: Session, target: SessionStatus) -> None:
        if session.is_terminal:
            raise SessionAlreadyTerminalError()
        if not session.can_transition_to(target):
            raise InvalidTransitionError(current=session.status.value, target=target.value)

    @staticmethod
    def _require_in_progress(session: Session) -> None:
        if session.is_terminal:
            raise SessionAlreadyTerminalError()
        if session.status != SessionStatus.IN_PROGRESS:
            raise InvalidTransitionError(f"Session is {session.status.value}, not in progress")

    def _transition(
        self,
        uow: IUnitOfWork,
        session: Session,
        expected: Iterable[SessionStatus],
        target: SessionStatus,
        **fields: Any,
    ) -> Session:
        if not uow.sessions.transition(session.id, expected, target, **fields):
            self._raise_for_missed_guard(uow, session.id, target)
        return uow.sessions.get(session.id)

    @staticmethod
    def _raise_for_missed_guard(uow: IUnitOfWork, session_id: str, target: SessionStatus) -> None:
        current = uow.sessions.get(session_id)
        if current is None:
            raise NotFoundError("Session", session_id)
        if current.is_terminal:
            raise SessionAlreadyTerminalError()
        raise InvalidTransitionError(current=current.status.value, target=target.value)

    def _publish(self, test_id: str, event: RealtimeEvent) -> None:
        if self._broadcaster is not None:
            self._broadcaster.publish_to_test_room(test_id, event)
