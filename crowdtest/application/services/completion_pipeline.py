"""
Completion Side-Effect Pipeline.

Runs inside the caller's unit of work, right after a session moved to
COMPLETED, so the session transition and every side effect commit or roll
back together:

  1. create the Earning (amount frozen from the test's reward)
  2. add one completion and the amount to the participant's profile
  3. recompute the participant's average rating over every rated
     COMPLETED session
  4. queue the owner's "session completed" notification
  5. if the test's COMPLETED sessions reached max_participants, move the
     test to COMPLETED and queue the owner's "test completed" notification

The earning's unique session_id makes the pipeline idempotent: when an
earning already exists for the session, nothing runs.

CompletionReconciler is the safety net for data written outside this path:
it reports completed sessions that have no earning (logged CRITICAL) and
slot counters that drifted, and can repair both.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from crowdtest.domain.errors import NotFoundError
from crowdtest.domain.interfaces.unit_of_work import IUnitOfWork
from crowdtest.domain.models.crowd_test import CrowdTest, CrowdTestStatus, OPEN_STATUSES
from crowdtest.domain.models.earning import Earning, EarningStatus, ParticipantProfile
from crowdtest.domain.models.integrity import IntegrityIssue, IntegrityReport
from crowdtest.domain.models.outbox import OutboxEvent
from crowdtest.domain.models.session import (
    Session,
    SessionStatus,
    SLOT_HOLDING_STATUSES,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionOutcome:
    """
    What the pipeline did for one session.

    Attributes:
        earning: The session's earning (new or pre-existing)
        profile: Participant profile after the update (None if skipped)
        test: The test as it stands after the pipeline
        test_completed: True if this completion moved the test to COMPLETED
        already_applied: True if the pipeline had already run for the session
    """

    earning: Earning
    profile: Optional[ParticipantProfile]
    test: CrowdTest
    test_completed: bool = False
    already_applied: bool = False


class CompletionPipeline:
    """
    Exactly-once side effects of a COMPLETED session.

    Usage (inside an entered unit of work):
        outcome = pipeline.run(uow, completed_session)
        uow.commit()
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = datetime.now,
        outbox_max_retries: int = 5,
    ):
        self._clock = clock
        self._outbox_max_retries = outbox_max_retries

    def run(self, uow: IUnitOfWork, session: Session) -> CompletionOutcome:
        """
        Apply the completion side effects for `session`.

        Args:
            uow: Entered unit of work; the caller commits
            session: Session already in COMPLETED status in this transaction

        Returns:
            CompletionOutcome

        Raises:
            NotFoundError: If the session's test no longer exists
            ValueError: If the session is not COMPLETED
        """
        if session.status != SessionStatus.COMPLETED:
            raise ValueError(f"Session {session.id} is {session.status.value}, not completed")

        test = uow.tests.get(session.test_id)
        if test is None:
            raise NotFoundError("Test", session.test_id)

        existing = uow.earnings.get_by_session(session.id)
        if existing is not None:
            logger.info(f"Completion side effects already applied for session {session.id}")
            return CompletionOutcome(
                earning=existing,
                profile=uow.profiles.get(session.participant_id),
                test=test,
                already_applied=True,
            )

        earning = uow.earnings.add(Earning(
            session_id=session.id,
            participant_id=session.participant_id,
            test_id=test.id,
            amount=test.reward_per_participant,
            status=EarningStatus.PENDING,
            description=f"Payment for completing test: {test.title}",
            created_at=self._clock(),
        ))

        average = uow.sessions.average_rating(session.participant_id)
        profile = uow.profiles.record_completion(
            session.participant_id,
            earning.amount,
            average,
        )

        uow.outbox.add(OutboxEvent.create_session_completed(
            test, session, max_retries=self._outbox_max_retries
        ))

        test_completed = self._complete_test_if_full(uow, test)
        if test_completed:
            test = uow.tests.get(test.id)

        logger.info(
            f"Completion applied for session {session.id}: earning {earning.amount} "
            f"to {session.participant_id}, completed_count={profile.completed_count}"
        )
        return CompletionOutcome(
            earning=earning,
            profile=profile,
            test=test,
            test_completed=test_completed,
        )

    def _complete_test_if_full(self, uow: IUnitOfWork, test: CrowdTest) -> bool:
        completed = uow.sessions.count_by_status(test.id, [SessionStatus.COMPLETED])
        if completed < test.max_participants:
            return False

        moved = uow.tests.transition_status(
            test.id,
            OPEN_STATUSES,
            CrowdTestStatus.COMPLETED,
            completed_at=self._clock(),
        )
        if not moved:
            return False

        uow.outbox.add(OutboxEvent.create_test_completed(
            test, completed, max_retries=self._outbox_max_retries
        ))
        logger.info(f"Test {test.id} completed with {completed} sessions")
        return True


class CompletionReconciler:
    """
    Scans for completion side effects and slot counters that disagree with
    the sessions, and optionally repairs them.

    Usage:
        reconciler = CompletionReconciler(uow_factory, pipeline)
        report = reconciler.reconcile()             # detect only
        report = reconciler.reconcile(repair=True)  # detect and fix
    """

    def __init__(
        self,
        uow_factory: Callable[[], IUnitOfWork],
        pipeline: CompletionPipeline,
        batch_size: int = 1000,
    ):
        self._uow_factory = uow_factory
        self._pipeline = pipeline
        self._batch_size = batch_size

    def reconcile(self, repair: bool = False) -> IntegrityReport:
        """
        Run one reconciliation pass.

        Args:
            repair: Re-run the pipeline for sessions missing an earning and
                recount drifted slot counters

        Returns:
            IntegrityReport
        """
        report = IntegrityReport()

        with self._uow_factory() as uow:
            self._check_earnings(uow, report, repair)
            self._check_capacity(uow, report, repair)
            if repair:
                uow.commit()

        if report.is_healthy:
            logger.info(f"Reconciliation clean: {report.total_checked} items checked")
        else:
            logger.warning(f"Reconciliation finished:\n{report.summary()}")
        return report

    def _check_earnings(self, uow: IUnitOfWork, report: IntegrityReport, repair: bool) -> None:
        for session in uow.sessions.list_by_status(SessionStatus.COMPLETED, limit=self._batch_size):
            report.total_checked += 1
            if uow.earnings.get_by_session(session.id) is not None:
                continue

            issue = IntegrityIssue.missing_earning(session.id, session.participant_id, session.test_id)
            report.add_issue(issue)
            logger.critical(
                f"Completed session {session.id} of {session.participant_id} "
                f"on test {session.test_id} has no earning"
            )

            if repair:
                try:
                    self._pipeline.run(uow, session)
                    issue.repaired = True
                    report.repaired_count += 1
                except NotFoundError as e:
                    report.repair_failed_count += 1
                    logger.error(f"Cannot repair session {session.id}: {e}")

    def _check_capacity(self, uow: IUnitOfWork, report: IntegrityReport, repair: bool) -> None:
        for test in uow.tests.list_all(limit=self._batch_size):
            report.total_checked += 1
            actual = uow.sessions.count_by_status(test.id, SLOT_HOLDING_STATUSES)
            if actual == test.current_participants:
                continue

            issue = IntegrityIssue.capacity_drift(
                test.id, test.current_participants, actual, test.max_participants
            )
            report.add_issue(issue)
            logger.warning(issue.message)

            if repair and issue.auto_repairable:
                uow.tests.set_participant_count(test.id, actual)
                issue.repaired = True
                report.repaired_count += 1
            elif repair:
                report.repair_failed_count += 1
