"""
Tests for the Capacity Admission Controller.

Covers:
- Admission outcomes (Admitted / every Rejected reason)
- Slot accounting and the single-active-session rule
- Last-slot races on the in-memory and SQLite backends
- Transient conflict retry and exhaustion
- Rate limiting of session starts

Run with: pytest tests/test_admission.py -v
"""

import threading
from typing import List

import pytest

from crowdtest.application.services import AdmissionController, Admitted, Rejected
from crowdtest.domain.errors import (
    CapacityExceededError,
    ErrorCode,
    RateLimitedError,
)
from crowdtest.domain.models import Actor, CrowdTestStatus, SessionStatus
from crowdtest.infrastructure.ratelimit import (
    FixedWindowRateLimiter,
    RateLimitPolicy,
    SensitiveOperation,
)

from tests.helpers import add_test
from tests.mocks import FlakyUnitOfWork, RecordingConnection


def _slots(uow_factory, test_id: str) -> int:
    with uow_factory() as uow:
        return uow.tests.get(test_id).current_participants


# ═══════════════════════════════════════════════════════════════════════════════
# Admission Outcomes
# ═══════════════════════════════════════════════════════════════════════════════


class TestAdmissionOutcomes:
    """Tests for the result of a single admission attempt."""

    def test_admits_into_published_test(self, admission, uow_factory, published_test, tester, clock):
        """A tester is admitted, gets an IN_PROGRESS session and takes one slot."""
        result = admission.try_admit(tester, published_test.id, device_info={"os": "android"})

        assert isinstance(result, Admitted)
        assert result.admitted
        assert result.session.status == SessionStatus.IN_PROGRESS
        assert result.session.started_at == clock.now
        assert result.session.device_info == {"os": "android"}
        assert result.test.current_participants == 1
        assert _slots(uow_factory, published_test.id) == 1

    def test_pending_session_when_not_started_immediately(self, admission, published_test, tester):
        """start_immediately=False creates a PENDING session without started_at."""
        result = admission.try_admit(tester, published_test.id, start_immediately=False)

        assert result.admitted
        assert result.session.status == SessionStatus.PENDING
        assert result.session.started_at is None

    def test_running_test_is_joinable(self, admission, uow_factory, tester):
        """RUNNING tests accept participants like PUBLISHED ones."""
        test = add_test(uow_factory, status=CrowdTestStatus.RUNNING)

        assert admission.try_admit(tester, test.id).admitted

    @pytest.mark.parametrize("status", [
        CrowdTestStatus.DRAFT,
        CrowdTestStatus.PAUSED,
        CrowdTestStatus.COMPLETED,
        CrowdTestStatus.CANCELLED,
    ])
    def test_not_joinable_status_is_rejected(self, admission, uow_factory, tester, status):
        """Tests that are not PUBLISHED or RUNNING reject with NOT_PUBLISHED."""
        test = add_test(uow_factory, status=status)

        result = admission.try_admit(tester, test.id)

        assert isinstance(result, Rejected)
        assert result.reason == ErrorCode.NOT_PUBLISHED
        assert _slots(uow_factory, test.id) == 0

    def test_full_test_is_rejected(self, admission, uow_factory, tester):
        """A test whose slots are all taken rejects with CAPACITY_EXCEEDED."""
        test = add_test(uow_factory, max_participants=1, current_participants=1)

        result = admission.try_admit(tester, test.id)

        assert result.reason == ErrorCode.CAPACITY_EXCEEDED
        assert isinstance(result.to_error(), CapacityExceededError)

    def test_unknown_test_is_rejected(self, admission, tester):
        """Unknown test ids reject with NOT_FOUND."""
        result = admission.try_admit(tester, "no-such-test")

        assert result.reason == ErrorCode.NOT_FOUND

    def test_blank_test_id_is_rejected(self, admission, tester):
        """A blank test id rejects with INVALID_INPUT instead of raising."""
        result = admission.try_admit(tester, "   ")

        assert result.reason == ErrorCode.INVALID_INPUT

    def test_non_tester_is_forbidden(self, admission, published_test, other_customer, admin):
        """Customers and admins cannot take a slot."""
        assert admission.try_admit(other_customer, published_test.id).reason == ErrorCode.FORBIDDEN
        assert admission.try_admit(admin, published_test.id).reason == ErrorCode.FORBIDDEN

    def test_owner_cannot_join_own_test(self, admission, uow_factory):
        """A tester account that owns the test is forbidden from joining it."""
        test = add_test(uow_factory, owner_id="dual-1")

        result = admission.try_admit(Actor.tester("dual-1"), test.id)

        assert result.reason == ErrorCode.FORBIDDEN


# ═══════════════════════════════════════════════════════════════════════════════
# Active Session Rule
# ═══════════════════════════════════════════════════════════════════════════════


class TestSingleActiveSession:
    """Tests for one non-terminal session per (test, participant)."""

    def test_second_admission_is_duplicate(self, admission, uow_factory, published_test, tester):
        """While a session is active, the same tester is rejected and no slot is taken."""
        assert admission.try_admit(tester, published_test.id).admitted

        result = admission.try_admit(tester, published_test.id)

        assert result.reason == ErrorCode.DUPLICATE_ACTIVE_SESSION
        assert _slots(uow_factory, published_test.id) == 1

    def test_readmission_after_cancel(self, admission, session_service, uow_factory, published_test, tester):
        """Cancelling frees both the active pair and the slot."""
        first = admission.try_admit(tester, published_test.id)
        session_service.cancel(tester, first.session.id)

        second = admission.try_admit(tester, published_test.id)

        assert second.admitted
        assert second.session.id != first.session.id
        assert _slots(uow_factory, published_test.id) == 1

    def test_duplicate_rejected_on_sqlite(self, sqlite_uow_factory, clock):
        """The SQLite backend enforces the rule as well."""
        test = add_test(sqlite_uow_factory, max_participants=3)
        controller = AdmissionController(sqlite_uow_factory, backoff_seconds=0, clock=clock)
        tester = Actor.tester("tester-1")

        assert controller.try_admit(tester, test.id).admitted
        assert controller.try_admit(tester, test.id).reason == ErrorCode.DUPLICATE_ACTIVE_SESSION
        assert _slots(sqlite_uow_factory, test.id) == 1


# ═══════════════════════════════════════════════════════════════════════════════
# Concurrency
# ═══════════════════════════════════════════════════════════════════════════════


def _race(controller: AdmissionController, test_id: str, contenders: int) -> List:
    barrier = threading.Barrier(contenders)
    results: List = [None] * contenders

    def attempt(index: int) -> None:
        barrier.wait()
        results[index] = controller.try_admit(Actor.tester(f"racer-{index}"), test_id)

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(contenders)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results


class TestAdmissionRaces:
    """Tests for concurrent admission on the last slots."""

    @pytest.mark.parametrize("contenders", [2, 8])
    def test_last_slot_has_one_winner(self, any_uow_factory, clock, contenders):
        """N simultaneous attempts on one slot yield one Admitted and N-1 CAPACITY_EXCEEDED."""
        test = add_test(any_uow_factory, max_participants=1)
        controller = AdmissionController(any_uow_factory, backoff_seconds=0, clock=clock)

        results = _race(controller, test.id, contenders)

        admitted = [r for r in results if r is not None and r.admitted]
        rejected = [r for r in results if r is not None and not r.admitted]
        assert len(admitted) == 1
        assert len(rejected) == contenders - 1
        assert all(r.reason == ErrorCode.CAPACITY_EXCEEDED for r in rejected)
        assert _slots(any_uow_factory, test.id) == 1

    def test_never_overbooks(self, any_uow_factory, clock):
        """Ten testers racing for three slots fill exactly three."""
        test = add_test(any_uow_factory, max_participants=3)
        controller = AdmissionController(any_uow_factory, backoff_seconds=0, clock=clock)

        results = _race(controller, test.id, 10)

        assert sum(1 for r in results if r.admitted) == 3
        with any_uow_factory() as uow:
            assert uow.tests.get(test.id).current_participants == 3
            assert uow.sessions.count_by_status(test.id, [SessionStatus.IN_PROGRESS]) == 3


# ═══════════════════════════════════════════════════════════════════════════════
# Transient Conflicts
# ═══════════════════════════════════════════════════════════════════════════════


class TestAdmissionRetry:
    """Tests for bounded retry of transient storage conflicts."""

    def test_retries_until_commit_succeeds(self, store, clock, tester):
        """Two conflicting commits are retried and the third succeeds."""
        conflicts = [0]
        factory = lambda: FlakyUnitOfWork(store, conflicts)
        test = add_test(factory, max_participants=1)
        conflicts[0] = 2
        controller = AdmissionController(factory, max_retries=3, backoff_seconds=0, clock=clock)

        result = controller.try_admit(tester, test.id)

        assert result.admitted
        assert _slots(factory, test.id) == 1

    def test_exhausted_retries_reject_as_capacity_exceeded(self, store, clock, tester):
        """When conflicts outlast the retries, admission reports CAPACITY_EXCEEDED and takes no slot."""
        conflicts = [0]
        factory = lambda: FlakyUnitOfWork(store, conflicts)
        test = add_test(factory, max_participants=1)
        conflicts[0] = 100
        controller = AdmissionController(factory, max_retries=2, backoff_seconds=0, clock=clock)

        result = controller.try_admit(tester, test.id)

        assert result.reason == ErrorCode.CAPACITY_EXCEEDED
        conflicts[0] = 0
        assert _slots(factory, test.id) == 0
        with factory() as uow:
            assert uow.sessions.find_active(test.id, tester.actor_id) is None


# ═══════════════════════════════════════════════════════════════════════════════
# Rate Limiting and Events
# ═══════════════════════════════════════════════════════════════════════════════


class TestAdmissionRateLimit:
    """Tests for session-start throttling."""

    def test_rejects_after_budget_is_spent(self, uow_factory, clock, monotonic, published_test, tester):
        """Attempts beyond the session_start budget are RATE_LIMITED with a retry hint."""
        limiter = FixedWindowRateLimiter(
            policies={SensitiveOperation.SESSION_START: RateLimitPolicy(2, 60)},
            clock=monotonic,
        )
        controller = AdmissionController(uow_factory, rate_limiter=limiter, backoff_seconds=0, clock=clock)

        controller.try_admit(tester, published_test.id)
        controller.try_admit(tester, published_test.id)
        result = controller.try_admit(tester, published_test.id)

        assert result.reason == ErrorCode.RATE_LIMITED
        assert result.retry_after == pytest.approx(60)
        error = result.to_error()
        assert isinstance(error, RateLimitedError)
        assert error.retry_after == pytest.approx(60)

    def test_budget_returns_after_window(self, uow_factory, clock, monotonic, published_test, tester):
        """Once the window elapses the tester may try again."""
        limiter = FixedWindowRateLimiter(
            policies={SensitiveOperation.SESSION_START: RateLimitPolicy(1, 60)},
            clock=monotonic,
        )
        controller = AdmissionController(uow_factory, rate_limiter=limiter, backoff_seconds=0, clock=clock)
        controller.try_admit(tester, "missing")
        assert controller.try_admit(tester, published_test.id).reason == ErrorCode.RATE_LIMITED

        monotonic.advance(60)

        assert controller.try_admit(tester, published_test.id).admitted


class TestAdmissionEvents:
    """Tests for the ParticipantJoined broadcast."""

    def test_room_is_told_after_commit(self, admission, registry, published_test, owner, tester):
        """The owner's room connection receives ParticipantJoined with slot counts."""
        connection = RecordingConnection("owner-conn")
        registry.register(owner, connection)
        registry.join_test_room(connection, published_test.id)

        result = admission.try_admit(tester, published_test.id)

        joined = connection.of_kind("participant_joined")
        assert len(joined) == 1
        assert joined[0].session_id == result.session.id
        assert joined[0].current_participants == 1
        assert joined[0].max_participants == 2

    def test_rejection_publishes_nothing(self, admission, registry, uow_factory, owner, tester):
        """A rejected admission sends no event."""
        test = add_test(uow_factory, max_participants=1, current_participants=1)
        connection = RecordingConnection("owner-conn")
        registry.register(owner, connection)
        registry.join_test_room(connection, test.id)

        admission.try_admit(tester, test.id)

        assert connection.events == []
