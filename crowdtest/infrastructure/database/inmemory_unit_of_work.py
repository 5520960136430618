"""
In-Memory Unit of Work.

Dict-backed storage for tests and single-process deployments. Every unit
of work built on the same InMemoryStore holds the store lock from
__enter__ to __exit__, so units of work are fully serialized; rollback
restores the snapshot taken at the last commit.

Entities are copied on the way in and out, so callers only change stored
state through repository methods.
"""

import copy
import threading
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from crowdtest.domain.errors import DuplicateActiveSessionError
from crowdtest.domain.interfaces.repositories import (
    ICrowdTestRepository,
    ISessionRepository,
    IEarningRepository,
    IProfileRepository,
    IOutboxRepository,
)
from crowdtest.domain.interfaces.unit_of_work import IUnitOfWork
from crowdtest.domain.models.crowd_test import CrowdTest, CrowdTestStatus
from crowdtest.domain.models.earning import Earning, ParticipantProfile
from crowdtest.domain.models.outbox import OutboxEvent, OutboxStatus
from crowdtest.domain.models.session import (
    Session,
    SessionStatus,
    ACTIVE_SESSION_STATUSES,
)


class InMemoryStore:
    """Shared tables for every InMemoryUnitOfWork built on it."""

    def __init__(self):
        self.lock = threading.RLock()
        self.tables: Dict[str, Dict[Any, Any]] = {
            "tests": {},
            "sessions": {},
            "earnings": {},
            "profiles": {},
            "outbox": {},
        }
        self.outbox_pk = 0

    def snapshot(self) -> Dict[str, Any]:
        return {"tables": copy.deepcopy(self.tables), "outbox_pk": self.outbox_pk}

    def restore(self, snapshot: Dict[str, Any]) -> None:
        self.tables = copy.deepcopy(snapshot["tables"])
        self.outbox_pk = snapshot["outbox_pk"]


# ═══════════════════════════════════════════════════════════════════════════════
# Repositories
# ═══════════════════════════════════════════════════════════════════════════════


class InMemoryCrowdTestRepository(ICrowdTestRepository):

    def __init__(self, store: InMemoryStore):
        self._store = store

    @property
    def _rows(self) -> Dict[str, CrowdTest]:
        return self._store.tables["tests"]

    def get(self, test_id: str) -> Optional[CrowdTest]:
        test = self._rows.get(test_id)
        return copy.deepcopy(test) if test else None

    def add(self, test: CrowdTest) -> CrowdTest:
        if test.id in self._rows:
            raise ValueError(f"CrowdTest {test.id} already exists")
        self._rows[test.id] = copy.deepcopy(test)
        return copy.deepcopy(test)

    def update_details(self, test_id: str, **fields: Any) -> bool:
        test = self._rows.get(test_id)
        if test is None or test.status != CrowdTestStatus.DRAFT:
            return False
        self._rows[test_id] = replace(test, **fields)
        return True

    def delete(self, test_id: str) -> bool:
        return self._rows.pop(test_id, None) is not None

    def list_by_owner(self, owner_id: str) -> List[CrowdTest]:
        tests = [t for t in self._rows.values() if t.owner_id == owner_id]
        tests.sort(key=lambda t: t.created_at, reverse=True)
        return copy.deepcopy(tests)

    def list_all(self, limit: int = 1000) -> List[CrowdTest]:
        tests = sorted(self._rows.values(), key=lambda t: t.created_at)
        return copy.deepcopy(tests[:limit])

    def try_reserve_slot(self, test_id: str, joinable: Iterable[CrowdTestStatus]) -> bool:
        test = self._rows.get(test_id)
        if test is None or test.status not in set(joinable) or not test.has_capacity():
            return False
        test.current_participants += 1
        return True

    def release_slot(self, test_id: str) -> bool:
        test = self._rows.get(test_id)
        if test is None or test.current_participants <= 0:
            return False
        test.current_participants -= 1
        return True

    def set_participant_count(self, test_id: str, count: int) -> bool:
        test = self._rows.get(test_id)
        if test is None:
            return False
        if not 0 <= count <= test.max_participants:
            raise ValueError(f"Participant count {count} out of range for test {test_id}")
        test.current_participants = count
        return True

    def transition_status(
        self,
        test_id: str,
        expected: Iterable[CrowdTestStatus],
        target: CrowdTestStatus,
        **fields: Any,
    ) -> bool:
        test = self._rows.get(test_id)
        if test is None or test.status not in set(expected):
            return False
        self._rows[test_id] = replace(test, status=target, **fields)
        return True


class InMemorySessionRepository(ISessionRepository):

    def __init__(self, store: InMemoryStore):
        self._store = store

    @property
    def _rows(self) -> Dict[str, Session]:
        return self._store.tables["sessions"]

    def add(self, session: Session) -> Session:
        if session.is_active and self._find_active(session.test_id, session.participant_id):
            raise DuplicateActiveSessionError()
        self._rows[session.id] = copy.deepcopy(session)
        return copy.deepcopy(session)

    def _find_active(self, test_id: str, participant_id: str) -> Optional[Session]:
        return next(
            (
                s for s in self._rows.values()
                if s.test_id == test_id
                and s.participant_id == participant_id
                and s.status in ACTIVE_SESSION_STATUSES
            ),
            None,
        )

    def get(self, session_id: str) -> Optional[Session]:
        session = self._rows.get(session_id)
        return copy.deepcopy(session) if session else None

    def find_active(self, test_id: str, participant_id: str) -> Optional[Session]:
        session = self._find_active(test_id, participant_id)
        return copy.deepcopy(session) if session else None

    def transition(
        self,
        session_id: str,
        expected: Iterable[SessionStatus],
        target: SessionStatus,
        **fields: Any,
    ) -> bool:
        session = self._rows.get(session_id)
        if session is None or session.status not in set(expected):
            return False
        self._rows[session_id] = replace(session, status=target, **copy.deepcopy(fields))
        return True

    def update_progress(self, session_id: str, **fields: Any) -> bool:
        session = self._rows.get(session_id)
        if session is None or session.status != SessionStatus.IN_PROGRESS:
            return False
        self._rows[session_id] = replace(session, **copy.deepcopy(fields))
        return True

    def count_by_status(self, test_id: str, statuses: Iterable[SessionStatus]) -> int:
        wanted = set(statuses)
        return sum(
            1 for s in self._rows.values()
            if s.test_id == test_id and s.status in wanted
        )

    def list_by_test(
        self,
        test_id: str,
        statuses: Optional[Iterable[SessionStatus]] = None,
    ) -> List[Session]:
        wanted = set(statuses) if statuses is not None else None
        sessions = [
            s for s in self._rows.values()
            if s.test_id == test_id and (wanted is None or s.status in wanted)
        ]
        sessions.sort(key=lambda s: s.created_at)
        return copy.deepcopy(sessions)

    def list_by_status(self, status: SessionStatus, limit: int = 1000) -> List[Session]:
        sessions = [s for s in self._rows.values() if s.status == status]
        sessions.sort(key=lambda s: s.created_at)
        return copy.deepcopy(sessions[:limit])

    def has_participated(self, test_id: str, participant_id: str) -> bool:
        return any(
            s.test_id == test_id and s.participant_id == participant_id
            for s in self._rows.values()
        )

    def average_rating(self, participant_id: str) -> Optional[float]:
        ratings = [
            s.rating for s in self._rows.values()
            if s.participant_id == participant_id
            and s.status == SessionStatus.COMPLETED
            and s.rating is not None
        ]
        if not ratings:
            return None
        return sum(ratings) / len(ratings)


class InMemoryEarningRepository(IEarningRepository):

    def __init__(self, store: InMemoryStore):
        self._store = store

    @property
    def _rows(self) -> Dict[str, Earning]:
        return self._store.tables["earnings"]

    def add(self, earning: Earning) -> Earning:
        if earning.session_id in self._rows:
            raise ValueError(f"Earning for session {earning.session_id} already exists")
        self._rows[earning.session_id] = copy.deepcopy(earning)
        return copy.deepcopy(earning)

    def get_by_session(self, session_id: str) -> Optional[Earning]:
        earning = self._rows.get(session_id)
        return copy.deepcopy(earning) if earning else None

    def list_by_participant(self, participant_id: str) -> List[Earning]:
        earnings = [e for e in self._rows.values() if e.participant_id == participant_id]
        earnings.sort(key=lambda e: e.created_at, reverse=True)
        return copy.deepcopy(earnings)


class InMemoryProfileRepository(IProfileRepository):

    def __init__(self, store: InMemoryStore):
        self._store = store

    @property
    def _rows(self) -> Dict[str, ParticipantProfile]:
        return self._store.tables["profiles"]

    def get(self, participant_id: str) -> Optional[ParticipantProfile]:
        profile = self._rows.get(participant_id)
        return copy.deepcopy(profile) if profile else None

    def record_completion(
        self,
        participant_id: str,
        amount: Decimal,
        average_rating: Optional[float],
    ) -> ParticipantProfile:
        profile = self._rows.get(participant_id)
        if profile is None:
            profile = ParticipantProfile(participant_id=participant_id)
            self._rows[participant_id] = profile
        profile.completed_count += 1
        profile.total_earnings += amount
        profile.average_rating = average_rating
        profile.updated_at = datetime.now()
        return copy.deepcopy(profile)


class InMemoryOutboxRepository(IOutboxRepository):

    def __init__(self, store: InMemoryStore):
        self._store = store

    @property
    def _rows(self) -> Dict[str, OutboxEvent]:
        return self._store.tables["outbox"]

    def add(self, event: OutboxEvent) -> OutboxEvent:
        self._store.outbox_pk += 1
        if event.id is None:
            event.id = self._store.outbox_pk
        self._rows[event.event_id] = copy.deepcopy(event)
        return copy.deepcopy(event)

    def _ordered(self, events: List[OutboxEvent]) -> List[OutboxEvent]:
        return sorted(events, key=lambda e: (e.created_at, e.id or 0))

    def get_pending(self, limit: int = 100) -> List[OutboxEvent]:
        pending = [e for e in self._rows.values() if e.status == OutboxStatus.PENDING]
        return copy.deepcopy(self._ordered(pending)[:limit])

    def get_failed_for_retry(self, limit: int = 50) -> List[OutboxEvent]:
        retryable = [
            e for e in self._rows.values()
            if e.status == OutboxStatus.FAILED and e.can_retry()
        ]
        return copy.deepcopy(self._ordered(retryable)[:limit])

    def get_stale_claims(self, claimed_before: datetime, limit: int = 50) -> List[OutboxEvent]:
        stale = [
            e for e in self._rows.values()
            if e.status == OutboxStatus.PROCESSING
            and e.claimed_at is not None
            and e.claimed_at <= claimed_before
        ]
        return copy.deepcopy(self._ordered(stale)[:limit])

    def update(self, event: OutboxEvent) -> OutboxEvent:
        if event.event_id not in self._rows:
            raise ValueError(f"OutboxEvent with id {event.id} not found")
        self._rows[event.event_id] = copy.deepcopy(event)
        return copy.deepcopy(event)

    def delete_processed(self, before: datetime, limit: int = 1000) -> int:
        to_delete = [
            e.event_id for e in self._rows.values()
            if e.status == OutboxStatus.PROCESSED
            and e.processed_at is not None
            and e.processed_at < before
        ][:limit]
        for event_id in to_delete:
            del self._rows[event_id]
        return len(to_delete)

    def list_by_recipient(self, recipient_id: str) -> List[OutboxEvent]:
        events = [e for e in self._rows.values() if e.recipient_id == recipient_id]
        return copy.deepcopy(self._ordered(events))


# ═══════════════════════════════════════════════════════════════════════════════
# Unit of Work
# ═══════════════════════════════════════════════════════════════════════════════


class InMemoryUnitOfWork(IUnitOfWork):
    """
    In-memory unit of work.

    Usage:
        store = InMemoryStore()
        uow_factory = lambda: InMemoryUnitOfWork(store)

        with uow_factory() as uow:
            uow.tests.add(test)
            uow.commit()
    """

    def __init__(self, store: Optional[InMemoryStore] = None):
        self._store = store or InMemoryStore()
        self._snapshot: Optional[Dict[str, Any]] = None
        self.tests = InMemoryCrowdTestRepository(self._store)
        self.sessions = InMemorySessionRepository(self._store)
        self.earnings = InMemoryEarningRepository(self._store)
        self.profiles = InMemoryProfileRepository(self._store)
        self.outbox = InMemoryOutboxRepository(self._store)

    @property
    def store(self) -> InMemoryStore:
        return self._store

    def __enter__(self) -> "InMemoryUnitOfWork":
        self._store.lock.acquire()
        self._snapshot = self._store.snapshot()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._snapshot is None:
            return
        try:
            self.rollback()
        finally:
            self._snapshot = None
            self._store.lock.release()

    def commit(self) -> None:
        self._snapshot = self._store.snapshot()

    def rollback(self) -> None:
        if self._snapshot is not None:
            self._store.restore(self._snapshot)
