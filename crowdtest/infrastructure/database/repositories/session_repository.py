"""
SQLAlchemy Session Repository Implementation.

The partial unique index uq_test_sessions_active_pair backs up the
single-active-session rule; an insert that trips it is turned into
DuplicateActiveSessionError inside a savepoint so the surrounding
transaction stays usable.
"""

from typing import Any, Iterable, List, Optional

from sqlalchemy import and_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as OrmSession

from crowdtest.domain.errors import DuplicateActiveSessionError
from crowdtest.domain.models.session import (
    Session,
    SessionStatus,
    ACTIVE_SESSION_STATUSES,
)
from crowdtest.domain.interfaces.repositories import ISessionRepository
from crowdtest.infrastructure.database.models import SessionORM


_ACTIVE_VALUES = [s.value for s in ACTIVE_SESSION_STATUSES]


class SQLAlchemySessionRepository(ISessionRepository):
    """SQLAlchemy implementation of ISessionRepository."""

    def __init__(self, session: OrmSession):
        self._session = session

    def _query(self):
        return self._session.query(SessionORM).populate_existing()

    def _to_domain(self, orm: SessionORM) -> Session:
        """Convert ORM model to domain model."""
        return Session(
            id=orm.id,
            test_id=orm.test_id,
            participant_id=orm.participant_id,
            status=SessionStatus(orm.status),
            started_at=orm.started_at,
            completed_at=orm.completed_at,
            ended_at=orm.ended_at,
            duration_seconds=orm.duration_seconds,
            rating=orm.rating,
            feedback=orm.feedback,
            task_results=dict(orm.task_results or {}),
            progress=dict(orm.progress or {}),
            device_info=dict(orm.device_info or {}),
            failure_reason=orm.failure_reason,
            cancelled_by=orm.cancelled_by,
            created_at=orm.created_at,
        )

    def _to_orm(self, session: Session) -> SessionORM:
        """Convert domain model to ORM model."""
        return SessionORM(
            id=session.id,
            test_id=session.test_id,
            participant_id=session.participant_id,
            status=session.status.value,
            started_at=session.started_at,
            completed_at=session.completed_at,
            ended_at=session.ended_at,
            duration_seconds=session.duration_seconds,
            rating=session.rating,
            feedback=session.feedback,
            task_results=dict(session.task_results),
            progress=dict(session.progress),
            device_info=dict(session.device_info),
            failure_reason=session.failure_reason,
            cancelled_by=session.cancelled_by,
            created_at=session.created_at,
        )

    @staticmethod
    def _values(fields: dict) -> dict:
        values = {}
        for key, value in fields.items():
            if isinstance(value, SessionStatus):
                value = value.value
            values[key] = value
        return values

    def add(self, session: Session) -> Session:
        orm = self._to_orm(session)
        try:
            with self._session.begin_nested():
                self._session.add(orm)
                self._session.flush()
        except IntegrityError as e:
            if "uq_test_sessions_active_pair" in str(e.orig) or "test_sessions.test_id" in str(e.orig):
                raise DuplicateActiveSessionError() from e
            raise
        return self._to_domain(orm)

    def get(self, session_id: str) -> Optional[Session]:
        orm = self._query().filter(SessionORM.id == session_id).first()
        return self._to_domain(orm) if orm else None

    def find_active(self, test_id: str, participant_id: str) -> Optional[Session]:
        orm = (
            self._query()
            .filter(
                and_(
                    SessionORM.test_id == test_id,
                    SessionORM.participant_id == participant_id,
                    SessionORM.status.in_(_ACTIVE_VALUES),
                )
            )
            .first()
        )
        return self._to_domain(orm) if orm else None

    def transition(
        self,
        session_id: str,
        expected: Iterable[SessionStatus],
        target: SessionStatus,
        **fields: Any,
    ) -> bool:
        values = self._values(fields)
        values["status"] = target.value
        count = (
            self._session.query(SessionORM)
            .filter(
                and_(
                    SessionORM.id == session_id,
                    SessionORM.status.in_([s.value for s in expected]),
                )
            )
            .update(values, synchronize_session=False)
        )
        return count == 1

    def update_progress(self, session_id: str, **fields: Any) -> bool:
        count = (
            self._session.query(SessionORM)
            .filter(
                and_(
                    SessionORM.id == session_id,
                    SessionORM.status == SessionStatus.IN_PROGRESS.value,
                )
            )
            .update(self._values(fields), synchronize_session=False)
        )
        return count == 1

    def count_by_status(self, test_id: str, statuses: Iterable[SessionStatus]) -> int:
        return (
            self._session.query(func.count(SessionORM.id))
            .filter(
                and_(
                    SessionORM.test_id == test_id,
                    SessionORM.status.in_([s.value for s in statuses]),
                )
            )
            .scalar()
        ) or 0

    def list_by_test(
        self,
        test_id: str,
        statuses: Optional[Iterable[SessionStatus]] = None,
    ) -> List[Session]:
        query = self._query().filter(SessionORM.test_id == test_id)
        if statuses is not None:
            query = query.filter(SessionORM.status.in_([s.value for s in statuses]))
        orms = query.order_by(SessionORM.created_at.asc()).all()
        return [self._to_domain(orm) for orm in orms]

    def list_by_status(self, status: SessionStatus, limit: int = 1000) -> List[Session]:
        orms = (
            self._query()
            .filter(SessionORM.status == status.value)
            .order_by(SessionORM.created_at.asc())
            .limit(limit)
            .all()
        )
        return [self._to_domain(orm) for orm in orms]

    def has_participated(self, test_id: str, participant_id: str) -> bool:
        return (
            self._session.query(SessionORM.id)
            .filter(
                and_(
                    SessionORM.test_id == test_id,
                    SessionORM.participant_id == participant_id,
                )
            )
            .first()
        ) is not None

    def average_rating(self, participant_id: str) -> Optional[float]:
        value = (
            self._session.query(func.avg(SessionORM.rating))
            .filter(
                and_(
                    SessionORM.participant_id == participant_id,
                    SessionORM.status == SessionStatus.COMPLETED.value,
                    SessionORM.rating.isnot(None),
                )
            )
            .scalar()
        )
        return float(value) if value is not None else None
