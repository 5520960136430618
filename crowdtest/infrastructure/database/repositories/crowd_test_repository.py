"""
SQLAlchemy Crowd Test Repository Implementation.

Slot reservation and status transitions are single UPDATE statements whose
WHERE clause carries the guard, so the row count tells whether the guard
held at write time.
"""

from typing import Any, Iterable, List, Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from crowdtest.domain.models.crowd_test import CrowdTest, CrowdTestStatus
from crowdtest.domain.interfaces.repositories import ICrowdTestRepository
from crowdtest.infrastructure.database.models import CrowdTestORM


class SQLAlchemyCrowdTestRepository(ICrowdTestRepository):
    """SQLAlchemy implementation of ICrowdTestRepository."""

    def __init__(self, session: Session):
        self._session = session

    def _query(self):
        return self._session.query(CrowdTestORM).populate_existing()

    def _to_domain(self, orm: CrowdTestORM) -> CrowdTest:
        """Convert ORM model to domain model."""
        return CrowdTest(
            id=orm.id,
            owner_id=orm.owner_id,
            title=orm.title,
            max_participants=orm.max_participants,
            current_participants=orm.current_participants,
            status=CrowdTestStatus(orm.status),
            reward_per_participant=orm.reward_per_participant,
            created_at=orm.created_at,
            published_at=orm.published_at,
            completed_at=orm.completed_at,
        )

    def _to_orm(self, test: CrowdTest) -> CrowdTestORM:
        """Convert domain model to ORM model."""
        return CrowdTestORM(
            id=test.id,
            owner_id=test.owner_id,
            title=test.title,
            max_participants=test.max_participants,
            current_participants=test.current_participants,
            status=test.status.value,
            reward_per_participant=test.reward_per_participant,
            created_at=test.created_at,
            published_at=test.published_at,
            completed_at=test.completed_at,
        )

    def get(self, test_id: str) -> Optional[CrowdTest]:
        orm = self._query().filter(CrowdTestORM.id == test_id).first()
        return self._to_domain(orm) if orm else None

    def add(self, test: CrowdTest) -> CrowdTest:
        orm = self._to_orm(test)
        self._session.add(orm)
        self._session.flush()
        return self._to_domain(orm)

    def update_details(self, test_id: str, **fields: Any) -> bool:
        count = (
            self._session.query(CrowdTestORM)
            .filter(
                and_(
                    CrowdTestORM.id == test_id,
                    CrowdTestORM.status == CrowdTestStatus.DRAFT.value,
                )
            )
            .update(fields, synchronize_session=False)
        )
        return count == 1

    def delete(self, test_id: str) -> bool:
        count = (
            self._session.query(CrowdTestORM)
            .filter(CrowdTestORM.id == test_id)
            .delete(synchronize_session=False)
        )
        return count == 1

    def list_by_owner(self, owner_id: str) -> List[CrowdTest]:
        orms = (
            self._query()
            .filter(CrowdTestORM.owner_id == owner_id)
            .order_by(CrowdTestORM.created_at.desc())
            .all()
        )
        return [self._to_domain(orm) for orm in orms]

    def list_all(self, limit: int = 1000) -> List[CrowdTest]:
        orms = self._query().order_by(CrowdTestORM.created_at.asc()).limit(limit).all()
        return [self._to_domain(orm) for orm in orms]

    def try_reserve_slot(self, test_id: str, joinable: Iterable[CrowdTestStatus]) -> bool:
        statuses = [s.value for s in joinable]
        count = (
            self._session.query(CrowdTestORM)
            .filter(
                and_(
                    CrowdTestORM.id == test_id,
                    CrowdTestORM.current_participants < CrowdTestORM.max_participants,
                    CrowdTestORM.status.in_(statuses),
                )
            )
            .update(
                {CrowdTestORM.current_participants: CrowdTestORM.current_participants + 1},
                synchronize_session=False,
            )
        )
        return count == 1

    def release_slot(self, test_id: str) -> bool:
        count = (
            self._session.query(CrowdTestORM)
            .filter(
                and_(
                    CrowdTestORM.id == test_id,
                    CrowdTestORM.current_participants > 0,
                )
            )
            .update(
                {CrowdTestORM.current_participants: CrowdTestORM.current_participants - 1},
                synchronize_session=False,
            )
        )
        return count == 1

    def set_participant_count(self, test_id: str, count: int) -> bool:
        updated = (
            self._session.query(CrowdTestORM)
            .filter(CrowdTestORM.id == test_id)
            .update({CrowdTestORM.current_participants: count}, synchronize_session=False)
        )
        return updated == 1

    def transition_status(
        self,
        test_id: str,
        expected: Iterable[CrowdTestStatus],
        target: CrowdTestStatus,
        **fields: Any,
    ) -> bool:
        values = dict(fields)
        values["status"] = target.value
        count = (
            self._session.query(CrowdTestORM)
            .filter(
                and_(
                    CrowdTestORM.id == test_id,
                    CrowdTestORM.status.in_([s.value for s in expected]),
                )
            )
            .update(values, synchronize_session=False)
        )
        return count == 1
