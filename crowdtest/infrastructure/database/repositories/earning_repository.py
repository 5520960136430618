"""
SQLAlchemy Earning and Profile Repository Implementations.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crowdtest.domain.models.earning import Earning, EarningStatus, ParticipantProfile
from crowdtest.domain.interfaces.repositories import IEarningRepository, IProfileRepository
from crowdtest.infrastructure.database.models import EarningORM, ParticipantProfileORM


class SQLAlchemyEarningRepository(IEarningRepository):
    """SQLAlchemy implementation of IEarningRepository."""

    def __init__(self, session: Session):
        self._session = session

    def _to_domain(self, orm: EarningORM) -> Earning:
        return Earning(
            id=orm.id,
            session_id=orm.session_id,
            participant_id=orm.participant_id,
            test_id=orm.test_id,
            amount=orm.amount,
            status=EarningStatus(orm.status),
            description=orm.description,
            created_at=orm.created_at,
        )

    def add(self, earning: Earning) -> Earning:
        orm = EarningORM(
            id=earning.id,
            session_id=earning.session_id,
            participant_id=earning.participant_id,
            test_id=earning.test_id,
            amount=earning.amount,
            status=earning.status.value,
            description=earning.description,
            created_at=earning.created_at,
        )
        self._session.add(orm)
        self._session.flush()
        return self._to_domain(orm)

    def get_by_session(self, session_id: str) -> Optional[Earning]:
        orm = (
            self._session.query(EarningORM)
            .filter(EarningORM.session_id == session_id)
            .first()
        )
        return self._to_domain(orm) if orm else None

    def list_by_participant(self, participant_id: str) -> List[Earning]:
        orms = (
            self._session.query(EarningORM)
            .filter(EarningORM.participant_id == participant_id)
            .order_by(EarningORM.created_at.desc())
            .all()
        )
        return [self._to_domain(orm) for orm in orms]


class SQLAlchemyProfileRepository(IProfileRepository):
    """
    SQLAlchemy implementation of IProfileRepository.

    Counters are incremented in SQL, never read-modify-written in Python.
    """

    def __init__(self, session: Session):
        self._session = session

    def _to_domain(self, orm: ParticipantProfileORM) -> ParticipantProfile:
        return ParticipantProfile(
            participant_id=orm.participant_id,
            completed_count=orm.completed_count,
            total_earnings=orm.total_earnings,
            average_rating=orm.average_rating,
            updated_at=orm.updated_at,
        )

    def get(self, participant_id: str) -> Optional[ParticipantProfile]:
        orm = (
            self._session.query(ParticipantProfileORM)
            .populate_existing()
            .filter(ParticipantProfileORM.participant_id == participant_id)
            .first()
        )
        return self._to_domain(orm) if orm else None

    def _ensure_exists(self, participant_id: str, now: datetime) -> None:
        exists = (
            self._session.query(ParticipantProfileORM.participant_id)
            .filter(ParticipantProfileORM.participant_id == participant_id)
            .first()
        )
        if exists:
            return
        try:
            with self._session.begin_nested():
                self._session.add(ParticipantProfileORM(
                    participant_id=participant_id,
                    completed_count=0,
                    total_earnings=Decimal("0.00"),
                    average_rating=None,
                    updated_at=now,
                ))
                self._session.flush()
        except IntegrityError:
            # Created concurrently by another completion for the same tester
            pass

    def record_completion(
        self,
        participant_id: str,
        amount: Decimal,
        average_rating: Optional[float],
    ) -> ParticipantProfile:
        now = datetime.now()
        self._ensure_exists(participant_id, now)
        (
            self._session.query(ParticipantProfileORM)
            .filter(ParticipantProfileORM.participant_id == participant_id)
            .update(
                {
                    ParticipantProfileORM.completed_count: ParticipantProfileORM.completed_count + 1,
                    ParticipantProfileORM.total_earnings: ParticipantProfileORM.total_earnings + amount,
                    ParticipantProfileORM.average_rating: average_rating,
                    ParticipantProfileORM.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        return self.get(participant_id)
