"""
SQLAlchemy repository for the notification outbox.

Rows are inserted by the session and test services inside their own
transaction and later walked by the OutboxProcessor:

    PENDING --claim--> PROCESSING --settle--> PROCESSED | FAILED

A PROCESSING row carries claimed_at; get_stale_claims() finds rows whose
processor never settled them so they can be queued again.
"""

import json
from datetime import datetime
from typing import List

from sqlalchemy.orm import Session as OrmSession

from crowdtest.domain.interfaces.repositories import IOutboxRepository
from crowdtest.domain.models.outbox import OutboxEvent, OutboxEventType, OutboxStatus
from crowdtest.infrastructure.database.models import OutboxEventORM


class SQLAlchemyOutboxRepository(IOutboxRepository):
    """Outbox rows in the crowdtest_outbox table, oldest first."""

    def __init__(self, session: OrmSession):
        self._session = session

    def _query(self):
        return self._session.query(OutboxEventORM).populate_existing()

    def _oldest_first(self, query, limit: int) -> List[OutboxEvent]:
        rows = (
            query.order_by(OutboxEventORM.created_at.asc(), OutboxEventORM.id.asc())
            .limit(limit)
            .all()
        )
        return [self._to_domain(row) for row in rows]

    @staticmethod
    def _to_domain(row: OutboxEventORM) -> OutboxEvent:
        return OutboxEvent(
            id=row.id,
            event_id=row.event_id,
            event_type=OutboxEventType(row.event_type),
            aggregate_type=row.aggregate_type,
            aggregate_id=row.aggregate_id,
            recipient_id=row.recipient_id,
            payload=json.loads(row.payload) if row.payload else {},
            status=OutboxStatus(row.status),
            retry_count=row.retry_count,
            max_retries=row.max_retries,
            created_at=row.created_at,
            claimed_at=row.claimed_at,
            processed_at=row.processed_at,
            last_error=row.last_error,
        )

    def add(self, event: OutboxEvent) -> OutboxEvent:
        """Insert a notification; the id is assigned on flush."""
        row = OutboxEventORM(
            event_id=event.event_id,
            event_type=event.event_type.value,
            aggregate_type=event.aggregate_type,
            aggregate_id=event.aggregate_id,
            recipient_id=event.recipient_id,
            payload=json.dumps(event.payload, default=str),
            status=event.status.value,
            retry_count=event.retry_count,
            max_retries=event.max_retries,
            created_at=event.created_at,
            claimed_at=event.claimed_at,
            processed_at=event.processed_at,
            last_error=event.last_error,
        )
        self._session.add(row)
        self._session.flush()
        event.id = row.id
        return self._to_domain(row)

    def get_pending(self, limit: int = 100) -> List[OutboxEvent]:
        query = self._query().filter(OutboxEventORM.status == OutboxStatus.PENDING.value)
        return self._oldest_first(query, limit)

    def get_failed_for_retry(self, limit: int = 50) -> List[OutboxEvent]:
        query = self._query().filter(
            OutboxEventORM.status == OutboxStatus.FAILED.value,
            OutboxEventORM.retry_count < OutboxEventORM.max_retries,
        )
        return self._oldest_first(query, limit)

    def get_stale_claims(self, claimed_before: datetime, limit: int = 50) -> List[OutboxEvent]:
        """PROCESSING rows claimed at or before `claimed_before`."""
        query = self._query().filter(
            OutboxEventORM.status == OutboxStatus.PROCESSING.value,
            OutboxEventORM.claimed_at <= claimed_before,
        )
        return self._oldest_first(query, limit)

    def update(self, event: OutboxEvent) -> OutboxEvent:
        """Write back the delivery state of an event (status, lease, retries, error)."""
        changed = (
            self._session.query(OutboxEventORM)
            .filter(OutboxEventORM.id == event.id)
            .update(
                {
                    OutboxEventORM.status: event.status.value,
                    OutboxEventORM.retry_count: event.retry_count,
                    OutboxEventORM.claimed_at: event.claimed_at,
                    OutboxEventORM.processed_at: event.processed_at,
                    OutboxEventORM.last_error: event.last_error,
                },
                synchronize_session=False,
            )
        )
        if changed == 0:
            raise ValueError(f"Outbox event {event.event_id} not found")
        return event

    def delete_processed(self, before: datetime, limit: int = 1000) -> int:
        """Delete up to `limit` rows delivered before `before`."""
        expired_ids = [
            row_id
            for (row_id,) in self._session.query(OutboxEventORM.id)
            .filter(
                OutboxEventORM.status == OutboxStatus.PROCESSED.value,
                OutboxEventORM.processed_at < before,
            )
            .limit(limit)
            .all()
        ]
        if not expired_ids:
            return 0
        return (
            self._session.query(OutboxEventORM)
            .filter(OutboxEventORM.id.in_(expired_ids))
            .delete(synchronize_session=False)
        )

    def list_by_recipient(self, recipient_id: str) -> List[OutboxEvent]:
        rows = (
            self._query()
            .filter(OutboxEventORM.recipient_id == recipient_id)
            .order_by(OutboxEventORM.created_at.asc(), OutboxEventORM.id.asc())
            .all()
        )
        return [self._to_domain(row) for row in rows]
