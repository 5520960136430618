"""
Outbox Pattern Processor.

Background worker that delivers notification events written to the outbox
by the session and test services.

Each batch runs in three steps so no external call happens while a
transaction is open:
  1. [UoW] claim pending events (mark PROCESSING) and commit
  2. deliver each event: notification sink, then live push to the recipient
  3. [UoW] mark each event PROCESSED or FAILED and commit

A claim is a lease. If the worker dies or the settle step fails, the event
stays PROCESSING until claim_timeout_seconds pass, after which
retry_failed_events() queues it again. The background loop runs that
maintenance every maintenance_interval_seconds.

A delivery failure only touches the outbox row; the session, earning or
test change that produced the event is already committed.
"""

from typing import Callable, List, Optional, Tuple
from datetime import datetime, timedelta
import threading
import logging
import time

from crowdtest.domain.interfaces.collaborators import INotificationSink
from crowdtest.domain.interfaces.unit_of_work import IUnitOfWork
from crowdtest.domain.models.outbox import OutboxEvent
from crowdtest.infrastructure.realtime.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class OutboxProcessor:
    """
    Outbox event processor for owner and participant notifications.

    Responsibilities:
    1. Poll the outbox for pending events
    2. Hand each to the notification sink and push it to live connections
    3. Update event status (processed/failed)
    4. Support graceful shutdown

    Usage:
        processor = OutboxProcessor(
            uow_factory=uow_factory,
            notifier=HttpNotificationSink(config.notification_url),
            broadcaster=registry,
        )
        processor.start()  # Background thread
        ...
        processor.stop()   # Graceful shutdown

    For testing:
        processed = processor.process_once()  # Single batch
    """

    def __init__(
        self,
        uow_factory: Callable[[], IUnitOfWork],
        notifier: INotificationSink,
        broadcaster: Optional[ConnectionRegistry] = None,
        poll_interval_seconds: float = 1.0,
        batch_size: int = 50,
        claim_timeout_seconds: float = 300.0,
        maintenance_interval_seconds: float = 30.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize the processor.

        Args:
            uow_factory: Factory returning a fresh unit of work
            notifier: Notification service (persistence, email)
            broadcaster: Registry for the live push; None skips it
            poll_interval_seconds: How often to poll for new events
            batch_size: Maximum events to process per batch
            claim_timeout_seconds: How long a claim may stay unsettled
            maintenance_interval_seconds: How often the loop re-queues events
            clock: Wall clock for claim leases
        """
        self._uow_factory = uow_factory
        self._notifier = notifier
        self._broadcaster = broadcaster
        self._poll_interval = poll_interval_seconds
        self._batch_size = batch_size
        self._claim_timeout = timedelta(seconds=claim_timeout_seconds)
        self._maintenance_interval = maintenance_interval_seconds
        self._clock = clock

        self._running = False
        self._wakeup = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the processor in a background thread."""
        if self._running:
            logger.warning("OutboxProcessor already running")
            return

        self._running = True
        self._wakeup.clear()
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="OutboxProcessor")
        self._thread.start()
        logger.info("OutboxProcessor started")

    def stop(self, timeout: float = 5.0) -> None:
        """
        Stop the processor gracefully.

        Args:
            timeout: Maximum seconds to wait for thread to finish
        """
        if not self._running:
            return

        self._running = False
        self._wakeup.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("OutboxProcessor did not stop within timeout")
        logger.info("OutboxProcessor stopped")

    def is_running(self) -> bool:
        """Check if processor is running."""
        return self._running

    def notify(self) -> None:
        """Wake the loop early (called after a commit that queued events)."""
        self._wakeup.set()

    def process_once(self) -> int:
        """
        Process a single batch of events.

        Returns:
            Number of successfully delivered events
        """
        return self._process_batch()

    def _run_loop(self) -> None:
        """Main processing loop."""
        logger.info("OutboxProcessor loop started")
        last_maintenance = time.monotonic()
        while self._running:
            try:
                if time.monotonic() - last_maintenance >= self._maintenance_interval:
                    last_maintenance = time.monotonic()
                    self.retry_failed_events()
                processed = self._process_batch()
                if processed == 0:
                    self._wakeup.wait(self._poll_interval)
                    self._wakeup.clear()
            except Exception as e:
                logger.error(f"OutboxProcessor error in loop: {e}", exc_info=True)
                # Longer sleep on error to avoid tight error loops
                self._wakeup.wait(self._poll_interval * 2)
                self._wakeup.clear()
        logger.info("OutboxProcessor loop ended")

    def _process_batch(self) -> int:
        """
        Claim, deliver and settle a batch of pending events.

        Returns:
            Number of successfully delivered events
        """
        events = self._claim_batch()
        if not events:
            return 0

        outcomes: List[Tuple[OutboxEvent, Optional[str]]] = []
        for event in events:
            try:
                self._deliver(event)
                outcomes.append((event, None))
            except Exception as e:
                logger.error(f"Failed to deliver outbox event {event.event_id}: {e}")
                outcomes.append((event, str(e)))

        self._settle(outcomes)

        processed = sum(1 for _, error in outcomes if error is None)
        if processed > 0:
            logger.info(f"Processed {processed}/{len(events)} outbox events")
        return processed

    def _claim_batch(self) -> List[OutboxEvent]:
        uow = self._uow_factory()
        try:
            uow.__enter__()
            events = uow.outbox.get_pending(limit=self._batch_size)
            claimed_at = self._clock()
            for event in events:
                event.mark_processing(claimed_at)
                uow.outbox.update(event)
            uow.commit()
            return events
        except Exception:
            uow.rollback()
            raise
        finally:
            uow.__exit__(None, None, None)

    def _deliver(self, event: OutboxEvent) -> None:
        notification = event.to_notification()
        self._notifier.persist_and_maybe_email(event.recipient_id, notification)
        if self._broadcaster is not None:
            self._broadcaster.publish_to_actor(event.recipient_id, notification)
        logger.debug(f"Delivered event {event.event_id} ({event.event_type.value}) to {event.recipient_id}")

    def _settle(self, outcomes: List[Tuple[OutboxEvent, Optional[str]]]) -> None:
        uow = self._uow_factory()
        try:
            uow.__enter__()
            for event, error in outcomes:
                if error is None:
                    event.mark_processed()
                else:
                    event.mark_failed(error)
                uow.outbox.update(event)
            uow.commit()
        except Exception:
            uow.rollback()
            raise
        finally:
            uow.__exit__(None, None, None)

    # ═══════════════════════════════════════════════════════════════════════════
    # Maintenance Methods
    # ═══════════════════════════════════════════════════════════════════════════

    def cleanup_old_events(self, days_old: int = 7, limit: int = 1000) -> int:
        """
        Clean up old processed events.

        Args:
            days_old: Delete events processed more than this many days ago
            limit: Maximum events to delete per call

        Returns:
            Number of deleted events
        """
        before = datetime.now() - timedelta(days=days_old)

        with self._uow_factory() as uow:
            deleted = uow.outbox.delete_processed(before=before, limit=limit)
            uow.commit()

        if deleted > 0:
            logger.info(f"Cleaned up {deleted} old outbox events")

        return deleted

    def retry_failed_events(self) -> int:
        """
        Put failed events that still have attempts left back in the queue.

        Events whose claim outlived claim_timeout_seconds are treated as a
        failed attempt: they are re-queued while attempts remain and left
        FAILED otherwise.

        Returns:
            Number of events reset for retry
        """
        count = 0
        expired = 0

        with self._uow_factory() as uow:
            stale_events = uow.outbox.get_stale_claims(
                claimed_before=self._clock() - self._claim_timeout, limit=100
            )
            for event in stale_events:
                event.mark_failed(f"claim expired after {self._claim_timeout.total_seconds():g}s")
                if event.can_retry():
                    event.reset_for_retry()
                    count += 1
                uow.outbox.update(event)
                expired += 1

            failed_events = uow.outbox.get_failed_for_retry(limit=100)

            for event in failed_events:
                if event.can_retry():
                    event.reset_for_retry()
                    uow.outbox.update(event)
                    count += 1

            uow.commit()

        if expired > 0:
            logger.warning(f"Recovered {expired} outbox events left PROCESSING by a stalled worker")
        if count > 0:
            logger.info(f"Reset {count} failed events for retry")

        return count
