"""
Application Factories.

Builds the orchestration core with its collaborators wired together from a
CrowdTestConfig:

- Testing: in-memory units of work, logging notification sink
- Development: SQLite file database
- Production: any SQLAlchemy URL, HTTP notification service

Usage:
    # Using config
    core = OrchestratorFactory.create(CrowdTestConfig.for_development())

    # With custom dependencies
    core = OrchestratorFactory.create_with_dependencies(uow_factory, notifier=my_sink)

    # Quick test setup
    core = OrchestratorFactory.create_for_testing()
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from crowdtest.config import CrowdTestConfig, get_config
from crowdtest.domain.interfaces.collaborators import INotificationSink
from crowdtest.domain.interfaces.unit_of_work import IUnitOfWork
from crowdtest.infrastructure.database import UnitOfWorkFactory
from crowdtest.infrastructure.notifications import HttpNotificationSink, LoggingNotificationSink
from crowdtest.infrastructure.outbox import OutboxProcessor
from crowdtest.infrastructure.ratelimit import FixedWindowRateLimiter
from crowdtest.infrastructure.realtime import ConnectionRegistry

from .services.access_policy import RoomAccessPolicy
from .services.admission_controller import AdmissionController
from .services.completion_pipeline import CompletionPipeline, CompletionReconciler
from .services.crowd_test_service import CrowdTestService
from .services.session_service import SessionService

logger = logging.getLogger(__name__)


@dataclass
class Orchestrator:
    """
    The wired orchestration core.

    Attributes:
        config: Configuration the core was built from
        uow_factory: Factory returning a fresh unit of work
        registry: Live connection registry and broadcaster
        rate_limiter: Sensitive-operation limiter
        access_policy: Who may join a test room
        pipeline: Completion side-effect pipeline
        reconciler: Completion and slot-counter reconciliation
        admission: Capacity admission controller
        sessions: Session state machine
        tests: Test lifecycle service
        notifier: Notification sink used by the outbox processor
        outbox_processor: Delivers queued notifications after commit
    """

    config: CrowdTestConfig
    uow_factory: Callable[[], IUnitOfWork]
    registry: ConnectionRegistry
    rate_limiter: FixedWindowRateLimiter
    access_policy: RoomAccessPolicy
    pipeline: CompletionPipeline
    reconciler: CompletionReconciler
    admission: AdmissionController
    sessions: SessionService
    tests: CrowdTestService
    notifier: INotificationSink
    outbox_processor: OutboxProcessor

    def close(self) -> None:
        """Stop background delivery and release the notification client."""
        self.outbox_processor.stop()
        if isinstance(self.notifier, HttpNotificationSink):
            self.notifier.close()


class OrchestratorFactory:
    """Factory for the orchestration core with proper dependencies."""

    @staticmethod
    def create(config: Optional[CrowdTestConfig] = None) -> Orchestrator:
        """
        Create the core based on configuration.

        Args:
            config: Configuration (uses global config if None)

        Returns:
            Orchestrator with configured dependencies
        """
        if config is None:
            config = get_config()

        config.configure_logging()
        if config.storage_mode == "sqlalchemy" and config.db_url and config.db_url.startswith("sqlite:///"):
            config.ensure_data_dir()

        uow_factory = UnitOfWorkFactory.create_factory(
            mode=config.storage_mode,
            db_url=config.db_url,
            echo=config.log_sql,
            busy_timeout=config.sqlite_busy_timeout_seconds,
        )
        logger.info(f"Orchestration core using {config.storage_mode} storage")
        return OrchestratorFactory.create_with_dependencies(uow_factory, config=config)

    @staticmethod
    def _create_notifier(config: CrowdTestConfig) -> INotificationSink:
        if config.notification_url:
            return HttpNotificationSink(
                base_url=config.notification_url,
                timeout=config.notification_timeout_seconds,
            )
        return LoggingNotificationSink()

    @staticmethod
    def create_with_dependencies(
        uow_factory: Callable[[], IUnitOfWork],
        config: Optional[CrowdTestConfig] = None,
        notifier: Optional[INotificationSink] = None,
        registry: Optional[ConnectionRegistry] = None,
        clock: Callable[[], datetime] = datetime.now,
        rate_clock: Optional[Callable[[], float]] = None,
    ) -> Orchestrator:
        """
        Create the core with explicit dependencies.

        Useful for testing with fake sinks, clocks and a shared store.

        Args:
            uow_factory: Factory returning a fresh unit of work
            config: Tunables (uses global config if None)
            notifier: Notification sink (derived from config if None)
            registry: Connection registry (a new one if None)
            clock: Wall clock for session and test timestamps
            rate_clock: Monotonic clock for the rate limiter

        Returns:
            Orchestrator with provided dependencies
        """
        if config is None:
            config = get_config()

        access_policy = RoomAccessPolicy(uow_factory)
        if registry is None:
            registry = ConnectionRegistry(access_policy=access_policy)

        rate_limiter = FixedWindowRateLimiter.from_config(
            config.rate_limits, clock=rate_clock or time.monotonic
        )

        retries = config.transaction_max_retries
        backoff = config.retry_backoff_seconds
        pipeline = CompletionPipeline(clock=clock, outbox_max_retries=config.outbox_max_retries)
        notifier = notifier or OrchestratorFactory._create_notifier(config)

        return Orchestrator(
            config=config,
            uow_factory=uow_factory,
            registry=registry,
            rate_limiter=rate_limiter,
            access_policy=access_policy,
            pipeline=pipeline,
            reconciler=CompletionReconciler(uow_factory, pipeline),
            admission=AdmissionController(
                uow_factory,
                broadcaster=registry,
                rate_limiter=rate_limiter,
                max_retries=retries,
                backoff_seconds=backoff,
                clock=clock,
            ),
            sessions=SessionService(
                uow_factory,
                pipeline,
                broadcaster=registry,
                max_retries=retries,
                backoff_seconds=backoff,
                clock=clock,
                outbox_max_retries=config.outbox_max_retries,
            ),
            tests=CrowdTestService(
                uow_factory,
                broadcaster=registry,
                max_retries=retries,
                backoff_seconds=backoff,
                clock=clock,
                outbox_max_retries=config.outbox_max_retries,
            ),
            notifier=notifier,
            outbox_processor=OutboxProcessor(
                uow_factory,
                notifier,
                broadcaster=registry,
                poll_interval_seconds=config.outbox_poll_interval_seconds,
                batch_size=config.outbox_batch_size,
                claim_timeout_seconds=config.outbox_claim_timeout_seconds,
                maintenance_interval_seconds=config.outbox_maintenance_interval_seconds,
                clock=clock,
            ),
        )

    @staticmethod
    def create_for_testing(
        notifier: Optional[INotificationSink] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> Orchestrator:
        """
        Create an in-memory core for tests.

        Args:
            notifier: Optional fake notification sink

        Returns:
            Orchestrator backed by one shared in-memory store
        """
        config = CrowdTestConfig.for_testing()
        uow_factory = UnitOfWorkFactory.create_factory(mode="inmemory")
        return OrchestratorFactory.create_with_dependencies(
            uow_factory,
            config=config,
            notifier=notifier or LoggingNotificationSink(),
            clock=clock,
        )
