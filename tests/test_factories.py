"""
End-to-end tests through the wired orchestration core.

Run with: pytest tests/test_factories.py -v
"""

from decimal import Decimal

import pytest

from crowdtest.application import Orchestrator, OrchestratorFactory
from crowdtest.config import CrowdTestConfig
from crowdtest.domain.errors import AccessDeniedError, ErrorCode
from crowdtest.domain.models import Actor, CrowdTestStatus
from crowdtest.infrastructure.database import UnitOfWorkFactory, dispose_engines
from crowdtest.infrastructure.notifications import LoggingNotificationSink

from tests.mocks import RecordingConnection, RecordingNotificationSink


@pytest.fixture
def sink() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture
def core(sink, clock) -> Orchestrator:
    orchestrator = OrchestratorFactory.create_for_testing(notifier=sink, clock=clock)
    yield orchestrator
    orchestrator.close()


class TestWiring:
    """Tests for how the factory assembles the core."""

    def test_testing_core_uses_in_memory_storage(self, core, sink):
        """The testing core shares one store across units of work."""
        assert core.notifier is sink
        assert core.config.storage_mode == "inmemory"
        with core.uow_factory() as uow:
            assert uow.tests.list_all() == []

    def test_default_notifier_logs(self):
        """Without a notification URL the core logs notifications."""
        core = OrchestratorFactory.create(CrowdTestConfig.for_testing())
        try:
            assert isinstance(core.notifier, LoggingNotificationSink)
        finally:
            core.close()

    def test_rate_limits_come_from_config(self, sink):
        """The admission controller enforces the configured session_start budget."""
        config = CrowdTestConfig.for_testing()
        config.rate_limits["session_start"] = (1, 3600)

        core = OrchestratorFactory.create_with_dependencies(
            UnitOfWorkFactory.create_factory(mode="inmemory"), config=config, notifier=sink
        )

        tester = Actor.tester("tester-1")
        core.admission.try_admit(tester, "missing-test")

        result = core.admission.try_admit(tester, "missing-test")

        assert result.reason == ErrorCode.RATE_LIMITED

    def test_sqlite_core(self, tmp_path, sink):
        """A development config persists to a SQLite file under data_dir."""
        config = CrowdTestConfig.for_development(str(tmp_path / "data"))
        config.log_sql = False
        core = OrchestratorFactory.create(config)
        try:
            owner = Actor.customer("customer-1")
            test = core.tests.create_test(owner, "Persisted", 1, Decimal("5"))
            assert core.tests.get_test(owner, test.id).title == "Persisted"
            assert (tmp_path / "data" / "crowdtest.db").exists()
        finally:
            core.close()
            dispose_engines()


class TestEndToEnd:
    """A whole test run through the public services."""

    def test_full_run(self, core, sink, clock):
        """Create, publish, admit, observe, complete and notify."""
        owner = Actor.customer("customer-1")
        tester = Actor.tester("tester-1")
        stranger = Actor.customer("customer-2")

        test = core.tests.create_test(owner, "Checkout flow", 1, Decimal("25"))
        core.tests.publish(owner, test.id)

        owner_tab = RecordingConnection("owner-tab")
        core.registry.register(owner, owner_tab)
        core.registry.join_test_room(owner_tab, test.id)

        stranger_tab = RecordingConnection("stranger-tab")
        core.registry.register(stranger, stranger_tab)
        with pytest.raises(AccessDeniedError):
            core.registry.join_test_room(stranger_tab, test.id)

        admitted = core.admission.try_admit(tester, test.id)
        assert admitted.admitted

        clock.advance(300)
        core.sessions.complete(tester, admitted.session.id, rating=5)

        assert core.outbox_processor.process_once() == 2
        assert [n.notification_type for n in sink.for_recipient(owner.actor_id)] == [
            "session_completed",
            "test_completed",
        ]
        assert core.tests.get_test(owner, test.id).status == CrowdTestStatus.COMPLETED
        assert owner_tab.kinds() == [
            "participant_joined",
            "session_completed",
            "test_status_changed",
            "notification",
            "notification",
        ]
        assert core.reconciler.reconcile().is_healthy
