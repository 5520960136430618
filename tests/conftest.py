"""
Shared pytest fixtures.

Two storage backends are available:
- uow_factory: in-memory units of work sharing one store
- sqlite_uow_factory: SQLAlchemy units of work on a SQLite file in tmp_path

Services take an injected clock so timestamps and durations are exact.
"""

from typing import Callable, Generator

import pytest

from crowdtest.application.services import (
    AdmissionController,
    CompletionPipeline,
    CrowdTestService,
    SessionService,
)
from crowdtest.config import reset_config
from crowdtest.domain.interfaces.unit_of_work import IUnitOfWork
from crowdtest.domain.models import Actor, CrowdTest
from crowdtest.infrastructure.database import (
    InMemoryStore,
    InMemoryUnitOfWork,
    SQLAlchemyUnitOfWork,
    dispose_engines,
)
from crowdtest.infrastructure.realtime import ConnectionRegistry

from tests.helpers import FakeClock, FakeMonotonic, add_test


# ═══════════════════════════════════════════════════════════════════════════════
# Clocks
# ═══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


# ═══════════════════════════════════════════════════════════════════════════════
# Storage
# ═══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def uow_factory(store) -> Callable[[], IUnitOfWork]:
    """In-memory units of work sharing one store."""
    return lambda: InMemoryUnitOfWork(store)


@pytest.fixture
def sqlite_db_url(tmp_path) -> Generator[str, None, None]:
    """File-backed SQLite database, disposed after the test."""
    yield f"sqlite:///{tmp_path / 'crowdtest.db'}"
    dispose_engines()


@pytest.fixture
def sqlite_uow_factory(sqlite_db_url) -> Callable[[], IUnitOfWork]:
    return lambda: SQLAlchemyUnitOfWork(sqlite_db_url, busy_timeout=10.0)


@pytest.fixture(params=["inmemory", "sqlite"])
def any_uow_factory(request, store, tmp_path) -> Generator[Callable[[], IUnitOfWork], None, None]:
    """Parametrized over both backends."""
    if request.param == "inmemory":
        yield lambda: InMemoryUnitOfWork(store)
    else:
        db_url = f"sqlite:///{tmp_path / 'crowdtest.db'}"
        yield lambda: SQLAlchemyUnitOfWork(db_url, busy_timeout=10.0)
        dispose_engines()


@pytest.fixture(autouse=True)
def _reset_global_config():
    yield
    reset_config()


# ═══════════════════════════════════════════════════════════════════════════════
# Actors
# ═══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def owner() -> Actor:
    return Actor.customer("customer-1")


@pytest.fixture
def other_customer() -> Actor:
    return Actor.customer("customer-2")


@pytest.fixture
def tester() -> Actor:
    return Actor.tester("tester-1")


@pytest.fixture
def second_tester() -> Actor:
    return Actor.tester("tester-2")


@pytest.fixture
def admin() -> Actor:
    return Actor.admin("admin-1")


# ═══════════════════════════════════════════════════════════════════════════════
# Services
# ═══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


@pytest.fixture
def pipeline(clock) -> CompletionPipeline:
    return CompletionPipeline(clock=clock)


@pytest.fixture
def admission(uow_factory, registry, clock) -> AdmissionController:
    return AdmissionController(uow_factory, broadcaster=registry, backoff_seconds=0, clock=clock)


@pytest.fixture
def session_service(uow_factory, pipeline, registry, clock) -> SessionService:
    return SessionService(uow_factory, pipeline, broadcaster=registry, backoff_seconds=0, clock=clock)


@pytest.fixture
def crowd_tests(uow_factory, registry, clock) -> CrowdTestService:
    return CrowdTestService(uow_factory, broadcaster=registry, backoff_seconds=0, clock=clock)


# ═══════════════════════════════════════════════════════════════════════════════
# Data
# ═══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def published_test(uow_factory, owner) -> CrowdTest:
    """Published test with two slots owned by `owner`."""
    return add_test(uow_factory, owner_id=owner.actor_id, max_participants=2)
