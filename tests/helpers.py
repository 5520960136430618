"""Test helpers: settable clocks and direct data setup."""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable

from crowdtest.domain.interfaces.unit_of_work import IUnitOfWork
from crowdtest.domain.models import CrowdTest, CrowdTestStatus


class FakeClock:
    """Settable wall clock."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeMonotonic:
    """Settable monotonic clock for the rate limiter."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def set(self, value: float) -> None:
        self.now = value

    def advance(self, seconds: float) -> None:
        self.now += seconds


def add_test(
    uow_factory: Callable[[], IUnitOfWork],
    owner_id: str = "customer-1",
    max_participants: int = 1,
    status: CrowdTestStatus = CrowdTestStatus.PUBLISHED,
    reward: Decimal = Decimal("25.00"),
    title: str = "Checkout flow",
    current_participants: int = 0,
) -> CrowdTest:
    """Insert a crowd test directly through the repository."""
    test = CrowdTest(
        owner_id=owner_id,
        title=title,
        max_participants=max_participants,
        current_participants=current_participants,
        status=status,
        reward_per_participant=reward,
    )
    with uow_factory() as uow:
        created = uow.tests.add(test)
        uow.commit()
    return created
