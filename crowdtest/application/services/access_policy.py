"""Room access policy: who may observe a crowd test live."""

from typing import Callable

from crowdtest.domain.interfaces.collaborators import IRoomAccessPolicy
from crowdtest.domain.interfaces.unit_of_work import IUnitOfWork
from crowdtest.domain.models.actor import Actor


class RoomAccessPolicy(IRoomAccessPolicy):
    """
    Owner, admins and anyone who ever held a session on the test may
    observe it. Unknown tests are observable by nobody but admins.
    """

    def __init__(self, uow_factory: Callable[[], IUnitOfWork]):
        self._uow_factory = uow_factory

    def can_observe(self, actor: Actor, test_id: str) -> bool:
        if actor.is_admin:
            return True

        with self._uow_factory() as uow:
            test = uow.tests.get(test_id)
            if test is None:
                return False
            if test.is_owned_by(actor.actor_id):
                return True
            return uow.sessions.has_participated(test_id, actor.actor_id)
