"""
Transaction Runner.

Runs a unit of work function inside a fresh unit of work, commits it, and
retries the whole function when the store reports a transient conflict
(lock timeout, deadlock, serialization failure).

Transaction Flow (per attempt):
  1. uow = uow_factory(); uow.__enter__()
  2. result = work(uow)
  3. uow.commit()
  On error: uow.rollback(); retry if transient and attempts remain
  Always: uow.__exit__()

Domain errors (DomainError) are expected outcomes: they roll back and
propagate without being logged as failures.
"""

import logging
import time
from typing import Callable, TypeVar

from crowdtest.domain.errors import DomainError, TransientStorageError
from crowdtest.domain.interfaces.unit_of_work import IUnitOfWork

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransactionRunner:
    """
    Executes unit of work functions with bounded retry.

    Usage:
        runner = TransactionRunner(uow_factory, max_retries=3, backoff_seconds=0.05)
        session = runner.run("complete", lambda uow: do_complete(uow))
    """

    def __init__(
        self,
        uow_factory: Callable[[], IUnitOfWork],
        max_retries: int = 3,
        backoff_seconds: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            uow_factory: Factory returning a NEW unit of work per call
            max_retries: Retries after the first attempt for transient conflicts
            backoff_seconds: Delay before the first retry, doubled each retry
            sleep: Sleep function, injectable for tests
        """
        self._uow_factory = uow_factory
        self._max_retries = max_retries
        self._backoff = backoff_seconds
        self._sleep = sleep

    @property
    def uow_factory(self) -> Callable[[], IUnitOfWork]:
        return self._uow_factory

    def run(self, operation: str, work: Callable[[IUnitOfWork], T]) -> T:
        """
        Run `work` in a committed unit of work.

        Args:
            operation: Name used in log messages
            work: Function receiving the entered unit of work

        Returns:
            Whatever `work` returned

        Raises:
            DomainError: Raised by `work`, after rollback
            TransientStorageError: Conflicts persisted through every retry
        """
        attempt = 0
        while True:
            attempt += 1
            uow = self._uow_factory()
            try:
                uow.__enter__()
                result = work(uow)
                uow.commit()
                return result

            except DomainError:
                uow.rollback()
                raise

            except Exception as e:
                uow.rollback()
                if not uow.is_transient_error(e):
                    logger.error(f"{operation} failed: {e}")
                    raise
                if attempt > self._max_retries:
                    logger.error(f"{operation} gave up after {attempt} attempts: {e}")
                    raise TransientStorageError() from e

                delay = self._backoff * (2 ** (attempt - 1))
                logger.warning(
                    f"{operation} hit a storage conflict (attempt {attempt}), "
                    f"retrying in {delay:.3f}s: {e}"
                )
                if delay > 0:
                    self._sleep(delay)

            finally:
                uow.__exit__(None, None, None)
