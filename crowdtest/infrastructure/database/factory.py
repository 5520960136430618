"""
Unit of Work Factory.

Factory pattern for creating the appropriate UnitOfWork implementation
based on configuration or mode.

Services never hold a unit of work; they hold a zero-argument callable
returning a fresh one per operation. `create_factory` builds that callable.
"""

from typing import Callable, Optional

from crowdtest.domain.interfaces.unit_of_work import IUnitOfWork
from .inmemory_unit_of_work import InMemoryStore, InMemoryUnitOfWork
from .unit_of_work import SQLAlchemyUnitOfWork


UnitOfWorkProvider = Callable[[], IUnitOfWork]


class UnitOfWorkFactory:
    """
    Factory for creating the appropriate UnitOfWork implementation.

    Usage:
        # For testing (no database)
        uow = UnitOfWorkFactory.create_inmemory()

        # For development (SQLite file)
        uow = UnitOfWorkFactory.create_sqlalchemy("sqlite:///data/crowdtest.db")

        # Config-based provider for services
        uow_factory = UnitOfWorkFactory.create_factory(
            mode=config.storage_mode,
            db_url=config.db_url,
        )
    """

    @staticmethod
    def create_inmemory(store: Optional[InMemoryStore] = None) -> InMemoryUnitOfWork:
        """
        Create in-memory UoW.

        Args:
            store: Shared store; a fresh one is created if None

        Returns:
            InMemoryUnitOfWork instance
        """
        return InMemoryUnitOfWork(store)

    @staticmethod
    def create_sqlalchemy(
        db_url: str,
        echo: bool = False,
        busy_timeout: float = 30.0,
    ) -> SQLAlchemyUnitOfWork:
        """
        Create SQLAlchemy UoW.

        Args:
            db_url: Database URL
            echo: If True, log SQL statements
            busy_timeout: SQLite lock wait in seconds

        Returns:
            SQLAlchemyUnitOfWork instance
        """
        return SQLAlchemyUnitOfWork(db_url, echo=echo, busy_timeout=busy_timeout)

    @staticmethod
    def create_factory(
        mode: str = "inmemory",
        db_url: Optional[str] = None,
        echo: bool = False,
        busy_timeout: float = 30.0,
    ) -> UnitOfWorkProvider:
        """
        Create a UoW provider based on mode configuration.

        Every in-memory UoW from one provider shares a single store.

        Args:
            mode: "inmemory" or "sqlalchemy"
            db_url: Database URL (required for sqlalchemy mode)
            echo: If True, log SQL statements (sqlalchemy only)
            busy_timeout: SQLite lock wait in seconds (sqlalchemy only)

        Returns:
            Zero-argument callable returning a new IUnitOfWork

        Raises:
            ValueError: If mode is unknown or db_url is missing
        """
        if mode == "inmemory":
            store = InMemoryStore()
            return lambda: InMemoryUnitOfWork(store)

        elif mode == "sqlalchemy":
            if not db_url:
                raise ValueError("db_url is required for sqlalchemy storage mode")
            return lambda: SQLAlchemyUnitOfWork(db_url, echo=echo, busy_timeout=busy_timeout)

        else:
            raise ValueError(
                f"Unknown storage mode: {mode}. Use 'inmemory' or 'sqlalchemy'"
            )
