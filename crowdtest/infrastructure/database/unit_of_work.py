"""
SQLAlchemy Unit of Work.

One SQLAlchemy session per unit of work; engines are cached per URL and
shared across units of work and threads.

SQLite note: pysqlite's implicit transaction handling is switched off and
every transaction starts with BEGIN IMMEDIATE, so writers take the database
lock up front and wait (busy timeout) instead of failing half-way with
"database is locked". This is also what makes SAVEPOINT usable on SQLite.
"""

import logging
import threading
from typing import Dict, Optional, Tuple

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from crowdtest.domain.interfaces.unit_of_work import IUnitOfWork
from .models import Base
from .repositories import (
    SQLAlchemyCrowdTestRepository,
    SQLAlchemySessionRepository,
    SQLAlchemyEarningRepository,
    SQLAlchemyProfileRepository,
    SQLAlchemyOutboxRepository,
)

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = (
    "database is locked",
    "database table is locked",
    "deadlock detected",
    "could not serialize access",
    "lock wait timeout",
    "could not obtain lock",
)

_engines: Dict[Tuple[str, bool], Engine] = {}
_engines_lock = threading.Lock()


def _create_engine(db_url: str, echo: bool, busy_timeout: float) -> Engine:
    url = make_url(db_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(db_url, echo=echo, pool_pre_ping=True)

    engine = create_engine(
        db_url,
        echo=echo,
        connect_args={"timeout": busy_timeout, "check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def get_engine(db_url: str, echo: bool = False, busy_timeout: float = 30.0) -> Engine:
    """
    Get (or create) the engine for a URL and make sure the schema exists.

    Args:
        db_url: SQLAlchemy database URL
        echo: If True, log SQL statements
        busy_timeout: Seconds a SQLite connection waits for the write lock

    Returns:
        Shared Engine
    """
    key = (db_url, echo)
    with _engines_lock:
        engine = _engines.get(key)
        if engine is None:
            engine = _create_engine(db_url, echo, busy_timeout)
            Base.metadata.create_all(engine)
            _engines[key] = engine
            logger.info(f"Initialized database engine for {make_url(db_url).render_as_string(hide_password=True)}")
        return engine


def dispose_engines() -> None:
    """Dispose every cached engine (tests and shutdown)."""
    with _engines_lock:
        for engine in _engines.values():
            engine.dispose()
        _engines.clear()


class SQLAlchemyUnitOfWork(IUnitOfWork):
    """
    SQLAlchemy-backed unit of work.

    Usage:
        with SQLAlchemyUnitOfWork("sqlite:///data/crowdtest.db") as uow:
            test = uow.tests.get(test_id)
            ...
            uow.commit()
    """

    def __init__(self, db_url: str, echo: bool = False, busy_timeout: float = 30.0):
        self._db_url = db_url
        self._engine = get_engine(db_url, echo=echo, busy_timeout=busy_timeout)
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        self._session: Optional[Session] = None

    def __enter__(self) -> "SQLAlchemyUnitOfWork":
        self._session = self._session_factory()
        self.tests = SQLAlchemyCrowdTestRepository(self._session)
        self.sessions = SQLAlchemySessionRepository(self._session)
        self.earnings = SQLAlchemyEarningRepository(self._session)
        self.profiles = SQLAlchemyProfileRepository(self._session)
        self.outbox = SQLAlchemyOutboxRepository(self._session)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._session is None:
            return
        if exc_type is not None:
            self._session.rollback()
        self._session.close()
        self._session = None

    def commit(self) -> None:
        self._session.commit()

    def rollback(self) -> None:
        if self._session is not None:
            self._session.rollback()

    def is_transient_error(self, error: BaseException) -> bool:
        if isinstance(error, OperationalError):
            message = str(error.orig).lower()
            return any(marker in message for marker in _TRANSIENT_MARKERS)
        if isinstance(error, DBAPIError):
            return bool(error.connection_invalidated)
        return False
