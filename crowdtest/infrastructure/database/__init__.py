"""Persistence: unit of work implementations and their factory."""

from .inmemory_unit_of_work import InMemoryStore, InMemoryUnitOfWork
from .unit_of_work import SQLAlchemyUnitOfWork, get_engine, dispose_engines
from .factory import UnitOfWorkFactory, UnitOfWorkProvider

__all__ = [
    "InMemoryStore",
    "InMemoryUnitOfWork",
    "SQLAlchemyUnitOfWork",
    "get_engine",
    "dispose_engines",
    "UnitOfWorkFactory",
    "UnitOfWorkProvider",
]
