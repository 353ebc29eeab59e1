"""Repository pattern implementations for data access.

This package provides the event store and experiment log behind the serving
core, each with a PostgreSQL implementation and an in-process one.

Usage:
    from recserve.repositories import SqlEventStore, SqlExperimentLog

    events = SqlEventStore()
    ratings = await events.user_ratings("user-1", limit=50)
"""

from recserve.repositories.base import (
    BaseRepository,
    AsyncSessionRepository,
    RepositoryContext,
    RepositoryError,
    QueryError,
    NotFoundError,
    ValidationError,
    DuplicateError,
)
from recserve.repositories.events import (
    EventStore,
    SqlEventStore,
    RatingRecord,
    RewardSignalRecord,
)
from recserve.repositories.experiments import (
    ExperimentLog,
    SqlExperimentLog,
    ExperimentRecord,
)
from recserve.repositories.memory import InMemoryEventStore, InMemoryExperimentLog

__all__ = [
    # Base classes
    "BaseRepository",
    "AsyncSessionRepository",
    "RepositoryContext",
    # Exceptions
    "RepositoryError",
    "QueryError",
    "NotFoundError",
    "ValidationError",
    "DuplicateError",
    # Interfaces and records
    "EventStore",
    "ExperimentLog",
    "RatingRecord",
    "RewardSignalRecord",
    "ExperimentRecord",
    # Concrete repositories
    "SqlEventStore",
    "SqlExperimentLog",
    "InMemoryEventStore",
    "InMemoryExperimentLog",
]
