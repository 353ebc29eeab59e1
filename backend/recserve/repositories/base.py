"""Base repository pattern implementation.

This module provides the shared exception hierarchy and base classes for the
event store and the experiment log. Every storage backend (PostgreSQL via
async SQLAlchemy, or the in-process memory store) derives from these so the
services above never see driver-specific errors.

Usage:
    class MyRepository(AsyncSessionRepository):
        async def find_by_id(self, id: str) -> Optional[MyRecord]:
            async with self._session() as session:
                ...
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Any, Dict
import logging

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository operations."""

    def __init__(self, message: str, operation: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.details = details or {}

    def __str__(self) -> str:
        if self.operation:
            return f"[{self.operation}] {self.message}"
        return self.message


class QueryError(RepositoryError):
    """Raised when a query fails to execute."""
    pass


class NotFoundError(RepositoryError):
    """Raised when a requested entity is not found."""
    pass


class ValidationError(RepositoryError):
    """Raised when entity validation fails."""
    pass


class DuplicateError(RepositoryError):
    """Raised when a write would repeat a write-once operation."""
    pass


@dataclass
class RepositoryContext:
    """Context information for repository operations.

    Carried into log records for tracing and audit purposes.
    """
    operation_id: Optional[str] = None
    user_id: Optional[str] = None
    trace_id: Optional[str] = None


def as_utc(value: datetime) -> datetime:
    """Normalize a stored timestamp to an aware UTC datetime.

    Drivers without timezone support (SQLite) hand back naive values that
    were written as UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class BaseRepository(ABC):
    """Abstract base class for repositories.

    Provides:
    - Optional context for tracing
    - Logging helpers with consistent ``extra`` fields
    - A health check hook used by the /api/health endpoint
    """

    def __init__(self, context: Optional[RepositoryContext] = None):
        """Initialize repository with optional context.

        Args:
            context: Optional context information for tracing and audit
        """
        self._context = context or RepositoryContext()
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def context(self) -> RepositoryContext:
        """Get the current repository context."""
        return self._context

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the data store is healthy and responsive.

        Returns:
            True if healthy, False otherwise
        """
        pass

    def _log_operation(self, operation: str, **kwargs) -> None:
        """Log repository operation with context."""
        extra = {
            "operation": operation,
            "repository": self.__class__.__name__,
            **kwargs,
        }
        if self._context.operation_id:
            extra["operation_id"] = self._context.operation_id
        if self._context.trace_id:
            extra["trace_id"] = self._context.trace_id

        self._logger.debug(f"Repository operation: {operation}", extra=extra)

    def _log_error(self, operation: str, error: Exception, **kwargs) -> None:
        """Log repository error with context."""
        extra = {
            "operation": operation,
            "repository": self.__class__.__name__,
            "error_type": type(error).__name__,
            **kwargs,
        }
        if self._context.operation_id:
            extra["operation_id"] = self._context.operation_id

        self._logger.error(
            f"Repository error in {operation}: {error}",
            extra=extra,
            exc_info=True,
        )


class AsyncSessionRepository(BaseRepository):
    """Base repository for SQLAlchemy async session-based data access.

    Opens one short-lived transactional session per operation, so a single
    repository instance can be shared by long-lived services and background
    tasks.
    """

    def __init__(
        self,
        session_factory=None,
        context: Optional[RepositoryContext] = None,
    ):
        """Initialize with optional session factory.

        Args:
            session_factory: SQLAlchemy async session factory. Defaults to the
                process-wide factory from recserve.database.
            context: Optional context information
        """
        super().__init__(context)
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self):
        """Transactional session: commits on success, rolls back otherwise."""
        # Import here to avoid circular imports
        from recserve.database import session_scope

        async with session_scope(self._session_factory) as session:
            yield session

    async def health_check(self) -> bool:
        """Check database connection health."""
        try:
            from sqlalchemy import text
            async with self._session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            self._log_error("health_check", e)
            return False
