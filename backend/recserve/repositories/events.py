"""Repository for user activity events.

The event store is append-only: ratings, watchlist additions, preference
updates and the speed layer's reward signals. Reads are all recency windows:

- most recent ratings overall (batch training corpus)
- users with a rating since a cutoff (batch active-user selection)
- a user's most recent ratings (merge-time de-duplication)
- whether a user rated anything since a cutoff (serving activity gate)
"""

import logging
from abc import abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, desc, func

from recserve.repositories.base import (
    AsyncSessionRepository,
    BaseRepository,
    QueryError,
    RepositoryContext,
    ValidationError,
    as_utc,
)

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 10


@dataclass
class RatingRecord:
    """A stored rating event."""
    id: str
    user_id: str
    item_id: int
    rating: int
    created_at: datetime


@dataclass
class RewardSignalRecord:
    """A stored speed-layer reward signal."""
    id: str
    user_id: str
    item_id: Optional[int]
    source: str
    outcome_type: str
    reward: float
    created_at: datetime


def validate_rating(rating: int) -> None:
    """Reject ratings outside the 1-10 scale."""
    if not MIN_RATING <= rating <= MAX_RATING:
        raise ValidationError(
            f"Rating must be between {MIN_RATING} and {MAX_RATING}, got {rating}",
            "add_rating",
            {"rating": rating},
        )


class EventStore(BaseRepository):
    """Interface for the append-only activity event store."""

    @abstractmethod
    async def add_rating(
        self, user_id: str, item_id: int, rating: int, created_at: datetime
    ) -> RatingRecord:
        pass

    @abstractmethod
    async def add_watchlist(self, user_id: str, item_id: int, created_at: datetime) -> None:
        pass

    @abstractmethod
    async def add_preference(
        self, user_id: str, payload: Dict[str, Any], created_at: datetime
    ) -> None:
        pass

    @abstractmethod
    async def add_reward_signal(
        self,
        user_id: str,
        item_id: Optional[int],
        source: str,
        outcome_type: str,
        reward: float,
        created_at: datetime,
    ) -> RewardSignalRecord:
        pass

    @abstractmethod
    async def recent_ratings(self, limit: int) -> List[RatingRecord]:
        """Most recent ratings across all users, newest first."""

    @abstractmethod
    async def user_ratings(self, user_id: str, limit: int) -> List[RatingRecord]:
        """A user's most recent ratings, newest first."""

    @abstractmethod
    async def has_rating_since(self, user_id: str, since: datetime) -> bool:
        pass

    @abstractmethod
    async def active_users_since(self, since: datetime, limit: int) -> List[str]:
        """Users with a rating at or after ``since``, most recently active first."""

    @abstractmethod
    async def count_distinct_users(self) -> int:
        pass

    @abstractmethod
    async def count_distinct_items(self) -> int:
        pass


class SqlEventStore(AsyncSessionRepository, EventStore):
    """Event store backed by PostgreSQL tables in recserve.db_models."""

    def __init__(
        self,
        session_factory=None,
        context: Optional[RepositoryContext] = None,
    ):
        super().__init__(session_factory, context)

    @staticmethod
    def _to_rating(row) -> RatingRecord:
        return RatingRecord(
            id=str(row.id),
            user_id=row.user_id,
            item_id=row.item_id,
            rating=row.rating,
            created_at=as_utc(row.created_at),
        )

    async def add_rating(
        self, user_id: str, item_id: int, rating: int, created_at: datetime
    ) -> RatingRecord:
        self._log_operation("add_rating", user_id=user_id, item_id=item_id)
        validate_rating(rating)

        from recserve.db_models import RatingEvent

        try:
            async with self._session() as session:
                event = RatingEvent(
                    user_id=user_id,
                    item_id=item_id,
                    rating=rating,
                    created_at=created_at,
                )
                session.add(event)
                await session.flush()
                return self._to_rating(event)
        except Exception as e:
            self._log_error("add_rating", e, user_id=user_id)
            raise QueryError(str(e), "add_rating") from e

    async def add_watchlist(self, user_id: str, item_id: int, created_at: datetime) -> None:
        self._log_operation("add_watchlist", user_id=user_id, item_id=item_id)

        from recserve.db_models import WatchlistEvent

        try:
            async with self._session() as session:
                session.add(WatchlistEvent(user_id=user_id, item_id=item_id, created_at=created_at))
        except Exception as e:
            self._log_error("add_watchlist", e, user_id=user_id)
            raise QueryError(str(e), "add_watchlist") from e

    async def add_preference(
        self, user_id: str, payload: Dict[str, Any], created_at: datetime
    ) -> None:
        self._log_operation("add_preference", user_id=user_id)

        from recserve.db_models import PreferenceEvent

        try:
            async with self._session() as session:
                session.add(PreferenceEvent(user_id=user_id, payload=payload, created_at=created_at))
        except Exception as e:
            self._log_error("add_preference", e, user_id=user_id)
            raise QueryError(str(e), "add_preference") from e

    async def add_reward_signal(
        self,
        user_id: str,
        item_id: Optional[int],
        source: str,
        outcome_type: str,
        reward: float,
        created_at: datetime,
    ) -> RewardSignalRecord:
        self._log_operation("add_reward_signal", user_id=user_id, outcome_type=outcome_type)

        from recserve.db_models import RewardSignal

        try:
            async with self._session() as session:
                signal = RewardSignal(
                    user_id=user_id,
                    item_id=item_id,
                    source=source,
                    outcome_type=outcome_type,
                    reward=reward,
                    created_at=created_at,
                )
                session.add(signal)
                await session.flush()
                return RewardSignalRecord(
                    id=str(signal.id),
                    user_id=signal.user_id,
                    item_id=signal.item_id,
                    source=signal.source,
                    outcome_type=signal.outcome_type,
                    reward=signal.reward,
                    created_at=as_utc(signal.created_at),
                )
        except Exception as e:
            self._log_error("add_reward_signal", e, user_id=user_id)
            raise QueryError(str(e), "add_reward_signal") from e

    async def recent_ratings(self, limit: int) -> List[RatingRecord]:
        self._log_operation("recent_ratings", limit=limit)

        from recserve.db_models import RatingEvent

        try:
            async with self._session() as session:
                result = await session.execute(
                    select(RatingEvent)
                    .order_by(desc(RatingEvent.created_at))
                    .limit(limit)
                )
                return [self._to_rating(row) for row in result.scalars().all()]
        except Exception as e:
            self._log_error("recent_ratings", e)
            raise QueryError(str(e), "recent_ratings") from e

    async def user_ratings(self, user_id: str, limit: int) -> List[RatingRecord]:
        self._log_operation("user_ratings", user_id=user_id, limit=limit)

        from recserve.db_models import RatingEvent

        try:
            async with self._session() as session:
                result = await session.execute(
                    select(RatingEvent)
                    .where(RatingEvent.user_id == user_id)
                    .order_by(desc(RatingEvent.created_at))
                    .limit(limit)
                )
                return [self._to_rating(row) for row in result.scalars().all()]
        except Exception as e:
            self._log_error("user_ratings", e, user_id=user_id)
            raise QueryError(str(e), "user_ratings") from e

    async def has_rating_since(self, user_id: str, since: datetime) -> bool:
        self._log_operation("has_rating_since", user_id=user_id)

        from recserve.db_models import RatingEvent

        try:
            async with self._session() as session:
                result = await session.execute(
                    select(RatingEvent.id)
                    .where(RatingEvent.user_id == user_id)
                    .where(RatingEvent.created_at >= since)
                    .limit(1)
                )
                return result.first() is not None
        except Exception as e:
            self._log_error("has_rating_since", e, user_id=user_id)
            raise QueryError(str(e), "has_rating_since") from e

    async def active_users_since(self, since: datetime, limit: int) -> List[str]:
        self._log_operation("active_users_since", limit=limit)

        from recserve.db_models import RatingEvent

        try:
            async with self._session() as session:
                last_seen = func.max(RatingEvent.created_at)
                result = await session.execute(
                    select(RatingEvent.user_id)
                    .where(RatingEvent.created_at >= since)
                    .group_by(RatingEvent.user_id)
                    .order_by(desc(last_seen))
                    .limit(limit)
                )
                return [row[0] for row in result.all()]
        except Exception as e:
            self._log_error("active_users_since", e)
            raise QueryError(str(e), "active_users_since") from e

    async def count_distinct_users(self) -> int:
        from recserve.db_models import RatingEvent

        try:
            async with self._session() as session:
                result = await session.execute(
                    select(func.count(func.distinct(RatingEvent.user_id)))
                )
                return result.scalar() or 0
        except Exception as e:
            self._log_error("count_distinct_users", e)
            raise QueryError(str(e), "count_distinct_users") from e

    async def count_distinct_items(self) -> int:
        from recserve.db_models import RatingEvent

        try:
            async with self._session() as session:
                result = await session.execute(
                    select(func.count(func.distinct(RatingEvent.item_id)))
                )
                return result.scalar() or 0
        except Exception as e:
            self._log_error("count_distinct_items", e)
            raise QueryError(str(e), "count_distinct_items") from e
