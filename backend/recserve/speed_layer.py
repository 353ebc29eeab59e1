"""Speed layer: react to user events between batch runs.

Each handler records a reward signal where the event carries one and drops the
user's cached recommendations so the next request is computed fresh. Handlers
log failures and never raise, so callers can fire them without awaiting.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Coroutine, Dict, Iterable, Optional, Set

from recserve import metrics
from recserve.cache import RecommendationCache
from recserve.clock import Clock, utc_now
from recserve.repositories.events import EventStore

logger = logging.getLogger(__name__)

# Strong references to in-flight background handlers
_background_tasks: Set[asyncio.Task] = set()


def fire_and_forget(coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
    """Schedule a coroutine on the running loop without awaiting it."""
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def pending_background_tasks() -> int:
    return len(_background_tasks)


@dataclass
class SpeedLayerUpdate:
    """One event for process_batch."""
    user_id: str
    action: str  # rating_added | watchlist_added | preference_updated
    data: Dict[str, Any] = field(default_factory=dict)


class SpeedLayer:
    """Reward signal recording and cache invalidation on user events."""

    SOURCE = "speed_layer"

    def __init__(
        self,
        events: EventStore,
        cache: RecommendationCache,
        clock: Clock = utc_now,
    ):
        self._events = events
        self._cache = cache
        self._clock = clock

    async def on_rating_added(self, user_id: str, item_id: int, rating: int) -> None:
        """A rating of 7+ is a full reward; anything lower counts as ignored."""
        if rating >= 7:
            outcome_type, reward = "rated_high", 1.0
        else:
            outcome_type, reward = "ignored", 0.0

        recorded = await self._record_signal(user_id, item_id, outcome_type, reward)
        invalidated = await self._invalidate(user_id)
        metrics.record_speed_event("rating_added", "success" if recorded and invalidated else "failure")
        logger.debug(f"Speed layer: rating {rating} for {item_id} by {user_id} -> {outcome_type}")

    async def on_watchlist_added(self, user_id: str, item_id: int) -> None:
        recorded = await self._record_signal(user_id, item_id, "watchlisted", 0.6)
        invalidated = await self._invalidate(user_id)
        metrics.record_speed_event("watchlist_added", "success" if recorded and invalidated else "failure")

    async def on_preference_updated(
        self, user_id: str, preferences: Optional[Dict[str, Any]] = None
    ) -> None:
        """Preferences change the candidate pool, so only the cache is dropped."""
        invalidated = await self._invalidate(user_id)
        metrics.record_speed_event("preference_updated", "success" if invalidated else "failure")

    async def _record_signal(self, user_id: str, item_id: int, outcome_type: str, reward: float) -> bool:
        try:
            await self._events.add_reward_signal(
                user_id=user_id,
                item_id=item_id,
                source=self.SOURCE,
                outcome_type=outcome_type,
                reward=reward,
                created_at=self._clock(),
            )
            return True
        except Exception as e:
            logger.error(f"Speed layer failed to record {outcome_type} signal for {user_id}: {e}", exc_info=True)
            return False

    async def _invalidate(self, user_id: str) -> bool:
        try:
            await self._cache.invalidate(user_id)
            return True
        except Exception as e:
            logger.error(f"Speed layer failed to invalidate cache for {user_id}: {e}", exc_info=True)
            return False

    async def process_batch(self, updates: Iterable[SpeedLayerUpdate]) -> int:
        """Invalidate each affected user once.

        Returns:
            Number of users whose cache entry was invalidated
        """
        try:
            user_ids = list(dict.fromkeys(update.user_id for update in updates))
        except Exception as e:
            logger.error(f"Speed layer batch rejected, malformed updates: {e}")
            return 0

        invalidated = 0
        for user_id in user_ids:
            try:
                await self._cache.invalidate(user_id)
                invalidated += 1
            except Exception as e:
                logger.error(f"Speed layer batch invalidation failed for {user_id}: {e}")

        logger.info(f"Speed layer processed batch: {invalidated}/{len(user_ids)} users invalidated")
        return invalidated
