"""Serving layer: answer recommendation requests from cache, model or both.

Per request, in priority order:

1. batch     - cached entry younger than the max age (6h by default)
2. realtime  - the user rated something in the last hour, or the caller
               forced a fresh compute
3. merged    - stale cached entry: drop already-rated items, apply the
               freshness boost, re-sort
4. realtime  - nothing cached and no recent activity: compute fresh and
               write the answer back to the cache

The serving layer never raises; the worst case is an empty realtime list.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from recserve import metrics
from recserve.batch_layer import BatchLayer
from recserve.cache import CachedRecommendationData, RecommendationCache
from recserve.clock import Clock, utc_now
from recserve.config import settings
from recserve.ranking import RankingModel, ScoredItem
from recserve.repositories.events import EventStore

logger = logging.getLogger(__name__)

SOURCE_BATCH = "batch"
SOURCE_REALTIME = "realtime"
SOURCE_MERGED = "merged"


@dataclass
class RecommendationResponse:
    """Ranked item ids with parallel scores and where they came from."""
    user_id: str
    recommendations: List[int]
    scores: List[float]
    source: str
    computed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "recommendations": list(self.recommendations),
            "scores": list(self.scores),
            "source": self.source,
            "computed_at": self.computed_at.isoformat(),
        }


class ServingLayer:
    """Chooses between cached, merged and freshly computed recommendations."""

    def __init__(
        self,
        events: EventStore,
        model: RankingModel,
        cache: RecommendationCache,
        batch_layer: BatchLayer,
        clock: Clock = utc_now,
        cache_max_age_hours: Optional[float] = None,
        recent_activity_minutes: Optional[int] = None,
        merge_history_limit: Optional[int] = None,
        freshness_boost: Optional[float] = None,
    ):
        self._events = events
        self._model = model
        self._cache = cache
        self._batch_layer = batch_layer
        self._clock = clock

        self.cache_max_age = timedelta(
            hours=cache_max_age_hours if cache_max_age_hours is not None else settings.cache_max_age_hours
        )
        self.recent_activity_window = timedelta(
            minutes=recent_activity_minutes
            if recent_activity_minutes is not None
            else settings.recent_activity_minutes
        )
        self.merge_history_limit = (
            merge_history_limit if merge_history_limit is not None else settings.merge_history_limit
        )
        self.freshness_boost = freshness_boost if freshness_boost is not None else settings.freshness_boost

    async def get_recommendations(
        self,
        user_id: str,
        limit: int = 50,
        force_realtime: bool = False,
    ) -> RecommendationResponse:
        response = await self._serve(user_id, limit, force_realtime)
        metrics.record_serving(response.source)
        return response

    async def _serve(self, user_id: str, limit: int, force_realtime: bool) -> RecommendationResponse:
        now = self._clock()
        cached = await self._cache.get(user_id)

        if cached is not None and not force_realtime:
            if now - cached.computed_at < self.cache_max_age:
                logger.debug(f"Serving batch recommendations for {user_id}")
                return RecommendationResponse(
                    user_id=user_id,
                    recommendations=cached.recommendations[:limit],
                    scores=cached.scores[:limit],
                    source=SOURCE_BATCH,
                    computed_at=cached.computed_at,
                )

        if force_realtime or await self._has_recent_activity(user_id, now):
            try:
                items = await self._model.get_recommendations(user_id, limit)
                logger.debug(f"Serving realtime recommendations for {user_id}")
                return self._from_items(user_id, items[:limit], SOURCE_REALTIME, now)
            except Exception as e:
                logger.warning(f"Realtime compute failed for {user_id}: {e}")
                if cached is not None:
                    return await self._merge(user_id, cached, limit, now)
                return self._empty(user_id, now)

        if cached is not None:
            return await self._merge(user_id, cached, limit, now)

        # Cold user: compute a full batch-sized list once and keep it for later requests
        fetch = max(limit, self._batch_layer.top_n)
        try:
            items = (await self._model.get_recommendations(user_id, fetch))[:fetch]
        except Exception as e:
            logger.error(f"Cold compute failed for {user_id}: {e}")
            return self._empty(user_id, now)

        await self._cache.set(user_id, items, computed_at=now)
        logger.debug(f"Cached {len(items)} cold-start recommendations for {user_id}")
        return self._from_items(user_id, items[:limit], SOURCE_REALTIME, now)

    async def _has_recent_activity(self, user_id: str, now: datetime) -> bool:
        try:
            return await self._events.has_rating_since(user_id, now - self.recent_activity_window)
        except Exception as e:
            logger.warning(f"Recent activity lookup failed for {user_id}, assuming none: {e}")
            return False

    async def _merge(
        self,
        user_id: str,
        cached: CachedRecommendationData,
        limit: int,
        now: datetime,
    ) -> RecommendationResponse:
        """Stale cache minus already-rated items, scores scaled by the freshness boost."""
        try:
            history = await self._events.user_ratings(user_id, self.merge_history_limit)
            rated = {rating.item_id for rating in history}
        except Exception as e:
            logger.warning(f"Rating history lookup failed for {user_id}, merging without it: {e}")
            rated = set()

        merged = [
            ScoredItem(item_id=item_id, score=score * self.freshness_boost)
            for item_id, score in zip(cached.recommendations, cached.scores)
            if item_id not in rated
        ]
        merged.sort(key=lambda item: item.score, reverse=True)

        logger.debug(f"Serving merged recommendations for {user_id} ({len(rated)} rated items excluded)")
        return self._from_items(user_id, merged[:limit], SOURCE_MERGED, now)

    @staticmethod
    def _from_items(
        user_id: str, items: List[ScoredItem], source: str, computed_at: datetime
    ) -> RecommendationResponse:
        return RecommendationResponse(
            user_id=user_id,
            recommendations=[item.item_id for item in items],
            scores=[float(item.score) for item in items],
            source=source,
            computed_at=computed_at,
        )

    @staticmethod
    def _empty(user_id: str, now: datetime) -> RecommendationResponse:
        return RecommendationResponse(
            user_id=user_id, recommendations=[], scores=[], source=SOURCE_REALTIME, computed_at=now
        )

    async def get_statistics(self) -> Dict[str, Any]:
        """Read-only view of batch freshness and cache counters."""
        last_batch = self._batch_layer.get_last_batch_time()
        cache_stats = await self._cache.get_stats()
        return {
            "last_batch_update": last_batch.isoformat() if last_batch else None,
            "cache_stats": cache_stats.to_dict(),
            "batch_interval_hours": self._batch_layer.interval_hours,
            "is_batch_due": self._batch_layer.is_batch_due(),
        }
