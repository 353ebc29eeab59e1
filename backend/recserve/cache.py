"""In-memory recommendation cache.

Holds the most recent precomputed recommendation list per user for the
lifetime of the process. Entries are written by the batch layer (and by the
serving layer's cold path), replaced whole on every write, and removed only by
explicit invalidation from the speed layer. There is no TTL or eviction: the
serving layer decides whether an entry is too old to serve as-is.

Usage:
    from recserve.cache import RecommendationCache

    cache = RecommendationCache()
    await cache.set(user_id, [ScoredItem(item_id=550, score=8.7), ...])
    entry = await cache.get(user_id)   # counts a hit or a miss
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from recserve.clock import Clock, utc_now
from recserve.ranking import ScoredItem

logger = logging.getLogger(__name__)


@dataclass
class CachedRecommendationData:
    """A user's cached ranked list with parallel scores."""
    recommendations: List[int]
    scores: List[float]
    computed_at: datetime

    def __post_init__(self):
        if len(self.recommendations) != len(self.scores):
            raise ValueError(
                f"recommendations and scores differ in length: "
                f"{len(self.recommendations)} != {len(self.scores)}"
            )


@dataclass
class RecommendationCacheStats:
    """Counters for cache usage."""
    hits: int = 0
    misses: int = 0
    sets: int = 0
    invalidations: int = 0
    cache_size: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "invalidations": self.invalidations,
            "cache_size": self.cache_size,
            "hit_rate": self.hit_rate,
        }


class RecommendationCache:
    """Process-lifetime map of user id to CachedRecommendationData.

    Methods are coroutines so callers are unaffected if the store later moves
    out of process. No locking: concurrent writers for one user resolve as
    last-write-wins.
    """

    def __init__(self, clock: Clock = utc_now):
        self._clock = clock
        self._entries: Dict[str, CachedRecommendationData] = {}
        self._stats = RecommendationCacheStats()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, user_id: str) -> Optional[CachedRecommendationData]:
        """Return the user's entry, counting a hit or a miss."""
        entry = self._entries.get(user_id)
        if entry is None:
            self._stats.misses += 1
            return None
        self._stats.hits += 1
        return entry

    def peek(self, user_id: str) -> Optional[CachedRecommendationData]:
        """Return the user's entry without touching the counters."""
        return self._entries.get(user_id)

    async def set(
        self,
        user_id: str,
        items: Iterable[ScoredItem],
        computed_at: Optional[datetime] = None,
    ) -> CachedRecommendationData:
        """Replace the user's entry with a new ranked list."""
        items = list(items)
        entry = CachedRecommendationData(
            recommendations=[item.item_id for item in items],
            scores=[float(item.score) for item in items],
            computed_at=computed_at or self._clock(),
        )
        self._entries[user_id] = entry
        self._stats.sets += 1
        logger.debug(f"Cached {len(items)} recommendations for {user_id}")
        return entry

    async def invalidate(self, user_id: str) -> None:
        """Drop the user's entry. Counted even when nothing was cached."""
        self._entries.pop(user_id, None)
        self._stats.invalidations += 1

    async def clear(self) -> None:
        """Drop every entry. Counters are kept."""
        count = len(self._entries)
        self._entries.clear()
        logger.info(f"Recommendation cache cleared ({count} entries)")

    async def get_stats(self) -> RecommendationCacheStats:
        return RecommendationCacheStats(
            hits=self._stats.hits,
            misses=self._stats.misses,
            sets=self._stats.sets,
            invalidations=self._stats.invalidations,
            cache_size=len(self._entries),
        )
