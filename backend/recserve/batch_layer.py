"""Batch layer: periodic retraining and recommendation precomputation.

A batch run pulls the rating corpus, retrains the ranking model when there is
enough data, precomputes top-N lists for recently active users into the
recommendation cache and finally recalibrates the global feature weights.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from recserve import metrics
from recserve.cache import RecommendationCache
from recserve.clock import Clock, utc_now
from recserve.config import settings
from recserve.ranking import (
    PLACEHOLDER_TRAINING_METRICS,
    RankingModel,
    TrainingMetrics,
    WeightLearner,
)
from recserve.repositories.events import EventStore

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Summary of one completed batch run."""
    timestamp: datetime
    user_embeddings_updated: int
    item_embeddings_updated: int
    precomputed_recommendations: int
    training_metrics: TrainingMetrics
    failed_user_ids: List[str] = field(default_factory=list)
    corpus_size: int = 0
    training_skipped: bool = False
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "user_embeddings_updated": self.user_embeddings_updated,
            "item_embeddings_updated": self.item_embeddings_updated,
            "precomputed_recommendations": self.precomputed_recommendations,
            "training_metrics": self.training_metrics.to_dict(),
            "failed_user_ids": list(self.failed_user_ids),
            "corpus_size": self.corpus_size,
            "training_skipped": self.training_skipped,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class BatchLayer:
    """Retrains the model and fills the recommendation cache."""

    def __init__(
        self,
        events: EventStore,
        model: RankingModel,
        weight_learner: WeightLearner,
        cache: RecommendationCache,
        clock: Clock = utc_now,
        interval_hours: Optional[float] = None,
        corpus_limit: Optional[int] = None,
        min_training_ratings: Optional[int] = None,
        active_user_days: Optional[int] = None,
        max_users: Optional[int] = None,
        top_n: Optional[int] = None,
        user_timeout_seconds: Optional[float] = None,
    ):
        self._events = events
        self._model = model
        self._weight_learner = weight_learner
        self._cache = cache
        self._clock = clock
        self._last_batch_time: Optional[datetime] = None

        self.interval_hours = interval_hours if interval_hours is not None else settings.batch_interval_hours
        self.corpus_limit = corpus_limit if corpus_limit is not None else settings.batch_corpus_limit
        self.min_training_ratings = (
            min_training_ratings if min_training_ratings is not None else settings.batch_min_training_ratings
        )
        self.active_user_days = active_user_days if active_user_days is not None else settings.batch_active_user_days
        self.max_users = max_users if max_users is not None else settings.batch_max_users
        self.top_n = top_n if top_n is not None else settings.batch_top_n
        self.user_timeout_seconds = (
            user_timeout_seconds if user_timeout_seconds is not None else settings.batch_user_timeout_seconds
        )

    def get_last_batch_time(self) -> Optional[datetime]:
        return self._last_batch_time

    def is_batch_due(self) -> bool:
        """True if no batch has completed yet or the interval has elapsed."""
        if self._last_batch_time is None:
            return True
        elapsed_hours = (self._clock() - self._last_batch_time).total_seconds() / 3600
        return elapsed_hours >= self.interval_hours

    async def run_batch_update(self) -> BatchResult:
        """Run the full batch pipeline.

        Raises:
            Exception: If the rating corpus cannot be read. lastBatchTime is
                left unchanged in that case.
        """
        start_time = time.perf_counter()
        logger.info("Starting batch layer update")

        try:
            corpus = await self._events.recent_ratings(self.corpus_limit)
        except Exception:
            metrics.record_batch_run("failure")
            logger.error("Batch update aborted: rating corpus unavailable", exc_info=True)
            raise

        logger.info(f"Loaded {len(corpus)} ratings for training")
        training_metrics, training_skipped = await self._train(corpus)

        # Distinct users/items stand in for embedding refresh counts
        user_count = await self._count(self._events.count_distinct_users, "users")
        item_count = await self._count(self._events.count_distinct_items, "items")

        precomputed, failed_user_ids = await self._precompute_recommendations()

        try:
            await self._weight_learner.update_global_weights()
        except Exception as e:
            logger.warning(f"Global weight recalibration failed: {e}")

        self._last_batch_time = self._clock()
        duration = time.perf_counter() - start_time
        metrics.record_batch_run("success", duration, failed_users=len(failed_user_ids))

        logger.info(
            f"Batch update completed in {duration:.1f}s: {precomputed} users precomputed, "
            f"{len(failed_user_ids)} failed"
        )

        return BatchResult(
            timestamp=self._last_batch_time,
            user_embeddings_updated=user_count,
            item_embeddings_updated=item_count,
            precomputed_recommendations=precomputed,
            training_metrics=training_metrics,
            failed_user_ids=failed_user_ids,
            corpus_size=len(corpus),
            training_skipped=training_skipped,
            duration_seconds=duration,
        )

    async def _train(self, corpus) -> tuple:
        if len(corpus) < self.min_training_ratings:
            logger.info(
                f"Skipping retraining: {len(corpus)} ratings "
                f"(need {self.min_training_ratings})"
            )
            return PLACEHOLDER_TRAINING_METRICS, True

        try:
            training_metrics = await self._model.train(corpus)
            logger.info(
                f"Model retrained: loss={training_metrics.loss:.4f}, mae={training_metrics.mae:.4f}"
            )
            return training_metrics, False
        except Exception as e:
            logger.warning(f"Model retraining failed, keeping previous model: {e}")
            return PLACEHOLDER_TRAINING_METRICS, False

    async def _count(self, counter, label: str) -> int:
        try:
            return await counter()
        except Exception as e:
            logger.warning(f"Could not count distinct {label}: {e}")
            return 0

    async def _precompute_recommendations(self) -> tuple:
        """Refresh the cache for recently active users, one at a time."""
        since = self._clock() - timedelta(days=self.active_user_days)
        try:
            user_ids = await self._events.active_users_since(since, self.max_users)
        except Exception as e:
            logger.error(f"Could not load active users, skipping precompute: {e}")
            return 0, []

        logger.info(f"Precomputing recommendations for {len(user_ids)} active users")

        precomputed = 0
        failed_user_ids: List[str] = []
        for user_id in user_ids:
            try:
                items = await asyncio.wait_for(
                    self._model.get_recommendations(user_id, self.top_n),
                    timeout=self.user_timeout_seconds,
                )
                await self._cache.set(user_id, items, computed_at=self._clock())
                precomputed += 1
            except asyncio.TimeoutError:
                logger.warning(
                    f"Precompute for {user_id} timed out after {self.user_timeout_seconds}s"
                )
                failed_user_ids.append(user_id)
            except Exception as e:
                logger.warning(f"Precompute failed for {user_id}: {e}")
                failed_user_ids.append(user_id)

        return precomputed, failed_user_ids
