"""Lambda architecture orchestrator.

Owns the batch, speed and serving layers over one shared recommendation
cache, and the periodic task that keeps the batch layer on schedule.

Usage:
    from recserve.lambda_architecture import build_lambda_architecture

    lambda_arch = build_lambda_architecture(events)
    lambda_arch.start_scheduler()
    response = await lambda_arch.get_recommendations("user-1", limit=20)
"""

import logging
from typing import Any, Dict, Optional

from recserve.batch_layer import BatchLayer, BatchResult
from recserve.cache import RecommendationCache
from recserve.clock import Clock, utc_now
from recserve.config import settings
from recserve.ranking import HttpRankingModel, RankingModel, WeightLearner
from recserve.repositories.events import EventStore
from recserve.scheduler import PeriodicTask
from recserve.serving_layer import RecommendationResponse, ServingLayer
from recserve.speed_layer import SpeedLayer

logger = logging.getLogger(__name__)


class LambdaArchitecture:
    """Composition root for the three layers plus the batch schedule."""

    def __init__(
        self,
        batch_layer: BatchLayer,
        speed_layer: SpeedLayer,
        serving_layer: ServingLayer,
        cache: RecommendationCache,
        jitter_seconds: Optional[float] = None,
    ):
        self.batch_layer = batch_layer
        self.speed_layer = speed_layer
        self.serving_layer = serving_layer
        self.cache = cache
        self.jitter_seconds = (
            jitter_seconds if jitter_seconds is not None else settings.scheduler_jitter_seconds
        )
        self._scheduler: Optional[PeriodicTask] = None
        self._last_batch_result: Optional[BatchResult] = None

    @property
    def scheduler_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.is_running

    def start_scheduler(self, interval_hours: float = 12) -> bool:
        """Check for a due batch now and then every ``interval_hours``.

        Must be called from a running event loop. Returns False if the
        scheduler was already running.
        """
        if self.scheduler_running:
            logger.warning("Batch scheduler already running")
            return False

        self._scheduler = PeriodicTask(
            name="batch_update",
            interval_seconds=interval_hours * 3600,
            func=self._scheduled_batch,
            jitter_seconds=self.jitter_seconds,
            run_immediately=True,
        )
        self._scheduler.start()
        logger.info(f"Batch scheduler started: checking every {interval_hours}h")
        return True

    async def stop_scheduler(self) -> None:
        if self._scheduler is None:
            return
        await self._scheduler.stop()
        self._scheduler = None
        logger.info("Batch scheduler stopped")

    async def _scheduled_batch(self) -> None:
        if not self.batch_layer.is_batch_due():
            logger.debug("Batch not due, skipping scheduled run")
            return
        try:
            await self.run_batch_update()
        except Exception as e:
            logger.error(f"Scheduled batch update failed: {e}", exc_info=True)

    async def run_batch_update(self) -> BatchResult:
        """Run the batch pipeline now. Errors propagate to the caller."""
        result = await self.batch_layer.run_batch_update()
        self._last_batch_result = result
        return result

    async def trigger_batch_update(self) -> BatchResult:
        """Manual trigger, regardless of whether a batch is due."""
        logger.info("Manual batch update triggered")
        return await self.run_batch_update()

    async def get_recommendations(
        self, user_id: str, limit: int = 20, skip_cache: bool = False
    ) -> RecommendationResponse:
        return await self.serving_layer.get_recommendations(
            user_id, limit=limit, force_realtime=skip_cache
        )

    async def get_status(self) -> Dict[str, Any]:
        last_batch = self.batch_layer.get_last_batch_time()
        return {
            "scheduler": {
                "running": self.scheduler_running,
                "last_batch_update": last_batch.isoformat() if last_batch else None,
                "batch_due": self.batch_layer.is_batch_due(),
                "runs": self._scheduler.run_count if self._scheduler else 0,
            },
            "serving": await self.serving_layer.get_statistics(),
        }

    async def get_statistics(self) -> Dict[str, Any]:
        stats = await self.serving_layer.get_statistics()
        stats["last_batch_result"] = (
            self._last_batch_result.to_dict() if self._last_batch_result else None
        )
        return stats


def build_lambda_architecture(
    events: EventStore,
    model: Optional[RankingModel] = None,
    weight_learner: Optional[WeightLearner] = None,
    clock: Clock = utc_now,
) -> LambdaArchitecture:
    """Wire the layers with defaults from settings.

    ``model`` defaults to the HTTP ranking client, which also serves as the
    weight learner unless one is given.
    """
    model = model or HttpRankingModel()
    if weight_learner is None:
        if not isinstance(model, WeightLearner):
            raise TypeError("model does not recalibrate weights; pass weight_learner")
        weight_learner = model

    cache = RecommendationCache(clock=clock)
    batch_layer = BatchLayer(events, model, weight_learner, cache, clock=clock)
    speed_layer = SpeedLayer(events, cache, clock=clock)
    serving_layer = ServingLayer(events, model, cache, batch_layer, clock=clock)
    return LambdaArchitecture(batch_layer, speed_layer, serving_layer, cache)
