"""Pytest configuration and shared fixtures.

Provides a controllable clock, in-memory stores and a scriptable ranking
model so every layer can be exercised without PostgreSQL or the model
service.

IMPORTANT: Environment variables are set BEFORE any recserve import so the
module-level settings pick up test values.
"""
import sys
import os

# Add backend to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# =============================================================================
# CRITICAL: Set environment variables BEFORE any imports
# =============================================================================

os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("ENABLE_PROMETHEUS_METRICS", "false")
os.environ.setdefault("RANKING_SERVICE_URL", "http://ranking.test")

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set

import numpy as np
import pytest

from recserve.batch_layer import BatchLayer
from recserve.cache import RecommendationCache
from recserve.lambda_architecture import LambdaArchitecture
from recserve.ranking import ScoredItem, TrainingMetrics
from recserve.repositories import InMemoryEventStore, InMemoryExperimentLog
from recserve.serving_layer import ServingLayer
from recserve.speed_layer import SpeedLayer

# Wednesday, mid-morning UTC
START_TIME = datetime(2026, 3, 4, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment


class FakeRankingModel:
    """Scriptable RankingModel and WeightLearner."""

    def __init__(self):
        self.recommendations: Dict[str, List[ScoredItem]] = {}
        self.default_items = [ScoredItem(item_id=i, score=float(10 - i)) for i in range(1, 6)]
        self.failing_users: Set[str] = set()
        self.slow_users: Set[str] = set()
        self.fail_all = False
        self.train_error: Optional[Exception] = None
        self.weights_error: Optional[Exception] = None
        self.training_result = TrainingMetrics(loss=0.42, mae=0.81)
        self.calls: List[str] = []
        self.train_calls: List[int] = []
        self.weight_updates = 0

    async def get_recommendations(self, user_id: str, limit: int) -> List[ScoredItem]:
        self.calls.append(user_id)
        if self.fail_all or user_id in self.failing_users:
            raise RuntimeError(f"model unavailable for {user_id}")
        if user_id in self.slow_users:
            await asyncio.sleep(60)
        return list(self.recommendations.get(user_id, self.default_items))[:limit]

    async def train(self, corpus) -> TrainingMetrics:
        self.train_calls.append(len(corpus))
        if self.train_error:
            raise self.train_error
        return self.training_result

    async def update_global_weights(self) -> None:
        self.weight_updates += 1
        if self.weights_error:
            raise self.weights_error


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def events():
    return InMemoryEventStore()


@pytest.fixture
def experiments():
    return InMemoryExperimentLog()


@pytest.fixture
def model():
    return FakeRankingModel()


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def cache(clock):
    return RecommendationCache(clock=clock)


@pytest.fixture
def batch_layer(events, model, cache, clock):
    return BatchLayer(
        events,
        model,
        model,
        cache,
        clock=clock,
        interval_hours=12,
        corpus_limit=100000,
        min_training_ratings=1000,
        active_user_days=30,
        max_users=1000,
        top_n=50,
        user_timeout_seconds=0.05,
    )


@pytest.fixture
def speed_layer(events, cache, clock):
    return SpeedLayer(events, cache, clock=clock)


@pytest.fixture
def serving_layer(events, model, cache, batch_layer, clock):
    return ServingLayer(
        events,
        model,
        cache,
        batch_layer,
        clock=clock,
        cache_max_age_hours=6,
        recent_activity_minutes=60,
        merge_history_limit=50,
        freshness_boost=1.10,
    )


@pytest.fixture
def lambda_arch(batch_layer, speed_layer, serving_layer, cache):
    return LambdaArchitecture(batch_layer, speed_layer, serving_layer, cache, jitter_seconds=0)
