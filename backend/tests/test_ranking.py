"""Tests for the ranking service client and its circuit breaker.

HTTP calls go through httpx.MockTransport; no model service is needed.
"""

import json
from datetime import timedelta

import httpx
import pytest

from recserve.circuit_breaker import (
    RANKING_EXCEPTIONS,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpen,
    CircuitState,
    get_circuit_breaker_states,
    get_circuit_breakers_healthy,
)
from recserve.ranking import (
    PLACEHOLDER_TRAINING_METRICS,
    HttpRankingModel,
    RankingModel,
    ScoredItem,
    TrainingMetrics,
    WeightLearner,
    parse_scored_items,
)
from recserve.repositories import RatingRecord
from tests.conftest import START_TIME


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


def make_breaker(clock=None, **overrides) -> CircuitBreaker:
    config = dict(
        name="test",
        failure_threshold=2,
        success_threshold=1,
        reset_timeout_seconds=30.0,
        retry_attempts=2,
        retry_min_wait=0,
        retry_max_wait=0,
        retry_multiplier=0,
        exceptions=RANKING_EXCEPTIONS,
    )
    config.update(overrides)
    return CircuitBreaker(CircuitBreakerConfig(**config), clock=clock or FakeMonotonic())


def make_model(handler, breaker=None) -> HttpRankingModel:
    return HttpRankingModel(
        base_url="http://ranking.test",
        timeout_seconds=1.0,
        train_timeout_seconds=1.0,
        breaker=breaker or make_breaker(),
        transport=httpx.MockTransport(handler),
    )


class TestParseScoredItems:
    def test_bare_list(self):
        items = parse_scored_items([{"item_id": 1, "score": 9.5}, {"item_id": 2, "score": 8}])
        assert items == [ScoredItem(1, 9.5), ScoredItem(2, 8.0)]

    def test_wrapped_payload_with_alternate_keys(self):
        payload = {"recommendations": [{"tmdb_id": "550", "predicted_rating": 8.7}]}
        assert parse_scored_items(payload) == [ScoredItem(550, 8.7)]

    def test_entries_without_id_dropped(self):
        assert parse_scored_items([{"score": 1.0}, {"item_id": 3}]) == [ScoredItem(3, 0.0)]

    def test_empty_payloads(self):
        assert parse_scored_items(None) == []
        assert parse_scored_items({}) == []


class TestHttpRankingModel:
    def test_satisfies_protocols(self):
        model = make_model(lambda request: httpx.Response(200, json=[]))
        assert isinstance(model, RankingModel)
        assert isinstance(model, WeightLearner)

    @pytest.mark.asyncio
    async def test_get_recommendations(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["limit"] = request.url.params["limit"]
            return httpx.Response(200, json={"recommendations": [
                {"item_id": 10, "score": 9.1},
                {"item_id": 11, "score": 8.2},
                {"item_id": 12, "score": 7.3},
            ]})

        items = await make_model(handler).get_recommendations("u1", 2)

        assert seen == {"path": "/users/u1/recommendations", "limit": "2"}
        assert items == [ScoredItem(10, 9.1), ScoredItem(11, 8.2)]

    @pytest.mark.asyncio
    async def test_train_sends_corpus_bounds(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"loss": 0.3, "mae": 0.7})

        corpus = [
            RatingRecord("a", "u1", 1, 8, START_TIME),
            RatingRecord("b", "u2", 2, 6, START_TIME + timedelta(hours=1)),
        ]

        metrics = await make_model(handler).train(corpus)

        assert metrics == TrainingMetrics(loss=0.3, mae=0.7)
        assert seen["body"]["corpus_size"] == 2
        assert seen["body"]["newest_rating_at"] == (START_TIME + timedelta(hours=1)).isoformat()

    @pytest.mark.asyncio
    async def test_train_missing_metrics_fall_back(self):
        metrics = await make_model(lambda request: httpx.Response(200, json={})).train([])
        assert metrics == PLACEHOLDER_TRAINING_METRICS

    @pytest.mark.asyncio
    async def test_update_global_weights(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path))
            return httpx.Response(204)

        await make_model(handler).update_global_weights()

        assert seen == [("POST", "/weights/recalibrate")]

    @pytest.mark.asyncio
    async def test_http_error_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(500)

        with pytest.raises(httpx.HTTPStatusError):
            await make_model(handler).get_recommendations("u1", 5)

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_transport_error_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            if len(calls) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json=[{"item_id": 1, "score": 1.0}])

        items = await make_model(handler).get_recommendations("u1", 5)

        assert len(calls) == 2
        assert items == [ScoredItem(1, 1.0)]


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_success_passes_through(self):
        breaker = make_breaker()

        async def ok():
            return 42

        assert await breaker.call_async(ok) == 42
        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.successful_calls == 1

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        breaker = make_breaker()

        async def down():
            raise ConnectionError("refused")

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call_async(down)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitBreakerOpen):
            await breaker.call_async(down)
        assert breaker.stats.rejected_calls == 1

    @pytest.mark.asyncio
    async def test_half_open_recovery(self):
        clock = FakeMonotonic()
        breaker = make_breaker(clock=clock)

        async def down():
            raise ConnectionError("refused")

        async def ok():
            return "ok"

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call_async(down)

        clock.value += 31
        assert breaker.state == CircuitState.HALF_OPEN

        assert await breaker.call_async(ok) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        clock = FakeMonotonic()
        breaker = make_breaker(clock=clock)

        async def down():
            raise ConnectionError("refused")

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call_async(down)
        clock.value += 31

        with pytest.raises(ConnectionError):
            await breaker.call_async(down)

        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_reset(self):
        breaker = make_breaker()

        async def down():
            raise ConnectionError("refused")

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call_async(down)

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.failed_calls == 0

    def test_status(self):
        status = make_breaker().get_status()

        assert status["name"] == "test"
        assert status["state"] == "closed"
        assert status["time_until_retry"] is None

    def test_global_states(self):
        states = get_circuit_breaker_states()

        assert "ranking" in states
        assert get_circuit_breakers_healthy() is (states["ranking"]["state"] != "open")
