"""Tests for serving layer source selection.

Scenarios follow the serving priority order: fresh batch entry, recent
activity (realtime), stale entry (merged) and cold start (realtime with
cache write-back).
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from recserve.ranking import ScoredItem


CACHED = [ScoredItem(100, 9.0), ScoredItem(101, 8.0), ScoredItem(102, 7.0), ScoredItem(103, 6.0)]
FRESH = [ScoredItem(200, 9.9), ScoredItem(201, 9.8)]


class TestBatchSource:
    @pytest.mark.asyncio
    async def test_fresh_entry_served(self, serving_layer, cache, model, clock):
        await cache.set("u1", CACHED)
        clock.advance(hours=5, minutes=59)

        response = await serving_layer.get_recommendations("u1", limit=3)

        assert response.source == "batch"
        assert response.recommendations == [100, 101, 102]
        assert response.scores == [9.0, 8.0, 7.0]
        assert model.calls == []

    @pytest.mark.asyncio
    async def test_fresh_entry_beats_recent_activity(self, serving_layer, cache, events, clock):
        await cache.set("u1", CACHED)
        await events.add_rating("u1", 5, 9, created_at=clock())

        response = await serving_layer.get_recommendations("u1")

        assert response.source == "batch"

    @pytest.mark.asyncio
    async def test_batch_response_keeps_computed_at(self, serving_layer, cache, clock):
        computed = clock()
        await cache.set("u1", CACHED)
        clock.advance(hours=1)

        response = await serving_layer.get_recommendations("u1")

        assert response.computed_at == computed


class TestRealtimeSource:
    @pytest.mark.asyncio
    async def test_recent_activity_computes_fresh(self, serving_layer, cache, events, model, clock):
        model.recommendations["u1"] = FRESH
        await cache.set("u1", CACHED)
        clock.advance(hours=7)
        await events.add_rating("u1", 5, 9, created_at=clock() - timedelta(minutes=30))

        response = await serving_layer.get_recommendations("u1")

        assert response.source == "realtime"
        assert response.recommendations == [200, 201]
        # Stale batch entry is left as it was
        assert cache.peek("u1").recommendations == [100, 101, 102, 103]

    @pytest.mark.asyncio
    async def test_force_realtime_bypasses_fresh_entry(self, serving_layer, cache, model):
        model.recommendations["u1"] = FRESH
        await cache.set("u1", CACHED)

        response = await serving_layer.get_recommendations("u1", force_realtime=True)

        assert response.source == "realtime"
        assert response.recommendations == [200, 201]
        assert cache.peek("u1").recommendations == [100, 101, 102, 103]

    @pytest.mark.asyncio
    async def test_realtime_respects_limit(self, serving_layer, model):
        model.recommendations["u1"] = [ScoredItem(i, float(i)) for i in range(10)]

        response = await serving_layer.get_recommendations("u1", limit=4, force_realtime=True)

        assert len(response.recommendations) == 4


class TestMergedSource:
    @pytest.mark.asyncio
    async def test_stale_entry_merged(self, serving_layer, cache, events, model, clock):
        await cache.set("u1", CACHED)
        await events.add_rating("u1", 101, 8, created_at=clock())
        clock.advance(hours=7)

        response = await serving_layer.get_recommendations("u1")

        assert response.source == "merged"
        assert response.recommendations == [100, 102, 103]
        assert response.scores == pytest.approx([9.9, 7.7, 6.6])
        assert model.calls == []

    @pytest.mark.asyncio
    async def test_merge_sorts_descending(self, serving_layer, cache, clock):
        await cache.set("u1", [ScoredItem(1, 2.0), ScoredItem(2, 5.0), ScoredItem(3, 3.0)])
        clock.advance(hours=6)

        response = await serving_layer.get_recommendations("u1", limit=2)

        assert response.source == "merged"
        assert response.recommendations == [2, 3]
        assert response.scores == pytest.approx([5.5, 3.3])

    @pytest.mark.asyncio
    async def test_merge_excludes_only_recent_history(self, events, model, cache, batch_layer, clock):
        from recserve.serving_layer import ServingLayer

        layer = ServingLayer(events, model, cache, batch_layer, clock=clock, merge_history_limit=2)
        await cache.set("u1", CACHED)
        await events.add_rating("u1", 100, 5, created_at=clock() - timedelta(days=3))
        await events.add_rating("u1", 101, 5, created_at=clock() - timedelta(days=2))
        await events.add_rating("u1", 102, 5, created_at=clock() - timedelta(days=1))
        clock.advance(hours=8)

        response = await layer.get_recommendations("u1")

        # Only the two most recent ratings are excluded
        assert response.recommendations == [100, 103]

    @pytest.mark.asyncio
    async def test_stale_entry_kept_in_cache(self, serving_layer, cache, clock):
        await cache.set("u1", CACHED)
        clock.advance(hours=10)

        await serving_layer.get_recommendations("u1")

        assert cache.peek("u1").recommendations == [100, 101, 102, 103]


class TestColdSource:
    @pytest.mark.asyncio
    async def test_cold_user_computed_and_cached(self, serving_layer, cache, model, clock):
        model.recommendations["u1"] = FRESH

        response = await serving_layer.get_recommendations("u1")

        assert response.source == "realtime"
        assert response.recommendations == [200, 201]
        entry = cache.peek("u1")
        assert entry.recommendations == [200, 201]
        assert entry.computed_at == clock()

    @pytest.mark.asyncio
    async def test_second_request_served_from_cache(self, serving_layer, model):
        await serving_layer.get_recommendations("u1")
        response = await serving_layer.get_recommendations("u1")

        assert response.source == "batch"
        assert model.calls == ["u1"]

    @pytest.mark.asyncio
    async def test_cold_write_back_keeps_full_list(self, serving_layer, cache, model):
        model.recommendations["cold"] = [ScoredItem(item_id=i, score=float(100 - i)) for i in range(20)]

        first = await serving_layer.get_recommendations("cold", limit=3)
        second = await serving_layer.get_recommendations("cold", limit=10)

        assert first.source == "realtime"
        assert first.recommendations == [0, 1, 2]
        assert len(cache.peek("cold").recommendations) == 20
        assert second.source == "batch"
        assert second.recommendations == list(range(10))
        assert model.calls == ["cold"]


class TestNeverFail:
    @pytest.mark.asyncio
    async def test_activity_lookup_failure_treated_as_none(self, serving_layer, cache, events, model, clock):
        events.has_rating_since = AsyncMock(side_effect=RuntimeError("db down"))
        await cache.set("u1", CACHED)
        clock.advance(hours=7)

        response = await serving_layer.get_recommendations("u1")

        assert response.source == "merged"

    @pytest.mark.asyncio
    async def test_realtime_failure_falls_back_to_merge(self, serving_layer, cache, events, model, clock):
        await cache.set("u1", CACHED)
        clock.advance(hours=7)
        await events.add_rating("u1", 100, 9, created_at=clock())
        model.fail_all = True

        response = await serving_layer.get_recommendations("u1")

        assert response.source == "merged"
        assert response.recommendations == [101, 102, 103]

    @pytest.mark.asyncio
    async def test_forced_failure_falls_back_to_merge(self, serving_layer, cache, model):
        await cache.set("u1", CACHED)
        model.fail_all = True

        response = await serving_layer.get_recommendations("u1", force_realtime=True)

        assert response.source == "merged"

    @pytest.mark.asyncio
    async def test_history_failure_merges_without_exclusions(self, serving_layer, cache, events, clock):
        events.user_ratings = AsyncMock(side_effect=RuntimeError("db down"))
        await cache.set("u1", CACHED)
        clock.advance(hours=7)

        response = await serving_layer.get_recommendations("u1")

        assert response.source == "merged"
        assert response.recommendations == [100, 101, 102, 103]

    @pytest.mark.asyncio
    async def test_nothing_available_returns_empty(self, serving_layer, cache, model, clock):
        model.fail_all = True

        response = await serving_layer.get_recommendations("u1")

        assert response.source == "realtime"
        assert response.recommendations == []
        assert response.scores == []
        assert response.computed_at == clock()
        assert cache.peek("u1") is None


class TestServingStatistics:
    @pytest.mark.asyncio
    async def test_statistics_before_batch(self, serving_layer):
        stats = await serving_layer.get_statistics()

        assert stats["last_batch_update"] is None
        assert stats["is_batch_due"] is True
        assert stats["batch_interval_hours"] == 12
        assert stats["cache_stats"]["cache_size"] == 0

    @pytest.mark.asyncio
    async def test_statistics_are_read_only(self, serving_layer, cache):
        await cache.set("u1", CACHED)

        await serving_layer.get_statistics()
        await serving_layer.get_statistics()

        stats = await cache.get_stats()
        assert stats.hits == 0
        assert stats.misses == 0

    @pytest.mark.asyncio
    async def test_statistics_after_batch(self, serving_layer, batch_layer, clock):
        await batch_layer.run_batch_update()

        stats = await serving_layer.get_statistics()

        assert stats["last_batch_update"] == clock().isoformat()
        assert stats["is_batch_due"] is False

    @pytest.mark.asyncio
    async def test_response_to_dict(self, serving_layer):
        data = (await serving_layer.get_recommendations("u1")).to_dict()

        assert data["user_id"] == "u1"
        assert data["source"] == "realtime"
