"""Tests for the event store and experiment log repositories.

The SQL implementations run against an in-memory SQLite database through
aiosqlite; the in-memory implementations are exercised with the same
scenarios.
"""

import uuid
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from recserve.database import Base
from recserve.repositories import (
    DuplicateError,
    InMemoryEventStore,
    InMemoryExperimentLog,
    NotFoundError,
    QueryError,
    SqlEventStore,
    SqlExperimentLog,
    ValidationError,
)
from recserve.repositories.base import RepositoryError, as_utc
from tests.conftest import START_TIME


@pytest_asyncio.fixture
async def session_factory():
    from recserve import db_models  # noqa: F401

    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def event_store(request, session_factory):
    if request.param == "memory":
        return InMemoryEventStore()
    return SqlEventStore(session_factory)


@pytest.fixture(params=["memory", "sql"])
def experiment_log(request, session_factory):
    if request.param == "memory":
        return InMemoryExperimentLog()
    return SqlExperimentLog(session_factory)


class TestRepositoryErrors:
    def test_str_includes_operation(self):
        assert str(QueryError("boom", "recent_ratings")) == "[recent_ratings] boom"
        assert str(QueryError("boom")) == "boom"

    def test_hierarchy(self):
        for error_class in (QueryError, NotFoundError, ValidationError, DuplicateError):
            assert issubclass(error_class, RepositoryError)

    def test_as_utc_naive(self):
        naive = START_TIME.replace(tzinfo=None)
        assert as_utc(naive) == START_TIME


class TestEventStore:
    @pytest.mark.asyncio
    async def test_add_and_read_ratings(self, event_store):
        await event_store.add_rating("u1", 10, 8, created_at=START_TIME)
        await event_store.add_rating("u1", 11, 3, created_at=START_TIME + timedelta(minutes=1))
        await event_store.add_rating("u2", 10, 9, created_at=START_TIME + timedelta(minutes=2))

        mine = await event_store.user_ratings("u1", limit=50)

        assert [r.item_id for r in mine] == [11, 10]
        assert mine[0].rating == 3
        assert mine[0].created_at == START_TIME + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_rating_out_of_range_rejected(self, event_store):
        with pytest.raises(ValidationError):
            await event_store.add_rating("u1", 10, 11, created_at=START_TIME)
        with pytest.raises(ValidationError):
            await event_store.add_rating("u1", 10, 0, created_at=START_TIME)

    @pytest.mark.asyncio
    async def test_recent_ratings_newest_first_with_limit(self, event_store):
        for minute in range(5):
            await event_store.add_rating(f"u{minute}", minute, 5, created_at=START_TIME + timedelta(minutes=minute))

        recent = await event_store.recent_ratings(limit=3)

        assert [r.item_id for r in recent] == [4, 3, 2]

    @pytest.mark.asyncio
    async def test_has_rating_since(self, event_store):
        await event_store.add_rating("u1", 10, 8, created_at=START_TIME)

        assert await event_store.has_rating_since("u1", START_TIME - timedelta(hours=1)) is True
        assert await event_store.has_rating_since("u1", START_TIME + timedelta(seconds=1)) is False
        assert await event_store.has_rating_since("u2", START_TIME - timedelta(hours=1)) is False

    @pytest.mark.asyncio
    async def test_active_users_most_recent_first(self, event_store):
        await event_store.add_rating("a", 1, 5, created_at=START_TIME - timedelta(days=40))
        await event_store.add_rating("b", 1, 5, created_at=START_TIME - timedelta(days=2))
        await event_store.add_rating("c", 1, 5, created_at=START_TIME - timedelta(days=1))
        await event_store.add_rating("b", 2, 5, created_at=START_TIME)

        users = await event_store.active_users_since(START_TIME - timedelta(days=30), limit=10)

        assert users == ["b", "c"]
        assert await event_store.active_users_since(START_TIME - timedelta(days=30), limit=1) == ["b"]

    @pytest.mark.asyncio
    async def test_distinct_counts(self, event_store):
        await event_store.add_rating("u1", 10, 8, created_at=START_TIME)
        await event_store.add_rating("u1", 11, 8, created_at=START_TIME)
        await event_store.add_rating("u2", 10, 8, created_at=START_TIME)

        assert await event_store.count_distinct_users() == 2
        assert await event_store.count_distinct_items() == 2

    @pytest.mark.asyncio
    async def test_reward_signal(self, event_store):
        signal = await event_store.add_reward_signal(
            user_id="u1",
            item_id=10,
            source="speed_layer",
            outcome_type="watchlisted",
            reward=0.6,
            created_at=START_TIME,
        )

        assert signal.id
        assert signal.outcome_type == "watchlisted"
        assert signal.reward == 0.6

    @pytest.mark.asyncio
    async def test_watchlist_and_preferences_accepted(self, event_store):
        await event_store.add_watchlist("u1", 10, created_at=START_TIME)
        await event_store.add_preference("u1", {"genres": ["Drama"]}, created_at=START_TIME)

    @pytest.mark.asyncio
    async def test_health_check(self, event_store):
        assert await event_store.health_check() is True


class TestExperimentLog:
    @pytest.mark.asyncio
    async def test_append_and_get(self, experiment_log):
        record = await experiment_log.append(
            user_id="u1",
            arm_chosen="trending",
            context={"time_of_day": "evening"},
            exploration_rate=0.5,
            created_at=START_TIME,
        )

        stored = await experiment_log.get(record.id)

        assert stored.arm_chosen == "trending"
        assert stored.reward is None
        assert stored.context == {"time_of_day": "evening"}
        assert stored.experiment_type == "thompson_sampling"
        assert stored.created_at == START_TIME

    @pytest.mark.asyncio
    async def test_get_unknown(self, experiment_log):
        assert await experiment_log.get(str(uuid.uuid4())) is None
        assert await experiment_log.get("not-a-uuid") is None

    @pytest.mark.asyncio
    async def test_set_reward_once(self, experiment_log):
        record = await experiment_log.append("u1", "trending", {"mood": "calm"}, 1.0, START_TIME)

        updated = await experiment_log.set_reward(record.id, 0.6, "watchlisted")

        assert updated.reward == 0.6
        assert updated.context == {"mood": "calm", "outcome_type": "watchlisted"}
        with pytest.raises(DuplicateError):
            await experiment_log.set_reward(record.id, 1.0, "rated_high")
        assert (await experiment_log.get(record.id)).reward == 0.6

    @pytest.mark.asyncio
    async def test_set_reward_unknown(self, experiment_log):
        with pytest.raises(NotFoundError):
            await experiment_log.set_reward(str(uuid.uuid4()), 1.0, "rated_high")
        with pytest.raises(NotFoundError):
            await experiment_log.set_reward("not-a-uuid", 1.0, "rated_high")

    @pytest.mark.asyncio
    async def test_rewarded_for_user(self, experiment_log):
        rewarded = await experiment_log.append("u1", "trending", {}, 1.0, START_TIME)
        await experiment_log.append("u1", "collaborative", {}, 1.0, START_TIME)
        other = await experiment_log.append("u2", "trending", {}, 1.0, START_TIME)
        await experiment_log.set_reward(rewarded.id, 1.0, "rated_high")
        await experiment_log.set_reward(other.id, 1.0, "rated_high")

        rows = await experiment_log.rewarded_for_user("u1")

        assert [r.id for r in rows] == [rewarded.id]

    @pytest.mark.asyncio
    async def test_recent_for_user(self, experiment_log):
        await experiment_log.append("u1", "trending", {}, 1.0, START_TIME - timedelta(hours=30))
        for minute in range(3):
            await experiment_log.append(
                "u1", "trending", {"n": minute}, 1.0, START_TIME + timedelta(minutes=minute)
            )

        rows = await experiment_log.recent_for_user("u1", START_TIME - timedelta(hours=24), limit=2)

        assert [r.context["n"] for r in rows] == [2, 1]

    @pytest.mark.asyncio
    async def test_count(self, experiment_log):
        await experiment_log.append("u1", "trending", {}, 1.0, START_TIME)
        await experiment_log.append("u2", "trending", {}, 1.0, START_TIME)

        assert await experiment_log.count() == 2
        assert await experiment_log.count("u1") == 1
