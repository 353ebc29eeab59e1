"""In-process implementations of the event store and experiment log.

Used for local development (STORAGE_BACKEND=memory) and by the test suite.
Nothing here survives a restart.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from recserve.repositories.base import DuplicateError, NotFoundError, RepositoryContext
from recserve.repositories.events import (
    EventStore,
    RatingRecord,
    RewardSignalRecord,
    validate_rating,
)
from recserve.repositories.experiments import ExperimentLog, ExperimentRecord


def _newest_first(records: list) -> list:
    # reversed() first so later inserts win ties on equal timestamps
    return sorted(reversed(records), key=lambda r: r.created_at, reverse=True)


class InMemoryEventStore(EventStore):
    """List-backed event store."""

    def __init__(self, context: Optional[RepositoryContext] = None):
        super().__init__(context)
        self.ratings: List[RatingRecord] = []
        self.watchlist: List[Dict[str, Any]] = []
        self.preferences: List[Dict[str, Any]] = []
        self.reward_signals: List[RewardSignalRecord] = []

    async def health_check(self) -> bool:
        return True

    async def add_rating(
        self, user_id: str, item_id: int, rating: int, created_at: datetime
    ) -> RatingRecord:
        self._log_operation("add_rating", user_id=user_id, item_id=item_id)
        validate_rating(rating)
        record = RatingRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            item_id=item_id,
            rating=rating,
            created_at=created_at,
        )
        self.ratings.append(record)
        return record

    async def add_watchlist(self, user_id: str, item_id: int, created_at: datetime) -> None:
        self.watchlist.append(
            {"user_id": user_id, "item_id": item_id, "created_at": created_at}
        )

    async def add_preference(
        self, user_id: str, payload: Dict[str, Any], created_at: datetime
    ) -> None:
        self.preferences.append(
            {"user_id": user_id, "payload": dict(payload), "created_at": created_at}
        )

    async def add_reward_signal(
        self,
        user_id: str,
        item_id: Optional[int],
        source: str,
        outcome_type: str,
        reward: float,
        created_at: datetime,
    ) -> RewardSignalRecord:
        record = RewardSignalRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            item_id=item_id,
            source=source,
            outcome_type=outcome_type,
            reward=reward,
            created_at=created_at,
        )
        self.reward_signals.append(record)
        return record

    async def recent_ratings(self, limit: int) -> List[RatingRecord]:
        return _newest_first(self.ratings)[:limit]

    async def user_ratings(self, user_id: str, limit: int) -> List[RatingRecord]:
        mine = [r for r in self.ratings if r.user_id == user_id]
        return _newest_first(mine)[:limit]

    async def has_rating_since(self, user_id: str, since: datetime) -> bool:
        return any(r.user_id == user_id and r.created_at >= since for r in self.ratings)

    async def active_users_since(self, since: datetime, limit: int) -> List[str]:
        last_seen: Dict[str, datetime] = {}
        for r in self.ratings:
            if r.created_at >= since and (r.user_id not in last_seen or r.created_at > last_seen[r.user_id]):
                last_seen[r.user_id] = r.created_at
        ordered = sorted(last_seen, key=lambda uid: last_seen[uid], reverse=True)
        return ordered[:limit]

    async def count_distinct_users(self) -> int:
        return len({r.user_id for r in self.ratings})

    async def count_distinct_items(self) -> int:
        return len({r.item_id for r in self.ratings})


class InMemoryExperimentLog(ExperimentLog):
    """Dict-backed experiment log, insertion ordered."""

    def __init__(self, context: Optional[RepositoryContext] = None):
        super().__init__(context)
        self._rows: Dict[str, ExperimentRecord] = {}

    async def health_check(self) -> bool:
        return True

    async def append(
        self,
        user_id: str,
        arm_chosen: str,
        context: Dict[str, Any],
        exploration_rate: float,
        created_at: datetime,
        experiment_type: str = "thompson_sampling",
    ) -> ExperimentRecord:
        self._log_operation("append", user_id=user_id, arm=arm_chosen)
        record = ExperimentRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            arm_chosen=arm_chosen,
            exploration_rate=exploration_rate,
            created_at=created_at,
            context=dict(context),
            reward=None,
            experiment_type=experiment_type,
        )
        self._rows[record.id] = record
        return record

    async def get(self, experiment_id: str) -> Optional[ExperimentRecord]:
        return self._rows.get(experiment_id)

    async def set_reward(
        self, experiment_id: str, reward: float, outcome_type: str
    ) -> ExperimentRecord:
        record = self._rows.get(experiment_id)
        if record is None:
            raise NotFoundError(f"Experiment {experiment_id} not found", "set_reward")
        if record.reward is not None:
            raise DuplicateError(
                f"Experiment {experiment_id} already has a reward",
                "set_reward",
                {"reward": record.reward},
            )
        record.reward = reward
        record.context = {**record.context, "outcome_type": outcome_type}
        return record

    async def rewarded_for_user(self, user_id: str) -> List[ExperimentRecord]:
        return [
            r for r in self._rows.values()
            if r.user_id == user_id and r.reward is not None
        ]

    async def recent_for_user(
        self, user_id: str, since: datetime, limit: int
    ) -> List[ExperimentRecord]:
        mine = [r for r in self._rows.values() if r.user_id == user_id and r.created_at > since]
        return _newest_first(mine)[:limit]

    async def count(self, user_id: Optional[str] = None) -> int:
        if user_id is None:
            return len(self._rows)
        return sum(1 for r in self._rows.values() if r.user_id == user_id)
