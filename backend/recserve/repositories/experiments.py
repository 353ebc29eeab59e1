"""Repository for the bandit experiment log.

Each row records one arm selection. Rows are appended with a NULL reward and
patched exactly once when feedback arrives; they are never deleted. Arm
statistics are derived from these rows on every read.
"""

import logging
import uuid
from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, desc, func

from recserve.repositories.base import (
    AsyncSessionRepository,
    BaseRepository,
    DuplicateError,
    NotFoundError,
    QueryError,
    RepositoryContext,
    RepositoryError,
    as_utc,
)

logger = logging.getLogger(__name__)


@dataclass
class ExperimentRecord:
    """A stored bandit experiment row."""
    id: str
    user_id: str
    arm_chosen: str
    exploration_rate: float
    created_at: datetime
    context: Dict[str, Any] = field(default_factory=dict)
    reward: Optional[float] = None
    experiment_type: str = "thompson_sampling"


class ExperimentLog(BaseRepository):
    """Interface for the append-only experiment log."""

    @abstractmethod
    async def append(
        self,
        user_id: str,
        arm_chosen: str,
        context: Dict[str, Any],
        exploration_rate: float,
        created_at: datetime,
        experiment_type: str = "thompson_sampling",
    ) -> ExperimentRecord:
        pass

    @abstractmethod
    async def get(self, experiment_id: str) -> Optional[ExperimentRecord]:
        pass

    @abstractmethod
    async def set_reward(
        self, experiment_id: str, reward: float, outcome_type: str
    ) -> ExperimentRecord:
        """Patch the reward of a row exactly once.

        Raises:
            NotFoundError: No row with this id
            DuplicateError: The row already carries a reward
        """

    @abstractmethod
    async def rewarded_for_user(self, user_id: str) -> List[ExperimentRecord]:
        """All of a user's rows with a non-NULL reward."""

    @abstractmethod
    async def recent_for_user(
        self, user_id: str, since: datetime, limit: int
    ) -> List[ExperimentRecord]:
        """A user's rows created after ``since``, newest first."""

    @abstractmethod
    async def count(self, user_id: Optional[str] = None) -> int:
        pass


class SqlExperimentLog(AsyncSessionRepository, ExperimentLog):
    """Experiment log backed by the bandit_experiments table."""

    def __init__(
        self,
        session_factory=None,
        context: Optional[RepositoryContext] = None,
    ):
        super().__init__(session_factory, context)

    @staticmethod
    def _to_record(row) -> ExperimentRecord:
        return ExperimentRecord(
            id=str(row.id),
            user_id=row.user_id,
            arm_chosen=row.arm_chosen,
            exploration_rate=row.exploration_rate,
            created_at=as_utc(row.created_at),
            context=dict(row.context or {}),
            reward=row.reward,
            experiment_type=row.experiment_type,
        )

    @staticmethod
    def _parse_id(experiment_id: str) -> Optional[uuid.UUID]:
        try:
            return uuid.UUID(str(experiment_id))
        except ValueError:
            return None

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

        from recserve.db_models import BanditExperiment

        try:
            async with self._session() as session:
                row = BanditExperiment(
                    user_id=user_id,
                    experiment_type=experiment_type,
                    arm_chosen=arm_chosen,
                    context=context,
                    exploration_rate=exploration_rate,
                    reward=None,
                    created_at=created_at,
                )
                session.add(row)
                await session.flush()
                return self._to_record(row)
        except Exception as e:
            self._log_error("append", e, user_id=user_id)
            raise QueryError(str(e), "append") from e

    async def get(self, experiment_id: str) -> Optional[ExperimentRecord]:
        self._log_operation("get", experiment_id=experiment_id)

        parsed = self._parse_id(experiment_id)
        if parsed is None:
            return None

        from recserve.db_models import BanditExperiment

        try:
            async with self._session() as session:
                result = await session.execute(
                    select(BanditExperiment).where(BanditExperiment.id == parsed)
                )
                row = result.scalar_one_or_none()
                return self._to_record(row) if row else None
        except Exception as e:
            self._log_error("get", e, experiment_id=experiment_id)
            raise QueryError(str(e), "get") from e

    async def set_reward(
        self, experiment_id: str, reward: float, outcome_type: str
    ) -> ExperimentRecord:
        self._log_operation("set_reward", experiment_id=experiment_id, reward=reward)

        parsed = self._parse_id(experiment_id)
        if parsed is None:
            raise NotFoundError(f"Experiment {experiment_id} not found", "set_reward")

        from recserve.db_models import BanditExperiment

        try:
            async with self._session() as session:
                result = await session.execute(
                    select(BanditExperiment)
                    .where(BanditExperiment.id == parsed)
                    .with_for_update()
                )
                row = result.scalar_one_or_none()
                if row is None:
                    raise NotFoundError(f"Experiment {experiment_id} not found", "set_reward")
                if row.reward is not None:
                    raise DuplicateError(
                        f"Experiment {experiment_id} already has a reward",
                        "set_reward",
                        {"reward": row.reward},
                    )
                row.reward = reward
                # Reassign so the JSON column is flagged dirty
                row.context = {**(row.context or {}), "outcome_type": outcome_type}
                await session.flush()
                return self._to_record(row)
        except RepositoryError:
            raise
        except Exception as e:
            self._log_error("set_reward", e, experiment_id=experiment_id)
            raise QueryError(str(e), "set_reward") from e

    async def rewarded_for_user(self, user_id: str) -> List[ExperimentRecord]:
        self._log_operation("rewarded_for_user", user_id=user_id)

        from recserve.db_models import BanditExperiment

        try:
            async with self._session() as session:
                result = await session.execute(
                    select(BanditExperiment)
                    .where(BanditExperiment.user_id == user_id)
                    .where(BanditExperiment.reward.is_not(None))
                )
                return [self._to_record(row) for row in result.scalars().all()]
        except Exception as e:
            self._log_error("rewarded_for_user", e, user_id=user_id)
            raise QueryError(str(e), "rewarded_for_user") from e

    async def recent_for_user(
        self, user_id: str, since: datetime, limit: int
    ) -> List[ExperimentRecord]:
        self._log_operation("recent_for_user", user_id=user_id, limit=limit)

        from recserve.db_models import BanditExperiment

        try:
            async with self._session() as session:
                result = await session.execute(
                    select(BanditExperiment)
                    .where(BanditExperiment.user_id == user_id)
                    .where(BanditExperiment.created_at > since)
                    .order_by(desc(BanditExperiment.created_at))
                    .limit(limit)
                )
                return [self._to_record(row) for row in result.scalars().all()]
        except Exception as e:
            self._log_error("recent_for_user", e, user_id=user_id)
            raise QueryError(str(e), "recent_for_user") from e

    async def count(self, user_id: Optional[str] = None) -> int:
        from recserve.db_models import BanditExperiment

        try:
            async with self._session() as session:
                stmt = select(func.count(BanditExperiment.id))
                if user_id is not None:
                    stmt = stmt.where(BanditExperiment.user_id == user_id)
                result = await session.execute(stmt)
                return result.scalar() or 0
        except Exception as e:
            self._log_error("count", e)
            raise QueryError(str(e), "count") from e
