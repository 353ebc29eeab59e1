"""Contextual multi-armed bandit for recommendation strategy selection.

Each user has an independent Beta belief over the success rate of every
recommendation strategy ("arm"). Thompson sampling draws one plausible
success rate per arm and picks the highest draw, so arms with little history
keep getting explored while proven arms are exploited.

Beliefs are never stored. They are recomputed on every call from the
append-only experiment log:

    alpha = successes + 1
    beta  = (pulls - successes) + 1        (Beta(1, 1) prior)

where a pull is a logged selection whose reward has arrived and a success is
a reward >= 0.5.

Usage:
    from recserve.bandit import ContextualBanditEngine

    engine = ContextualBanditEngine(experiment_log)
    context = await engine.extract_context(user_id, session_duration=12)
    selection = await engine.select_contextual_arm(context)
    experiment_id = await engine.log_experiment(
        user_id, selection.arm_chosen, context, selection.exploration_rate
    )

    # Later, when the user reacts to what was shown
    await engine.record_outcome(experiment_id, "watchlisted")
"""

import enum
import logging
import math
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from recserve import metrics
from recserve.clock import Clock, utc_now
from recserve.config import settings
from recserve.repositories.base import ValidationError
from recserve.repositories.experiments import ExperimentLog, ExperimentRecord

logger = logging.getLogger(__name__)


class Strategy(str, enum.Enum):
    """Recommendation strategies competing as bandit arms."""
    TENSORFLOW_NEURAL = "tensorflow_neural"      # Two-tower neural model
    COLLABORATIVE = "collaborative"              # Collaborative filtering
    CONTENT_BASED = "content_based"              # Genre/metadata matching
    TRENDING = "trending"                        # Popular right now
    DYNAMIC_WEIGHTS = "dynamic_weights"          # Learned feature weights
    HYBRID_ENSEMBLE = "hybrid_ensemble"          # Ensemble of the above
    EXPLORATION_RANDOM = "exploration_random"    # Pure exploration


# Iteration order is significant: ties go to the earlier arm
ARMS: List[str] = [s.value for s in Strategy]

REWARD_MAP: Dict[str, float] = {
    "clicked": 0.3,
    "watchlisted": 0.6,
    "rated_high": 1.0,      # Rating >= 7
    "rated_medium": 0.4,    # Rating 5-6
    "rated_low": 0.1,       # Rating <= 4
    "ignored": 0.0,
    "dismissed": -0.2,
    "preference_positive": 0.8,
    "preference_negative": -0.1,
}


class UserContext(BaseModel):
    """Per-request context snapshot, stored with each logged experiment."""

    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(..., min_length=1)
    time_of_day: Literal["morning", "afternoon", "evening", "night"]
    day_of_week: Literal["weekday", "weekend"]
    session_duration: float = Field(0.0, ge=0, description="Minutes in the current session")
    recent_genres: List[str] = Field(default_factory=list)
    recent_interaction_count: int = Field(0, ge=0)
    device_type: Optional[str] = None
    mood: Optional[str] = None
    genres: List[str] = Field(default_factory=list, description="Genres of the items served")


@dataclass
class ArmState:
    """Posterior state of one arm for one user."""
    name: str
    alpha: float
    beta: float
    pulls: int
    rewards: int
    success_rate: float


@dataclass
class BanditSelection:
    """Outcome of one Thompson-sampling round."""
    arm_chosen: str
    sampled_reward: float
    all_arm_scores: List[Dict[str, Any]]
    exploration_rate: float


@dataclass
class RewardFeedback:
    """Feedback for a previously logged experiment."""
    experiment_id: str
    reward: float
    outcome_type: str


@dataclass
class BanditStatistics:
    arm_performance: List[ArmState]
    total_experiments: int
    average_reward: float
    best_arm: str
    exploration_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def time_of_day(hour: int) -> str:
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 22:
        return "evening"
    return "night"


def day_of_week(moment: datetime) -> str:
    return "weekend" if moment.weekday() >= 5 else "weekday"


def context_boost(arm: str, context: UserContext) -> float:
    """Prior knowledge of which strategy suits which situation, in [0, 1]."""
    boost = 0.0

    # Neural model needs an established history
    if arm == Strategy.TENSORFLOW_NEURAL.value and context.recent_interaction_count > 10:
        boost += 0.3
    # More browsing on weekends
    if arm == Strategy.COLLABORATIVE.value and context.day_of_week == "weekend":
        boost += 0.2
    if arm == Strategy.TRENDING.value and context.time_of_day == "evening":
        boost += 0.25
    # Cold start
    if arm == Strategy.CONTENT_BASED.value and context.recent_interaction_count < 5:
        boost += 0.4
    if arm == Strategy.EXPLORATION_RANDOM.value and context.session_duration < 5:
        boost += 0.3
    # Engaged users
    if arm == Strategy.DYNAMIC_WEIGHTS.value and context.session_duration > 15:
        boost += 0.25

    return min(boost, 1.0)


class ContextualBanditEngine:
    """Thompson-sampling arm selector over an event-sourced experiment log."""

    PRIOR_ALPHA = 1
    PRIOR_BETA = 1
    SUCCESS_THRESHOLD = 0.5
    CONTEXT_BOOST_WEIGHT = 0.2  # Full boost adds at most 20% to a sample
    EXPERIMENT_TYPE = "thompson_sampling"

    def __init__(
        self,
        experiment_log: ExperimentLog,
        clock: Clock = utc_now,
        rng: Optional[np.random.Generator] = None,
        context_window_hours: Optional[int] = None,
    ):
        """Initialize the engine.

        Args:
            experiment_log: Append-only log the beliefs are derived from
            clock: Time source for context extraction and log timestamps
            rng: Random generator for sampling. Defaults to one seeded from
                settings.bandit_seed (unseeded when that is unset).
            context_window_hours: Look-back for recent interactions when
                extracting context. Defaults to settings.
        """
        self._log = experiment_log
        self._clock = clock
        self._rng = rng if rng is not None else np.random.default_rng(settings.bandit_seed)
        self.context_window_hours = (
            context_window_hours
            if context_window_hours is not None
            else settings.bandit_context_window_hours
        )

    @property
    def arms(self) -> List[str]:
        return list(ARMS)

    async def extract_context(
        self,
        user_id: str,
        session_duration: float = 0.0,
        device_type: Optional[str] = None,
        mood: Optional[str] = None,
    ) -> UserContext:
        """Build a UserContext from the clock and the user's recent experiments.

        Hours are read in the clock's timezone.
        """
        now = self._clock()
        since = now - timedelta(hours=self.context_window_hours)
        recent = await self._log.recent_for_user(user_id, since, limit=50)

        recent_genres: List[str] = []
        for record in recent:
            genres = (record.context.get("genres") or []) + (record.context.get("recent_genres") or [])
            for genre in genres:
                if genre not in recent_genres:
                    recent_genres.append(genre)

        return UserContext(
            user_id=user_id,
            time_of_day=time_of_day(now.hour),
            day_of_week=day_of_week(now),
            session_duration=session_duration,
            recent_genres=recent_genres[:5],
            recent_interaction_count=len(recent),
            device_type=device_type,
            mood=mood,
        )

    async def get_arm_states(self, user_id: str) -> List[ArmState]:
        """Current posterior of every arm for a user, in arm order."""
        pulls = {arm: 0 for arm in ARMS}
        successes = {arm: 0 for arm in ARMS}

        for record in await self._log.rewarded_for_user(user_id):
            if record.arm_chosen not in pulls:
                logger.debug(f"Ignoring experiment {record.id} for retired arm {record.arm_chosen}")
                continue
            pulls[record.arm_chosen] += 1
            if record.reward is not None and record.reward >= self.SUCCESS_THRESHOLD:
                successes[record.arm_chosen] += 1

        return [
            ArmState(
                name=arm,
                alpha=successes[arm] + self.PRIOR_ALPHA,
                beta=(pulls[arm] - successes[arm]) + self.PRIOR_BETA,
                pulls=pulls[arm],
                rewards=successes[arm],
                success_rate=successes[arm] / pulls[arm] if pulls[arm] > 0 else 0.0,
            )
            for arm in ARMS
        ]

    def sample_beta(self, alpha: float, beta: float) -> float:
        """Draw from Beta(alpha, beta) as X / (X + Y), X~Gamma(alpha), Y~Gamma(beta)."""
        x = self._rng.gamma(alpha, 1.0)
        y = self._rng.gamma(beta, 1.0)
        total = x + y
        if total <= 0:
            return 0.5
        return float(x / total)

    @staticmethod
    def _coerce_context(context: Union[UserContext, Dict[str, Any]]) -> UserContext:
        if isinstance(context, UserContext):
            return context
        try:
            return UserContext.model_validate(context)
        except PydanticValidationError as e:
            raise ValidationError(str(e), "validate_context") from e

    async def _select(self, context: UserContext, contextual: bool) -> BanditSelection:
        arm_states = await self.get_arm_states(context.user_id)
        arm_scores: List[Dict[str, Any]] = []
        max_score = -1.0
        chosen = arm_states[0]

        for state in arm_states:
            score = self.sample_beta(state.alpha, state.beta)
            if contextual:
                score *= 1 + context_boost(state.name, context) * self.CONTEXT_BOOST_WEIGHT
            arm_scores.append({"arm": state.name, "score": score})

            if score > max_score:
                max_score = score
                chosen = state

        exploration_rate = 1 / (1 + chosen.pulls)
        metrics.record_bandit_selection(chosen.name)
        logger.debug(
            f"Bandit chose '{chosen.name}' for {context.user_id} "
            f"(sample={max_score:.3f}, exploration={exploration_rate:.3f})"
        )

        return BanditSelection(
            arm_chosen=chosen.name,
            sampled_reward=max_score,
            all_arm_scores=arm_scores,
            exploration_rate=exploration_rate,
        )

    async def select_arm(self, context: Union[UserContext, Dict[str, Any]]) -> BanditSelection:
        """Plain Thompson sampling: the arm with the highest posterior draw."""
        return await self._select(self._coerce_context(context), contextual=False)

    async def select_contextual_arm(
        self, context: Union[UserContext, Dict[str, Any]]
    ) -> BanditSelection:
        """Thompson sampling with each draw scaled by (1 + boost * 0.2)."""
        return await self._select(self._coerce_context(context), contextual=True)

    async def log_experiment(
        self,
        user_id: str,
        arm_chosen: str,
        context: Union[UserContext, Dict[str, Any]],
        exploration_rate: float,
    ) -> str:
        """Append a selection to the log with no reward yet.

        Returns:
            The new experiment id
        """
        if arm_chosen not in ARMS:
            raise ValidationError(f"Unknown arm '{arm_chosen}'", "log_experiment")
        context = self._coerce_context(context)
        if context.user_id != user_id:
            raise ValidationError(
                f"Context belongs to {context.user_id}, not {user_id}", "log_experiment"
            )

        record = await self._log.append(
            user_id=user_id,
            arm_chosen=arm_chosen,
            context=context.model_dump(mode="json"),
            exploration_rate=exploration_rate,
            created_at=self._clock(),
            experiment_type=self.EXPERIMENT_TYPE,
        )
        return record.id

    async def update_reward(self, feedback: RewardFeedback) -> ExperimentRecord:
        """Patch a logged experiment with its reward, exactly once.

        The outcome type is folded into the stored context for audit.
        """
        record = await self._log.set_reward(
            feedback.experiment_id, feedback.reward, feedback.outcome_type
        )
        logger.info(
            f"Experiment {feedback.experiment_id} rewarded: "
            f"{feedback.outcome_type} -> {feedback.reward}"
        )
        return record

    async def record_outcome(self, experiment_id: str, outcome_type: str) -> float:
        """Map an outcome to its reward and apply it. Returns the reward."""
        reward = self.calculate_reward(outcome_type)
        await self.update_reward(
            RewardFeedback(experiment_id=experiment_id, reward=reward, outcome_type=outcome_type)
        )
        return reward

    @staticmethod
    def calculate_reward(outcome_type: str) -> float:
        """Reward for an observed outcome; 0 for anything unrecognized."""
        return REWARD_MAP.get(outcome_type, 0.0)

    @staticmethod
    def rating_outcome(rating: int) -> str:
        """Outcome type for an explicit 1-10 rating."""
        if rating >= 7:
            return "rated_high"
        if rating >= 5:
            return "rated_medium"
        return "rated_low"

    async def get_statistics(self, user_id: str) -> BanditStatistics:
        arm_states = await self.get_arm_states(user_id)
        total_experiments = sum(arm.pulls for arm in arm_states)
        total_rewards = sum(arm.rewards for arm in arm_states)
        average_reward = total_rewards / total_experiments if total_experiments > 0 else 0.0

        best = arm_states[0]
        for arm in arm_states[1:]:
            if arm.success_rate > best.success_rate:
                best = arm

        exploration_rate = 1 / math.sqrt(total_experiments) if total_experiments > 0 else 1.0

        return BanditStatistics(
            arm_performance=arm_states,
            total_experiments=total_experiments,
            average_reward=average_reward,
            best_arm=best.name,
            exploration_rate=exploration_rate,
        )
