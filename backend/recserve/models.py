"""Pydantic models for API requests and responses"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class RecommendationsResponse(BaseModel):
    user_id: str
    recommendations: List[int] = Field(..., description="Ranked item ids, best first")
    scores: List[float] = Field(..., description="Scores parallel to recommendations")
    source: Literal["batch", "realtime", "merged"]
    computed_at: datetime


class RatingEventRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    item_id: int
    rating: int = Field(..., ge=1, le=10, description="Explicit rating on a 1-10 scale")
    experiment_id: Optional[str] = Field(None, description="Bandit experiment that surfaced the item")


class WatchlistEventRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    item_id: int
    experiment_id: Optional[str] = Field(None, description="Bandit experiment that surfaced the item")


class PreferenceEventRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    preferences: Dict[str, Any] = Field(default_factory=dict)
    sentiment: Optional[Literal["positive", "negative"]] = Field(
        None, description="Whether the change was a like or a dislike"
    )
    experiment_id: Optional[str] = Field(None, description="Bandit experiment the preference responds to")


class EventAcceptedResponse(BaseModel):
    status: str = "accepted"
    user_id: str
    experiment_reward: Optional[float] = Field(
        None, description="Reward applied to the linked experiment, if any"
    )


class SelectArmRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    session_duration: float = Field(0.0, ge=0, description="Minutes in the current session")
    device_type: Optional[str] = None
    mood: Optional[str] = None
    genres: List[str] = Field(default_factory=list, description="Genres of the items about to be served")
    contextual: bool = Field(True, description="Apply contextual boosts to the samples")
    log_experiment: bool = Field(True, description="Append the selection to the experiment log")


class ArmScore(BaseModel):
    arm: str
    score: float


class SelectArmResponse(BaseModel):
    experiment_id: Optional[str] = None
    arm_chosen: str
    sampled_reward: float
    all_arm_scores: List[ArmScore]
    exploration_rate: float
    context: Dict[str, Any]


class UpdateRewardRequest(BaseModel):
    experiment_id: str = Field(..., min_length=1)
    outcome_type: str = Field(..., min_length=1)
    reward: Optional[float] = Field(None, description="Explicit reward; derived from outcome_type when omitted")


class UpdateRewardResponse(BaseModel):
    experiment_id: str
    outcome_type: str
    reward: float


class ArmPerformance(BaseModel):
    name: str
    alpha: float
    beta: float
    pulls: int
    rewards: int
    success_rate: float


class BanditStatsResponse(BaseModel):
    user_id: str
    arm_performance: List[ArmPerformance]
    total_experiments: int
    average_reward: float
    best_arm: str
    exploration_rate: float


class TrainingMetricsModel(BaseModel):
    loss: float
    mae: float


class BatchJobResponse(BaseModel):
    timestamp: datetime
    user_embeddings_updated: int
    item_embeddings_updated: int
    precomputed_recommendations: int
    training_metrics: TrainingMetricsModel
    failed_user_ids: List[str]
    corpus_size: int
    training_skipped: bool
    duration_seconds: float


class CacheInvalidationResponse(BaseModel):
    status: str
    user_id: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    storage_backend: str
    storage_connected: bool
    ranking_circuit: str
    scheduler_running: bool
