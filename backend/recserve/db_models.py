"""SQLAlchemy ORM models for PostgreSQL persistence.

This module defines the database schema for:
- RatingEvent: Explicit 1-10 ratings, the training corpus and activity signal
- WatchlistEvent: Watchlist additions (implicit positive signal)
- PreferenceEvent: Preference updates (cache invalidation only)
- RewardSignal: Lightweight reward events appended by the speed layer
- BanditExperiment: Append-only log of bandit arm selections and rewards

All event tables are append-only. Timestamps are written by the repositories
from the injected clock so that recency windows are testable; the server
default only covers rows inserted by other tools.

Tables use indexing for the recency-window query patterns:
- Most recent ratings overall (batch corpus)
- Most recent ratings per user (activity gating, merge de-duplication)
- Experiments per user and arm (event-sourced arm statistics)
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    String,
    Float,
    Integer,
    DateTime,
    Index,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from recserve.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in local runs)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class RatingEvent(Base):
    """A user's explicit rating of an item."""

    __tablename__ = "user_ratings"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        comment="Unique rating event identifier",
    )
    user_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="User who submitted the rating",
    )
    item_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        index=True,
        comment="Rated content item (catalog id)",
    )
    rating: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Rating on a 1-10 scale",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
        comment="When the rating was submitted",
    )

    __table_args__ = (
        Index("ix_user_ratings_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<RatingEvent(user={self.user_id}, item={self.item_id}, rating={self.rating})>"


class WatchlistEvent(Base):
    """An item added to a user's watchlist."""

    __tablename__ = "user_watchlist_events"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    item_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<WatchlistEvent(user={self.user_id}, item={self.item_id})>"


class PreferenceEvent(Base):
    """A preference update. The payload is kept verbatim for audit."""

    __tablename__ = "user_preference_events"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Changed preference fields, e.g. {preferred_genres: [...]}",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<PreferenceEvent(user={self.user_id})>"


class RewardSignal(Base):
    """Lightweight reward event written by the speed layer.

    Consumed by weight recalibration during the batch run.
    """

    __tablename__ = "reward_signals"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    item_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    source: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="Action that produced the signal: rating, watchlist",
    )
    outcome_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="Outcome vocabulary entry, e.g. rated_high, watchlisted",
    )
    reward: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<RewardSignal(user={self.user_id}, outcome={self.outcome_type}, reward={self.reward})>"


class BanditExperiment(Base):
    """One bandit arm selection and, once feedback arrives, its reward.

    Rows are immutable apart from the single reward patch. Arm statistics are
    always recomputed from this table rather than stored.
    """

    __tablename__ = "bandit_experiments"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        comment="Unique experiment identifier",
    )
    user_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    experiment_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="thompson_sampling",
        comment="Selection algorithm that produced this row",
    )
    arm_chosen: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Recommendation strategy chosen for this request",
    )
    context: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="UserContext snapshot; gains outcome_type after feedback",
    )
    exploration_rate: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        comment="1 / (1 + pulls) of the chosen arm at selection time",
    )
    reward: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment="Reward from user feedback; NULL until feedback arrives",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    __table_args__ = (
        Index("ix_bandit_experiments_user_arm", "user_id", "arm_chosen"),
        Index("ix_bandit_experiments_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<BanditExperiment(id={self.id}, user={self.user_id}, arm={self.arm_chosen}, reward={self.reward})>"
