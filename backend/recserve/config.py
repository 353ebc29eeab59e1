"""Configuration management"""
import os
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Storage - "postgres" for production, "memory" for local development
    storage_backend: str = os.getenv("STORAGE_BACKEND", "postgres")

    # PostgreSQL
    postgres_host: str = os.getenv("POSTGRES_HOST", "localhost")
    postgres_port: int = int(os.getenv("POSTGRES_PORT", 5432))
    postgres_user: str = os.getenv("POSTGRES_USER", "recserve")
    postgres_password: str = os.getenv("POSTGRES_PASSWORD", "recserve")
    postgres_db: str = os.getenv("POSTGRES_DB", "recserve")
    postgres_pool_size: int = int(os.getenv("POSTGRES_POOL_SIZE", 5))
    postgres_max_overflow: int = int(os.getenv("POSTGRES_MAX_OVERFLOW", 10))
    postgres_pool_timeout: int = int(os.getenv("POSTGRES_POOL_TIMEOUT", 30))
    postgres_pool_recycle: int = int(os.getenv("POSTGRES_POOL_RECYCLE", 1800))
    postgres_echo_sql: bool = os.getenv("POSTGRES_ECHO_SQL", "false").lower() == "true"
    # Full SQLAlchemy URL, overrides the postgres_* fields when set
    database_url: str = os.getenv("DATABASE_URL", "")

    # Ranking model service (candidate generation + ranking black box)
    ranking_service_url: str = os.getenv("RANKING_SERVICE_URL", "http://localhost:8500")
    ranking_timeout_seconds: float = float(os.getenv("RANKING_TIMEOUT_SECONDS", "10.0"))
    ranking_train_timeout_seconds: float = float(os.getenv("RANKING_TRAIN_TIMEOUT_SECONDS", "900.0"))

    # Batch layer
    batch_interval_hours: float = float(os.getenv("BATCH_INTERVAL_HOURS", 12))
    batch_corpus_limit: int = int(os.getenv("BATCH_CORPUS_LIMIT", 100000))
    batch_min_training_ratings: int = int(os.getenv("BATCH_MIN_TRAINING_RATINGS", 1000))
    batch_active_user_days: int = int(os.getenv("BATCH_ACTIVE_USER_DAYS", 30))
    batch_max_users: int = int(os.getenv("BATCH_MAX_USERS", 1000))
    batch_top_n: int = int(os.getenv("BATCH_TOP_N", 50))
    batch_user_timeout_seconds: float = float(os.getenv("BATCH_USER_TIMEOUT_SECONDS", "30.0"))

    # Scheduler
    scheduler_enabled: bool = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
    scheduler_jitter_seconds: float = float(os.getenv("SCHEDULER_JITTER_SECONDS", "60.0"))

    # Serving layer policy
    cache_max_age_hours: float = float(os.getenv("CACHE_MAX_AGE_HOURS", 6))
    recent_activity_minutes: int = int(os.getenv("RECENT_ACTIVITY_MINUTES", 60))
    merge_history_limit: int = int(os.getenv("MERGE_HISTORY_LIMIT", 50))
    freshness_boost: float = float(os.getenv("FRESHNESS_BOOST", "1.10"))
    default_recommendation_limit: int = int(os.getenv("DEFAULT_RECOMMENDATION_LIMIT", 20))

    # Bandit - fixed seed makes arm sampling reproducible (tests, replays)
    bandit_seed: Optional[int] = int(os.environ["BANDIT_SEED"]) if os.getenv("BANDIT_SEED") else None
    bandit_context_window_hours: int = int(os.getenv("BANDIT_CONTEXT_WINDOW_HOURS", 24))

    # Metrics and logging
    enable_prometheus_metrics: bool = os.getenv("ENABLE_PROMETHEUS_METRICS", "false").lower() == "true"

    # API
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("API_PORT", 8000))
    log_level: str = os.getenv("LOG_LEVEL", "info")

    # CORS - comma-separated list of allowed origins
    cors_origins: str = os.getenv("CORS_ORIGINS", "http://localhost:3000")

    @property
    def cors_origins_list(self) -> list:
        """Parse CORS_ORIGINS into a list of origins"""
        if not self.cors_origins:
            return ["http://localhost:3000"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def use_memory_storage(self) -> bool:
        return self.storage_backend.lower() == "memory"

    class Config:
        env_file = ".env"


settings = Settings()
