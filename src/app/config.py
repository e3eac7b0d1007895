"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from src.app.orchestration.config import (
    ChainConfig,
    ConfidenceConfig,
    ConflictConfig,
    EngineConfig,
    ExecutorConfig,
    PatternStoreConfig,
    RetryOptions,
    SyncConfig,
)


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Metrics (Prometheus exposition port; disabled when unset)
    METRICS_PORT: int | None = None

    # Pattern memory
    PATTERN_RETENTION_DAYS: int = 30
    PATTERN_SIMILARITY_THRESHOLD: float = 0.3

    # Failure chains
    CHAIN_WINDOW_SECONDS: float = 300.0

    # Confidence calibration
    CALIBRATION_HISTORY_SIZE: int = 500
    CALIBRATION_MIN_POINTS: int = 10

    # Conflict prediction
    CONFLICT_HALF_LIFE_DAYS: float = 30.0

    # Adaptive execution
    OPTIMIZATION_MULTIPLIER: float = 1.5
    RECOVERY_CACHE_KEYS: int = 256

    # Retry orchestration
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_FALLBACK_SCORE_THRESHOLD: float = 0.5
    RETRY_TASK_TIMEOUT_SECONDS: float | None = None

    # Hybrid sync (knowledge store persistence)
    SYNC_FLUSH_INTERVAL_SECONDS: float = 30.0
    SYNC_QUEUE_CAPACITY: int = 1000
    SYNC_MAX_RETRIES: int = 3

    def engine_config(self) -> EngineConfig:
        """Map flat environment settings onto the typed engine config structs."""
        return EngineConfig(
            pattern_store=PatternStoreConfig(
                retention_days=self.PATTERN_RETENTION_DAYS,
                similarity_threshold=self.PATTERN_SIMILARITY_THRESHOLD,
            ),
            chains=ChainConfig(window_seconds=self.CHAIN_WINDOW_SECONDS),
            confidence=ConfidenceConfig(
                calibration_history_size=self.CALIBRATION_HISTORY_SIZE,
                calibration_min_points=self.CALIBRATION_MIN_POINTS,
            ),
            conflicts=ConflictConfig(half_life_days=self.CONFLICT_HALF_LIFE_DAYS),
            executor=ExecutorConfig(
                optimization_multiplier=self.OPTIMIZATION_MULTIPLIER,
                recovery_cache_keys=self.RECOVERY_CACHE_KEYS,
            ),
            retry=RetryOptions(
                max_attempts=self.RETRY_MAX_ATTEMPTS,
                fallback_score_threshold=self.RETRY_FALLBACK_SCORE_THRESHOLD,
                timeout_seconds=self.RETRY_TASK_TIMEOUT_SECONDS,
            ),
            sync=SyncConfig(
                flush_interval_seconds=self.SYNC_FLUSH_INTERVAL_SECONDS,
                queue_capacity=self.SYNC_QUEUE_CAPACITY,
                max_retries=self.SYNC_MAX_RETRIES,
            ),
        )


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
