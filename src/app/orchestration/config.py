"""Typed configuration structs for each orchestration component.

Every tunable of the engine lives on one of these models with an explicit
default, so components never fall through optional attributes. The
aggregate EngineConfig is what build_engine() consumes; Settings maps the
environment onto it.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class PatternStoreConfig(BaseModel):
    """Pattern memory retention, index and similarity tuning."""

    model_config = ConfigDict(frozen=True)

    retention_days: int = Field(default=30, ge=1)
    similarity_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    max_tags: int = Field(default=10, ge=1, description="Tag vocabulary cap (vector slots 2..N)")
    candidate_multiplier: int = Field(
        default=5, ge=1, description="k-NN over-fetch factor before re-ranking"
    )
    recency_bonus: float = Field(default=0.05, ge=0.0, le=0.2)
    imbalance_factor: float = Field(
        default=3.0, gt=1.0, description="Rebuild when depth > factor * log2(n+1)"
    )
    max_patterns: int = Field(default=10_000, ge=10)


class ScorerConfig(BaseModel):
    """Predictive success scoring."""

    model_config = ConfigDict(frozen=True)

    neutral_prior: float = 0.5
    full_confidence_samples: int = Field(default=10, ge=1)
    similar_limit: int = Field(default=20, ge=1)


class ChainConfig(BaseModel):
    """Failure chain sliding window."""

    model_config = ConfigDict(frozen=True)

    window_seconds: float = Field(default=300.0, gt=0)
    max_history: int = Field(default=500, ge=1)


class ParetoWeights(BaseModel):
    """Blend of accuracy, cost and latency for candidate plan selection."""

    model_config = ConfigDict(frozen=True)

    accuracy: float = 0.5
    cost: float = 0.25
    latency: float = 0.25


class RefinerConfig(BaseModel):
    """Adaptive plan refinement tiers."""

    model_config = ConfigDict(frozen=True)

    high_confidence: float = 0.7
    medium_confidence: float = 0.3
    strong_history: int = Field(default=5, ge=1)
    exploratory_penalty: float = Field(default=0.5, gt=0.0, le=1.0)
    max_candidates: int = Field(default=6, ge=1)
    hybrid_agents: int = Field(default=3, ge=1)
    default_agent_tokens: int = 2_000
    default_agent_duration_ms: float = 6_000.0
    weights: ParetoWeights = Field(default_factory=ParetoWeights)


class ConfidenceThresholds(BaseModel):
    """Warning thresholds for a confidence result."""

    model_config = ConfigDict(frozen=True)

    low_confidence: float = 0.3
    high_uncertainty: float = 0.3
    poor_calibration: float = 0.7
    limited_history: int = 10


class ConfidenceConfig(BaseModel):
    """Bayesian confidence engine and calibration."""

    model_config = ConfigDict(frozen=True)

    calibration_history_size: int = Field(default=500, ge=10)
    calibration_min_points: int = Field(default=10, ge=1)
    brier_window: int = Field(default=100, ge=1)
    max_uncertainty: float = 0.5
    prior_learning_rate: float = Field(default=0.1, gt=0.0, le=1.0)
    default_agent_prior: float = 0.7
    thresholds: ConfidenceThresholds = Field(default_factory=ConfidenceThresholds)


class ConflictConfig(BaseModel):
    """Predictive conflict detection."""

    model_config = ConfigDict(frozen=True)

    half_life_days: float = Field(default=30.0, gt=0)
    low_threshold: float = 0.3
    medium_threshold: float = 0.6
    high_threshold: float = 0.8
    tool_conflict_probability: float = 0.65
    learning_rate: float = 0.3
    min_conflict_free: float = 0.01
    max_patterns: int = Field(default=5_000, ge=1)


class ExecutorConfig(BaseModel):
    """Adaptive executor state machine."""

    model_config = ConfigDict(frozen=True)

    optimization_multiplier: float = Field(default=1.5, gt=1.0)
    safety_factor: int = Field(default=2, ge=1)
    max_alternatives: int = Field(default=2, ge=1)
    strategies_per_key: int = Field(default=5, ge=1)
    recovery_cache_keys: int = Field(default=256, ge=1)
    default_tokens_per_agent: int = 2_000
    default_duration_ms_per_agent: int = 30_000


class RetryOptions(BaseModel):
    """Sequential fallback options for a single task."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    exclude_on_failure: bool = True
    learn_from_failure: bool = True
    fallback_score_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    timeout_seconds: float | None = None


class SyncConfig(BaseModel):
    """Hybrid real-time/async persistence."""

    model_config = ConfigDict(frozen=True)

    flush_interval_seconds: float = Field(default=30.0, gt=0)
    queue_capacity: int = Field(default=1_000, ge=1)
    max_retries: int = Field(default=3, ge=1)
    backoff_initial_seconds: float = 1.0
    backoff_max_seconds: float = 4.0


class EngineConfig(BaseModel):
    """Aggregate configuration for an OrchestrationEngine."""

    model_config = ConfigDict(frozen=True)

    pattern_store: PatternStoreConfig = Field(default_factory=PatternStoreConfig)
    scorer: ScorerConfig = Field(default_factory=ScorerConfig)
    chains: ChainConfig = Field(default_factory=ChainConfig)
    refiner: RefinerConfig = Field(default_factory=RefinerConfig)
    confidence: ConfidenceConfig = Field(default_factory=ConfidenceConfig)
    conflicts: ConflictConfig = Field(default_factory=ConflictConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    retry: RetryOptions = Field(default_factory=RetryOptions)
    sync: SyncConfig = Field(default_factory=SyncConfig)
