"""Pydantic schemas for the adaptive orchestration domain.

Defines the structured types shared by the pattern store, scorer, failure
analysis, confidence engine, conflict detector, adaptive executor, retry
orchestrator and feedback loop. Immutable records (ExecutionPattern,
Adaptation) are frozen; ExecutionState is the one live, mutable object and
is owned by exactly one AdaptiveExecutor.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -- Enums -------------------------------------------------------------------


class ErrorCategory(str, Enum):
    """Closed error taxonomy, ordered most-specific first."""

    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    CAPABILITY_MISMATCH = "capability_mismatch"
    VALIDATION = "validation"
    TRANSIENT_NETWORK = "transient_network"
    LOGICAL_UNKNOWN = "logical_unknown"


class ExecutionStatus(str, Enum):
    """Adaptive executor state machine states."""

    RUNNING = "running"
    ADAPTING = "adapting"
    RECOVERING = "recovering"
    COMPLETED = "completed"
    FAILED = "failed"


class AdaptationType(str, Enum):
    SUBSTITUTION = "substitution"
    REFINEMENT = "refinement"
    RECOVERY = "recovery"
    OPTIMIZATION = "optimization"


class RecoveryKind(str, Enum):
    RETRY = "retry"
    SUBSTITUTE = "substitute"
    SKIP = "skip"
    ROLLBACK = "rollback"
    ALTERNATIVE_PATH = "alternative_path"


class ConflictType(str, Enum):
    RESOURCE = "resource"
    SEMANTIC = "semantic"
    ORDERING = "ordering"
    TOOL_OVERLAP = "tool_overlap"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ChainStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class RefinementTier(str, Enum):
    """Escalation tier of a plan refinement, chosen by evidence strength."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SyncMode(str, Enum):
    REALTIME = "realtime"
    ASYNC = "async"


# -- Context & Objective ------------------------------------------------------


class ProjectContext(BaseModel):
    """Optional project context attached to an objective."""

    model_config = ConfigDict(frozen=True)

    project_type: str | None = None
    has_tests: bool | None = None
    language: str | None = None
    framework: str | None = None


class ObjectiveProfile(BaseModel):
    """Output of an objective classifier for a piece of goal text."""

    objective_type: str = "general"
    tags: list[str] = Field(default_factory=list)
    intents: dict[str, float] = Field(
        default_factory=dict, description="Weighted intent/domain tags in [0, 1]"
    )
    complexity: float = Field(default=0.5, ge=0.0, le=1.0)


class AgentSpec(BaseModel):
    """One agent slot in a plan template."""

    agent_id: str
    task_description: str = ""
    dependencies: list[str] = Field(default_factory=list)
    priority: str = "medium"


class AgentProfile(BaseModel):
    """Capability lookup answer for a single agent."""

    agent_id: str
    capabilities: list[str] = Field(default_factory=list)
    tools: list[str] = Field(default_factory=list)
    specialization: str | None = None
    success_rate: float | None = Field(default=None, ge=0.0, le=1.0)


# -- Execution Records --------------------------------------------------------


class AgentResult(BaseModel):
    """Outcome of running one agent, as reported by the task executor."""

    agent_id: str
    success: bool
    output: Any = None
    error: str | None = None
    duration_ms: float = Field(default=0.0, ge=0.0)
    tokens_used: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=_utcnow)


class ExecutionPattern(BaseModel):
    """Immutable record of one completed orchestration."""

    model_config = ConfigDict(frozen=True)

    pattern_id: str = Field(default_factory=lambda: str(uuid4()))
    objective: str
    objective_type: str = "general"
    project_context: ProjectContext | None = None
    agents_used: list[str] = Field(default_factory=list)
    agent_results: list[AgentResult] = Field(default_factory=list)
    success: bool
    duration_ms: float = 0.0
    tokens_used: int = 0
    conflicts: list[str] = Field(default_factory=list)
    gaps: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    error_categories: list[ErrorCategory] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_utcnow)


class PatternMatchFactors(BaseModel):
    """Components that contributed to a similarity score."""

    objective_type_match: bool = False
    tag_overlap: float = 0.0
    project_match: bool = False
    text_overlap: float = 0.0
    recency_bonus: float = 0.0


class PatternMatch(BaseModel):
    """Scored similarity result for one stored pattern."""

    pattern: ExecutionPattern
    similarity: float = Field(ge=0.0, le=1.0)
    factors: PatternMatchFactors = Field(default_factory=PatternMatchFactors)


class HistoricalPerformance(BaseModel):
    similar_objectives: int = 0
    success_count: int = 0
    avg_tokens: float = 0.0


class PredictiveScore(BaseModel):
    """Per-agent predicted success for a candidate objective."""

    agent_id: str
    predicted_success_rate: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    score: float = Field(ge=0.0, le=1.0, description="Observed rate blended with the neutral prior")
    historical_performance: HistoricalPerformance = Field(default_factory=HistoricalPerformance)


# -- Failures -----------------------------------------------------------------


class FailureContext(BaseModel):
    """One agent failure inside an execution."""

    failure_id: str = Field(default_factory=lambda: str(uuid4()))
    failed_agent: str
    error_message: str
    error_category: ErrorCategory
    error_signature: str = "unknown"
    objective: str = ""
    objective_type: str = "general"
    tags: list[str] = Field(default_factory=list)
    project_type: str | None = None
    preceding_agents: list[str] = Field(default_factory=list)
    avoidance_rule: str = ""
    suggested_fix: list[str] = Field(default_factory=list)
    common_preceding_sequence: list[str] = Field(default_factory=list)
    similar_failures: int = 0
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=_utcnow)


class FailureChain(BaseModel):
    """Related failures linked within a time window."""

    chain_id: str = Field(default_factory=lambda: str(uuid4()))
    pattern: str
    failures: list[FailureContext] = Field(default_factory=list)
    status: ChainStatus = ChainStatus.OPEN
    resolution: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# -- Conflicts ----------------------------------------------------------------


class OrderingStatistic(BaseModel):
    """Empirical ordering preference for a conflicting pair (agent_a, agent_b)."""

    a_before_b: bool
    success_rate: float = Field(ge=0.0, le=1.0)
    a_first_total: int = 0
    a_first_successes: int = 0
    b_first_total: int = 0
    b_first_successes: int = 0


class ConflictPattern(BaseModel):
    """Learned conflict relationship between an unordered agent pair."""

    agent_a: str
    agent_b: str
    conflict_type: ConflictType
    probability: float = Field(ge=0.0, le=1.0)
    occurrences: int = 0
    last_seen: datetime = Field(default_factory=_utcnow)
    ordering: OrderingStatistic | None = None


class PredictedConflict(BaseModel):
    """A conflict expected for a pair in a candidate plan."""

    agent_a: str
    agent_b: str
    conflict_type: ConflictType
    probability: float = Field(ge=0.0, le=1.0)
    risk_level: RiskLevel
    source: str = Field(description="tool_table or learned")
    reason: str = ""
    tools: list[str] = Field(default_factory=list)


class ConflictPrediction(BaseModel):
    """Aggregate conflict forecast for a set of agents."""

    conflicts: list[PredictedConflict] = Field(default_factory=list)
    risk_score: float = Field(default=0.0, ge=0.0, le=1.0)
    risk_level: RiskLevel = RiskLevel.LOW
    conflict_free_probability: float = Field(default=1.0, ge=0.0, le=1.0)
    recommended_order: list[str] | None = None
    agents_to_remove: list[str] = Field(default_factory=list)


class ObservedConflict(BaseModel):
    """A conflict that actually occurred during an execution."""

    agent_a: str
    agent_b: str
    conflict_type: ConflictType = ConflictType.RESOURCE
    resolved: bool = False


# -- Confidence ---------------------------------------------------------------


class EvidenceSource(BaseModel):
    name: str
    likelihood: float = Field(ge=0.0, le=1.0)
    prior: float = Field(ge=0.0, le=1.0)
    posterior: float = Field(ge=0.0, le=1.0)
    weight: float = Field(ge=0.0)


class ConfidenceResult(BaseModel):
    """Calibrated confidence with a 95% interval and warnings."""

    confidence: float = Field(ge=0.0, le=1.0)
    raw_confidence: float = Field(ge=0.0, le=1.0)
    uncertainty: float = Field(ge=0.0, le=0.5)
    lower: float = Field(ge=0.0, le=1.0)
    upper: float = Field(ge=0.0, le=1.0)
    evidence: list[EvidenceSource] = Field(default_factory=list)
    calibration_quality: float = Field(default=0.5, ge=0.0, le=1.0)
    warnings: list[str] = Field(default_factory=list)


class CalibrationMetrics(BaseModel):
    brier_score: float | None = None
    quality: float = 0.5
    sample_count: int = 0
    curve: dict[float, float] = Field(default_factory=dict)


# -- Adaptation & Recovery ----------------------------------------------------


class Adaptation(BaseModel):
    """Audit record of one plan mutation."""

    model_config = ConfigDict(frozen=True)

    adaptation_id: str = Field(default_factory=lambda: str(uuid4()))
    execution_id: str | None = None
    type: AdaptationType
    reason: str
    before: list[str] = Field(default_factory=list)
    after: list[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=_utcnow)


class RecoveryStrategy(BaseModel):
    """Chosen response to an agent failure."""

    kind: RecoveryKind
    failed_agent: str
    error_category: ErrorCategory = ErrorCategory.LOGICAL_UNKNOWN
    replacement_agents: list[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""


class RefinementResult(BaseModel):
    """Revised plan produced by the adaptive plan refiner."""

    tier: RefinementTier
    strategy: RecoveryKind
    agents: list[str]
    removed: list[str] = Field(default_factory=list)
    added: list[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    exploratory: bool = False
    reasoning: str = ""


# -- Execution State ----------------------------------------------------------


class ResourceUsage(BaseModel):
    tokens_used: int = 0
    duration_ms: float = 0.0
    estimated_tokens: int = 0
    estimated_duration_ms: float = 0.0


class ExecutionState(BaseModel):
    """Live state of one in-flight orchestration.

    pending_agents and the ids in completed_agents partition current_plan
    after every state machine step. Failed attempts that were recovered
    live in failed_attempts, not completed_agents.
    """

    execution_id: str = Field(default_factory=lambda: str(uuid4()))
    objective: str
    objective_type: str = "general"
    tags: list[str] = Field(default_factory=list)
    context: ProjectContext | None = None
    original_plan: list[str]
    current_plan: list[str]
    dependencies: dict[str, list[str]] = Field(default_factory=dict)
    tasks: dict[str, str] = Field(default_factory=dict, description="agent -> task description")
    completed_agents: list[AgentResult] = Field(default_factory=list)
    pending_agents: list[str] = Field(default_factory=list)
    status: ExecutionStatus = ExecutionStatus.RUNNING
    adaptations: list[Adaptation] = Field(default_factory=list)
    resource_usage: ResourceUsage = Field(default_factory=ResourceUsage)
    failed_attempts: list[AgentResult] = Field(default_factory=list)
    attempted_strategies: list[RecoveryStrategy] = Field(default_factory=list)
    predicted_confidence: float = 0.5
    processed_count: int = 0
    final_error: str | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None

    @property
    def completed_ids(self) -> list[str]:
        return [r.agent_id for r in self.completed_agents]

    @property
    def is_terminal(self) -> bool:
        return self.status in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


# -- Planning -----------------------------------------------------------------


class PlanConstraints(BaseModel):
    """Caller constraints for plan()."""

    candidate_agents: list[str] | None = None
    exclude_agents: list[str] = Field(default_factory=list)
    max_agents: int | None = Field(default=None, ge=1)
    min_agent_score: float = Field(default=0.0, ge=0.0, le=1.0)
    apply_reordering: bool = True
    allow_conflict_removal: bool = True


class PlanResult(BaseModel):
    objective: str
    objective_type: str
    tags: list[str] = Field(default_factory=list)
    agents: list[str]
    dependencies: dict[str, list[str]] = Field(default_factory=dict)
    predictive_scores: list[PredictiveScore] = Field(default_factory=list)
    confidence: ConfidenceResult
    conflicts: ConflictPrediction
    template: str | None = None
    estimated_tokens: int = 0
    estimated_duration_ms: float = 0.0


# -- Feedback -----------------------------------------------------------------


class ExecutionFeedback(BaseModel):
    """Full outcome of a finished execution fed into the learning loop."""

    execution_id: str | None = None
    objective: str
    objective_type: str | None = None
    tags: list[str] = Field(default_factory=list)
    agents_used: list[str]
    agent_results: list[AgentResult] = Field(default_factory=list)
    predicted_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    actual_success: bool
    duration_ms: float = 0.0
    tokens_used: int = 0
    estimated_duration_ms: float | None = None
    estimated_tokens: int | None = None
    errors: list[str] = Field(default_factory=list)
    conflicts_detected: list[ObservedConflict] = Field(default_factory=list)
    context: ProjectContext | None = None


class FeedbackResult(BaseModel):
    pattern_id: str
    calibration_error: float
    brier_score: float | None = None
    agents_updated: list[str] = Field(default_factory=list)
    conflicts_learned: int = 0


# -- Retry --------------------------------------------------------------------


class RetryTask(BaseModel):
    """A single unit of work to run with sequential agent fallback."""

    task_id: str = Field(default_factory=lambda: str(uuid4()))
    description: str
    objective: str | None = None
    candidate_agents: list[str] = Field(default_factory=list)
    context: ProjectContext | None = None


class RetryAttempt(BaseModel):
    agent_id: str
    score: float
    success: bool
    error: str | None = None
    duration_ms: float = 0.0


class RetryResult(BaseModel):
    success: bool
    agent_id: str | None = None
    result: AgentResult | None = None
    attempts: list[RetryAttempt] = Field(default_factory=list)
    excluded_agents: list[str] = Field(default_factory=list)
    reason: str | None = None


class FallbackRecommendation(BaseModel):
    failed_agent: str
    fallback_agent: str
    successes: int = 0


# -- Sync ---------------------------------------------------------------------


class SyncOperation(BaseModel):
    """One persistence write, either attempted in real time or queued."""

    operation_id: str = Field(default_factory=lambda: str(uuid4()))
    operation: str
    key: str
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    created_at: datetime = Field(default_factory=_utcnow)


class SyncStats(BaseModel):
    realtime_syncs: int = 0
    async_syncs: int = 0
    timeout_fallbacks: int = 0
    error_fallbacks: int = 0
    flushed: int = 0
    failed: int = 0
    dropped: int = 0
    queue_size: int = 0
    last_flush_at: datetime | None = None
