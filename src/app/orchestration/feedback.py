"""Feedback loop: folds a finished execution back into every learner.

One ExecutionFeedback updates, in order:
1. the calibration curve (predicted confidence vs actual outcome)
2. per-agent priors (one EMA step per agent result)
3. learned conflict patterns and pair ordering statistics
4. the pattern store (as an ExecutionPattern)
5. the external knowledge store, via the async persistence queue
"""

from __future__ import annotations

from itertools import combinations

import structlog

from src.app.orchestration.confidence import BayesianConfidenceEngine
from src.app.orchestration.conflicts import PredictiveConflictDetector, pair_key
from src.app.orchestration.failures import ErrorClassifier
from src.app.orchestration.interfaces import ObjectiveClassifier
from src.app.orchestration.pattern_store import PatternStore
from src.app.orchestration.schemas import ExecutionFeedback, ExecutionPattern, FeedbackResult
from src.app.orchestration.sync import HybridSync

logger = structlog.get_logger(__name__)


class FeedbackLoop:
    def __init__(
        self,
        store: PatternStore,
        confidence: BayesianConfidenceEngine,
        conflicts: PredictiveConflictDetector,
        objective_classifier: ObjectiveClassifier,
        sync: HybridSync | None = None,
        error_classifier: ErrorClassifier | None = None,
    ) -> None:
        self._store = store
        self._confidence = confidence
        self._conflicts = conflicts
        self._objectives = objective_classifier
        self._sync = sync
        self._errors = error_classifier or ErrorClassifier()

    def process(self, feedback: ExecutionFeedback) -> FeedbackResult:
        actual = 1.0 if feedback.actual_success else 0.0
        self._confidence.record_outcome(feedback.predicted_confidence, feedback.actual_success)

        updated: list[str] = []
        for result in feedback.agent_results:
            self._confidence.update_agent_prior(result.agent_id, result.success)
            updated.append(result.agent_id)

        for conflict in feedback.conflicts_detected:
            self._conflicts.learn_conflict(
                conflict.agent_a, conflict.agent_b, conflict.conflict_type, conflict.resolved
            )
        for first, second in combinations(dict.fromkeys(feedback.agents_used), 2):
            self._conflicts.learn_ordering(first, second, feedback.actual_success)

        objective_type = feedback.objective_type
        tags = list(feedback.tags)
        if objective_type is None:
            profile = self._objectives.classify(feedback.objective, feedback.context)
            objective_type = profile.objective_type
            tags = tags or list(profile.tags)

        categories = list(dict.fromkeys(self._errors.classify(e) for e in feedback.errors))
        pattern_fields = {}
        if feedback.execution_id:
            pattern_fields["pattern_id"] = feedback.execution_id
        pattern = ExecutionPattern(
            **pattern_fields,
            objective=feedback.objective,
            objective_type=objective_type,
            project_context=feedback.context,
            agents_used=list(feedback.agents_used),
            agent_results=list(feedback.agent_results),
            success=feedback.actual_success,
            duration_ms=feedback.duration_ms,
            tokens_used=feedback.tokens_used,
            conflicts=[pair_key(c.agent_a, c.agent_b) for c in feedback.conflicts_detected],
            gaps=[r.agent_id for r in feedback.agent_results if not r.success],
            tags=tags,
            error_categories=categories,
            timestamp=self._store.now(),
        )
        self._store.record(pattern)

        if self._sync is not None:
            self._sync.enqueue("execution_record", pattern.pattern_id, pattern.model_dump(mode="json"))

        metrics = self._confidence.calibration_metrics()
        result = FeedbackResult(
            pattern_id=pattern.pattern_id,
            calibration_error=abs(feedback.predicted_confidence - actual),
            brier_score=metrics.brier_score,
            agents_updated=list(dict.fromkeys(updated)),
            conflicts_learned=len(feedback.conflicts_detected),
        )
        logger.info(
            "feedback.processed",
            pattern_id=pattern.pattern_id,
            success=feedback.actual_success,
            predicted=round(feedback.predicted_confidence, 3),
            calibration_error=round(result.calibration_error, 3),
            duration_error_ms=_estimate_error(feedback.duration_ms, feedback.estimated_duration_ms),
            token_error=_estimate_error(feedback.tokens_used, feedback.estimated_tokens),
        )
        return result


def _estimate_error(actual: float, estimate: float | None) -> float | None:
    if estimate is None:
        return None
    return round(actual - estimate, 1)
