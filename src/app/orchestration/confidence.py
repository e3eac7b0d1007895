"""Bayesian confidence engine for candidate agent plans.

Four evidence sources are computed from execution history, each with a
likelihood (success rate of the matching subset, 0.5 if empty) and a prior
(global success rate, 0.5 with no history):

    agent_performance     0.35  patterns that used every candidate agent
    objective_similarity  0.30  patterns whose type/tags hit a strong intent
    context_similarity    0.20  same project type or same has_tests flag
    agent_synergy         0.15  patterns sharing >= 2 candidate agents

Per source: posterior = l*p / P(e), P(e) = l*p + (1-l)*(1-p).
The sources are pooled as (0.5 + sum(posterior * weight)) / sum(weight),
every source updating against the same neutral baseline rather than
chaining. The pooled value is clamped to [0, 1], calibrated, and wrapped
in a 95% interval (confidence +/- 1.96 * uncertainty).

Agent priors are a separate per-agent EMA of outcomes (learning rate 0.1,
default 0.7, or the capability lookup's tracked rate when it has one).
"""

from __future__ import annotations

import threading

import numpy as np
import structlog

from src.app.orchestration.calibration import CalibrationCurve
from src.app.orchestration.config import ConfidenceConfig
from src.app.orchestration.interfaces import CapabilityLookup
from src.app.orchestration.pattern_store import PatternStore
from src.app.orchestration.schemas import (
    CalibrationMetrics,
    ConfidenceResult,
    EvidenceSource,
    ExecutionPattern,
    ObjectiveProfile,
    ProjectContext,
)

logger = structlog.get_logger(__name__)

WEIGHTS = {
    "agent_performance": 0.35,
    "objective_similarity": 0.30,
    "context_similarity": 0.20,
    "agent_synergy": 0.15,
}


class BayesianConfidenceEngine:
    """Evidence pooling, calibration and uncertainty for plan confidence.

    Args:
        store: Default source of execution history.
        config: Calibration and threshold settings.
        capabilities: Optional lookup whose tracked success rates seed agent priors.
    """

    def __init__(
        self,
        store: PatternStore | None = None,
        config: ConfidenceConfig | None = None,
        capabilities: CapabilityLookup | None = None,
    ) -> None:
        self._store = store
        self.config = config or ConfidenceConfig()
        self._capabilities = capabilities
        self.calibration = CalibrationCurve(self.config)
        self._priors: dict[str, float] = {}
        self._lock = threading.RLock()

    # ── Confidence ───────────────────────────────────────────────────────

    def calculate_confidence(
        self,
        agents: list[str],
        profile: ObjectiveProfile,
        context: ProjectContext | None = None,
        history: list[ExecutionPattern] | None = None,
    ) -> ConfidenceResult:
        """Score a candidate agent set.

        Args:
            agents: Candidate plan agents.
            profile: Classified objective (type, weighted intents, tags).
            context: Optional project context; adds context evidence.
            history: Execution history; the pattern store's if omitted.

        Returns:
            ConfidenceResult with 0 <= lower <= confidence <= upper <= 1.
        """
        if history is None:
            history = self._store.patterns() if self._store is not None else []

        prior = _rate(history)
        covering = [p for p in history if all(a in p.agents_used for a in agents)]
        evidence = [self._source("agent_performance", covering, prior)]
        evidence.append(self._source("objective_similarity", _objective_matches(profile, history), prior))
        if context is not None:
            evidence.append(self._source("context_similarity", _context_matches(context, history), prior))
        if len(agents) > 1:
            synergy = [p for p in history if sum(1 for a in agents if a in p.agents_used) >= 2]
            evidence.append(self._source("agent_synergy", synergy, prior))

        pooled = 0.5
        total_weight = 0.0
        for source in evidence:
            pooled += source.posterior * source.weight
            total_weight += source.weight
        raw = min(max(pooled / total_weight if total_weight else 0.5, 0.0), 1.0)

        confidence = min(max(self.calibration.apply(raw), 0.0), 1.0)
        uncertainty = self._uncertainty(evidence, history)
        quality = self.calibration.quality()
        lower = max(0.0, confidence - 1.96 * uncertainty)
        upper = min(1.0, confidence + 1.96 * uncertainty)

        thresholds = self.config.thresholds
        warnings: list[str] = []
        if confidence < thresholds.low_confidence:
            warnings.append("Very low confidence - high risk of failure")
        if uncertainty > thresholds.high_uncertainty:
            warnings.append("High uncertainty - predictions unreliable")
        if quality < thresholds.poor_calibration:
            warnings.append("Poor calibration - confidence estimates may be inaccurate")
        if len(history) < thresholds.limited_history:
            warnings.append("Limited historical data - predictions less reliable")

        return ConfidenceResult(
            confidence=confidence,
            raw_confidence=raw,
            uncertainty=uncertainty,
            lower=lower,
            upper=upper,
            evidence=evidence,
            calibration_quality=quality,
            warnings=warnings,
        )

    def _source(self, name: str, subset: list[ExecutionPattern], prior: float) -> EvidenceSource:
        likelihood = _rate(subset)
        p_evidence = likelihood * prior + (1.0 - likelihood) * (1.0 - prior)
        posterior = (likelihood * prior) / max(p_evidence, 0.01)
        return EvidenceSource(
            name=name,
            likelihood=likelihood,
            prior=prior,
            posterior=min(max(posterior, 0.0), 1.0),
            weight=WEIGHTS[name],
        )

    def _uncertainty(self, evidence: list[EvidenceSource], history: list[ExecutionPattern]) -> float:
        uncertainty = 0.0
        if len(history) < 10:
            uncertainty += 0.3
        elif len(history) < 50:
            uncertainty += 0.2
        elif len(history) < 100:
            uncertainty += 0.1

        if evidence:
            uncertainty += float(np.std([e.posterior for e in evidence])) * 0.5
        outcome_variance = float(np.var([1.0 if p.success else 0.0 for p in history])) if history else 0.25
        uncertainty += outcome_variance * 0.3
        return min(uncertainty, self.config.max_uncertainty)

    # ── Learning ─────────────────────────────────────────────────────────

    def record_outcome(self, predicted: float, actual: bool) -> None:
        """Add a calibration point; the curve rebuilds once enough are buffered."""
        self.calibration.add_point(predicted, actual)

    def update_agent_prior(self, agent_id: str, success: bool) -> float:
        with self._lock:
            current = self._priors.get(agent_id, self._default_prior(agent_id))
            rate = self.config.prior_learning_rate
            updated = (1.0 - rate) * current + rate * (1.0 if success else 0.0)
            self._priors[agent_id] = updated
        logger.debug("confidence.agent_prior_updated", agent_id=agent_id, prior=round(updated, 4))
        return updated

    def get_agent_prior(self, agent_id: str) -> float:
        with self._lock:
            return self._priors.get(agent_id, self._default_prior(agent_id))

    def agent_priors(self) -> dict[str, float]:
        with self._lock:
            return dict(self._priors)

    def calibration_metrics(self) -> CalibrationMetrics:
        return CalibrationMetrics(
            brier_score=self.calibration.brier_score(self.config.brier_window),
            quality=self.calibration.quality(),
            sample_count=len(self.calibration),
            curve=self.calibration.curve,
        )

    def _default_prior(self, agent_id: str) -> float:
        if self._capabilities is not None:
            profile = self._capabilities.get_profile(agent_id)
            if profile is not None and profile.success_rate is not None:
                return profile.success_rate
        return self.config.default_agent_prior


def _rate(patterns: list[ExecutionPattern]) -> float:
    if not patterns:
        return 0.5
    return sum(1 for p in patterns if p.success) / len(patterns)


def _objective_matches(profile: ObjectiveProfile, history: list[ExecutionPattern]) -> list[ExecutionPattern]:
    strong = [intent for intent, score in profile.intents.items() if score > 0.5]
    if not strong:
        return []
    return [p for p in history if any(i in p.objective_type or i in p.tags for i in strong)]


def _context_matches(context: ProjectContext, history: list[ExecutionPattern]) -> list[ExecutionPattern]:
    matches = []
    for pattern in history:
        stored = pattern.project_context
        if stored is None:
            continue
        if stored.project_type == context.project_type or stored.has_tests == context.has_tests:
            matches.append(pattern)
    return matches
