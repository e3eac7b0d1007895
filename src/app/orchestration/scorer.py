"""Predictive per-agent success scoring.

For each candidate agent the observed success rate comes from similar past
objectives that used the agent (similarity-weighted), falling back to the
agent's rolling success rate across all objectives. Confidence grows with
sample size, min(count / 10, 1), and the final score pulls sparse agents
toward the neutral 0.5 prior:

    score = confidence * observed + (1 - confidence) * 0.5
"""

from __future__ import annotations

import structlog

from src.app.orchestration.config import ScorerConfig
from src.app.orchestration.pattern_store import PatternStore
from src.app.orchestration.schemas import (
    HistoricalPerformance,
    ObjectiveProfile,
    PatternMatch,
    PredictiveScore,
    ProjectContext,
)

logger = structlog.get_logger(__name__)


class PredictiveScorer:
    """Scores candidate agents for an objective from pattern history."""

    def __init__(self, store: PatternStore, config: ScorerConfig | None = None) -> None:
        self._store = store
        self.config = config or ScorerConfig()

    def score_agents(
        self,
        agents: list[str],
        objective: str,
        context: ProjectContext | None = None,
        profile: ObjectiveProfile | None = None,
    ) -> list[PredictiveScore]:
        """Score and rank agents, best first; ties go to the larger sample."""
        similar = self._store.find_similar(
            objective, context, limit=self.config.similar_limit, profile=profile
        )
        scores = [self._score(agent_id, similar) for agent_id in dict.fromkeys(agents)]
        scores.sort(
            key=lambda s: (s.score, s.historical_performance.similar_objectives),
            reverse=True,
        )
        logger.debug(
            "scorer.agents_scored",
            objective=objective[:80],
            similar_patterns=len(similar),
            ranking=[(s.agent_id, round(s.score, 3)) for s in scores],
        )
        return scores

    def score_agent(
        self,
        agent_id: str,
        objective: str,
        context: ProjectContext | None = None,
    ) -> PredictiveScore:
        return self.score_agents([agent_id], objective, context)[0]

    def _score(self, agent_id: str, similar: list[PatternMatch]) -> PredictiveScore:
        relevant = [m for m in similar if agent_id in m.pattern.agents_used]
        neutral = self.config.neutral_prior

        if relevant:
            weight_sum = sum(m.similarity for m in relevant)
            observed = sum(m.similarity * m.pattern.success for m in relevant) / weight_sum
            count = len(relevant)
            successes = sum(1 for m in relevant if m.pattern.success)
            avg_tokens = sum(
                m.pattern.tokens_used / max(len(m.pattern.agents_used), 1) for m in relevant
            ) / count
        else:
            count, successes, avg_tokens = self._store.agent_stats(agent_id)
            observed = successes / count if count else neutral

        confidence = min(count / self.config.full_confidence_samples, 1.0)
        score = confidence * observed + (1.0 - confidence) * neutral
        return PredictiveScore(
            agent_id=agent_id,
            predicted_success_rate=round(observed, 6),
            confidence=confidence,
            score=round(score, 6),
            historical_performance=HistoricalPerformance(
                similar_objectives=count,
                success_count=successes,
                avg_tokens=round(avg_tokens, 2),
            ),
        )
