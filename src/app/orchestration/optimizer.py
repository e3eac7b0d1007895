"""Multi-objective (accuracy / cost / latency) selection among candidate plans.

Candidates are first reduced to the Pareto frontier (plans not dominated on
every objective by another plan), then the frontier member with the best
weighted utility wins:

    utility = accuracy * w_acc + (1 - cost) * w_cost + (1 - latency) * w_lat

Cost and latency are normalized onto [0, 1] over fixed token (1k-20k) and
duration (2s-30s) ranges.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from src.app.orchestration.config import ParetoWeights

MIN_TOKENS, MAX_TOKENS = 1_000, 20_000
MIN_DURATION_MS, MAX_DURATION_MS = 2_000, 30_000


class PlanCandidate(BaseModel):
    """A candidate plan with raw estimates and normalized objective scores."""

    agents: list[str]
    accuracy: float = Field(ge=0.0, le=1.0)
    estimated_tokens: int = 0
    estimated_duration_ms: float = 0.0
    label: str = ""

    @property
    def cost(self) -> float:
        return _normalize(self.estimated_tokens, MIN_TOKENS, MAX_TOKENS)

    @property
    def latency(self) -> float:
        return _normalize(self.estimated_duration_ms, MIN_DURATION_MS, MAX_DURATION_MS)

    def dominates(self, other: PlanCandidate) -> bool:
        at_least_as_good = (
            self.accuracy >= other.accuracy
            and self.cost <= other.cost
            and self.latency <= other.latency
        )
        strictly_better = (
            self.accuracy > other.accuracy or self.cost < other.cost or self.latency < other.latency
        )
        return at_least_as_good and strictly_better


class ParetoOptimizer:
    def __init__(self, weights: ParetoWeights | None = None) -> None:
        self.weights = weights or ParetoWeights()

    def frontier(self, candidates: list[PlanCandidate]) -> list[PlanCandidate]:
        return [
            c for c in candidates if not any(other.dominates(c) for other in candidates if other is not c)
        ]

    def utility(self, candidate: PlanCandidate) -> float:
        w = self.weights
        return (
            candidate.accuracy * w.accuracy
            + (1.0 - candidate.cost) * w.cost
            + (1.0 - candidate.latency) * w.latency
        )

    def select(self, candidates: list[PlanCandidate]) -> PlanCandidate | None:
        """Best-utility plan on the frontier; earlier candidates win ties."""
        frontier = self.frontier(candidates)
        if not frontier:
            return None
        best = frontier[0]
        for candidate in frontier[1:]:
            if self.utility(candidate) > self.utility(best):
                best = candidate
        return best


def _normalize(value: float, low: float, high: float) -> float:
    return min(max((value - low) / (high - low), 0.0), 1.0)
