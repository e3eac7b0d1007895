"""Predictive pairwise conflict detection between agents in a plan.

Two signals per agent pair:

1. Tool-level: the agents' tools hit the static table of tools that cannot
   safely run together. Deterministic, no history needed.
2. Learned: a ConflictPattern for the pair, whose probability fades with
   age as observed * 2 ** (-age_days / half_life) so stale evidence drifts
   back toward "unknown".

Above the safe threshold the detector proposes a reordering (Kahn
topological sort over the learned "A before B succeeds more often" edges)
or, for very likely conflicts with no ordering evidence, removal of the
lower-value agent. learn_conflict() is the only path that changes a
pattern's probability.
"""

from __future__ import annotations

import heapq
import math
import threading
from collections import OrderedDict
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import structlog

from src.app.orchestration.config import ConflictConfig
from src.app.orchestration.interfaces import CapabilityLookup
from src.app.orchestration.schemas import (
    ConflictPattern,
    ConflictPrediction,
    ConflictType,
    OrderingStatistic,
    PredictedConflict,
    ProjectContext,
    RiskLevel,
)

logger = structlog.get_logger(__name__)

KNOWN_TOOL_CONFLICTS: dict[str, frozenset[str]] = {
    # Mutating tools also conflict with themselves when two agents share them.
    "edit_file": frozenset({"edit_file", "write_file", "delete_file"}),
    "write_file": frozenset({"write_file", "edit_file", "delete_file"}),
    "delete_file": frozenset({"delete_file", "edit_file", "write_file"}),
    "npm_install": frozenset({"npm_install", "npm_uninstall"}),
    "npm_uninstall": frozenset({"npm_uninstall", "npm_install"}),
    "build": frozenset({"build", "run_tests"}),
    "run_tests": frozenset({"build"}),
}

DEFAULT_AGENT_TOOLS: dict[str, list[str]] = {
    "hollowed_eyes": ["edit_file", "write_file", "read_file"],
    "the_curator": ["npm_install", "npm_uninstall", "edit_file"],
    "loveless": ["run_tests", "read_file"],
    "the_architect": ["write_file", "create_directory"],
    "the_sentinel": ["run_tests", "build"],
    "the_didact": ["web_search", "write_file"],
}

_HEAVY_TYPES = (ConflictType.RESOURCE, ConflictType.ORDERING)


def pair_key(agent_a: str, agent_b: str) -> str:
    """Order-independent key for an agent pair."""
    return ":".join(sorted((agent_a, agent_b)))


class PredictiveConflictDetector:
    """Known tool conflicts plus learned, time-decayed pair conflicts.

    Args:
        config: Thresholds, half-life and capacity.
        capabilities: Optional capability lookup for agent tool lists.
        clock: Returns "now" as an aware datetime. Injectable for tests.
    """

    def __init__(
        self,
        config: ConflictConfig | None = None,
        capabilities: CapabilityLookup | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or ConflictConfig()
        self._capabilities = capabilities
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()
        self._patterns: OrderedDict[str, ConflictPattern] = OrderedDict()

    # ── Prediction ───────────────────────────────────────────────────────

    def predict_conflicts(
        self,
        agents: list[str],
        context: ProjectContext | None = None,
        agent_values: dict[str, float] | None = None,
    ) -> ConflictPrediction:
        """Forecast conflicts for a plan; fail-open to an empty prediction."""
        try:
            return self._predict(agents, agent_values or {})
        except Exception:
            logger.warning("conflicts.prediction_failed", agents=agents, exc_info=True)
            return ConflictPrediction()

    def _predict(self, agents: list[str], values: dict[str, float]) -> ConflictPrediction:
        now = self._clock()
        with self._lock:
            learned = {
                key: self._patterns[key].model_copy(deep=True)
                for key in (pair_key(a, b) for i, a in enumerate(agents) for b in agents[i + 1 :])
                if key in self._patterns
            }

        conflicts: list[PredictedConflict] = []
        for i, agent_a in enumerate(agents):
            for agent_b in agents[i + 1 :]:
                conflict = self._pair_conflict(agent_a, agent_b, learned.get(pair_key(agent_a, agent_b)), now)
                if conflict is not None:
                    conflicts.append(conflict)

        if not conflicts:
            return ConflictPrediction()

        weighted = sum(c.probability * (1.5 if c.conflict_type in _HEAVY_TYPES else 1.0) for c in conflicts)
        weights = sum(1.5 if c.conflict_type in _HEAVY_TYPES else 1.0 for c in conflicts)
        risk = min(weighted / weights, 1.0)
        conflict_free = max(
            math.prod(1.0 - c.probability for c in conflicts), self.config.min_conflict_free
        )

        prediction = ConflictPrediction(
            conflicts=conflicts,
            risk_score=risk,
            risk_level=self.risk_level(risk),
            conflict_free_probability=conflict_free,
        )
        if risk > self.config.low_threshold:
            prediction.agents_to_remove = self._removals(conflicts, learned, values)
            prediction.recommended_order = self._reorder(agents, learned)

        logger.info(
            "conflicts.predicted",
            agents=len(agents),
            conflicts=len(conflicts),
            risk=round(risk, 3),
            level=prediction.risk_level.value,
        )
        return prediction

    def _pair_conflict(
        self,
        agent_a: str,
        agent_b: str,
        pattern: ConflictPattern | None,
        now: datetime,
    ) -> PredictedConflict | None:
        tools = self.conflicting_tools(agent_a, agent_b)
        tool_probability = self.config.tool_conflict_probability if tools else 0.0
        learned_probability = self.decayed_probability(pattern, now) if pattern else 0.0

        if not tools and learned_probability <= 0.0:
            return None
        if learned_probability > tool_probability and pattern is not None:
            probability = learned_probability
            conflict_type = pattern.conflict_type
            source = "learned"
            reason = f"Observed {pattern.occurrences} time(s), decayed probability {learned_probability:.2f}"
        else:
            probability = tool_probability
            conflict_type = ConflictType.TOOL_OVERLAP
            source = "tool_table"
            reason = "Conflicting tools: " + ", ".join(f"{x}/{y}" for x, y in tools)
        return PredictedConflict(
            agent_a=agent_a,
            agent_b=agent_b,
            conflict_type=conflict_type,
            probability=probability,
            risk_level=self.risk_level(probability),
            source=source,
            reason=reason,
            tools=sorted({t for pair in tools for t in pair}),
        )

    def _removals(
        self,
        conflicts: list[PredictedConflict],
        learned: dict[str, ConflictPattern],
        values: dict[str, float],
    ) -> list[str]:
        removals: list[str] = []
        for conflict in conflicts:
            pattern = learned.get(pair_key(conflict.agent_a, conflict.agent_b))
            if conflict.source != "learned" or pattern is None or pattern.ordering is not None:
                continue
            if conflict.probability <= self.config.high_threshold:
                continue
            value_a = values.get(conflict.agent_a, 0.5)
            value_b = values.get(conflict.agent_b, 0.5)
            loser = conflict.agent_a if value_a < value_b else conflict.agent_b
            if loser not in removals:
                removals.append(loser)
        return removals

    def _reorder(self, agents: list[str], learned: dict[str, ConflictPattern]) -> list[str] | None:
        """Kahn's algorithm over learned ordering edges, stable on plan order."""
        edges: dict[str, set[str]] = {a: set() for a in agents}
        indegree = {a: 0 for a in agents}
        for pattern in learned.values():
            if pattern.ordering is None:
                continue
            first, second = (
                (pattern.agent_a, pattern.agent_b)
                if pattern.ordering.a_before_b
                else (pattern.agent_b, pattern.agent_a)
            )
            if second not in edges[first]:
                edges[first].add(second)
                indegree[second] += 1
        if not any(edges.values()):
            return None

        position = {a: i for i, a in enumerate(agents)}
        ready = [(position[a], a) for a in agents if indegree[a] == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            _, agent = heapq.heappop(ready)
            order.append(agent)
            for nxt in edges[agent]:
                indegree[nxt] -= 1
                if indegree[nxt] == 0:
                    heapq.heappush(ready, (position[nxt], nxt))
        if len(order) != len(agents):
            logger.warning("conflicts.ordering_cycle", agents=agents)
            return None
        return order

    # ── Learning ─────────────────────────────────────────────────────────

    def learn_conflict(
        self,
        agent_a: str,
        agent_b: str,
        conflict_type: ConflictType,
        was_resolved: bool,
    ) -> ConflictPattern:
        """Fold one observed conflict into the pair's pattern."""
        key = pair_key(agent_a, agent_b)
        first, second = key.split(":", 1)
        with self._lock:
            pattern = self._patterns.get(key)
            if pattern is None:
                pattern = ConflictPattern(
                    agent_a=first,
                    agent_b=second,
                    conflict_type=conflict_type,
                    probability=0.3 if was_resolved else 0.8,
                    occurrences=1,
                    last_seen=self._clock(),
                )
                self._patterns[key] = pattern
            else:
                target = 0.0 if was_resolved else 1.0
                rate = self.config.learning_rate
                pattern.probability = (1.0 - rate) * pattern.probability + rate * target
                pattern.occurrences += 1
                pattern.last_seen = self._clock()
                pattern.conflict_type = conflict_type
                self._patterns.move_to_end(key)
            self._evict()
            snapshot = pattern.model_copy(deep=True)

        logger.info(
            "conflicts.learned",
            pair=key,
            conflict_type=conflict_type.value,
            resolved=was_resolved,
            probability=round(snapshot.probability, 3),
        )
        return snapshot

    def learn_ordering(self, first: str, second: str, succeeded: bool) -> ConflictPattern | None:
        """Record the outcome of running ``first`` before ``second``.

        Only pairs with a learned conflict track ordering; others are ignored.
        """
        key = pair_key(first, second)
        with self._lock:
            pattern = self._patterns.get(key)
            if pattern is None:
                return None
            stat = pattern.ordering or OrderingStatistic(a_before_b=True, success_rate=0.0)
            if first == pattern.agent_a:
                stat.a_first_total += 1
                stat.a_first_successes += int(succeeded)
            else:
                stat.b_first_total += 1
                stat.b_first_successes += int(succeeded)
            a_rate = stat.a_first_successes / stat.a_first_total if stat.a_first_total else None
            b_rate = stat.b_first_successes / stat.b_first_total if stat.b_first_total else None
            if b_rate is None or (a_rate is not None and a_rate >= b_rate):
                stat.a_before_b, stat.success_rate = True, a_rate
            else:
                stat.a_before_b, stat.success_rate = False, b_rate
            pattern.ordering = stat
            return pattern.model_copy(deep=True)

    # ── Helpers & Observability ──────────────────────────────────────────

    def decayed_probability(self, pattern: ConflictPattern, now: datetime | None = None) -> float:
        now = now or self._clock()
        age_days = max((now - pattern.last_seen).total_seconds(), 0.0) / 86_400
        return pattern.probability * 2 ** (-age_days / self.config.half_life_days)

    def risk_level(self, probability: float) -> RiskLevel:
        if probability < self.config.low_threshold:
            return RiskLevel.LOW
        if probability < self.config.medium_threshold:
            return RiskLevel.MEDIUM
        if probability < self.config.high_threshold:
            return RiskLevel.HIGH
        return RiskLevel.CRITICAL

    def tools_for(self, agent_id: str) -> list[str]:
        if self._capabilities is not None:
            profile = self._capabilities.get_profile(agent_id)
            if profile is not None and profile.tools:
                return list(profile.tools)
        return DEFAULT_AGENT_TOOLS.get(agent_id, [])

    def conflicting_tools(self, agent_a: str, agent_b: str) -> list[tuple[str, str]]:
        tools_b = set(self.tools_for(agent_b))
        return [
            (tool_a, tool_b)
            for tool_a in self.tools_for(agent_a)
            for tool_b in sorted(KNOWN_TOOL_CONFLICTS.get(tool_a, frozenset()) & tools_b)
        ]

    def get_conflict_patterns(self) -> list[ConflictPattern]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._patterns.values()]

    def export_patterns(self) -> list[dict[str, Any]]:
        return [p.model_dump(mode="json") for p in self.get_conflict_patterns()]

    def import_patterns(self, rows: list[dict[str, Any]]) -> int:
        """Load exported patterns; newer observations win over existing ones."""
        loaded = 0
        with self._lock:
            for row in rows:
                pattern = ConflictPattern.model_validate(row)
                key = pair_key(pattern.agent_a, pattern.agent_b)
                existing = self._patterns.get(key)
                if existing is None or existing.last_seen < pattern.last_seen:
                    self._patterns[key] = pattern
                    loaded += 1
            self._evict()
        return loaded

    def _evict(self) -> None:
        while len(self._patterns) > self.config.max_patterns:
            self._patterns.popitem(last=False)
