"""In-memory pattern store: execution memory, failure log and similarity index.

ExecutionPatterns are appended, vectorized by the FeatureExtractor and
inserted into a KDTree. Rolling aggregates (success rate, average cost,
per-agent usage, error histogram) cover the retention window and are kept
incrementally: recording adds a pattern's contribution, expiry subtracts
it, nothing rescans the full history.

find_similar() over-fetches spatial neighbors and re-ranks them with a
blended similarity (objective type, tag Jaccard, project match, text
overlap) plus a small recency bonus.

All mutation goes through one RLock; readers get copies.
"""

from __future__ import annotations

import bisect
import re
import threading
from collections import Counter
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import structlog
from pydantic import BaseModel, Field

from src.app.orchestration.config import PatternStoreConfig
from src.app.orchestration.features import (
    FeatureExtractor,
    KeywordObjectiveClassifier,
    categories_match,
)
from src.app.orchestration.interfaces import KnowledgeStore, ObjectiveClassifier
from src.app.orchestration.kdtree import KDTree
from src.app.orchestration.schemas import (
    ErrorCategory,
    ExecutionPattern,
    FailureContext,
    ObjectiveProfile,
    PatternMatch,
    PatternMatchFactors,
    ProjectContext,
)

logger = structlog.get_logger(__name__)

PATTERN_NAMESPACE = "execution_patterns"

_WORD_RE = re.compile(r"[a-z0-9]+")


class PatternStatistics(BaseModel):
    """Snapshot of the rolling-window aggregates."""

    window_days: int
    total: int = 0
    successes: int = 0
    success_rate: float | None = None
    avg_duration_ms: float = 0.0
    avg_tokens: float = 0.0
    agent_usage: dict[str, int] = Field(default_factory=dict)
    agent_successes: dict[str, int] = Field(default_factory=dict)
    error_histogram: dict[str, int] = Field(default_factory=dict)
    failures_logged: int = 0


class _RollingAggregates:
    """Additive aggregates that support removing a pattern's contribution."""

    def __init__(self) -> None:
        self.total = 0
        self.successes = 0
        self.duration_sum = 0.0
        self.tokens_sum = 0
        self.agent_usage: Counter[str] = Counter()
        self.agent_successes: Counter[str] = Counter()
        self.agent_tokens: Counter[str] = Counter()
        self.error_histogram: Counter[str] = Counter()

    def apply(self, pattern: ExecutionPattern, sign: int) -> None:
        self.total += sign
        self.successes += sign * int(pattern.success)
        self.duration_sum += sign * pattern.duration_ms
        self.tokens_sum += sign * pattern.tokens_used

        per_agent_tokens = _tokens_by_agent(pattern)
        for agent_id in set(pattern.agents_used):
            self.agent_usage[agent_id] += sign
            if pattern.success:
                self.agent_successes[agent_id] += sign
            self.agent_tokens[agent_id] += sign * per_agent_tokens.get(agent_id, 0)
        for category in pattern.error_categories:
            self.error_histogram[category.value] += sign

        # Counter keeps zero entries around after subtraction.
        for counter in (self.agent_usage, self.agent_successes, self.agent_tokens, self.error_histogram):
            for key in [k for k, v in counter.items() if v <= 0]:
                del counter[key]


class PatternStore:
    """Append-only (with pruning) memory of executions and failures.

    Args:
        config: Retention and similarity tuning.
        classifier: Objective classifier for query vectors. Defaults to the
            keyword classifier.
        clock: Returns "now" as an aware datetime. Injectable for tests.
    """

    def __init__(
        self,
        config: PatternStoreConfig | None = None,
        classifier: ObjectiveClassifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or PatternStoreConfig()
        self._classifier = classifier or KeywordObjectiveClassifier()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._extractor = FeatureExtractor(max_tags=self.config.max_tags)
        self._tree = KDTree(self._extractor.dimensions)
        self._lock = threading.RLock()

        self._patterns: dict[str, ExecutionPattern] = {}
        self._vectors: dict[str, list[float]] = {}
        self._failures: list[FailureContext] = []
        # (timestamp, pattern_id) sorted ascending; the aggregate window.
        self._window: list[tuple[datetime, str]] = []
        self._aggregates = _RollingAggregates()

    def __len__(self) -> int:
        return len(self._patterns)

    def now(self) -> datetime:
        """Current time from the injected clock; records created for this store use it."""
        return self._clock()

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.config.retention_days)

    # ── Recording ────────────────────────────────────────────────────────

    def record(self, pattern: ExecutionPattern) -> bool:
        """Append a pattern, index it and fold it into the rolling aggregates.

        Returns:
            False if a pattern with the same id is already stored.
        """
        with self._lock:
            if pattern.pattern_id in self._patterns:
                logger.debug("pattern_store.duplicate_ignored", pattern_id=pattern.pattern_id)
                return False

            vector = self._extractor.extract(pattern)
            self._patterns[pattern.pattern_id] = pattern
            self._vectors[pattern.pattern_id] = vector
            self._tree.insert(vector, pattern.pattern_id)

            now = self._clock()
            if pattern.timestamp >= now - self.retention:
                bisect.insort(self._window, (pattern.timestamp, pattern.pattern_id))
                self._aggregates.apply(pattern, +1)
            self._expire_window(now)

            if len(self._patterns) > self.config.max_patterns:
                self._evict_oldest(len(self._patterns) - self.config.max_patterns)
            elif self._tree.needs_rebalance(self.config.imbalance_factor):
                self._tree.rebuild()
                logger.info("pattern_store.index_rebalanced", size=len(self._tree))

        logger.debug(
            "pattern_store.recorded",
            pattern_id=pattern.pattern_id,
            objective_type=pattern.objective_type,
            success=pattern.success,
            agents=pattern.agents_used,
        )
        return True

    def record_failure(self, failure: FailureContext) -> None:
        with self._lock:
            self._failures.append(failure)

    # ── Queries ──────────────────────────────────────────────────────────

    def find_similar(
        self,
        objective: str,
        context: ProjectContext | None = None,
        limit: int = 10,
        profile: ObjectiveProfile | None = None,
    ) -> list[PatternMatch]:
        """Return up to ``limit`` stored patterns most similar to the objective.

        Args:
            objective: Goal text of the query.
            context: Optional project context of the query.
            limit: Maximum matches returned.
            profile: Pre-computed classification; computed if omitted.

        Returns:
            PatternMatch list sorted by similarity (newest first on ties),
            all at or above the configured similarity threshold.
        """
        if limit <= 0:
            return []
        profile = profile or self._classifier.classify(objective, context)
        project_type = context.project_type if context else None
        now = self._clock()

        with self._lock:
            if not self._patterns:
                return []
            query = self._extractor.query_vector(profile.objective_type, profile.tags, project_type)
            k = min(len(self._patterns), limit * self.config.candidate_multiplier)
            neighbors = self._tree.nearest(query, k)
            candidates = [
                (self._patterns[item_id], self._vectors[item_id]) for item_id, _ in neighbors
            ]

        query_words = _words(objective)
        query_tags = set(profile.tags)
        matches: list[PatternMatch] = []
        for pattern, vector in candidates:
            factors = PatternMatchFactors(
                objective_type_match=categories_match(query[0], vector[0]),
                tag_overlap=_jaccard(query_tags, set(pattern.tags)),
                project_match=project_type is not None and categories_match(query[1], vector[1]),
                text_overlap=_overlap(query_words, _words(pattern.objective)),
            )
            similarity = (
                0.4 * factors.objective_type_match
                + 0.3 * factors.tag_overlap
                + 0.2 * factors.project_match
                + 0.1 * factors.text_overlap
            )
            if similarity > 0:
                age = max((now - pattern.timestamp).total_seconds(), 0.0)
                freshness = max(0.0, 1.0 - age / self.retention.total_seconds())
                factors.recency_bonus = round(self.config.recency_bonus * freshness, 6)
                similarity += factors.recency_bonus
            similarity = min(similarity, 1.0)
            if similarity >= self.config.similarity_threshold:
                matches.append(PatternMatch(pattern=pattern, similarity=similarity, factors=factors))

        matches.sort(key=lambda m: (m.similarity, m.pattern.timestamp), reverse=True)
        return matches[:limit]

    def find_failures(
        self,
        agent_id: str | None = None,
        category: ErrorCategory | None = None,
        project_type: str | None = None,
    ) -> list[FailureContext]:
        with self._lock:
            failures = list(self._failures)
        return [
            f
            for f in failures
            if (agent_id is None or f.failed_agent == agent_id)
            and (category is None or f.error_category == category)
            and (project_type is None or f.project_type == project_type)
        ]

    def patterns(self) -> list[ExecutionPattern]:
        with self._lock:
            return list(self._patterns.values())

    def get(self, pattern_id: str) -> ExecutionPattern | None:
        with self._lock:
            return self._patterns.get(pattern_id)

    def agent_stats(self, agent_id: str) -> tuple[int, int, float]:
        """Rolling (uses, successes, avg_tokens) for one agent."""
        with self._lock:
            uses = self._aggregates.agent_usage.get(agent_id, 0)
            successes = self._aggregates.agent_successes.get(agent_id, 0)
            tokens = self._aggregates.agent_tokens.get(agent_id, 0)
        return uses, successes, (tokens / uses if uses else 0.0)

    def global_success_rate(self) -> float | None:
        with self._lock:
            if not self._patterns:
                return None
            successes = sum(1 for p in self._patterns.values() if p.success)
            return successes / len(self._patterns)

    def statistics(self) -> PatternStatistics:
        with self._lock:
            self._expire_window(self._clock())
            agg = self._aggregates
            return PatternStatistics(
                window_days=self.config.retention_days,
                total=agg.total,
                successes=agg.successes,
                success_rate=(agg.successes / agg.total) if agg.total else None,
                avg_duration_ms=(agg.duration_sum / agg.total) if agg.total else 0.0,
                avg_tokens=(agg.tokens_sum / agg.total) if agg.total else 0.0,
                agent_usage=dict(agg.agent_usage),
                agent_successes=dict(agg.agent_successes),
                error_histogram=dict(agg.error_histogram),
                failures_logged=len(self._failures),
            )

    # ── Maintenance ──────────────────────────────────────────────────────

    def prune_old(self) -> int:
        """Drop patterns and failures older than the retention window.

        Returns:
            Number of patterns and failures removed.
        """
        now = self._clock()
        cutoff = now - self.retention
        with self._lock:
            self._expire_window(now)
            expired = [pid for pid, p in self._patterns.items() if p.timestamp < cutoff]
            for pattern_id in expired:
                del self._patterns[pattern_id]
                del self._vectors[pattern_id]
            before_failures = len(self._failures)
            self._failures = [f for f in self._failures if f.timestamp >= cutoff]
            removed_failures = before_failures - len(self._failures)
            if expired:
                self._tree.build([(self._vectors[pid], pid) for pid in self._patterns])

        if expired or removed_failures:
            logger.info(
                "pattern_store.pruned",
                patterns_removed=len(expired),
                failures_removed=removed_failures,
                remaining=len(self._patterns),
            )
        return len(expired) + removed_failures

    async def hydrate(self, store: KnowledgeStore, query: str = "", limit: int = 1000) -> int:
        """Load cross-session patterns from the knowledge store.

        Degrades to an empty load when the store is unavailable.
        """
        try:
            rows = await store.search(PATTERN_NAMESPACE, query, limit=limit)
        except Exception:
            logger.warning("pattern_store.hydrate_failed", exc_info=True)
            return 0

        loaded = 0
        for row in rows:
            try:
                pattern = ExecutionPattern.model_validate(row)
            except ValueError:
                logger.warning("pattern_store.hydrate_invalid_row", exc_info=True)
                continue
            if self.record(pattern):
                loaded += 1
        logger.info("pattern_store.hydrated", loaded=loaded, fetched=len(rows))
        return loaded

    def _expire_window(self, now: datetime) -> None:
        cutoff = now - self.retention
        while self._window and self._window[0][0] < cutoff:
            _, pattern_id = self._window.pop(0)
            pattern = self._patterns.get(pattern_id)
            if pattern is not None:
                self._aggregates.apply(pattern, -1)

    def _evict_oldest(self, count: int) -> None:
        oldest = sorted(self._patterns.values(), key=lambda p: p.timestamp)[:count]
        for pattern in oldest:
            del self._patterns[pattern.pattern_id]
            del self._vectors[pattern.pattern_id]
            entry = (pattern.timestamp, pattern.pattern_id)
            index = bisect.bisect_left(self._window, entry)
            if index < len(self._window) and self._window[index] == entry:
                self._window.pop(index)
                self._aggregates.apply(pattern, -1)
        self._tree.build([(self._vectors[pid], pid) for pid in self._patterns])
        logger.info("pattern_store.capacity_evicted", evicted=len(oldest))


def _tokens_by_agent(pattern: ExecutionPattern) -> dict[str, int]:
    if pattern.agent_results:
        tokens: Counter[str] = Counter()
        for result in pattern.agent_results:
            tokens[result.agent_id] += result.tokens_used
        return dict(tokens)
    if not pattern.agents_used:
        return {}
    share = pattern.tokens_used // len(set(pattern.agents_used))
    return {agent_id: share for agent_id in pattern.agents_used}


def _words(text: str) -> set[str]:
    return {w for w in _WORD_RE.findall(text.lower()) if len(w) > 2}


def _jaccard(a: set[str], b: set[str]) -> float:
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)


def _overlap(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / max(len(a), len(b))
