"""Adaptive plan refinement after an agent failure.

The failure category implies a recovery class (retry, substitute, skip,
alternative path). How boldly that class is applied depends on how much
matching successful history backs it up:

- high confidence: apply the direct substitution / skip / reorder
- medium confidence: build several candidate plans, score each through the
  PlanScorer protocol plus cost/latency estimates, keep the Pareto frontier
  and take the best weighted utility
- low confidence: hybridize with agents that succeeded on different but
  loosely related objectives; flagged exploratory, confidence halved

Already-completed agents are never touched. Removing an agent also removes
every pending agent that declared it as a dependency, unless a replacement
took its slot.
"""

from __future__ import annotations

from collections import Counter

import structlog

from src.app.orchestration.config import RefinerConfig
from src.app.orchestration.interfaces import CapabilityLookup, PlanScorer
from src.app.orchestration.optimizer import ParetoOptimizer, PlanCandidate
from src.app.orchestration.pattern_store import PatternStore
from src.app.orchestration.schemas import (
    ErrorCategory,
    FailureContext,
    PatternMatch,
    ProjectContext,
    RecoveryKind,
    RefinementResult,
    RefinementTier,
)

logger = structlog.get_logger(__name__)


def default_recovery_kind(category: ErrorCategory, non_critical: bool = False) -> tuple[RecoveryKind, float]:
    """Fixed rule table mapping an error category to a recovery kind and confidence."""
    if non_critical:
        return RecoveryKind.SKIP, 0.5
    if category in (ErrorCategory.TRANSIENT_NETWORK, ErrorCategory.TIMEOUT):
        return RecoveryKind.RETRY, 0.6
    if category in (ErrorCategory.CAPABILITY_MISMATCH, ErrorCategory.NOT_FOUND):
        return RecoveryKind.SUBSTITUTE, 0.7
    if category in (ErrorCategory.LOGICAL_UNKNOWN, ErrorCategory.VALIDATION):
        return RecoveryKind.ALTERNATIVE_PATH, 0.65
    return RecoveryKind.RETRY, 0.4


class AdaptivePlanRefiner:
    """Produces a revised agent plan for a failure.

    Args:
        store: Pattern store used for supporting evidence and hybridization.
        scorer: Anything implementing PlanScorer; used to evaluate candidates.
        config: Tier thresholds and candidate limits.
        capabilities: Optional capability lookup for alternative agents.
    """

    def __init__(
        self,
        store: PatternStore,
        scorer: PlanScorer,
        config: RefinerConfig | None = None,
        capabilities: CapabilityLookup | None = None,
    ) -> None:
        self._store = store
        self._scorer = scorer
        self.config = config or RefinerConfig()
        self._capabilities = capabilities
        self._optimizer = ParetoOptimizer(self.config.weights)

    def refine(
        self,
        original_plan: list[str],
        failure: FailureContext,
        objective: str,
        context: ProjectContext | None = None,
        completed: list[str] | None = None,
        dependencies: dict[str, list[str]] | None = None,
        alternatives: list[str] | None = None,
        non_critical: bool = False,
    ) -> RefinementResult:
        """Compute a revised plan for ``failure``.

        Args:
            original_plan: Full current plan, completed agents included.
            failure: Analyzed failure of one pending agent.
            objective: Objective text, used for history lookup and scoring.
            context: Optional project context.
            completed: Agents that already finished and must be preserved.
            dependencies: agent -> agents whose output it consumes.
            alternatives: Candidate replacement agents; looked up if omitted.
            non_critical: Treat the failure as skippable.

        Returns:
            RefinementResult whose ``agents`` start with the completed agents.
        """
        finished = set(completed or [])
        done = [a for a in original_plan if a in finished]
        pending = [a for a in original_plan if a not in finished]
        deps = dependencies or {}
        failed = failure.failed_agent

        kind, _ = default_recovery_kind(failure.error_category, non_critical)
        similar = self._store.find_similar(objective, context, limit=20)
        successes = [m for m in similar if m.pattern.success]
        confidence = self._evidence_confidence(len(successes))
        pool = self._alternatives(failed, alternatives, successes, exclude=set(done) | set(pending))

        if confidence >= self.config.high_confidence:
            tier = RefinementTier.HIGH
            new_pending, removed, added, reasoning = self._direct(kind, pending, failed, failure, deps, pool)
        elif confidence >= self.config.medium_confidence:
            tier = RefinementTier.MEDIUM
            new_pending, removed, added, reasoning = self._best_candidate(
                kind, pending, failed, deps, pool, objective, context
            )
        else:
            tier = RefinementTier.LOW
            new_pending, removed, added, reasoning = self._hybridize(
                kind, pending, failed, failure, deps, pool
            )
            confidence *= self.config.exploratory_penalty

        result = RefinementResult(
            tier=tier,
            strategy=kind,
            agents=done + new_pending,
            removed=removed,
            added=added,
            confidence=round(confidence, 6),
            exploratory=tier == RefinementTier.LOW,
            reasoning=reasoning,
        )
        logger.info(
            "refiner.plan_refined",
            failed_agent=failed,
            tier=tier.value,
            strategy=kind.value,
            supporting_patterns=len(successes),
            removed=removed,
            added=added,
        )
        return result

    # ── Tiers ────────────────────────────────────────────────────────────

    def _direct(
        self,
        kind: RecoveryKind,
        pending: list[str],
        failed: str,
        failure: FailureContext,
        deps: dict[str, list[str]],
        pool: list[str],
    ) -> tuple[list[str], list[str], list[str], str]:
        if kind == RecoveryKind.RETRY:
            plan = _move_prerequisites_first(pending, failed, failure.suggested_fix)
            return plan, [], [], f"Retry {failed}; history strongly supports the current plan"
        if kind == RecoveryKind.SKIP or not pool:
            plan, removed = _remove_with_dependents(pending, failed, deps)
            return plan, removed, [], f"Skip {failed} and anything depending on it"
        replacement = pool[0]
        plan = [replacement if a == failed else a for a in pending]
        return plan, [failed], [replacement], f"Substitute {failed} with {replacement}"

    def _best_candidate(
        self,
        kind: RecoveryKind,
        pending: list[str],
        failed: str,
        deps: dict[str, list[str]],
        pool: list[str],
        objective: str,
        context: ProjectContext | None,
    ) -> tuple[list[str], list[str], list[str], str]:
        variants: list[tuple[list[str], list[str], list[str], str]] = []
        if kind == RecoveryKind.RETRY:
            variants.append((list(pending), [], [], f"retry {failed}"))
        for alt in pool[: self.config.max_candidates]:
            variants.append(
                ([alt if a == failed else a for a in pending], [failed], [alt], f"substitute {failed} -> {alt}")
            )
        skipped, removed = _remove_with_dependents(pending, failed, deps)
        if skipped:
            variants.append((skipped, removed, [], f"skip {failed}"))
        if not variants:
            return [], removed, [], f"No viable candidate plan without {failed}"

        candidates = [self._evaluate(v[0], objective, context, label=str(i)) for i, v in enumerate(variants)]
        best = self._optimizer.select(candidates)
        chosen = variants[int(best.label)] if best is not None else variants[0]
        plan, removed, added, label = chosen
        return plan, removed, added, f"Best of {len(variants)} candidate plans: {label}"

    def _hybridize(
        self,
        kind: RecoveryKind,
        pending: list[str],
        failed: str,
        failure: FailureContext,
        deps: dict[str, list[str]],
        pool: list[str],
    ) -> tuple[list[str], list[str], list[str], str]:
        profile_type = failure.objective_type
        tags = set(failure.tags)
        others = [p for p in self._store.patterns() if p.success and p.objective_type != profile_type]
        related = [p for p in others if tags & set(p.tags)] or others

        usage: Counter[str] = Counter()
        for pattern in related:
            usage.update(set(pattern.agents_used))
        hybrids = [
            a for a, _ in usage.most_common() if a != failed and a not in pending
        ][: self.config.hybrid_agents]

        if not hybrids:
            plan, removed, added, reasoning = self._direct(kind, pending, failed, failure, deps, pool)
            return plan, removed, added, f"Exploratory fallback with no cross-domain history: {reasoning}"

        # Repeatedly failing agents are dropped; otherwise they get another try after the hybrids.
        if failure.similar_failures + 1 >= 2:
            base, removed = _remove_with_dependents(pending, failed, deps, replacement=hybrids[0])
        else:
            base, removed = list(pending), []
        plan = hybrids + [a for a in base if a not in hybrids]
        return plan, removed, hybrids, (
            f"Hybridized with {', '.join(hybrids)} from {len(related)} successful cross-domain patterns"
        )

    # ── Helpers ──────────────────────────────────────────────────────────

    def _evidence_confidence(self, successful_matches: int) -> float:
        if successful_matches == 0:
            return 0.2
        if successful_matches >= self.config.strong_history:
            return 0.9
        return successful_matches / self.config.strong_history

    def _alternatives(
        self,
        failed: str,
        explicit: list[str] | None,
        successes: list[PatternMatch],
        exclude: set[str],
    ) -> list[str]:
        pool: list[str] = list(explicit or [])
        if not pool and self._capabilities is not None:
            pool = list(self._capabilities.find_alternatives(failed))
        if not pool:
            usage: Counter[str] = Counter()
            for match in successes:
                usage.update(set(match.pattern.agents_used))
            pool = [a for a, _ in usage.most_common()]
        return [a for a in dict.fromkeys(pool) if a != failed and a not in exclude]

    def _evaluate(
        self,
        agents: list[str],
        objective: str,
        context: ProjectContext | None,
        label: str,
    ) -> PlanCandidate:
        scores = self._scorer.score_agents(agents, objective, context) if agents else []
        accuracy = sum(s.score for s in scores) / len(scores) if scores else 0.0
        tokens = sum(
            s.historical_performance.avg_tokens or self.config.default_agent_tokens for s in scores
        )
        return PlanCandidate(
            agents=agents,
            accuracy=min(max(accuracy, 0.0), 1.0),
            estimated_tokens=int(tokens),
            estimated_duration_ms=len(agents) * self.config.default_agent_duration_ms,
            label=label,
        )


def _remove_with_dependents(
    pending: list[str],
    agent_id: str,
    deps: dict[str, list[str]],
    replacement: str | None = None,
) -> tuple[list[str], list[str]]:
    """Drop ``agent_id``; dependents go too unless a replacement takes over."""
    if replacement is not None:
        return [replacement if a == agent_id else a for a in pending if a != replacement], [agent_id]
    removed = {agent_id}
    changed = True
    while changed:
        changed = False
        for agent in pending:
            if agent not in removed and removed & set(deps.get(agent, [])):
                removed.add(agent)
                changed = True
    return [a for a in pending if a not in removed], [a for a in pending if a in removed]


def _move_prerequisites_first(pending: list[str], failed: str, prerequisites: list[str]) -> list[str]:
    if failed not in pending:
        return list(pending)
    movable = [a for a in prerequisites if a in pending and pending.index(a) > pending.index(failed)]
    if not movable:
        return list(pending)
    rest = [a for a in pending if a not in movable]
    index = rest.index(failed)
    return rest[:index] + movable + rest[index:]
