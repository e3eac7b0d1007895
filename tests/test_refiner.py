"""Tests for the adaptive plan refiner.

Covers:
- Fixed recovery rule table per error category
- High tier: direct substitution from successful history
- High tier retry moves suggested prerequisites ahead of the failed agent
- Medium tier: Pareto selection among candidate plans
- Low tier: cross-domain hybridization, exploratory and confidence-halved
- Skip removes dependents; completed agents are never touched
"""

from __future__ import annotations

import pytest

from src.app.orchestration.pattern_store import PatternStore
from src.app.orchestration.refiner import AdaptivePlanRefiner, default_recovery_kind
from src.app.orchestration.schemas import (
    ErrorCategory,
    FailureContext,
    RecoveryKind,
    RefinementTier,
)
from src.app.orchestration.scorer import PredictiveScorer

OBJECTIVE = "implement login api"


# ── Helpers ──────────────────────────────────────────────────────────────────


def _make_refiner(clock, patterns=(), alternatives=None):
    store = PatternStore(clock=clock)
    for pattern in patterns:
        store.record(pattern)
    return AdaptivePlanRefiner(store, PredictiveScorer(store), capabilities=alternatives)


def _make_failure(agent: str, category: ErrorCategory, **kwargs) -> FailureContext:
    return FailureContext(
        failed_agent=agent,
        error_message=category.value,
        error_category=category,
        objective=OBJECTIVE,
        objective_type="implement",
        tags=["api", "auth"],
        **kwargs,
    )


class StubCapabilities:
    def __init__(self, alternatives: dict[str, list[str]]) -> None:
        self._alternatives = alternatives

    def get_profile(self, agent_id):
        return None

    def find_alternatives(self, agent_id):
        return list(self._alternatives.get(agent_id, []))

    def list_agent_ids(self):
        return sorted({a for alts in self._alternatives.values() for a in alts} | set(self._alternatives))


# ── Rule Table ───────────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "category, kind",
    [
        (ErrorCategory.TIMEOUT, RecoveryKind.RETRY),
        (ErrorCategory.TRANSIENT_NETWORK, RecoveryKind.RETRY),
        (ErrorCategory.NOT_FOUND, RecoveryKind.SUBSTITUTE),
        (ErrorCategory.CAPABILITY_MISMATCH, RecoveryKind.SUBSTITUTE),
        (ErrorCategory.VALIDATION, RecoveryKind.ALTERNATIVE_PATH),
        (ErrorCategory.LOGICAL_UNKNOWN, RecoveryKind.ALTERNATIVE_PATH),
    ],
)
def test_default_recovery_kind(category, kind):
    assert default_recovery_kind(category)[0] == kind
    assert default_recovery_kind(category, non_critical=True) == (RecoveryKind.SKIP, 0.5)


# ── Tiers ────────────────────────────────────────────────────────────────────


def test_high_confidence_substitutes_from_history(clock, make_pattern):
    history = [make_pattern(agents=["the_architect", "hollowed_eyes"]) for _ in range(5)]
    refiner = _make_refiner(clock, history)

    result = refiner.refine(
        ["the_architect", "loveless", "the_scribe"],
        _make_failure("loveless", ErrorCategory.NOT_FOUND),
        OBJECTIVE,
        completed=["the_architect"],
    )
    assert result.tier == RefinementTier.HIGH
    assert result.strategy == RecoveryKind.SUBSTITUTE
    assert result.agents == ["the_architect", "hollowed_eyes", "the_scribe"]
    assert result.removed == ["loveless"]
    assert result.added == ["hollowed_eyes"]
    assert result.confidence == pytest.approx(0.9)
    assert not result.exploratory


def test_high_confidence_retry_moves_prerequisites_first(clock, make_pattern):
    refiner = _make_refiner(clock, [make_pattern() for _ in range(5)])
    failure = _make_failure("loveless", ErrorCategory.TIMEOUT, suggested_fix=["the_architect"])

    result = refiner.refine(["loveless", "the_architect"], failure, OBJECTIVE)
    assert result.strategy == RecoveryKind.RETRY
    assert result.agents == ["the_architect", "loveless"]


def test_medium_confidence_picks_a_candidate_plan(clock, make_pattern):
    history = [make_pattern(agents=["hollowed_eyes"]) for _ in range(2)]
    refiner = _make_refiner(clock, history, StubCapabilities({"loveless": ["the_sentinel", "the_didact"]}))

    result = refiner.refine(
        ["hollowed_eyes", "loveless", "the_scribe"],
        _make_failure("loveless", ErrorCategory.CAPABILITY_MISMATCH),
        OBJECTIVE,
        completed=["hollowed_eyes"],
    )
    assert result.tier == RefinementTier.MEDIUM
    assert result.confidence == pytest.approx(0.4)
    assert result.reasoning.startswith("Best of 3 candidate plans")
    assert result.agents[0] == "hollowed_eyes"
    assert "loveless" not in result.agents


def test_low_confidence_hybridizes_with_cross_domain_agents(clock, make_pattern):
    history = [
        make_pattern(objective="deploy api", objective_type="deploy", agents=["the_sentinel"], tags=["api"])
    ]
    refiner = _make_refiner(clock, history)

    result = refiner.refine(
        ["the_architect", "loveless"],
        _make_failure("loveless", ErrorCategory.LOGICAL_UNKNOWN),
        OBJECTIVE,
        completed=["the_architect"],
    )
    assert result.tier == RefinementTier.LOW
    assert result.exploratory
    assert result.confidence == pytest.approx(0.1)
    assert result.agents == ["the_architect", "the_sentinel", "loveless"]
    assert result.added == ["the_sentinel"]


def test_repeat_offender_is_replaced_by_hybrid(clock, make_pattern):
    history = [
        make_pattern(objective="deploy api", objective_type="deploy", agents=["the_sentinel"], tags=["api"])
    ]
    refiner = _make_refiner(clock, history)
    failure = _make_failure("loveless", ErrorCategory.LOGICAL_UNKNOWN, similar_failures=2)

    result = refiner.refine(["loveless", "the_scribe"], failure, OBJECTIVE)
    assert result.agents == ["the_sentinel", "the_scribe"]
    assert result.removed == ["loveless"]


def test_skip_removes_dependents_but_keeps_completed(clock):
    refiner = _make_refiner(clock)
    result = refiner.refine(
        ["the_architect", "hollowed_eyes", "loveless", "the_scribe"],
        _make_failure("hollowed_eyes", ErrorCategory.VALIDATION),
        OBJECTIVE,
        completed=["the_architect"],
        dependencies={"loveless": ["hollowed_eyes"]},
        non_critical=True,
    )
    assert result.strategy == RecoveryKind.SKIP
    assert result.agents == ["the_architect", "the_scribe"]
    assert result.removed == ["hollowed_eyes", "loveless"]
