"""Tests for error classification, failure analysis and failure chains.

Covers:
- Ordered category rules and the logical_unknown fallback
- Finer-grained error signatures and non-critical detection
- Avoidance rules and suggested prerequisites learned from prior failures
- Analyzed failures stamped by the store clock so chain windows expire
- Cascade, objective-type and shared-tag chain linking
- Sliding-window expiry of chain candidates
- Chain resolution and UnknownChainError
- Fail-open behavior when a relatedness strategy raises
"""

from __future__ import annotations

import pytest

from src.app.orchestration.config import ChainConfig
from src.app.orchestration.errors import UnknownChainError
from src.app.orchestration.failures import (
    DefaultChainRelatedness,
    ErrorClassifier,
    FailureAnalyzer,
    FailureChainDetector,
)
from src.app.orchestration.pattern_store import PatternStore
from src.app.orchestration.schemas import ChainStatus, ErrorCategory, FailureContext


# ── Helpers ──────────────────────────────────────────────────────────────────


def _make_failure(
    clock,
    agent: str = "hollowed_eyes",
    signature: str = "unknown",
    objective_type: str = "implement",
    tags: list[str] | None = None,
) -> FailureContext:
    return FailureContext(
        failed_agent=agent,
        error_message=f"{signature} happened",
        error_category=ErrorCategory.LOGICAL_UNKNOWN,
        error_signature=signature,
        objective_type=objective_type,
        tags=tags or [],
        timestamp=clock(),
    )


class ExplodingRelatedness:
    def related(self, earlier, later):
        raise RuntimeError("strategy bug")


# ── Classification ───────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "error, category",
    [
        ("Request timed out after 30s", ErrorCategory.TIMEOUT),
        ("deadline exceeded", ErrorCategory.TIMEOUT),
        ("Agent not found: the_scribe", ErrorCategory.NOT_FOUND),
        ("operation not supported by this agent", ErrorCategory.CAPABILITY_MISMATCH),
        ("invalid payload shape", ErrorCategory.VALIDATION),
        ("connection reset by peer", ErrorCategory.TRANSIENT_NETWORK),
        ("HTTP 503 temporarily unavailable", ErrorCategory.TRANSIENT_NETWORK),
        ("the answer was wrong", ErrorCategory.LOGICAL_UNKNOWN),
        ("", ErrorCategory.LOGICAL_UNKNOWN),
    ],
)
def test_classify(error, category):
    assert ErrorClassifier().classify(error) == category


def test_timeout_outranks_network_when_both_match():
    assert ErrorClassifier().classify("network timeout") == ErrorCategory.TIMEOUT


def test_signatures_and_non_critical():
    classifier = ErrorClassifier()
    assert classifier.signature("Error: Cannot find module 'react'") == "missing_dependency"
    assert classifier.signature("Build failed with 3 errors") == "compilation_error"
    assert classifier.signature("2 tests failed") == "test_failure"
    assert classifier.signature(None) == "unknown"
    assert classifier.is_non_critical("Warning: deprecated option")
    assert not classifier.is_non_critical("fatal: segfault")


# ── Analysis ─────────────────────────────────────────────────────────────────


def test_first_failure_gets_monitor_rule(clock):
    store = PatternStore(clock=clock)
    failure = FailureAnalyzer(store).analyze_failure("loveless", "Request timed out")
    assert failure.error_category == ErrorCategory.TIMEOUT
    assert failure.similar_failures == 0
    assert failure.avoidance_rule.startswith("Monitor loveless")
    assert store.find_failures(agent_id="loveless") == [failure]


def test_repeated_failures_learn_prerequisites(clock):
    store = PatternStore(clock=clock)
    analyzer = FailureAnalyzer(store)
    for _ in range(3):
        analyzer.analyze_failure("loveless", "2 tests failed: invalid fixture", preceding_agents=["the_architect"])

    failure = analyzer.analyze_failure("loveless", "invalid fixture again", objective_type="fix")
    assert failure.similar_failures == 3
    assert "consistently fails" in failure.avoidance_rule
    assert failure.suggested_fix == ["the_architect"]
    assert failure.common_preceding_sequence == ["the_architect"]
    assert failure.confidence == pytest.approx(0.8)


def test_analyzer_feeds_chain_detector(clock):
    detector = FailureChainDetector(clock=clock)
    analyzer = FailureAnalyzer(PatternStore(clock=clock), chain_detector=detector)
    analyzer.analyze_failure("the_curator", "npm ERR! Cannot find module 'left-pad'", objective_type="implement")
    analyzer.analyze_failure("loveless", "3 tests failed", objective_type="test")
    assert len(detector.unresolved_chains()) == 1


def test_analyzed_failures_follow_the_store_clock(clock):
    detector = FailureChainDetector(ChainConfig(window_seconds=300), clock=clock)
    analyzer = FailureAnalyzer(PatternStore(clock=clock), chain_detector=detector)

    first = analyzer.analyze_failure("the_curator", "npm ERR! Cannot find module 'left-pad'", objective_type="implement")
    assert first.timestamp == clock()

    clock.advance(seconds=301)
    second = analyzer.analyze_failure("loveless", "3 tests failed", objective_type="test")
    assert second.timestamp == clock()
    assert detector.unresolved_chains() == []


# ── Chains ───────────────────────────────────────────────────────────────────


def test_known_cascade_links_unrelated_objectives(clock):
    detector = FailureChainDetector(clock=clock)
    assert detector.observe(_make_failure(clock, signature="missing_dependency", objective_type="implement")) is None
    chain = detector.observe(_make_failure(clock, signature="compilation_error", objective_type="deploy"))

    assert chain is not None
    assert chain.pattern == "cascade:missing_dependency->compilation_error"
    assert len(chain.failures) == 2


def test_later_failures_extend_the_same_chain(clock):
    detector = FailureChainDetector(clock=clock)
    first = detector.observe(_make_failure(clock))
    second = detector.observe(_make_failure(clock, agent="loveless"))
    clock.advance(seconds=60)
    third = detector.observe(_make_failure(clock, agent="the_sentinel"))

    assert first is None
    assert second is not None and third is not None
    assert third.chain_id == second.chain_id
    assert len(third.failures) == 3


def test_shared_tags_link_different_objective_types(clock):
    relatedness = DefaultChainRelatedness()
    a = _make_failure(clock, objective_type="implement", tags=["api", "auth"])
    b = _make_failure(clock, objective_type="deploy", tags=["auth"])
    assert relatedness.related(a, b) == "shared_tags:auth"
    assert relatedness.related(a, _make_failure(clock, objective_type="deploy", tags=["docs"])) is None


def test_failures_outside_window_do_not_chain(clock):
    detector = FailureChainDetector(ChainConfig(window_seconds=300), clock=clock)
    detector.observe(_make_failure(clock))
    clock.advance(seconds=301)
    assert detector.observe(_make_failure(clock)) is None
    assert detector.unresolved_chains() == []


def test_resolve_chain(clock):
    detector = FailureChainDetector(clock=clock)
    detector.observe(_make_failure(clock))
    chain = detector.observe(_make_failure(clock))

    resolved = detector.resolve_chain(chain.chain_id, "pinned dependency versions")
    assert resolved.status == ChainStatus.RESOLVED
    assert resolved.resolution == "pinned dependency versions"
    assert detector.unresolved_chains() == []
    assert detector.active_chains() == []

    # New related failures open a fresh chain rather than reopening it.
    reopened = detector.observe(_make_failure(clock))
    assert reopened is not None and reopened.chain_id != chain.chain_id


def test_resolve_unknown_chain_raises(clock):
    with pytest.raises(UnknownChainError):
        FailureChainDetector(clock=clock).resolve_chain("nope", "n/a")


def test_detection_is_fail_open(clock):
    detector = FailureChainDetector(strategy=ExplodingRelatedness(), clock=clock)
    detector.observe(_make_failure(clock))
    assert detector.observe(_make_failure(clock)) is None
    assert detector.unresolved_chains() == []
