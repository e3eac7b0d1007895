"""Failure classification, analysis and cascade chain detection.

ErrorClassifier maps free-text errors onto the closed ErrorCategory set with
ordered rules, most specific first, and separately assigns a finer-grained
signature (missing_dependency, compilation_error, test_failure, ...) used to
recognise cascades.

FailureAnalyzer turns one agent failure into a FailureContext, learning the
avoidance rule and suggested prerequisite agents from earlier failures of
the same (agent, category).

FailureChainDetector links failures that land within a sliding window and
are judged related by a pluggable ChainRelatednessStrategy. Detection is
fail-open: an error inside a strategy is logged and the failure is treated
as unchained.
"""

from __future__ import annotations

import re
import threading
from collections import Counter, deque
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Protocol

import structlog

from src.app.orchestration.config import ChainConfig
from src.app.orchestration.errors import UnknownChainError
from src.app.orchestration.pattern_store import PatternStore
from src.app.orchestration.schemas import (
    ChainStatus,
    ErrorCategory,
    FailureChain,
    FailureContext,
    ProjectContext,
)

logger = structlog.get_logger(__name__)


# ── Classification ───────────────────────────────────────────────────────────


class ErrorClassifier:
    """Ordered regex rules over error text."""

    CATEGORY_RULES: list[tuple[ErrorCategory, re.Pattern[str]]] = [
        (ErrorCategory.TIMEOUT, re.compile(r"time(d)?\s?out|deadline exceeded", re.IGNORECASE)),
        (
            ErrorCategory.NOT_FOUND,
            re.compile(r"not found|does not exist|no such file|enoent|\b404\b|cannot find", re.IGNORECASE),
        ),
        (
            ErrorCategory.CAPABILITY_MISMATCH,
            re.compile(r"capabilit|cannot perform|not supported|unsupported|not capable", re.IGNORECASE),
        ),
        (ErrorCategory.VALIDATION, re.compile(r"validation|invalid|malformed|schema", re.IGNORECASE)),
        (
            ErrorCategory.TRANSIENT_NETWORK,
            re.compile(
                r"network|connection|econnreset|econnrefused|rate limit|\b429\b|\b503\b|"
                r"temporarily unavailable",
                re.IGNORECASE,
            ),
        ),
    ]

    NON_CRITICAL = re.compile(r"warning|non-?critical|deprecat", re.IGNORECASE)

    SIGNATURE_RULES: list[tuple[str, re.Pattern[str]]] = [
        (
            "missing_dependency",
            re.compile(
                r"cannot find module|module not found|no module named|not installed|"
                r"missing.*dependenc|importerror",
                re.IGNORECASE,
            ),
        ),
        ("syntax_error", re.compile(r"syntax\s?error|unexpected token|parse error", re.IGNORECASE)),
        ("compilation_error", re.compile(r"compil\w*\s+(error|failed)|build failed", re.IGNORECASE)),
        ("type_error", re.compile(r"type\s?error|is not a function|cannot read prop", re.IGNORECASE)),
        ("test_failure", re.compile(r"tests? fail|assertion|failing test|expected .* but", re.IGNORECASE)),
        ("authentication_error", re.compile(r"unauthori[sz]ed|\b401\b|invalid token|auth\w* fail", re.IGNORECASE)),
        ("permission_error", re.compile(r"permission denied|access denied|eacces|eperm|\b403\b", re.IGNORECASE)),
        ("rate_limit", re.compile(r"rate limit|too many requests|\b429\b|quota exceeded", re.IGNORECASE)),
        ("timeout", re.compile(r"time(d)?\s?out", re.IGNORECASE)),
        ("network_error", re.compile(r"network|connection|econn", re.IGNORECASE)),
        ("database_error", re.compile(r"database|\bsql\b|query failed", re.IGNORECASE)),
        ("configuration_error", re.compile(r"config|environment variable|env var", re.IGNORECASE)),
        ("resource_exhausted", re.compile(r"out of memory|\boom\b|disk full|resource exhausted", re.IGNORECASE)),
        ("not_found", re.compile(r"not found|does not exist", re.IGNORECASE)),
    ]

    def classify(self, error: str | None) -> ErrorCategory:
        text = error or ""
        for category, pattern in self.CATEGORY_RULES:
            if pattern.search(text):
                return category
        return ErrorCategory.LOGICAL_UNKNOWN

    def signature(self, error: str | None) -> str:
        text = error or ""
        for name, pattern in self.SIGNATURE_RULES:
            if pattern.search(text):
                return name
        return "unknown"

    def is_non_critical(self, error: str | None) -> bool:
        return bool(self.NON_CRITICAL.search(error or ""))


# ── Analysis ─────────────────────────────────────────────────────────────────


class FailureAnalyzer:
    """Builds FailureContexts and feeds the chain detector.

    Args:
        store: Pattern store holding the failure log.
        classifier: Error classifier; defaults to ErrorClassifier().
        chain_detector: Optional detector notified of every analyzed failure.
    """

    CONSISTENT_FAILURES = 3

    def __init__(
        self,
        store: PatternStore,
        classifier: ErrorClassifier | None = None,
        chain_detector: FailureChainDetector | None = None,
    ) -> None:
        self._store = store
        self.classifier = classifier or ErrorClassifier()
        self.chain_detector = chain_detector

    def analyze_failure(
        self,
        agent_id: str,
        error: str,
        objective: str = "",
        objective_type: str = "general",
        tags: list[str] | None = None,
        context: ProjectContext | None = None,
        preceding_agents: list[str] | None = None,
    ) -> FailureContext:
        """Classify a failure and learn from prior failures of the same kind.

        The resulting FailureContext is appended to the pattern store's
        failure log and offered to the chain detector.
        """
        category = self.classifier.classify(error)
        preceding = list(preceding_agents or [])
        prior = self._store.find_failures(agent_id=agent_id, category=category)
        count = len(prior)

        if count >= self.CONSISTENT_FAILURES:
            rule = (
                f"{agent_id} consistently fails with {category.value} "
                f"({count} prior failures); avoid it for {objective_type} objectives"
            )
        elif count:
            rule = f"{agent_id} failed with {category.value} {count} time(s) before; schedule prerequisites first"
        else:
            rule = f"Monitor {agent_id} for repeated {category.value} failures"

        usage: Counter[str] = Counter()
        sequences: Counter[tuple[str, ...]] = Counter()
        for failure in prior:
            usage.update(set(failure.preceding_agents))
            if failure.preceding_agents:
                sequences[tuple(failure.preceding_agents)] += 1
        suggested = [
            a for a, seen in usage.most_common() if seen > count / 2 and a not in preceding and a != agent_id
        ]
        common_sequence = list(sequences.most_common(1)[0][0]) if sequences else []

        failure = FailureContext(
            failed_agent=agent_id,
            error_message=error,
            error_category=category,
            error_signature=self.classifier.signature(error),
            objective=objective,
            objective_type=objective_type,
            tags=list(tags or []),
            project_type=context.project_type if context else None,
            preceding_agents=preceding,
            avoidance_rule=rule,
            suggested_fix=suggested,
            common_preceding_sequence=common_sequence,
            similar_failures=count,
            confidence=min(0.5 + 0.1 * count, 0.95),
            timestamp=self._store.now(),
        )
        self._store.record_failure(failure)
        if self.chain_detector is not None:
            self.chain_detector.observe(failure)

        logger.info(
            "failures.analyzed",
            agent_id=agent_id,
            category=category.value,
            signature=failure.error_signature,
            similar_failures=count,
        )
        return failure


# ── Chains ───────────────────────────────────────────────────────────────────


class ChainRelatednessStrategy(Protocol):
    """Decides whether a later failure continues an earlier one.

    Returns a short pattern string naming the relation, or None.
    """

    def related(self, earlier: FailureContext, later: FailureContext) -> str | None: ...


class DefaultChainRelatedness:
    """Same objective type, shared tags, or a known cascading signature pair."""

    CASCADES: frozenset[tuple[str, str]] = frozenset(
        {
            ("missing_dependency", "compilation_error"),
            ("missing_dependency", "test_failure"),
            ("missing_dependency", "type_error"),
            ("compilation_error", "test_failure"),
            ("syntax_error", "compilation_error"),
            ("type_error", "test_failure"),
            ("configuration_error", "database_error"),
            ("authentication_error", "permission_error"),
            ("network_error", "timeout"),
        }
    )

    def __init__(self, cascades: frozenset[tuple[str, str]] | None = None) -> None:
        self.cascades = cascades if cascades is not None else self.CASCADES

    def related(self, earlier: FailureContext, later: FailureContext) -> str | None:
        pair = (earlier.error_signature, later.error_signature)
        if pair in self.cascades:
            return f"cascade:{pair[0]}->{pair[1]}"
        if earlier.objective_type == later.objective_type:
            return f"objective_type:{later.objective_type}"
        shared = sorted(set(earlier.tags) & set(later.tags))
        if shared:
            return "shared_tags:" + ",".join(shared)
        return None


class FailureChainDetector:
    """Sliding-window detector that groups related failures into chains."""

    def __init__(
        self,
        config: ChainConfig | None = None,
        strategy: ChainRelatednessStrategy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or ChainConfig()
        self.strategy: ChainRelatednessStrategy = strategy or DefaultChainRelatedness()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()
        self._recent: deque[FailureContext] = deque()
        self._chains: dict[str, FailureChain] = {}
        self._active: set[str] = set()
        self._chain_of: dict[str, str] = {}

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.config.window_seconds)

    def observe(self, failure: FailureContext) -> FailureChain | None:
        """Link a new failure into a chain if it relates to a recent one."""
        try:
            return self._observe(failure)
        except Exception:
            logger.warning("chains.detection_failed", failure_id=failure.failure_id, exc_info=True)
            return None

    def _observe(self, failure: FailureContext) -> FailureChain | None:
        with self._lock:
            self._evict(self._clock())
            chain: FailureChain | None = None
            for earlier in reversed(self._recent):
                reason = self.strategy.related(earlier, failure)
                if reason is None:
                    continue
                chain_id = self._chain_of.get(earlier.failure_id)
                if chain_id in self._active:
                    chain = self._chains[chain_id]
                    chain.failures.append(failure)
                    chain.updated_at = failure.timestamp
                else:
                    chain = self._open_chain(reason, [earlier, failure])
                self._chain_of[failure.failure_id] = chain.chain_id
                break
            self._recent.append(failure)

        if chain is not None:
            logger.info(
                "chains.failure_linked",
                chain_id=chain.chain_id,
                pattern=chain.pattern,
                length=len(chain.failures),
            )
        return chain

    def resolve_chain(self, chain_id: str, note: str) -> FailureChain:
        """Mark a chain resolved.

        Raises:
            UnknownChainError: If the chain id was never opened.
        """
        with self._lock:
            chain = self._chains.get(chain_id)
            if chain is None:
                raise UnknownChainError(chain_id)
            chain.status = ChainStatus.RESOLVED
            chain.resolution = note
            chain.updated_at = self._clock()
            self._active.discard(chain_id)
        logger.info("chains.resolved", chain_id=chain_id, note=note)
        return chain

    def get_chain(self, chain_id: str) -> FailureChain | None:
        with self._lock:
            chain = self._chains.get(chain_id)
            return chain.model_copy(deep=True) if chain else None

    def active_chains(self) -> list[FailureChain]:
        with self._lock:
            self._evict(self._clock())
            return [self._chains[cid].model_copy(deep=True) for cid in self._active]

    def unresolved_chains(self) -> list[FailureChain]:
        """All open chains, including ones that aged out of the active window."""
        with self._lock:
            return [
                c.model_copy(deep=True) for c in self._chains.values() if c.status == ChainStatus.OPEN
            ]

    def _open_chain(self, reason: str, failures: list[FailureContext]) -> FailureChain:
        chain = FailureChain(pattern=reason, failures=failures, updated_at=failures[-1].timestamp)
        self._chains[chain.chain_id] = chain
        self._active.add(chain.chain_id)
        for f in failures:
            self._chain_of[f.failure_id] = chain.chain_id

        while len(self._chains) > self.config.max_history:
            oldest_id = next(iter(self._chains))
            self._chains.pop(oldest_id)
            self._active.discard(oldest_id)
        return chain

    def _evict(self, now: datetime) -> None:
        cutoff = now - self.window
        while self._recent and self._recent[0].timestamp < cutoff:
            stale = self._recent.popleft()
            self._chain_of.pop(stale.failure_id, None)
        for chain_id in [cid for cid in self._active if self._chains[cid].updated_at < cutoff]:
            self._active.discard(chain_id)
