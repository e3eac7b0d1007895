"""Objective typing and feature extraction for pattern similarity.

KeywordObjectiveClassifier turns goal text into an objective type and a
small tag set using ordered keyword rules (first match wins for the type).
FeatureExtractor maps a pattern or query onto a fixed-length vector:

    slot 0      objective type id (assigned on first sighting)
    slot 1      project type id ("unknown" when absent)
    slots 2..N  multi-hot over the first N-2 distinct tags ever seen

Query vectors never register new categories: unseen values map to the
sentinel -1 so they cannot coincide with a stored id.
"""

from __future__ import annotations

import re

from src.app.orchestration.schemas import ExecutionPattern, ObjectiveProfile, ProjectContext

SENTINEL = -1.0
UNKNOWN_PROJECT = "unknown"


class KeywordObjectiveClassifier:
    """Rule-based ObjectiveClassifier used when no external oracle is injected."""

    # Ordered: the first matching rule decides the objective type.
    TYPE_RULES: list[tuple[str, re.Pattern[str]]] = [
        ("implement", re.compile(r"\b(implement|create|add|build)\b", re.IGNORECASE)),
        ("fix", re.compile(r"\b(fix|bug|broken|repair)\b", re.IGNORECASE)),
        ("test", re.compile(r"\b(test|tests|verify|coverage)\b", re.IGNORECASE)),
        ("deploy", re.compile(r"\b(deploy|release|ship)\b", re.IGNORECASE)),
        ("refactor", re.compile(r"\b(refactor|cleanup|clean up|restructure)\b", re.IGNORECASE)),
        ("document", re.compile(r"\b(document|docs|readme)\b", re.IGNORECASE)),
        ("security", re.compile(r"\b(security|audit|vulnerability|cve)\b", re.IGNORECASE)),
        ("research", re.compile(r"\b(research|investigate|explore|evaluate)\b", re.IGNORECASE)),
    ]

    TAG_RULES: list[tuple[str, re.Pattern[str]]] = [
        ("react", re.compile(r"\breact\b", re.IGNORECASE)),
        ("nextjs", re.compile(r"\bnext\.?js\b", re.IGNORECASE)),
        ("typescript", re.compile(r"\b(typescript|ts)\b", re.IGNORECASE)),
        ("python", re.compile(r"\bpython\b", re.IGNORECASE)),
        ("docker", re.compile(r"\b(docker|container)\b", re.IGNORECASE)),
        ("api", re.compile(r"\b(api|endpoint|rest|graphql)\b", re.IGNORECASE)),
        ("database", re.compile(r"\b(database|db|sql|migration)\b", re.IGNORECASE)),
        ("auth", re.compile(r"\b(auth|login|oauth|jwt|session)\b", re.IGNORECASE)),
        ("security", re.compile(r"\b(security|vulnerability|xss|csrf)\b", re.IGNORECASE)),
        ("frontend", re.compile(r"\b(ui|frontend|css|component)\b", re.IGNORECASE)),
        ("backend", re.compile(r"\b(backend|server|service)\b", re.IGNORECASE)),
    ]

    def classify(self, objective: str, context: ProjectContext | None = None) -> ObjectiveProfile:
        objective_type = "general"
        for name, pattern in self.TYPE_RULES:
            if pattern.search(objective):
                objective_type = name
                break

        tags = [name for name, pattern in self.TAG_RULES if pattern.search(objective)]
        if context is not None:
            if context.project_type and context.project_type not in tags:
                tags.append(context.project_type)
            if context.has_tests:
                tags.append("has_tests")
            if context.language and context.language.lower() not in tags:
                tags.append(context.language.lower())

        intents = {objective_type: 0.9}
        for tag in tags:
            intents.setdefault(tag, 0.6)

        words = len(objective.split())
        complexity = min(1.0, 0.2 + 0.1 * len(tags) + 0.01 * words)
        return ObjectiveProfile(
            objective_type=objective_type,
            tags=tags,
            intents=intents,
            complexity=round(complexity, 3),
        )


class FeatureExtractor:
    """First-come categorical and tag vocabularies for vectorizing patterns.

    Not thread safe on its own; the PatternStore calls it under its lock.
    """

    def __init__(self, max_tags: int = 10) -> None:
        self.max_tags = max_tags
        self._objective_types: dict[str, int] = {}
        self._project_types: dict[str, int] = {}
        self._tag_slots: dict[str, int] = {}

    @property
    def dimensions(self) -> int:
        return 2 + self.max_tags

    def extract(self, pattern: ExecutionPattern) -> list[float]:
        """Vectorize a stored pattern, registering any new categories."""
        project_type = _project_type(pattern.project_context)
        vector = [0.0] * self.dimensions
        vector[0] = float(self._register(self._objective_types, pattern.objective_type))
        vector[1] = float(self._register(self._project_types, project_type))
        for tag in pattern.tags:
            slot = self._tag_slots.get(tag)
            if slot is None and len(self._tag_slots) < self.max_tags:
                slot = len(self._tag_slots) + 2
                self._tag_slots[tag] = slot
            if slot is not None:
                vector[slot] = 1.0
        return vector

    def query_vector(
        self,
        objective_type: str,
        tags: list[str],
        project_type: str | None = None,
    ) -> list[float]:
        """Vectorize a query without touching the vocabularies."""
        vector = [0.0] * self.dimensions
        vector[0] = float(self._objective_types.get(objective_type, SENTINEL))
        vector[1] = float(self._project_types.get(project_type or UNKNOWN_PROJECT, SENTINEL))
        for tag in tags:
            slot = self._tag_slots.get(tag)
            if slot is not None:
                vector[slot] = 1.0
        return vector

    def tag_vocabulary(self) -> list[str]:
        return sorted(self._tag_slots, key=self._tag_slots.__getitem__)

    @staticmethod
    def _register(vocabulary: dict[str, int], value: str) -> int:
        if value not in vocabulary:
            vocabulary[value] = len(vocabulary)
        return vocabulary[value]


def categories_match(query_value: float, stored_value: float) -> bool:
    """Equality on categorical slots that never treats the sentinel as a match."""
    return query_value != SENTINEL and stored_value != SENTINEL and query_value == stored_value


def _project_type(context: ProjectContext | None) -> str:
    if context is None or not context.project_type:
        return UNKNOWN_PROJECT
    return context.project_type
