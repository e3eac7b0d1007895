"""Built-in plan templates used when the caller supplies no candidate agents.

Each template is an ordered list of AgentSpec with declared dependencies
and a token estimate. match_template() picks one from the objective text
with keyword rules checked in order.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, Field

from src.app.orchestration.schemas import AgentSpec


class PlanTemplate(BaseModel):
    name: str
    description: str
    agents: list[AgentSpec]
    estimated_tokens: int
    estimated_duration_ms: float = Field(default=0.0)

    @property
    def agent_ids(self) -> list[str]:
        return [spec.agent_id for spec in self.agents]

    @property
    def dependencies(self) -> dict[str, list[str]]:
        return {spec.agent_id: list(spec.dependencies) for spec in self.agents if spec.dependencies}


PLAN_TEMPLATES: dict[str, PlanTemplate] = {
    "scaffold": PlanTemplate(
        name="scaffold",
        description="Project scaffolding",
        agents=[
            AgentSpec(agent_id="the_architect", task_description="Design project structure", priority="high"),
            AgentSpec(
                agent_id="hollowed_eyes",
                task_description="Generate project skeleton and configuration",
                dependencies=["the_architect"],
                priority="critical",
            ),
            AgentSpec(agent_id="the_scribe", task_description="Write README and setup docs", priority="high"),
            AgentSpec(
                agent_id="loveless",
                task_description="Verify the scaffold builds and installs",
                dependencies=["hollowed_eyes"],
                priority="critical",
            ),
        ],
        estimated_tokens=185_000,
        estimated_duration_ms=240_000,
    ),
    "fix_tests": PlanTemplate(
        name="fix_tests",
        description="Fix failing tests",
        agents=[
            AgentSpec(agent_id="loveless", task_description="Diagnose failing tests", priority="critical"),
            AgentSpec(
                agent_id="hollowed_eyes",
                task_description="Fix the code under test",
                dependencies=["loveless"],
                priority="critical",
            ),
        ],
        estimated_tokens=130_000,
        estimated_duration_ms=150_000,
    ),
    "security_fix": PlanTemplate(
        name="security_fix",
        description="Security vulnerability fix",
        agents=[
            AgentSpec(agent_id="loveless", task_description="Audit and reproduce the vulnerability", priority="critical"),
            AgentSpec(
                agent_id="the_didact",
                task_description="Research the advisory and patched versions",
                dependencies=["loveless"],
                priority="high",
            ),
            AgentSpec(
                agent_id="hollowed_eyes",
                task_description="Apply the fix",
                dependencies=["the_didact"],
                priority="critical",
            ),
        ],
        estimated_tokens=175_000,
        estimated_duration_ms=200_000,
    ),
    "deployment": PlanTemplate(
        name="deployment",
        description="Deployment and release",
        agents=[
            AgentSpec(agent_id="the_curator", task_description="Update and audit dependencies", priority="high"),
            AgentSpec(
                agent_id="loveless",
                task_description="Run the release verification suite",
                dependencies=["the_curator"],
                priority="critical",
            ),
            AgentSpec(
                agent_id="zhadyz",
                task_description="Build, tag and publish the release",
                dependencies=["loveless"],
                priority="critical",
            ),
        ],
        estimated_tokens=118_000,
        estimated_duration_ms=180_000,
    ),
    "feature_implementation": PlanTemplate(
        name="feature_implementation",
        description="Feature implementation",
        agents=[
            AgentSpec(agent_id="the_architect", task_description="Design the feature", priority="high"),
            AgentSpec(agent_id="the_didact", task_description="Research prior art and APIs", priority="medium"),
            AgentSpec(
                agent_id="hollowed_eyes",
                task_description="Implement the feature",
                dependencies=["the_architect", "the_didact"],
                priority="critical",
            ),
            AgentSpec(
                agent_id="the_scribe",
                task_description="Document the feature",
                dependencies=["hollowed_eyes"],
                priority="high",
            ),
            AgentSpec(
                agent_id="loveless",
                task_description="Test the feature",
                dependencies=["hollowed_eyes"],
                priority="critical",
            ),
        ],
        estimated_tokens=233_000,
        estimated_duration_ms=300_000,
    ),
    "bug_fix": PlanTemplate(
        name="bug_fix",
        description="Bug fix",
        agents=[
            AgentSpec(agent_id="hollowed_eyes", task_description="Reproduce and fix the bug", priority="critical"),
            AgentSpec(
                agent_id="loveless",
                task_description="Verify the fix with a regression test",
                dependencies=["hollowed_eyes"],
                priority="critical",
            ),
        ],
        estimated_tokens=130_000,
        estimated_duration_ms=120_000,
    ),
}

# Ordered (template, required, excluded) keyword rules.
_TEMPLATE_RULES: list[tuple[str, re.Pattern[str], re.Pattern[str] | None]] = [
    ("scaffold", re.compile(r"\b(scaffold|setup|set up|initiali[sz]e|bootstrap)\b", re.I), None),
    ("fix_tests", re.compile(r"\b(fix|repair)\b.*\btests?\b|\btests?\b.*\b(fix|repair)\b", re.I), None),
    ("security_fix", re.compile(r"\b(security|vulnerabilit\w*|exploit|cve)\b", re.I), None),
    ("deployment", re.compile(r"\b(deploy|release|publish)\b", re.I), None),
    (
        "feature_implementation",
        re.compile(r"\b(implement|add|create|build)\b.*\b(feature|functionality|endpoint|page)\b", re.I),
        None,
    ),
    ("bug_fix", re.compile(r"\b(fix|bug|error|crash)\b", re.I), re.compile(r"\btests?\b", re.I)),
]


def match_template(objective: str) -> PlanTemplate | None:
    for name, required, excluded in _TEMPLATE_RULES:
        if required.search(objective) and not (excluded and excluded.search(objective)):
            return PLAN_TEMPLATES[name]
    return None


def respects_dependencies(order: list[str], dependencies: dict[str, list[str]]) -> bool:
    """True if every agent in ``order`` comes after the dependencies also in ``order``."""
    position = {a: i for i, a in enumerate(order)}
    return all(
        position[dep] < position[agent]
        for agent, deps in dependencies.items()
        if agent in position
        for dep in deps
        if dep in position
    )
