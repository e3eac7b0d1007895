"""Exception hierarchy for the orchestration engine.

Only programming-contract violations are raised to callers. Agent-level
failures are domain data (AgentResult.success=False) and are absorbed by
the adaptive executor; persistence failures are logged and re-queued.
"""

from __future__ import annotations


class OrchestrationError(Exception):
    """Base class for all orchestration engine errors."""


class ExecutionNotFoundError(OrchestrationError):
    """Raised when a result arrives for an execution that is not active.

    Attributes:
        execution_id: The execution id the caller referenced, if any.
    """

    def __init__(self, execution_id: str | None) -> None:
        self.execution_id = execution_id
        super().__init__(f"No active execution: {execution_id}")


class ExecutionFinishedError(OrchestrationError):
    """Raised when a finished execution is driven further."""

    def __init__(self, execution_id: str, status: str) -> None:
        self.execution_id = execution_id
        self.status = status
        super().__init__(f"Execution {execution_id} already terminated with status {status}")


class InvalidPlanError(OrchestrationError):
    """Raised when a plan is empty or references an agent twice."""


class UnknownChainError(OrchestrationError):
    """Raised when resolving a failure chain id that was never opened."""

    def __init__(self, chain_id: str) -> None:
        self.chain_id = chain_id
        super().__init__(f"Unknown failure chain: {chain_id}")


class UnexpectedResultError(OrchestrationError):
    """Raised when a result arrives for an agent that is not pending."""

    def __init__(self, execution_id: str, agent_id: str) -> None:
        self.execution_id = execution_id
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} is not pending in execution {execution_id}")
