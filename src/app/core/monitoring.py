"""Prometheus metrics for the orchestration engine.

Provides:
- Counters for plans, executions, adaptations, recoveries and retries
- Histograms for plan confidence and agent run duration
- Gauges for live executions and the persistence queue
- track_agent_run(): Context manager timing one agent task
- get_metrics_text(): Prometheus exposition payload
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ── Planning Metrics ─────────────────────────────────────────────────────────

plans_total = Counter(
    "orchestration_plans_total",
    "Total plans produced",
    ["objective_type"],
)

plan_confidence = Histogram(
    "orchestration_plan_confidence",
    "Calibrated plan confidence at planning time",
    buckets=(0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0),
)

# ── Execution Metrics ────────────────────────────────────────────────────────

executions_total = Counter(
    "orchestration_executions_total",
    "Total executions finished",
    ["status"],
)

adaptations_total = Counter(
    "orchestration_adaptations_total",
    "Total plan adaptations applied at runtime",
    ["adaptation_type"],
)

recoveries_total = Counter(
    "orchestration_recoveries_total",
    "Recovery strategies chosen after agent failures",
    ["strategy", "error_category"],
)

agent_run_duration_seconds = Histogram(
    "orchestration_agent_run_duration_seconds",
    "Agent task duration in seconds",
    ["agent_id"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

agent_runs_total = Counter(
    "orchestration_agent_runs_total",
    "Total agent task runs",
    ["agent_id", "status"],
)

retry_attempts_total = Counter(
    "orchestration_retry_attempts_total",
    "Sequential fallback attempts",
    ["outcome"],
)

active_executions = Gauge(
    "orchestration_active_executions",
    "Number of executions not yet terminal",
)

# ── Persistence Metrics ──────────────────────────────────────────────────────

sync_operations_total = Counter(
    "orchestration_sync_operations_total",
    "Persistence operations by path and outcome",
    ["mode", "outcome"],
)

sync_queue_size = Gauge(
    "orchestration_sync_queue_size",
    "Operations waiting in the asynchronous persistence queue",
)


# ── Agent Run Helper ─────────────────────────────────────────────────────────


@asynccontextmanager
async def track_agent_run(agent_id: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks one agent task.

    Usage:
        async with track_agent_run("test_runner") as tracker:
            result = await executor.execute(...)
            tracker["success"] = result.success

    Records duration always; status is "success" only when the body sets
    tracker["success"] truthy and does not raise.
    """
    tracker: dict[str, Any] = {"success": False}
    start_time = time.perf_counter()
    status = "error"

    try:
        yield tracker
        status = "success" if tracker.get("success") else "failure"
    finally:
        agent_run_duration_seconds.labels(agent_id=agent_id).observe(time.perf_counter() - start_time)
        agent_runs_total.labels(agent_id=agent_id, status=status).inc()


# ── Exposition ───────────────────────────────────────────────────────────────


def get_metrics_text() -> bytes:
    """Generate the Prometheus exposition format payload."""
    return generate_latest(REGISTRY)
