"""Background maintenance tasks for the orchestration engine.

Defines async task functions for persistence flushing, pattern pruning and
calibration refresh. Tasks are decoupled from the loop that runs them so
tests can call them directly.
"""

from __future__ import annotations

import asyncio

import structlog

logger = structlog.get_logger(__name__)


def setup_orchestration_scheduler(engine) -> dict:
    """Build the background task functions for ``engine``.

    Each task:
    - Wraps in try/except for resilience (individual failures don't crash the loop)
    - Logs results via structlog
    - Returns count of items processed

    Returns:
        Dict mapping task name to async callable.
    """

    async def flush_sync_queue_task():
        """Flush queued knowledge store writes -- runs every 30s."""
        try:
            count = await engine.sync.flush()
            logger.info("scheduler.sync_flushed", flushed=count)
            return count
        except Exception:
            logger.warning("scheduler.sync_flush_failed", exc_info=True)
            return 0

    async def prune_patterns_task():
        """Drop patterns and failures past the retention window -- runs hourly."""
        try:
            count = engine.store.prune_old()
            logger.info("scheduler.patterns_pruned", removed=count)
            return count
        except Exception:
            logger.warning("scheduler.prune_failed", exc_info=True)
            return 0

    async def rebuild_calibration_task():
        """Rebuild the calibration curve from buffered points -- runs every 6 hours."""
        try:
            engine.confidence.calibration.rebuild()
            count = len(engine.confidence.calibration)
            logger.info("scheduler.calibration_rebuilt", points=count)
            return count
        except Exception:
            logger.warning("scheduler.calibration_rebuild_failed", exc_info=True)
            return 0

    return {
        "flush_sync_queue": flush_sync_queue_task,
        "prune_patterns": prune_patterns_task,
        "rebuild_calibration": rebuild_calibration_task,
    }


# -- Interval configuration (seconds) ----------------------------------------

TASK_INTERVALS = {
    "flush_sync_queue": 30,             # 30 seconds
    "prune_patterns": 60 * 60,          # 1 hour
    "rebuild_calibration": 6 * 60 * 60,  # 6 hours
}


def start_scheduler_background(tasks: dict, intervals: dict | None = None) -> list[asyncio.Task]:
    """Start scheduler tasks as background asyncio loops.

    Args:
        tasks: Dict mapping task name to async callable (from setup_orchestration_scheduler).
        intervals: Optional per-task interval overrides in seconds.

    Returns:
        The created tasks; cancel them on shutdown.
    """
    intervals = {**TASK_INTERVALS, **(intervals or {})}
    background_tasks: list[asyncio.Task] = []

    for task_name, task_fn in tasks.items():
        interval = intervals.get(task_name, 3600)

        async def _loop(fn=task_fn, name=task_name, sleep=interval):
            """Background loop that runs the task at the configured interval."""
            while True:
                try:
                    await asyncio.sleep(sleep)
                    await fn()
                except asyncio.CancelledError:
                    logger.info("scheduler.task_cancelled", task=name)
                    break
                except Exception:
                    logger.warning(
                        "scheduler.task_loop_error", task=name, exc_info=True
                    )

        bg_task = asyncio.create_task(_loop(), name=f"orchestration_scheduler_{task_name}")
        background_tasks.append(bg_task)

    logger.info(
        "scheduler.background_tasks_started",
        task_count=len(background_tasks),
        tasks=list(tasks.keys()),
    )
    return background_tasks
