"""Hybrid real-time/async persistence to the external knowledge store.

Critical learning writes (agent selection success, task failure, execution
record) are attempted in real time inside a short timeout; on timeout or
error they fall back to the bounded async queue. Everything else goes
straight to the queue.

The queue is flushed on an interval. Each queued write is retried with
exponential backoff via tenacity, up to ``max_retries`` attempts per flush
(waits of 1s, 2s, ... capped at ``backoff_max_seconds``). Writes that still
fail are re-queued until they have been through ``max_retries`` flushes,
then dropped and logged. A flush cancelled mid-batch puts every write it
had not finished back at the front of the queue. When the queue is full
the oldest entry is dropped. Persistence failures never propagate to callers.
"""

from __future__ import annotations

import asyncio
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.app.core.monitoring import sync_operations_total, sync_queue_size
from src.app.orchestration.config import SyncConfig
from src.app.orchestration.interfaces import KnowledgeStore
from src.app.orchestration.pattern_store import PATTERN_NAMESPACE
from src.app.orchestration.schemas import SyncMode, SyncOperation, SyncStats

logger = structlog.get_logger(__name__)


class SyncStrategy(BaseModel):
    mode: SyncMode
    timeout_ms: int = 0
    retry_on_failure: bool = False


SYNC_STRATEGIES: dict[str, SyncStrategy] = {
    "agent_selection_success": SyncStrategy(mode=SyncMode.REALTIME, timeout_ms=500, retry_on_failure=True),
    "task_failure": SyncStrategy(mode=SyncMode.REALTIME, timeout_ms=300, retry_on_failure=True),
    "execution_record": SyncStrategy(mode=SyncMode.REALTIME, timeout_ms=400, retry_on_failure=True),
    "pattern_extraction": SyncStrategy(mode=SyncMode.ASYNC),
    "usage_statistics": SyncStrategy(mode=SyncMode.ASYNC),
    "create_profile": SyncStrategy(mode=SyncMode.ASYNC),
}

# Operation -> knowledge store namespace; unlisted operations use their own name.
OPERATION_NAMESPACES: dict[str, str] = {
    "execution_record": PATTERN_NAMESPACE,
    "agent_selection_success": "agent_selection",
    "task_failure": "agent_selection",
}


def classify_sync_strategy(operation: str) -> SyncStrategy:
    """Real-time for learning-critical operations, async for everything else."""
    return SYNC_STRATEGIES.get(operation, SyncStrategy(mode=SyncMode.ASYNC))


class HybridSync:
    """Persistence front for a KnowledgeStore.

    Args:
        store: The external knowledge store.
        config: Flush interval, queue capacity and retry/backoff settings.
    """

    def __init__(self, store: KnowledgeStore, config: SyncConfig | None = None) -> None:
        self._store = store
        self.config = config or SyncConfig()
        self._queue: deque[SyncOperation] = deque()
        self._lock = threading.Lock()
        self._stats = SyncStats()
        self._flushing = False
        self._task: asyncio.Task | None = None

    # ── Writes ───────────────────────────────────────────────────────────

    def enqueue(self, operation: str, key: str, payload: dict[str, Any]) -> SyncOperation:
        """Queue a write for the next flush; never blocks."""
        return self._push(SyncOperation(operation=operation, key=key, payload=payload))

    async def sync(self, operation: str, key: str, payload: dict[str, Any]) -> SyncMode:
        """Write now if the operation is real-time, else queue it.

        Returns:
            The path that ended up carrying the write.
        """
        strategy = classify_sync_strategy(operation)
        op = SyncOperation(operation=operation, key=key, payload=payload)
        if strategy.mode == SyncMode.ASYNC:
            self._push(op)
            return SyncMode.ASYNC

        try:
            await asyncio.wait_for(self._write(op), timeout=strategy.timeout_ms / 1000)
        except asyncio.TimeoutError:
            self._stats.timeout_fallbacks += 1
            sync_operations_total.labels(mode="realtime", outcome="timeout").inc()
            logger.warning("sync.realtime_timeout", operation=operation, key=key, timeout_ms=strategy.timeout_ms)
            self._push(op)
            return SyncMode.ASYNC
        except Exception:
            self._stats.error_fallbacks += 1
            sync_operations_total.labels(mode="realtime", outcome="error").inc()
            logger.warning("sync.realtime_failed", operation=operation, key=key, exc_info=True)
            self._push(op)
            return SyncMode.ASYNC

        self._stats.realtime_syncs += 1
        sync_operations_total.labels(mode="realtime", outcome="success").inc()
        return SyncMode.REALTIME

    def _push(self, op: SyncOperation) -> SyncOperation:
        with self._lock:
            if len(self._queue) >= self.config.queue_capacity:
                dropped = self._queue.popleft()
                self._stats.dropped += 1
                logger.warning("sync.queue_full_dropped_oldest", operation=dropped.operation, key=dropped.key)
            self._queue.append(op)
            self._stats.async_syncs += 1
            sync_queue_size.set(len(self._queue))
        return op

    async def _write(self, op: SyncOperation) -> None:
        namespace = OPERATION_NAMESPACES.get(op.operation, op.operation)
        await self._store.put(namespace, op.key, op.payload)

    async def _write_with_retry(self, op: SyncOperation) -> None:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_exponential(
                multiplier=self.config.backoff_initial_seconds,
                min=self.config.backoff_initial_seconds,
                max=self.config.backoff_max_seconds,
            ),
            retry=retry_if_exception_type(Exception),
            reraise=True,
        ):
            with attempt:
                await self._write(op)

    # ── Flushing ─────────────────────────────────────────────────────────

    async def flush(self) -> int:
        """Drain the queue; returns the number of writes that landed."""
        if self._flushing:
            logger.debug("sync.flush_skipped_in_progress")
            return 0
        with self._lock:
            batch = list(self._queue)
            self._queue.clear()
        if not batch:
            return 0

        self._flushing = True
        flushed = 0
        processed = 0
        requeue: list[SyncOperation] = []
        try:
            for op in batch:
                try:
                    await self._write_with_retry(op)
                except Exception:
                    op.attempts += 1
                    if op.attempts < self.config.max_retries:
                        requeue.append(op)
                        logger.warning("sync.flush_write_failed", operation=op.operation, key=op.key, exc_info=True)
                    else:
                        self._stats.failed += 1
                        sync_operations_total.labels(mode="async", outcome="failed").inc()
                        logger.error("sync.write_abandoned", operation=op.operation, key=op.key, attempts=op.attempts)
                else:
                    flushed += 1
                    sync_operations_total.labels(mode="async", outcome="success").inc()
                processed += 1
        finally:
            self._flushing = False
            # Cancellation mid-batch leaves the tail unwritten; it goes back in front.
            unprocessed = batch[processed:]
            if unprocessed:
                logger.warning("sync.flush_interrupted", requeued=len(unprocessed))
            with self._lock:
                self._queue.extendleft(reversed(requeue + unprocessed))
                while len(self._queue) > self.config.queue_capacity:
                    dropped = self._queue.popleft()
                    self._stats.dropped += 1
                    logger.warning("sync.queue_full_dropped_oldest", operation=dropped.operation, key=dropped.key)
                sync_queue_size.set(len(self._queue))
            self._stats.flushed += flushed
            self._stats.last_flush_at = datetime.now(timezone.utc)

        logger.info("sync.flushed", flushed=flushed, requeued=len(requeue), batch=len(batch))
        return flushed

    def start(self) -> None:
        """Start the background flush loop on the running event loop."""
        if self._task is not None and not self._task.done():
            logger.warning("sync.already_running")
            return

        async def _loop() -> None:
            while True:
                try:
                    await asyncio.sleep(self.config.flush_interval_seconds)
                    await self.flush()
                except asyncio.CancelledError:
                    logger.info("sync.loop_cancelled")
                    break
                except Exception:
                    logger.warning("sync.loop_error", exc_info=True)

        self._task = asyncio.create_task(_loop(), name="orchestration_sync_flush")
        logger.info("sync.started", interval_seconds=self.config.flush_interval_seconds)

    async def stop(self, flush_remaining: bool = True) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if flush_remaining:
            await self.flush()
        logger.info("sync.stopped", pending=len(self._queue))

    # ── Introspection ────────────────────────────────────────────────────

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    def pending(self) -> list[SyncOperation]:
        with self._lock:
            return list(self._queue)

    def stats(self) -> SyncStats:
        stats = self._stats.model_copy()
        stats.queue_size = len(self._queue)
        return stats
