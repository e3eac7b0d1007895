"""Tests for hybrid real-time/async persistence.

Covers:
- Operation classification into real-time and async strategies
- Real-time writes land in the mapped namespace
- Real-time timeouts and store errors fall back to the queue
- Drop-oldest behavior at queue capacity
- Flush re-queues failed writes until max_retries, then abandons them
- Background flush loop start/stop with final flush
- Cancelling a flush mid-batch puts unwritten operations back in order
"""

from __future__ import annotations

import asyncio

import pytest

from src.app.orchestration.config import SyncConfig
from src.app.orchestration.interfaces import InMemoryKnowledgeStore
from src.app.orchestration.schemas import SyncMode
from src.app.orchestration.sync import HybridSync, classify_sync_strategy


# ── Helpers ──────────────────────────────────────────────────────────────────


def _make_sync(store=None, **config) -> HybridSync:
    config.setdefault("backoff_initial_seconds", 0.0)
    config.setdefault("backoff_max_seconds", 0.0)
    return HybridSync(store or InMemoryKnowledgeStore(), SyncConfig(**config))


class FlakyStore(InMemoryKnowledgeStore):
    """Fails the first ``failures`` puts, then behaves."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.put_calls = 0

    async def put(self, namespace, key, value):
        self.put_calls += 1
        if self.put_calls <= self.failures:
            raise ConnectionError("store unavailable")
        await super().put(namespace, key, value)


# ── Classification ───────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "operation, mode, timeout_ms",
    [
        ("task_failure", SyncMode.REALTIME, 300),
        ("execution_record", SyncMode.REALTIME, 400),
        ("agent_selection_success", SyncMode.REALTIME, 500),
        ("usage_statistics", SyncMode.ASYNC, 0),
        ("something_new", SyncMode.ASYNC, 0),
    ],
)
def test_classify_sync_strategy(operation, mode, timeout_ms):
    strategy = classify_sync_strategy(operation)
    assert strategy.mode == mode
    assert strategy.timeout_ms == timeout_ms


# ── Real-time Path ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_realtime_write_lands_in_namespace():
    store = InMemoryKnowledgeStore()
    sync = _make_sync(store)

    assert await sync.sync("execution_record", "p-1", {"objective": "x"}) == SyncMode.REALTIME
    assert await sync.sync("task_failure", "t-1:a:1", {"agent_id": "a"}) == SyncMode.REALTIME
    assert store.keys("execution_patterns") == ["p-1"]
    assert store.keys("agent_selection") == ["t-1:a:1"]
    assert sync.queue_size == 0
    assert sync.stats().realtime_syncs == 2


@pytest.mark.asyncio
async def test_async_operation_is_queued():
    store = InMemoryKnowledgeStore()
    sync = _make_sync(store)
    assert await sync.sync("usage_statistics", "u-1", {"n": 1}) == SyncMode.ASYNC
    assert store.writes == 0
    assert [op.key for op in sync.pending()] == ["u-1"]


@pytest.mark.asyncio
async def test_realtime_timeout_falls_back_to_queue():
    store = InMemoryKnowledgeStore(latency_seconds=1.0)
    sync = _make_sync(store)

    assert await sync.sync("task_failure", "t-1", {"agent_id": "a"}) == SyncMode.ASYNC
    assert sync.queue_size == 1
    assert sync.stats().timeout_fallbacks == 1


@pytest.mark.asyncio
async def test_realtime_error_falls_back_to_queue():
    sync = _make_sync(FlakyStore(failures=1))
    assert await sync.sync("task_failure", "t-1", {}) == SyncMode.ASYNC
    assert sync.stats().error_fallbacks == 1

    assert await sync.flush() == 1
    assert sync.queue_size == 0


# ── Queue & Flush ────────────────────────────────────────────────────────────


def test_queue_drops_oldest_at_capacity():
    sync = _make_sync(queue_capacity=3)
    for i in range(5):
        sync.enqueue("usage_statistics", f"k{i}", {})
    assert [op.key for op in sync.pending()] == ["k2", "k3", "k4"]
    assert sync.stats().dropped == 2


@pytest.mark.asyncio
async def test_flush_retries_within_a_pass():
    store = FlakyStore(failures=2)
    sync = _make_sync(store, max_retries=3)
    sync.enqueue("usage_statistics", "k", {"n": 1})

    assert await sync.flush() == 1
    assert store.put_calls == 3
    assert store.keys("usage_statistics") == ["k"]
    assert sync.stats().flushed == 1


@pytest.mark.asyncio
async def test_failed_writes_are_requeued_then_abandoned():
    store = FlakyStore(failures=10_000)
    sync = _make_sync(store, max_retries=2)
    sync.enqueue("usage_statistics", "k", {})

    assert await sync.flush() == 0
    assert [op.attempts for op in sync.pending()] == [1]

    assert await sync.flush() == 0
    assert sync.queue_size == 0
    assert sync.stats().failed == 1
    assert store.put_calls == 4


@pytest.mark.asyncio
async def test_flush_on_empty_queue_is_noop():
    assert await _make_sync().flush() == 0


@pytest.mark.asyncio
async def test_background_loop_flushes_and_stop_drains():
    store = InMemoryKnowledgeStore()
    sync = _make_sync(store, flush_interval_seconds=0.01)
    sync.start()
    sync.enqueue("usage_statistics", "a", {})
    await asyncio.sleep(0.05)
    assert store.keys("usage_statistics") == ["a"]

    sync.enqueue("usage_statistics", "b", {})
    await sync.stop(flush_remaining=True)
    assert store.keys("usage_statistics") == ["a", "b"]
    assert sync.queue_size == 0


@pytest.mark.asyncio
async def test_stop_without_flush_keeps_queue():
    sync = _make_sync()
    sync.start()
    sync.enqueue("usage_statistics", "a", {})
    await sync.stop(flush_remaining=False)
    assert sync.queue_size == 1


@pytest.mark.asyncio
async def test_stop_during_flush_keeps_unwritten_operations():
    store = InMemoryKnowledgeStore(latency_seconds=0.2)
    sync = _make_sync(store, flush_interval_seconds=0.01)
    for i in range(5):
        sync.enqueue("usage_statistics", f"k{i}", {"n": i})

    sync.start()
    await asyncio.sleep(0.1)
    await sync.stop(flush_remaining=True)

    assert sorted(store.keys("usage_statistics")) == [f"k{i}" for i in range(5)]
    assert sync.queue_size == 0
    assert sync.stats().failed == 0


@pytest.mark.asyncio
async def test_interrupted_flush_requeues_in_original_order():
    store = InMemoryKnowledgeStore(latency_seconds=0.2)
    sync = _make_sync(store)
    for key in ("a", "b", "c"):
        sync.enqueue("usage_statistics", key, {})

    flush = asyncio.create_task(sync.flush())
    await asyncio.sleep(0.05)
    flush.cancel()
    with pytest.raises(asyncio.CancelledError):
        await flush

    assert [op.key for op in sync.pending()] == ["a", "b", "c"]
    assert store.keys("usage_statistics") == []
