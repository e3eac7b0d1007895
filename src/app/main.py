"""Orchestration service entry point.

Wires the engine to an agent registry and the background scheduler, exposes
Prometheus metrics when METRICS_PORT is set, and flushes pending knowledge
writes on shutdown.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from prometheus_client import start_http_server

from src.app.agents.registry import AgentRegistry
from src.app.config import Settings, get_settings
from src.app.core.logging import configure_structlog
from src.app.orchestration.engine import OrchestrationEngine, build_engine
from src.app.orchestration.interfaces import KnowledgeStore
from src.app.orchestration.scheduler import setup_orchestration_scheduler, start_scheduler_background

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(
    settings: Settings | None = None,
    registry: AgentRegistry | None = None,
    knowledge_store: KnowledgeStore | None = None,
) -> AsyncGenerator[OrchestrationEngine, None]:
    """Service lifespan: hydrate and schedule on startup, drain on shutdown."""
    settings = settings or get_settings()
    configure_structlog(settings)

    registry = registry if registry is not None else AgentRegistry()
    engine = build_engine(settings, capabilities=registry, knowledge_store=knowledge_store)

    try:
        loaded = await engine.start()
        logger.info("orchestration.started", patterns_loaded=loaded, agents=len(registry))
    except Exception:
        logger.warning("orchestration.hydrate_failed", exc_info=True)

    # engine.start() already runs the sync flush loop
    tasks = setup_orchestration_scheduler(engine)
    tasks.pop("flush_sync_queue", None)
    background = start_scheduler_background(tasks)

    if settings.METRICS_PORT:
        try:
            start_http_server(settings.METRICS_PORT)
            logger.info("orchestration.metrics_listening", port=settings.METRICS_PORT)
        except OSError:
            logger.warning("orchestration.metrics_start_failed", port=settings.METRICS_PORT, exc_info=True)

    try:
        yield engine
    finally:
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        await engine.stop()
        logger.info("orchestration.stopped", stats=engine.get_stats())


async def serve(stop_event: asyncio.Event | None = None) -> None:
    """Run until ``stop_event`` is set (or forever when none is given)."""
    stop_event = stop_event or asyncio.Event()
    async with lifespan():
        await stop_event.wait()


def main() -> None:
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
