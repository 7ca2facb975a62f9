"""Task manager entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from taskmanager.config import Settings, settings
from taskmanager.scheduler.audit import AuditService, SqliteAuditStore
from taskmanager.scheduler.consumer import ConsumerRegistry
from taskmanager.scheduler.engine import SchedulerEngine
from taskmanager.scheduler.events import EventBus
from taskmanager.scheduler.policy import RetryPolicy
from taskmanager.scheduler.store import SqliteTriggerStore

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)
logger = logging.getLogger(__name__)


def build_engine(
    config: Settings | None = None,
    registry: ConsumerRegistry | None = None,
) -> SchedulerEngine:
    """Wire SQLite-backed stores, the audit writer, and the event bus into an engine."""
    config = config or settings
    audit = AuditService(
        SqliteAuditStore(config.database_path),
        node_id=config.node_id,
        queue_size=config.audit_queue_size,
    )
    bus = EventBus(
        replay_size=config.event_replay_size,
        subscriber_buffer=config.event_subscriber_buffer,
    )
    return SchedulerEngine(
        store=SqliteTriggerStore(config.database_path),
        audit=audit,
        bus=bus,
        registry=registry or ConsumerRegistry(),
        pool_size=config.scheduler_pool_size,
        misfire_threshold=config.misfire_threshold,
        retry_policy=RetryPolicy.from_settings(config),
        drain_timeout=config.shutdown_drain_seconds,
        timezone=config.scheduler_timezone,
    )


async def run(engine: SchedulerEngine, until: asyncio.Event | None = None) -> None:
    """Run *engine* until *until* is set or the task is cancelled."""
    until = until or asyncio.Event()
    await engine.start()
    logger.info("Task manager running")
    try:
        await until.wait()
    finally:
        await engine.stop()


def main() -> None:
    """Start the scheduler and block until interrupted."""
    engine = build_engine()
    logger.info("Starting task manager with database %s...", settings.database_path)
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run(engine))


if __name__ == "__main__":
    main()
