# backend/stickerforge/queues.py
import logging
from typing import Optional, Protocol

from .config import Settings
from .db import make_engine
from .durable_queue import DurableQueue
from .jobs import FailureHook, Handler, JobHandle, JobPayload, QueueStats
from .memory_queue import InMemoryQueue


class JobQueue(Protocol):
    """What the rest of the app needs from a queue backend."""

    async def enqueue(self, payload: JobPayload) -> JobHandle:
        ...

    def register_handler(self, concurrency: int, handler: Handler,
                         on_failed: Optional[FailureHook] = None) -> None:
        ...

    async def stats(self) -> QueueStats:
        ...

    async def close(self) -> None:
        ...


def create_queue(settings: Settings, logger: Optional[logging.Logger] = None) -> JobQueue:
    """Pick the backend once: durable when a queue database URL is configured."""
    logger = logger or logging.getLogger(__name__)
    if settings.use_durable_queue:
        return DurableQueue(
            make_engine(settings.queue_database_url),
            backoff_seconds=settings.queue_backoff_seconds,
            poll_seconds=settings.queue_poll_seconds,
            stall_seconds=settings.queue_stall_seconds,
            logger=logger.getChild("queue"),
        )
    logger.info("Queue service initialized with in-memory queue (no queue database configured)")
    return InMemoryQueue(logger=logger.getChild("queue"))
