# backend/stickerforge/memory_queue.py
import asyncio
import logging
from collections import deque
from typing import Deque, Dict, Optional, Set

from .errors import QueueClosedError
from .jobs import ACTIVE, COMPLETED, FAILED, FailureHook, Handler, JobHandle, JobPayload, QueueStats


class InMemoryQueue:
    """Single-process queue: FIFO waiting list plus a bounded active set.

    Admission runs on the event loop thread only, whenever a job is enqueued
    or an active job settles. A failed job is logged and dropped: there are
    no retries and no record of failures beyond the counter.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._waiting: Deque[JobHandle] = deque()
        self._active: Dict[int, JobHandle] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._next_id = 1
        self._handler: Optional[Handler] = None
        self._concurrency = 1
        self._completed = 0
        self._failed = 0
        self._closed = False

    async def enqueue(self, payload: JobPayload) -> JobHandle:
        if self._closed:
            raise QueueClosedError("queue is closed")
        job = JobHandle(self._next_id, payload)
        self._next_id += 1
        self._waiting.append(job)
        self.logger.info("Adding job %s to queue for user %s", job.id, payload.owner_id)
        self._dispatch()
        return job

    def register_handler(self, concurrency: int, handler: Handler,
                         on_failed: Optional[FailureHook] = None) -> None:
        # on_failed is accepted for parity with DurableQueue; every failure
        # here happens inside the handler, which reports it itself
        if not isinstance(concurrency, int) or concurrency <= 0:
            raise ValueError(f"concurrency must be a positive integer, got {concurrency!r}")
        if self._handler is not None:
            self.logger.warning("Queue handler registered twice; replacing the previous handler")
        self._concurrency = concurrency
        self._handler = handler
        self.logger.info("Starting queue processor with concurrency: %d", concurrency)
        self._dispatch()

    def _dispatch(self) -> None:
        while (
            not self._closed
            and self._handler is not None
            and self._waiting
            and len(self._active) < self._concurrency
        ):
            job = self._waiting.popleft()
            job.state = ACTIVE
            self._active[job.id] = job
            task = asyncio.get_running_loop().create_task(self._run(job, self._handler))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, job: JobHandle, handler: Handler) -> None:
        self.logger.info("Processing job %s for user %s", job.id, job.payload.owner_id)
        try:
            await handler(job)
        except Exception:
            job.state = FAILED
            self._failed += 1
            self.logger.exception("In-memory job %s failed", job.id)
        else:
            job.state = COMPLETED
            self._completed += 1
            self.logger.info("Job %s completed successfully", job.id)
        finally:
            self._active.pop(job.id, None)
            self._dispatch()

    async def stats(self) -> QueueStats:
        return QueueStats(
            waiting=len(self._waiting),
            active=len(self._active),
            completed=self._completed,
            failed=self._failed,
        )

    async def close(self) -> None:
        # running jobs keep going; nothing else to tear down
        self.logger.info("Closing in-memory queue (%d active jobs left running)", len(self._active))
        self._closed = True

    async def wait_idle(self) -> None:
        """Wait until no admitted job is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
