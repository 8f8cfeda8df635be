# backend/stickerforge/durable_queue.py
import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import delete, func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from .db import init_db
from .errors import JobStalledError, QueueBackendError, QueueClosedError
from .jobs import (
    ACTIVE, COMPLETED, FAILED, QUEUED, FailureHook, Handler, JobHandle, JobPayload, QueueStats,
)
from .models import QueueCounter, QueuedJob, utc_now

QUEUE_NAME = "sticker-generation"
DEFAULT_PRIORITY = 1
MAX_ATTEMPTS = 3
STALLED_ERROR = "job stalled more than allowable limit"


class DurableQueue:
    """Queue backed by a shared SQL store, safe for several processes.

    Delivery is at-least-once. A failed attempt is retried with exponential
    backoff (backoff_seconds, doubled per retry) until max_attempts attempts
    have failed; the job is then kept with status "failed" for inspection.
    Completed jobs are deleted right away and only counted.

    Active jobs renew a heartbeat; an active job whose heartbeat is older than
    stall_seconds is put back to "queued" by any polling instance. A claim is
    identified by (id, attempts): outcomes of an attempt that lost its claim
    to another instance are dropped.
    """

    def __init__(
        self,
        engine: Engine,
        name: str = QUEUE_NAME,
        priority: int = DEFAULT_PRIORITY,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_seconds: float = 2.0,
        poll_seconds: float = 1.0,
        stall_seconds: float = 30.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.engine = engine
        self.name = name
        self.priority = priority
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.poll_seconds = poll_seconds
        self.stall_seconds = stall_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._handler: Optional[Handler] = None
        self._on_failed: Optional[FailureHook] = None
        self._concurrency = 1
        self._active: Dict[int, JobHandle] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._poller: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._closed = False

        try:
            init_db(engine)
            self._ensure_counter()
        except SQLAlchemyError as e:
            raise QueueBackendError(f"cannot reach queue store: {e}") from e
        self.logger.info("Queue service initialized with durable store (%s)", engine.url.render_as_string())

    # --- public API ---

    async def enqueue(self, payload: JobPayload) -> JobHandle:
        if self._closed:
            raise QueueClosedError("queue is closed")
        self.logger.info("Adding job to queue for user %s", payload.owner_id)
        try:
            job_id = await asyncio.to_thread(self._insert, payload)
        except SQLAlchemyError as e:
            raise QueueBackendError(f"cannot enqueue job: {e}") from e
        if self._wakeup is not None:
            self._wakeup.set()
        return JobHandle(job_id, payload, attempt=1, max_attempts=self.max_attempts)

    def register_handler(self, concurrency: int, handler: Handler,
                         on_failed: Optional[FailureHook] = None) -> None:
        """Install the job handler. on_failed is awaited for jobs that stall
        on their last attempt, since their handler never reports the failure."""
        if not isinstance(concurrency, int) or concurrency <= 0:
            raise ValueError(f"concurrency must be a positive integer, got {concurrency!r}")
        if self._handler is not None:
            self.logger.warning("Queue handler registered twice; replacing the previous handler")
        self._concurrency = concurrency
        self._handler = handler
        self._on_failed = on_failed
        self.logger.info("Starting queue processor with concurrency: %d", concurrency)
        if self._poller is None and not self._closed:
            self._wakeup = asyncio.Event()
            self._poller = asyncio.get_running_loop().create_task(self._poll_loop())
        elif self._wakeup is not None:
            self._wakeup.set()

    async def stats(self) -> QueueStats:
        try:
            return await asyncio.to_thread(self._read_stats)
        except SQLAlchemyError as e:
            raise QueueBackendError(f"cannot read queue stats: {e}") from e

    async def close(self) -> None:
        """Stop polling and release the store. Running jobs are not awaited."""
        self.logger.info("Closing durable queue (%d active jobs left running)", len(self._active))
        self._closed = True
        if self._poller is not None:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
            self._poller = None
        await asyncio.to_thread(self.engine.dispose)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- dispatch loop ---

    async def _poll_loop(self) -> None:
        while not self._closed:
            self._wakeup.clear()
            try:
                for stalled in await asyncio.to_thread(self._recover_stalled):
                    await self._report_stalled(stalled)
                while not self._closed and self._handler is not None and len(self._active) < self._concurrency:
                    claimed = await asyncio.to_thread(self._claim_next)
                    if claimed is None:
                        break
                    await self._start(claimed)
            except Exception:
                self.logger.exception("Queue error")
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_seconds)
            except asyncio.TimeoutError:
                pass

    async def _start(self, claimed: Dict[str, Any]) -> None:
        try:
            payload = JobPayload.from_json(claimed["payload"])
        except (ValueError, TypeError) as e:
            # retrying cannot fix a payload this version does not understand
            self.logger.error("Job %s has an unreadable payload: %s", claimed["id"], e)
            await asyncio.to_thread(
                self._settle_failure, claimed["id"], claimed["attempts"], f"unreadable payload: {e}", True)
            return
        job = JobHandle(
            claimed["id"],
            payload,
            attempt=claimed["attempts"],
            max_attempts=claimed["max_attempts"],
            on_progress=self._on_progress,
            progress=claimed["progress"],
        )
        job.state = ACTIVE
        self._active[job.id] = job
        task = asyncio.get_running_loop().create_task(self._run(job, self._handler))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job: JobHandle, handler: Handler) -> None:
        self.logger.info("Processing job %s for user %s (attempt %d/%d)",
                         job.id, job.payload.owner_id, job.attempt, job.max_attempts)
        heartbeat = asyncio.get_running_loop().create_task(self._heartbeat(job))
        try:
            try:
                await handler(job)
            except Exception as e:
                self.logger.exception("Job %s failed", job.id)
                state = await asyncio.to_thread(self._settle_failure, job.id, job.attempt, str(e))
            else:
                settled = await asyncio.to_thread(self._settle_success, job.id, job.attempt)
                state = COMPLETED if settled else None
                if settled:
                    self.logger.info("Job %s completed successfully", job.id)
            if state is None:
                self.logger.warning("Job %s attempt %d lost its claim; outcome dropped", job.id, job.attempt)
            else:
                job.state = state
        except SQLAlchemyError:
            # the stall check will hand the job out again
            self.logger.exception("Could not record outcome of job %s", job.id)
        finally:
            heartbeat.cancel()
            self._active.pop(job.id, None)
            if self._wakeup is not None:
                self._wakeup.set()

    async def _heartbeat(self, job: JobHandle) -> None:
        interval = max(self.stall_seconds / 3, 0.01)
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(self._touch, job.id, job.attempt, None)
            except SQLAlchemyError as e:
                self.logger.warning("Heartbeat for job %s failed: %s", job.id, e)

    async def _on_progress(self, job: JobHandle, value: float) -> None:
        try:
            await asyncio.to_thread(self._touch, job.id, job.attempt, value)
        except SQLAlchemyError as e:
            self.logger.warning("Could not store progress of job %s: %s", job.id, e)

    async def _report_stalled(self, stalled: Dict[str, Any]) -> None:
        if self._on_failed is None:
            return
        try:
            payload = JobPayload.from_json(stalled["payload"])
        except (ValueError, TypeError) as e:
            self.logger.error("Stalled job %s has an unreadable payload: %s", stalled["id"], e)
            return
        job = JobHandle(stalled["id"], payload, attempt=stalled["attempts"], max_attempts=stalled["max_attempts"])
        job.state = FAILED
        try:
            await self._on_failed(job, JobStalledError(STALLED_ERROR))
        except Exception:
            self.logger.exception("Failure hook for job %s raised", job.id)

    # --- store operations (run in worker threads) ---

    def _ensure_counter(self) -> None:
        with Session(self.engine) as session:
            if session.get(QueueCounter, self.name) is None:
                session.add(QueueCounter(queue=self.name))
                try:
                    session.commit()
                except IntegrityError:
                    # another instance created it first
                    session.rollback()

    def _insert(self, payload: JobPayload) -> int:
        with Session(self.engine) as session:
            row = QueuedJob(
                queue=self.name,
                priority=self.priority,
                payload=payload.to_json(),
                max_attempts=self.max_attempts,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return row.id

    def _claim_next(self) -> Optional[Dict[str, Any]]:
        with Session(self.engine) as session:
            for _ in range(5):
                now = utc_now()
                row = session.exec(
                    select(QueuedJob)
                    .where(QueuedJob.queue == self.name)
                    .where(QueuedJob.status == QUEUED)
                    .where(QueuedJob.run_after <= now)
                    .order_by(QueuedJob.priority, QueuedJob.id)
                    .limit(1)
                ).first()
                if row is None:
                    return None
                claimed = {
                    "id": row.id,
                    "payload": row.payload,
                    "attempts": row.attempts + 1,
                    "max_attempts": row.max_attempts,
                    "progress": row.progress,
                }
                # compare-and-set so two instances never claim the same row
                result = session.execute(
                    update(QueuedJob)
                    .where(QueuedJob.id == row.id)
                    .where(QueuedJob.status == QUEUED)
                    .values(status=ACTIVE, attempts=QueuedJob.attempts + 1,
                            heartbeat_at=now, updated_at=now)
                )
                session.commit()
                if result.rowcount == 1:
                    return claimed
                session.expire_all()
            return None

    @staticmethod
    def _owned(statement, job_id: int, attempt: int):
        # the row is still held by this very attempt
        return (statement
                .where(QueuedJob.id == job_id)
                .where(QueuedJob.status == ACTIVE)
                .where(QueuedJob.attempts == attempt)
                .execution_options(synchronize_session=False))

    def _touch(self, job_id: int, attempt: int, progress: Optional[float]) -> None:
        values: Dict[str, Any] = {"heartbeat_at": utc_now()}
        if progress is not None:
            values["progress"] = progress
            values["updated_at"] = values["heartbeat_at"]
        with Session(self.engine) as session:
            session.execute(self._owned(update(QueuedJob), job_id, attempt).values(**values))
            session.commit()

    def _bump_counter(self, session: Session, column: str) -> None:
        session.execute(
            update(QueueCounter)
            .where(QueueCounter.queue == self.name)
            .values(**{column: getattr(QueueCounter, column) + 1})
        )

    def _settle_success(self, job_id: int, attempt: int) -> bool:
        with Session(self.engine) as session:
            result = session.execute(self._owned(delete(QueuedJob), job_id, attempt))
            if result.rowcount != 1:
                session.rollback()
                return False
            self._bump_counter(session, "completed")
            session.commit()
            return True

    def _settle_failure(self, job_id: int, attempt: int, error: str, final: bool = False) -> Optional[str]:
        """Requeue with backoff or mark failed. Returns the new status, or
        None when the attempt no longer holds the row."""
        with Session(self.engine) as session:
            row = session.get(QueuedJob, job_id)
            if row is None:
                return None
            now = utc_now()
            final = final or attempt >= row.max_attempts
            values: Dict[str, Any] = {"last_error": error, "updated_at": now, "heartbeat_at": None}
            if final:
                values["status"] = FAILED
            else:
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                values["status"] = QUEUED
                values["run_after"] = now + timedelta(seconds=delay)
            result = session.execute(self._owned(update(QueuedJob), job_id, attempt).values(**values))
            if result.rowcount != 1:
                session.rollback()
                return None
            if final:
                self._bump_counter(session, "failed")
                self.logger.error("Job %s failed permanently after %d attempts", job_id, attempt)
            else:
                self.logger.warning("Job %s will be retried in %.1fs (attempt %d/%d failed)",
                                    job_id, delay, attempt, row.max_attempts)
            session.commit()
            return values["status"]

    def _recover_stalled(self) -> List[Dict[str, Any]]:
        """Requeue stalled jobs; returns the ones that failed for good."""
        cutoff = utc_now() - timedelta(seconds=self.stall_seconds)
        failed: List[Dict[str, Any]] = []
        with Session(self.engine) as session:
            stalled = session.exec(
                select(QueuedJob)
                .where(QueuedJob.queue == self.name)
                .where(QueuedJob.status == ACTIVE)
                .where(QueuedJob.heartbeat_at < cutoff)
            ).all()
            for row in stalled:
                if row.id in self._active:
                    continue
                self.logger.warning("Job %s stalled", row.id)
                now = utc_now()
                exhausted = row.attempts >= row.max_attempts
                values: Dict[str, Any] = {"heartbeat_at": None, "updated_at": now}
                if exhausted:
                    values.update(status=FAILED, last_error=STALLED_ERROR)
                else:
                    values.update(status=QUEUED, run_after=now)
                # another instance may recover the same row concurrently
                result = session.execute(
                    self._owned(update(QueuedJob), row.id, row.attempts)
                    .where(QueuedJob.heartbeat_at < cutoff)
                    .values(**values)
                )
                if result.rowcount == 1 and exhausted:
                    self._bump_counter(session, "failed")
                    failed.append({
                        "id": row.id,
                        "payload": row.payload,
                        "attempts": row.attempts,
                        "max_attempts": row.max_attempts,
                    })
            session.commit()
        return failed

    def _read_stats(self) -> QueueStats:
        with Session(self.engine) as session:
            def count(status: str) -> int:
                return session.exec(
                    select(func.count())
                    .select_from(QueuedJob)
                    .where(QueuedJob.queue == self.name)
                    .where(QueuedJob.status == status)
                ).one()

            counter = session.get(QueueCounter, self.name)
            return QueueStats(
                waiting=count(QUEUED),
                active=count(ACTIVE),
                completed=counter.completed if counter else 0,
                failed=counter.failed if counter else 0,
            )
