import asyncio
from collections import Counter
from datetime import timedelta

import pytest
from sqlmodel import Session, SQLModel, select

from stickerforge.db import make_engine
from stickerforge.durable_queue import STALLED_ERROR, DurableQueue
from stickerforge.errors import JobStalledError, QueueBackendError, QueueClosedError
from stickerforge.jobs import ACTIVE, FAILED, QUEUED, JobPayload
from stickerforge.models import QueuedJob, utc_now

from conftest import wait_until


def payload(n):
    return JobPayload(owner_id=n, display_name=f"user{n}", chat_id=n,
                      image_url=f"https://example.test/{n}.jpg", image_path=f"/tmp/in_{n}.jpg")


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'queue.db'}")
    yield engine
    engine.dispose()


def make_queue(engine, **kwargs):
    params = dict(backoff_seconds=0.01, poll_seconds=0.01, stall_seconds=30.0)
    params.update(kwargs)
    return DurableQueue(engine, **params)


def rows(engine):
    with Session(engine) as session:
        return session.exec(select(QueuedJob)).all()


def test_enqueue_persists_job_at_fixed_priority(engine):
    async def scenario():
        queue = make_queue(engine)
        job = await queue.enqueue(payload(7))
        stats = await queue.stats()
        await queue.close()
        return job, stats

    job, stats = asyncio.run(scenario())
    stored = rows(engine)
    assert len(stored) == 1
    assert stored[0].id == job.id
    assert stored[0].priority == 1
    assert stored[0].status == QUEUED
    assert JobPayload.from_json(stored[0].payload) == job.payload
    assert stats.waiting == 1 and stats.active == 0


def test_job_failing_twice_then_succeeding_completes_once(engine):
    async def scenario():
        queue = make_queue(engine)
        attempts = Counter()

        async def handler(job):
            attempts[job.id] += 1
            assert job.attempt == attempts[job.id]
            if attempts[job.id] < 3:
                raise RuntimeError(f"attempt {job.attempt} failed")

        queue.register_handler(1, handler)
        job = await queue.enqueue(payload(1))
        await wait_until(lambda: _completed(queue, 1), timeout=10)
        await asyncio.sleep(0.1)
        stats = await queue.stats()
        await queue.close()
        return attempts[job.id], stats

    calls, stats = asyncio.run(scenario())
    assert calls == 3
    assert stats.completed == 1
    assert stats.failed == 0
    # completed jobs are purged
    assert rows(engine) == []


async def _completed(queue, n):
    return (await queue.stats()).completed >= n


async def _failed(queue, n):
    return (await queue.stats()).failed >= n


def test_job_failing_three_times_is_retained_as_failed(engine):
    async def scenario():
        queue = make_queue(engine)
        calls = []

        async def handler(job):
            calls.append(job.attempt)
            raise RuntimeError("Forbidden: bot was blocked by the user")

        queue.register_handler(1, handler)
        await queue.enqueue(payload(1))
        await wait_until(lambda: _failed(queue, 1), timeout=10)
        # give the poller time to (wrongly) pick it up again
        await asyncio.sleep(0.2)
        stats = await queue.stats()
        await queue.close()
        return calls, stats

    calls, stats = asyncio.run(scenario())
    assert calls == [1, 2, 3]
    assert stats.failed == 1
    assert stats.completed == 0
    assert stats.waiting == 0 and stats.active == 0
    [row] = rows(engine)
    assert row.status == FAILED
    assert row.attempts == 3
    assert "Forbidden" in row.last_error


def test_retry_waits_for_backoff(engine):
    async def scenario():
        queue = make_queue(engine, backoff_seconds=0.3)
        seen = []

        async def handler(job):
            seen.append(asyncio.get_running_loop().time())
            if job.attempt == 1:
                raise RuntimeError("first attempt fails")

        queue.register_handler(1, handler)
        await queue.enqueue(payload(1))
        await wait_until(lambda: _completed(queue, 1), timeout=10)
        await queue.close()
        return seen

    seen = asyncio.run(scenario())
    assert len(seen) == 2
    assert seen[1] - seen[0] >= 0.25


def test_active_jobs_never_exceed_concurrency(engine):
    async def scenario():
        queue = make_queue(engine)
        running = 0
        peak = 0

        async def handler(job):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.03)
            running -= 1

        queue.register_handler(2, handler)
        for n in range(6):
            await queue.enqueue(payload(n))
        await wait_until(lambda: _completed(queue, 6), timeout=10)
        await queue.close()
        return peak

    assert asyncio.run(scenario()) == 2


def test_stalled_job_is_handed_out_again(engine):
    async def scenario():
        queue = make_queue(engine, stall_seconds=1.0)
        with Session(engine) as session:
            session.add(QueuedJob(
                queue=queue.name,
                status=ACTIVE,
                payload=payload(9).to_json(),
                attempts=1,
                heartbeat_at=utc_now() - timedelta(seconds=60),
            ))
            session.commit()
        seen = []

        async def handler(job):
            seen.append((job.payload.owner_id, job.attempt))

        queue.register_handler(1, handler)
        await wait_until(lambda: _completed(queue, 1), timeout=10)
        await queue.close()
        return seen

    assert asyncio.run(scenario()) == [(9, 2)]


def test_progress_is_stored(engine):
    async def scenario():
        queue = make_queue(engine)
        release = asyncio.Event()
        reported = asyncio.Event()

        async def handler(job):
            await job.progress(50)
            reported.set()
            await release.wait()

        queue.register_handler(1, handler)
        await queue.enqueue(payload(1))
        await asyncio.wait_for(reported.wait(), timeout=10)
        [row] = await asyncio.to_thread(rows, engine)
        release.set()
        await wait_until(lambda: _completed(queue, 1), timeout=10)
        await queue.close()
        return row

    row = asyncio.run(scenario())
    assert row.status == ACTIVE
    assert row.progress == 50


def test_enqueue_after_close_is_rejected(engine):
    async def scenario():
        queue = make_queue(engine)
        await queue.close()
        with pytest.raises(QueueClosedError):
            await queue.enqueue(payload(1))

    asyncio.run(scenario())


def test_enqueue_surfaces_store_errors(engine):
    async def scenario():
        queue = make_queue(engine)
        SQLModel.metadata.drop_all(engine)
        with pytest.raises(QueueBackendError):
            await queue.enqueue(payload(1))

    asyncio.run(scenario())


def test_unreachable_store_fails_at_construction(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'missing-dir' / 'queue.db'}")
    with pytest.raises(QueueBackendError):
        DurableQueue(engine)


def seed_row(engine, queue_name, raw_payload, status=QUEUED, attempts=0, heartbeat_at=None):
    with Session(engine) as session:
        row = QueuedJob(queue=queue_name, status=status, payload=raw_payload,
                        attempts=attempts, heartbeat_at=heartbeat_at)
        session.add(row)
        session.commit()
        session.refresh(row)
        return row.id


def get_row(engine, job_id):
    with Session(engine) as session:
        return session.get(QueuedJob, job_id)


def test_timestamps_are_timezone_aware():
    assert utc_now().utcoffset() == timedelta(0)


def test_unreadable_payload_fails_without_stopping_the_queue(engine):
    async def scenario():
        queue = make_queue(engine)
        bad_id = seed_row(engine, queue.name, '{"owner_id": 1, "legacy_field": 2}')
        seen = []

        async def handler(job):
            seen.append(job.payload.owner_id)

        queue.register_handler(1, handler)
        await queue.enqueue(payload(5))
        await wait_until(lambda: _completed(queue, 1), timeout=10)
        stats = await queue.stats()
        await queue.close()
        return bad_id, seen, stats

    bad_id, seen, stats = asyncio.run(scenario())
    assert seen == [5]
    assert stats.completed == 1
    assert stats.failed == 1
    assert stats.waiting == 0 and stats.active == 0
    row = get_row(engine, bad_id)
    assert row.status == FAILED
    assert "unreadable payload" in row.last_error


def test_job_stalled_on_last_attempt_reports_failure(engine):
    async def scenario():
        queue = make_queue(engine, stall_seconds=1.0)
        job_id = seed_row(engine, queue.name, payload(9).to_json(), status=ACTIVE, attempts=3,
                          heartbeat_at=utc_now() - timedelta(seconds=60))
        handled, reported = [], []

        async def handler(job):
            handled.append(job.id)

        async def on_failed(job, error):
            reported.append((job.id, job.payload.chat_id, error))

        queue.register_handler(1, handler, on_failed=on_failed)
        await wait_until(lambda: reported, timeout=10)
        # later polls must not report it again
        await asyncio.sleep(0.1)
        stats = await queue.stats()
        await queue.close()
        return job_id, handled, reported, stats

    job_id, handled, reported, stats = asyncio.run(scenario())
    assert handled == []
    [(reported_id, chat_id, error)] = reported
    assert (reported_id, chat_id) == (job_id, 9)
    assert isinstance(error, JobStalledError)
    assert stats.failed == 1
    row = get_row(engine, job_id)
    assert row.status == FAILED
    assert row.last_error == STALLED_ERROR


def reclaim(engine, job_id):
    # what another instance does after recovering the row and claiming it again
    with Session(engine) as session:
        row = session.get(QueuedJob, job_id)
        row.attempts += 1
        row.heartbeat_at = utc_now()
        session.add(row)
        session.commit()


@pytest.mark.parametrize("outcome", ["success", "failure"])
def test_attempt_that_lost_its_claim_is_not_settled(engine, outcome):
    async def scenario():
        queue = make_queue(engine)
        ran = asyncio.Event()

        async def handler(job):
            await asyncio.to_thread(reclaim, engine, job.id)
            ran.set()
            if outcome == "failure":
                raise RuntimeError("too late")

        queue.register_handler(1, handler)
        job = await queue.enqueue(payload(3))
        await asyncio.wait_for(ran.wait(), timeout=10)
        await queue.wait_idle()
        stats = await queue.stats()
        await queue.close()
        return job.id, stats

    job_id, stats = asyncio.run(scenario())
    assert stats.completed == 0
    assert stats.failed == 0
    row = get_row(engine, job_id)
    # the row still belongs to the newer attempt
    assert row.status == ACTIVE
    assert row.attempts == 2
    assert row.last_error is None
