"""Tests for the durable job queue and worker pool."""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from pulsecheck.models import QueueJob
from pulsecheck.services.job_queue import JobQueue, WorkerPool, CHECK_QUEUE
from pulsecheck.utils.db_utils import utcnow


async def expire_lease(db, job_id: int):
    async with db.session() as session:
        await session.execute(
            update(QueueJob)
            .where(QueueJob.id == job_id)
            .values(locked_until=utcnow() - timedelta(seconds=1))
        )
        await session.commit()


class TestJobQueue:
    """Tests for JobQueue."""

    async def test_add_claim_complete(self, check_queue) -> None:
        job_id = await check_queue.add("run", {"target_id": 1}, job_key="target:1")

        job = await check_queue.claim()
        assert job.id == job_id
        assert job.status == "active"
        assert job.attempts_made == 1
        assert job.payload == {"target_id": 1}

        await check_queue.complete(job)

        assert await check_queue.claim() is None
        counts = await check_queue.counts()
        assert counts["completed"] == 1
        assert counts["waiting"] == 0

    async def test_claim_empty_queue(self, check_queue) -> None:
        assert await check_queue.claim() is None

    async def test_queues_are_isolated(self, check_queue, notification_queue) -> None:
        await notification_queue.add("monitor-down", {"target_id": 1})

        assert await check_queue.claim() is None
        assert await notification_queue.claim() is not None

    async def test_claims_in_fifo_order(self, check_queue) -> None:
        first = await check_queue.add("run", {"n": 1})
        second = await check_queue.add("run", {"n": 2})

        assert (await check_queue.claim()).id == first
        assert (await check_queue.claim()).id == second

    async def test_failed_job_is_retried(self, check_queue) -> None:
        await check_queue.add("run", {})
        job = await check_queue.claim()

        retry = await check_queue.fail(job, "boom")

        assert retry is True
        again = await check_queue.claim()
        assert again.id == job.id
        assert again.attempts_made == 2
        assert again.last_error == "boom"

    async def test_backoff_delays_retry(self, db) -> None:
        queue = JobQueue(db, CHECK_QUEUE, default_attempts=3, default_backoff_seconds=60)
        await queue.add("run", {})
        job = await queue.claim()

        await queue.fail(job, "boom")

        # Next attempt is not due for a minute
        assert await queue.claim() is None
        jobs = await queue.list_jobs(status="waiting")
        assert jobs[0].run_at > utcnow() + timedelta(seconds=30)

    async def test_exhausted_job_is_dead_lettered(self, check_queue) -> None:
        await check_queue.add("run", {}, attempts=2)

        job = await check_queue.claim()
        assert await check_queue.fail(job, "first") is True
        job = await check_queue.claim()
        assert await check_queue.fail(job, "second") is False

        assert await check_queue.claim() is None
        failed = await check_queue.list_jobs(status="failed")
        assert len(failed) == 1
        assert failed[0].last_error == "second"
        assert failed[0].finished_at is not None

    async def test_expired_lease_is_redelivered(self, db, check_queue) -> None:
        await check_queue.add("run", {})
        job = await check_queue.claim()
        assert await check_queue.claim() is None

        await expire_lease(db, job.id)

        again = await check_queue.claim()
        assert again.id == job.id
        assert again.attempts_made == 2

    async def test_expired_lease_on_last_attempt_dead_letters(self, db, check_queue) -> None:
        await check_queue.add("run", {}, attempts=1)
        job = await check_queue.claim()

        await expire_lease(db, job.id)

        assert await check_queue.claim() is None
        failed = await check_queue.list_jobs(status="failed")
        assert [j.id for j in failed] == [job.id]
        assert failed[0].last_error == "lease expired"

    async def test_stale_complete_does_not_touch_redelivered_job(self, db, check_queue) -> None:
        await check_queue.add("run", {})
        stale = await check_queue.claim()
        await expire_lease(db, stale.id)
        current = await check_queue.claim()
        assert current.attempts_made == 2

        assert await check_queue.complete(stale) is False

        counts = await check_queue.counts()
        assert counts["active"] == 1
        assert counts["completed"] == 0
        assert await check_queue.complete(current) is True

    async def test_stale_fail_does_not_touch_redelivered_job(self, db, check_queue) -> None:
        await check_queue.add("run", {})
        stale = await check_queue.claim()
        await expire_lease(db, stale.id)
        current = await check_queue.claim()

        assert await check_queue.fail(stale, "late error") is False

        jobs = await check_queue.list_jobs(status="active")
        assert [j.id for j in jobs] == [current.id]
        assert jobs[0].last_error is None
        assert jobs[0].locked_until is not None

    async def test_stale_complete_after_redelivery_finished(self, db, check_queue) -> None:
        await check_queue.add("run", {})
        stale = await check_queue.claim()
        await expire_lease(db, stale.id)
        current = await check_queue.claim()
        await check_queue.fail(current, "second attempt broke")

        assert await check_queue.complete(stale) is False
        assert (await check_queue.counts())["waiting"] == 1

    async def test_purge_completed_keeps_failed_and_recent(self, db, check_queue) -> None:
        await check_queue.add("run", {"n": 1})
        await check_queue.add("run", {"n": 2})
        await check_queue.add("run", {"n": 3}, attempts=1)
        old = await check_queue.claim()
        recent = await check_queue.claim()
        dead = await check_queue.claim()
        await check_queue.complete(old)
        await check_queue.complete(recent)
        await check_queue.fail(dead, "boom")
        async with db.session() as session:
            await session.execute(
                update(QueueJob)
                .where(QueueJob.id.in_([old.id, dead.id]))
                .values(finished_at=utcnow() - timedelta(hours=48))
            )
            await session.commit()

        assert await check_queue.purge_completed(timedelta(hours=24)) == 1

        remaining = {j.id: j.status for j in await check_queue.list_jobs()}
        assert remaining == {recent.id: "completed", dead.id: "failed"}

    async def test_purge_completed_is_per_queue(self, db, check_queue, notification_queue) -> None:
        await notification_queue.add("monitor-down", {})
        job = await notification_queue.claim()
        await notification_queue.complete(job)

        assert await check_queue.purge_completed(timedelta(0)) == 0
        assert (await notification_queue.counts())["completed"] == 1

    async def test_has_and_remove_waiting(self, check_queue) -> None:
        await check_queue.add("run", {}, job_key="target:7")
        await check_queue.add("run", {}, job_key="target:7")
        await check_queue.add("run", {}, job_key="target:8")

        assert await check_queue.has_waiting("target:7") is True
        assert await check_queue.remove_waiting("target:7") == 2
        assert await check_queue.has_waiting("target:7") is False
        assert await check_queue.has_waiting("target:8") is True

    async def test_remove_waiting_leaves_active_jobs(self, check_queue) -> None:
        await check_queue.add("run", {}, job_key="target:7")
        await check_queue.claim()

        assert await check_queue.remove_waiting("target:7") == 0
        assert (await check_queue.counts())["active"] == 1

    async def test_add_in_rolled_back_transaction_is_discarded(self, db, check_queue) -> None:
        with pytest.raises(RuntimeError):
            async with db.session() as session:
                async with session.begin():
                    await check_queue.add("run", {}, session=session)
                    raise RuntimeError("abort")

        assert await check_queue.claim() is None

    async def test_add_in_committed_transaction_is_visible(self, db, check_queue) -> None:
        async with db.session() as session:
            async with session.begin():
                job_id = await check_queue.add("run", {"a": 1}, session=session)

        job = await check_queue.claim()
        assert job.id == job_id

    async def test_concurrent_claims_get_one_job_once(self, check_queue) -> None:
        await check_queue.add("run", {})

        claimed = await asyncio.gather(*[check_queue.claim() for _ in range(5)])

        assert len([job for job in claimed if job is not None]) == 1


class TestWorkerPool:
    """Tests for WorkerPool."""

    async def test_run_until_idle_processes_everything(self, check_queue) -> None:
        seen = []

        async def handler(job):
            seen.append(job.payload["n"])

        for n in range(6):
            await check_queue.add("run", {"n": n})

        pool = WorkerPool(check_queue, handler, concurrency=3)
        ran = await pool.run_until_idle()

        assert ran == 6
        assert sorted(seen) == list(range(6))
        assert (await check_queue.counts())["completed"] == 6

    async def test_handler_error_retries_then_dead_letters(self, check_queue) -> None:
        calls = []

        async def handler(job):
            calls.append(job.attempts_made)
            raise ValueError("handler broke")

        await check_queue.add("run", {}, attempts=3)
        pool = WorkerPool(check_queue, handler)
        await pool.run_until_idle()

        assert calls == [1, 2, 3]
        failed = await check_queue.list_jobs(status="failed")
        assert failed[0].last_error == "ValueError: handler broke"

    async def test_concurrency_is_bounded(self, check_queue) -> None:
        active = 0
        peak = 0

        async def handler(job):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        for _ in range(8):
            await check_queue.add("run", {})

        await WorkerPool(check_queue, handler, concurrency=2).run_until_idle()

        assert peak <= 2

    async def test_started_pool_drains_queue(self, check_queue) -> None:
        done = asyncio.Event()

        async def handler(job):
            done.set()

        pool = WorkerPool(check_queue, handler, concurrency=2, poll_seconds=0.01)
        pool.start()
        try:
            await check_queue.add("run", {})
            await asyncio.wait_for(done.wait(), timeout=5)
        finally:
            await pool.stop()

        assert pool.running is False
