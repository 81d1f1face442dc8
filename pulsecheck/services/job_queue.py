"""Durable job queue and bounded worker pools.

Design:
- One logical queue per job type ("checks", "notifications"), stored in the
  queue_jobs table so jobs survive restarts
- Claiming is a conditional UPDATE, so two workers can never run the same
  delivery; an expired lease makes an active job claimable again (at-least-once)
- Failed attempts are rescheduled with exponential backoff; once attempts are
  exhausted the job stays in status "failed" (dead-letter) for operators
"""
import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select, update, delete, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import Database
from ..models import QueueJob
from ..utils.db_utils import retry_on_lock, utcnow

logger = logging.getLogger(__name__)

CHECK_QUEUE = "checks"
NOTIFICATION_QUEUE = "notifications"

# Times a worker retries when another worker claims the same candidate first
CLAIM_CONTENTION_RETRIES = 5


class JobQueue:
    """A single named queue backed by the queue_jobs table."""

    def __init__(
        self,
        db: Database,
        name: str,
        default_attempts: int = 1,
        default_backoff_seconds: float = 0.0,
        lease_seconds: int = 120,
    ):
        self.db = db
        self.name = name
        self.default_attempts = max(1, default_attempts)
        self.default_backoff_seconds = default_backoff_seconds
        self.lease_seconds = lease_seconds

    async def add(
        self,
        job_name: str,
        payload: Dict[str, Any],
        job_key: Optional[str] = None,
        attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        session: Optional[AsyncSession] = None,
    ) -> int:
        """Enqueue a job and return its id.

        When a session is given the job is written inside the caller's
        transaction and becomes visible only if that transaction commits.
        """
        job = QueueJob(
            queue=self.name,
            name=job_name,
            job_key=job_key,
            payload=payload,
            status="waiting",
            attempts_made=0,
            max_attempts=max(1, attempts or self.default_attempts),
            backoff_seconds=self.default_backoff_seconds if backoff_seconds is None else backoff_seconds,
            run_at=utcnow(),
        )
        if session is not None:
            session.add(job)
            await session.flush()
            return job.id

        async def _add():
            async with self.db.session() as s:
                s.add(job)
                await s.commit()
                return job.id

        return await retry_on_lock(_add)

    async def has_waiting(self, job_key: str) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                select(func.count())
                .select_from(QueueJob)
                .where(
                    QueueJob.queue == self.name,
                    QueueJob.job_key == job_key,
                    QueueJob.status == "waiting",
                )
            )
            return result.scalar_one() > 0

    async def remove_waiting(self, job_key: str) -> int:
        """Discard firings for a key that no worker has picked up yet."""
        async def _remove():
            async with self.db.session() as session:
                result = await session.execute(
                    delete(QueueJob).where(
                        QueueJob.queue == self.name,
                        QueueJob.job_key == job_key,
                        QueueJob.status == "waiting",
                    )
                )
                await session.commit()
                return result.rowcount

        return await retry_on_lock(_remove)

    def _claimable(self, now):
        return and_(
            QueueJob.queue == self.name,
            QueueJob.attempts_made < QueueJob.max_attempts,
            or_(
                and_(QueueJob.status == "waiting", QueueJob.run_at <= now),
                and_(QueueJob.status == "active", QueueJob.locked_until < now),
            ),
        )

    async def _reap_expired(self, session: AsyncSession, now):
        """Dead-letter active jobs whose lease ran out on their last attempt."""
        result = await session.execute(
            update(QueueJob)
            .where(
                QueueJob.queue == self.name,
                QueueJob.status == "active",
                QueueJob.locked_until < now,
                QueueJob.attempts_made >= QueueJob.max_attempts,
            )
            .values(status="failed", finished_at=now, locked_until=None, last_error="lease expired")
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.error(f"[{self.name}] {result.rowcount} job(s) dead-lettered after lease expiry")

    async def claim(self) -> Optional[QueueJob]:
        """Claim the next runnable job, or return None if the queue is idle."""
        for _ in range(CLAIM_CONTENTION_RETRIES):
            async with self.db.session() as session:
                now = utcnow()
                await self._reap_expired(session, now)
                result = await session.execute(
                    select(QueueJob.id)
                    .where(self._claimable(now))
                    .order_by(QueueJob.run_at, QueueJob.id)
                    .limit(1)
                )
                job_id = result.scalar_one_or_none()
                if job_id is None:
                    await session.commit()
                    return None

                claimed = await session.execute(
                    update(QueueJob)
                    .where(QueueJob.id == job_id, self._claimable(now))
                    .values(
                        status="active",
                        attempts_made=QueueJob.attempts_made + 1,
                        locked_until=now + timedelta(seconds=self.lease_seconds),
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if claimed.rowcount != 1:
                    # Another worker won this one
                    continue

                job = await session.get(QueueJob, job_id, populate_existing=True)
                return job
        return None

    def _owned_by(self, job: QueueJob):
        """Predicate matching only the attempt this worker claimed."""
        return and_(
            QueueJob.id == job.id,
            QueueJob.status == "active",
            QueueJob.attempts_made == job.attempts_made,
        )

    async def complete(self, job: QueueJob) -> bool:
        """Mark the claimed attempt completed. False if the lease was lost to a redelivery."""
        async def _complete():
            async with self.db.session() as session:
                result = await session.execute(
                    update(QueueJob)
                    .where(self._owned_by(job))
                    .values(status="completed", finished_at=utcnow(), locked_until=None)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                return result.rowcount == 1

        completed = await retry_on_lock(_complete)
        if not completed:
            logger.warning(f"[{self.name}] Job {job.id} attempt {job.attempts_made} lost its lease, result discarded")
        return completed

    async def fail(self, job: QueueJob, error: str) -> bool:
        """Record a failed attempt. Returns True if the job will be retried."""
        now = utcnow()
        retry = job.attempts_made < job.max_attempts
        if retry:
            delay = job.backoff_seconds * (2 ** max(job.attempts_made - 1, 0))
            values = {
                "status": "waiting",
                "run_at": now + timedelta(seconds=delay),
                "locked_until": None,
                "last_error": error,
            }
        else:
            values = {
                "status": "failed",
                "finished_at": now,
                "locked_until": None,
                "last_error": error,
            }

        async def _fail():
            async with self.db.session() as session:
                result = await session.execute(
                    update(QueueJob)
                    .where(self._owned_by(job))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                return result.rowcount == 1

        if not await retry_on_lock(_fail):
            logger.warning(
                f"[{self.name}] Job {job.id} attempt {job.attempts_made} lost its lease, error discarded: {error}"
            )
            return False

        if retry:
            logger.warning(
                f"[{self.name}] Job {job.id} attempt {job.attempts_made}/{job.max_attempts} failed, "
                f"retrying in {values['run_at'] - now}: {error}"
            )
        else:
            logger.error(
                f"[{self.name}] Job {job.id} ({job.name}) dead-lettered after "
                f"{job.attempts_made} attempt(s): {error}"
            )
        return retry

    async def list_jobs(self, status: Optional[str] = None, limit: int = 100) -> List[QueueJob]:
        async with self.db.session() as session:
            stmt = select(QueueJob).where(QueueJob.queue == self.name)
            if status:
                stmt = stmt.where(QueueJob.status == status)
            result = await session.execute(stmt.order_by(QueueJob.id.desc()).limit(limit))
            return list(result.scalars().all())

    async def counts(self) -> Dict[str, int]:
        async with self.db.session() as session:
            result = await session.execute(
                select(QueueJob.status, func.count())
                .where(QueueJob.queue == self.name)
                .group_by(QueueJob.status)
            )
            counts = {status: 0 for status in ("waiting", "active", "completed", "failed")}
            for status, count in result:
                counts[status] = count
            return counts

    async def purge_completed(self, older_than: timedelta) -> int:
        """Delete completed jobs finished before the retention window. Failed jobs are kept."""
        cutoff = utcnow() - older_than

        async def _purge():
            async with self.db.session() as session:
                result = await session.execute(
                    delete(QueueJob).where(
                        QueueJob.queue == self.name,
                        QueueJob.status == "completed",
                        QueueJob.finished_at < cutoff,
                    )
                )
                await session.commit()
                return result.rowcount

        return await retry_on_lock(_purge)


JobHandler = Callable[[QueueJob], Awaitable[Any]]


class WorkerPool:
    """Runs a handler over a queue with bounded concurrency."""

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        concurrency: int = 1,
        poll_seconds: float = 1.0,
    ):
        self.queue = queue
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.poll_seconds = poll_seconds
        self._tasks: List[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self):
        """Start the worker loops."""
        if self._tasks:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._loop(i), name=f"{self.queue.name}-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(f"[{self.queue.name}] Worker pool started (concurrency={self.concurrency})")

    async def stop(self):
        """Stop after in-flight jobs finish."""
        if not self._tasks:
            return
        self._stopping.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(f"[{self.queue.name}] Worker pool stopped")

    async def _loop(self, index: int):
        while not self._stopping.is_set():
            try:
                processed = await self.process_one()
            except Exception as e:
                # Queue storage unavailable; back off and keep polling
                logger.error(f"[{self.queue.name}] worker {index} error: {e}")
                processed = False
            if not processed:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_seconds)
                except asyncio.TimeoutError:
                    pass

    async def process_one(self) -> bool:
        """Claim and run one job. Returns False when nothing was runnable."""
        job = await self.queue.claim()
        if job is None:
            return False

        logger.debug(f"[{self.queue.name}] Processing job {job.id} ({job.name}) attempt {job.attempts_made}")
        try:
            outcome = await self.handler(job)
        except Exception as e:
            await self.queue.fail(job, f"{type(e).__name__}: {e}")
        else:
            await self.queue.complete(job)
            logger.debug(f"[{self.queue.name}] Job {job.id} completed: {outcome}")
        return True

    async def run_until_idle(self) -> int:
        """Process runnable jobs concurrently until none are left. Returns jobs run."""
        semaphore = asyncio.Semaphore(self.concurrency)
        total = 0

        async def run_with_limit():
            async with semaphore:
                return await self.process_one()

        while True:
            results = await asyncio.gather(*[run_with_limit() for _ in range(self.concurrency)])
            ran = sum(1 for r in results if r)
            total += ran
            if ran == 0:
                return total
