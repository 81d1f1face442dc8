"""Scheduler service - one recurring check job per enabled monitor.

Design:
- Each monitor gets an APScheduler interval job keyed "target:<id>";
  re-adding under the same key replaces the old job in place
- A firing only enqueues a check job; probing happens in the check worker pool
- The in-memory job store does not survive restarts, so start() reconciles
  live schedules against enabled monitors
- Registry mutations never raise: failures are logged and returned as
  ScheduleResult so the calling CRUD operation can still succeed
- An hourly maintenance job purges completed queue jobs and processed check
  runs past the retention window; failed jobs stay as the dead-letter queue
"""
import logging
import uuid
from datetime import timedelta
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..database import Database
from ..stores import MonitorStore, CheckRunStore
from ..utils.db_utils import retry_on_lock, utcnow
from .job_queue import JobQueue

logger = logging.getLogger(__name__)

SCHEDULE_KEY_PREFIX = "target:"
CLEANUP_JOB_ID = "maintenance:cleanup"


def schedule_key(target_id: int) -> str:
    """Deterministic schedule key for a monitor."""
    return f"{SCHEDULE_KEY_PREFIX}{target_id}"


@dataclass
class ScheduleResult:
    """Outcome of a registry mutation. ok=False is a warning, not a failure."""
    key: str
    ok: bool = True
    error: Optional[str] = None


@dataclass
class ScheduleDrift:
    """Difference between enabled monitors and live schedules."""
    missing: List[str] = field(default_factory=list)  # enabled monitors without a schedule
    orphaned: List[str] = field(default_factory=list)  # schedules without an enabled monitor
    mismatched: List[str] = field(default_factory=list)  # schedules with a stale interval

    @property
    def has_drift(self) -> bool:
        return bool(self.missing or self.orphaned or self.mismatched)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "missing": self.missing,
            "orphaned": self.orphaned,
            "mismatched": self.mismatched,
            "has_drift": self.has_drift,
        }


class SchedulerService:
    """Schedule registry for recurring monitor checks."""

    def __init__(
        self,
        db: Database,
        check_queue: JobQueue,
        monitors: Optional[MonitorStore] = None,
        retention_queues: Optional[List[JobQueue]] = None,
        retention_hours: int = 24,
        check_runs: Optional[CheckRunStore] = None,
    ):
        self.db = db
        self.check_queue = check_queue
        self.monitors = monitors or MonitorStore()
        self.retention_queues = retention_queues if retention_queues is not None else [check_queue]
        self.retention = timedelta(hours=retention_hours)
        self.check_runs = check_runs or CheckRunStore()
        self.scheduler = AsyncIOScheduler()
        self._running = False

    async def start(self):
        """Start the scheduler and install schedules for enabled monitors."""
        if self._running:
            return
        self.scheduler.add_job(
            self.cleanup,
            trigger=IntervalTrigger(hours=1),
            id=CLEANUP_JOB_ID,
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()
        self._running = True
        await self.reconcile()
        logger.info(f"Scheduler started ({len(self.list_schedules())} schedules)")

    def stop(self):
        """Stop the scheduler."""
        if self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Scheduler stopped")

    async def upsert_schedule(self, target_id: int, interval_minutes: int) -> ScheduleResult:
        """Install or replace the recurring check job for a monitor."""
        key = schedule_key(target_id)
        interval_minutes = max(1, int(interval_minutes or 1))
        try:
            # Replacing drops the old trigger; no window with both jobs live
            self.scheduler.add_job(
                self.fire,
                trigger=IntervalTrigger(minutes=interval_minutes),
                args=[target_id],
                id=key,
                name=key,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=60,
            )
            discarded = await self.check_queue.remove_waiting(key)
        except Exception as e:
            logger.warning(f"Failed to upsert schedule {key}: {e}")
            return ScheduleResult(key=key, ok=False, error=str(e))

        if discarded:
            logger.info(f"Discarded {discarded} pending firing(s) for {key}")
        logger.info(f"Schedule {key} every {interval_minutes * 60000}ms")
        return ScheduleResult(key=key)

    async def remove_schedule(self, target_id: int) -> ScheduleResult:
        """Remove the recurring check job for a monitor. Idempotent."""
        key = schedule_key(target_id)
        try:
            try:
                self.scheduler.remove_job(key)
            except JobLookupError:
                logger.info(f"Schedule {key} not present, nothing to remove")
            await self.check_queue.remove_waiting(key)
        except Exception as e:
            logger.warning(f"Failed to remove schedule {key}: {e}")
            return ScheduleResult(key=key, ok=False, error=str(e))

        logger.info(f"Removed schedule {key}")
        return ScheduleResult(key=key)

    async def sync_schedule(self, target_id: int, enabled: bool, interval_minutes: int) -> ScheduleResult:
        """Hook for the monitor CRUD layer after a create or update."""
        if enabled:
            return await self.upsert_schedule(target_id, interval_minutes)
        return await self.remove_schedule(target_id)

    async def fire(self, target_id: int):
        """Scheduled firing: enqueue an automatic check."""
        key = schedule_key(target_id)
        try:
            if await self.check_queue.has_waiting(key):
                logger.debug(f"Firing for {key} skipped, previous one still waiting")
                return
            await self.enqueue_check(target_id, trigger="auto", job_key=key)
        except Exception as e:
            logger.error(f"Error enqueueing scheduled check for {key}: {e}")

    async def enqueue_check(self, target_id: int, trigger: str = "manual", job_key: Optional[str] = None) -> int:
        """Enqueue a check job with a fresh CheckRun id. Returns the job id."""
        check_run_id = str(uuid.uuid4())
        job_id = await self.check_queue.add(
            "run",
            {"target_id": target_id, "trigger": trigger, "check_run_id": check_run_id},
            job_key=job_key,
        )
        logger.info(f"Enqueued {trigger} check job={job_id} monitor={target_id} run={check_run_id}")
        return job_id

    async def enqueue_ad_hoc_check(self, target_id: int) -> int:
        return await self.enqueue_check(target_id, trigger="manual")

    def list_schedules(self) -> List[Dict[str, Any]]:
        """Live recurring jobs."""
        schedules = []
        for job in self.scheduler.get_jobs():
            if not job.id.startswith(SCHEDULE_KEY_PREFIX):
                continue
            every_ms = int(job.trigger.interval.total_seconds() * 1000)
            # Jobs added before start() have no next_run_time yet
            next_run = getattr(job, "next_run_time", None)
            schedules.append({
                "job_id": job.id,
                "target_id": int(job.id[len(SCHEDULE_KEY_PREFIX):]),
                "every_ms": every_ms,
                "next_run_at": next_run.isoformat() if next_run else None,
            })
        return schedules

    def _live(self) -> Dict[str, int]:
        return {s["job_id"]: s["every_ms"] for s in self.list_schedules()}

    async def find_drift(self) -> ScheduleDrift:
        """Compare enabled monitors with live schedules."""
        async with self.db.session() as session:
            enabled = await self.monitors.list_enabled(session)

        live = self._live()
        expected = {schedule_key(mid): max(1, freq) * 60000 for mid, freq in enabled}
        drift = ScheduleDrift(
            missing=sorted(k for k in expected if k not in live),
            orphaned=sorted(k for k in live if k not in expected),
            mismatched=sorted(k for k in expected if k in live and live[k] != expected[k]),
        )
        if drift.has_drift:
            logger.warning(
                f"Schedule drift: missing={drift.missing} orphaned={drift.orphaned} mismatched={drift.mismatched}"
            )
        return drift

    async def reconcile(self) -> ScheduleDrift:
        """Install missing, fix stale and remove orphaned schedules."""
        drift = await self.find_drift()
        if not drift.has_drift:
            return drift

        async with self.db.session() as session:
            enabled = dict(await self.monitors.list_enabled(session))

        for key in drift.missing + drift.mismatched:
            target_id = int(key[len(SCHEDULE_KEY_PREFIX):])
            if target_id in enabled:
                await self.upsert_schedule(target_id, enabled[target_id])
        for key in drift.orphaned:
            await self.remove_schedule(int(key[len(SCHEDULE_KEY_PREFIX):]))
        return drift

    async def remove_all_schedules(self) -> int:
        """Remove every recurring check job. Returns how many were removed."""
        removed = 0
        for schedule in self.list_schedules():
            result = await self.remove_schedule(schedule["target_id"])
            if result.ok:
                removed += 1
        return removed

    async def cleanup(self) -> Dict[str, int]:
        """Purge completed jobs and processed check runs past the retention window."""
        purged = {"jobs": 0, "check_runs": 0}
        try:
            for queue in self.retention_queues:
                purged["jobs"] += await queue.purge_completed(self.retention)

            cutoff = utcnow() - self.retention
            async with self.db.session() as session:
                purged["check_runs"] = await self.check_runs.purge_processed(session, cutoff)
                await retry_on_lock(session.commit)
            logger.info(f"Cleaned up {purged['jobs']} completed job(s) and {purged['check_runs']} check run(s)")
        except Exception as e:
            logger.error(f"Error cleaning up records: {e}")
        return purged
