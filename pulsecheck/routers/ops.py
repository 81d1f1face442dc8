"""Operational visibility: schedules, dead letters, undelivered alerts."""
from typing import List

from fastapi import APIRouter, Depends, Query

from ..pipeline import Pipeline
from ..schemas.ops import ScheduleOverview, ScheduleInfo, JobInfo, NotificationLogInfo
from ..stores import NotificationLogStore
from .deps import get_pipeline

router = APIRouter(prefix="/api/ops", tags=["ops"])

log_store = NotificationLogStore()


@router.get("/schedules", response_model=ScheduleOverview)
async def get_schedules(pipeline: Pipeline = Depends(get_pipeline)):
    """Live schedules and their drift against enabled monitors."""
    drift = await pipeline.scheduler.find_drift()
    return ScheduleOverview(
        schedules=[ScheduleInfo(**s) for s in pipeline.scheduler.list_schedules()],
        **drift.to_dict(),
    )


@router.delete("/schedules")
async def remove_all_schedules(pipeline: Pipeline = Depends(get_pipeline)):
    """Remove every recurring check job. Restarting or reconciling reinstalls them."""
    removed = await pipeline.scheduler.remove_all_schedules()
    return {"removed": removed}


@router.post("/schedules/reconcile", response_model=ScheduleOverview)
async def reconcile_schedules(pipeline: Pipeline = Depends(get_pipeline)):
    """Install missing and drop orphaned schedules, returning the drift that was fixed."""
    drift = await pipeline.scheduler.reconcile()
    return ScheduleOverview(
        schedules=[ScheduleInfo(**s) for s in pipeline.scheduler.list_schedules()],
        **drift.to_dict(),
    )


@router.get("/jobs/failed", response_model=List[JobInfo])
async def get_failed_jobs(
    queue: str = Query("checks", pattern="^(checks|notifications)$"),
    limit: int = Query(100, ge=1, le=1000),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Dead-lettered jobs of one queue."""
    job_queue = pipeline.check_queue if queue == "checks" else pipeline.notification_queue
    jobs = await job_queue.list_jobs(status="failed", limit=limit)
    return [JobInfo.model_validate(job) for job in jobs]


@router.get("/notifications/unsent", response_model=List[NotificationLogInfo])
async def get_unsent_notifications(
    include_skipped: bool = False,
    limit: int = Query(100, ge=1, le=1000),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Alert candidates that did not produce an e-mail."""
    async with pipeline.db.session() as session:
        rows = await log_store.list_unsent(session, limit=limit, include_skipped=include_skipped)
    return [NotificationLogInfo.model_validate(row) for row in rows]
