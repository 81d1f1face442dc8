"""Monitor pipeline endpoints used by the monitor CRUD layer."""
from fastapi import APIRouter, Depends, HTTPException

from ..pipeline import Pipeline
from ..schemas.ops import ScheduleSync, ScheduleResultResponse, RunCheckResponse
from ..stores import MonitorStore
from .deps import get_pipeline

router = APIRouter(prefix="/api/monitors", tags=["monitors"])

monitor_store = MonitorStore()


@router.post("/{monitor_id}/run", response_model=RunCheckResponse, status_code=202)
async def run_monitor_now(monitor_id: int, pipeline: Pipeline = Depends(get_pipeline)):
    """Enqueue an ad-hoc check. Runs even when the monitor is disabled."""
    async with pipeline.db.session() as session:
        monitor = await monitor_store.get(session, monitor_id)
    if not monitor:
        raise HTTPException(status_code=404, detail="Monitor not found")

    job_id = await pipeline.scheduler.enqueue_ad_hoc_check(monitor_id)
    return RunCheckResponse(job_id=job_id)


@router.put("/{monitor_id}/schedule", response_model=ScheduleResultResponse)
async def sync_monitor_schedule(
    monitor_id: int,
    body: ScheduleSync,
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Install, replace or remove the recurring check after a monitor create/update.

    Registry failures come back as ok=false rather than an error status so the
    caller's own operation can still succeed.
    """
    result = await pipeline.scheduler.sync_schedule(monitor_id, body.enabled, body.frequency_minutes)
    return ScheduleResultResponse(key=result.key, ok=result.ok, error=result.error)


@router.delete("/{monitor_id}/schedule", response_model=ScheduleResultResponse)
async def remove_monitor_schedule(monitor_id: int, pipeline: Pipeline = Depends(get_pipeline)):
    """Remove the recurring check after a monitor is deleted. Idempotent."""
    result = await pipeline.scheduler.remove_schedule(monitor_id)
    return ScheduleResultResponse(key=result.key, ok=result.ok, error=result.error)
