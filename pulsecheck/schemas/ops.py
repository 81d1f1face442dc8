"""Schemas for the operational API."""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class ScheduleSync(BaseModel):
    """Monitor schedule state pushed by the CRUD layer."""
    enabled: bool
    frequency_minutes: int = Field(..., ge=1, le=1440)


class ScheduleResultResponse(BaseModel):
    """Outcome of a schedule registry mutation."""
    key: str
    ok: bool
    error: Optional[str] = None


class RunCheckResponse(BaseModel):
    """Response after enqueueing an ad-hoc check."""
    success: bool = True
    job_id: int
    message: str = "Job enqueued"


class ScheduleInfo(BaseModel):
    """A live recurring job."""
    job_id: str
    target_id: int
    every_ms: int
    next_run_at: Optional[str] = None


class ScheduleOverview(BaseModel):
    """Live schedules plus drift against enabled monitors."""
    schedules: List[ScheduleInfo]
    missing: List[str]
    orphaned: List[str]
    mismatched: List[str]
    has_drift: bool


class JobInfo(BaseModel):
    """A queue job."""
    id: int
    queue: str
    name: str
    job_key: Optional[str] = None
    status: str
    attempts_made: int
    max_attempts: int
    last_error: Optional[str] = None
    payload: Dict[str, Any]
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class NotificationLogInfo(BaseModel):
    """A notification log row."""
    id: int
    check_run_id: str
    monitor_id: int
    alert_type: str
    job_id: Optional[int] = None
    sent: bool
    skip_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class HealthResponse(BaseModel):
    """Health and operational signals."""
    status: str
    mode: str
    queues: Dict[str, Dict[str, int]]
    schedule_drift: bool
    unsent_notifications: int
