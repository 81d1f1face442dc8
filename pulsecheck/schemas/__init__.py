"""Pydantic schemas for API request/response models."""
from .ops import (
    ScheduleSync,
    ScheduleResultResponse,
    RunCheckResponse,
    ScheduleInfo,
    ScheduleOverview,
    JobInfo,
    NotificationLogInfo,
    HealthResponse,
)

__all__ = [
    "ScheduleSync",
    "ScheduleResultResponse",
    "RunCheckResponse",
    "ScheduleInfo",
    "ScheduleOverview",
    "JobInfo",
    "NotificationLogInfo",
    "HealthResponse",
]
