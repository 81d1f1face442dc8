"""Services for probing, scheduling, queueing and alerting."""
from .checker import CheckerService, ProbeResult
from .scheduler import SchedulerService
from .job_queue import JobQueue, WorkerPool
from .check_worker import CheckWorker
from .notification_worker import NotificationWorker

__all__ = [
    "CheckerService",
    "ProbeResult",
    "SchedulerService",
    "JobQueue",
    "WorkerPool",
    "CheckWorker",
    "NotificationWorker",
]
