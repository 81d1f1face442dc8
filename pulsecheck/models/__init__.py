"""Database models."""
from .user import User
from .monitor import Monitor
from .check_run import CheckRun
from .check_history import CheckHistory
from .notification_log import NotificationLog
from .queue_job import QueueJob

__all__ = ["User", "Monitor", "CheckRun", "CheckHistory", "NotificationLog", "QueueJob"]
