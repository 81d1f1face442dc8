"""QueueJob model - durable job queue rows."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, JSON, Float, Index

from ..database import Base

JOB_STATUSES = ("waiting", "active", "completed", "failed")


class QueueJob(Base):
    """A queued unit of work. status=failed is the dead-letter state."""

    __tablename__ = "queue_jobs"
    __table_args__ = (
        Index("ix_queue_jobs_claim", "queue", "status", "run_at"),
        Index("ix_queue_jobs_key", "queue", "job_key", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    queue = Column(String, nullable=False)  # checks, notifications
    name = Column(String, nullable=False)  # run, monitor-down, monitor-up
    job_key = Column(String, nullable=True)  # "target:<id>" for recurring firings
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String, nullable=False, default="waiting")
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=1)
    backoff_seconds = Column(Float, nullable=False, default=0.0)
    run_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    locked_until = Column(DateTime, nullable=True)
    last_error = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    finished_at = Column(DateTime, nullable=True)
