"""NotificationLog model - alert idempotency and audit trail."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean, UniqueConstraint

from ..database import Base


class NotificationLog(Base):
    """At most one row per (check run, alert type).

    Rows with sent=0 after their job finished are the undelivered backlog.
    """

    __tablename__ = "notification_logs"
    __table_args__ = (
        UniqueConstraint("check_run_id", "alert_type", name="uq_notification_logs_run_type"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    check_run_id = Column(String, nullable=False, index=True)
    monitor_id = Column(Integer, nullable=False, index=True)
    alert_type = Column(String, nullable=False)  # down, up
    job_id = Column(Integer, nullable=True)  # queue job that owns this row
    sent = Column(Boolean, nullable=False, default=False)
    sent_at = Column(DateTime, nullable=True)
    recipient = Column(String, nullable=True)
    skip_reason = Column(String, nullable=True)  # alerts_disabled, cooldown, no_recipient, ...
    # Cooldown slot held by job_id while its e-mail is in flight
    reserved_at = Column(DateTime, nullable=True)
    previous_alert_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
