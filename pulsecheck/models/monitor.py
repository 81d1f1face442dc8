"""Monitor model - HTTP endpoints being probed."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, JSON, CheckConstraint
from sqlalchemy.orm import relationship

from ..database import Base

MONITOR_STATUSES = ("unknown", "up", "down")
HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD")


class Monitor(Base):
    """A monitored HTTP endpoint and its last known state.

    Status, fail count and timing columns are written only by the check worker;
    last_alert_at only by the notification worker. Both write through
    conditional UPDATE statements (see stores.MonitorStore).
    """

    __tablename__ = "monitors"
    __table_args__ = (
        CheckConstraint("consecutive_fails >= 0", name="ck_monitors_consecutive_fails"),
        CheckConstraint("alert_threshold >= 1", name="ck_monitors_alert_threshold"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    url = Column(String, nullable=False)
    method = Column(String, nullable=False, default="GET")
    headers = Column(JSON, nullable=False, default=dict)
    body = Column(String, nullable=True)
    frequency_minutes = Column(Integer, nullable=False, default=5)
    timeout_ms = Column(Integer, nullable=False, default=5000)
    assertions = Column(JSON, nullable=False, default=list)  # e.g. ["status==200"]
    enabled = Column(Boolean, nullable=False, default=True)

    # Last known state
    last_status = Column(String, nullable=False, default="unknown")  # unknown, up, down
    last_response_time = Column(Integer, nullable=True)
    last_checked_at = Column(DateTime, nullable=True)
    consecutive_fails = Column(Integer, nullable=False, default=0)
    alert_threshold = Column(Integer, nullable=False, default=1)
    last_alert_at = Column(DateTime, nullable=True)  # Last sent alert, down or up

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    owner = relationship("User", back_populates="monitors")
    history = relationship("CheckHistory", back_populates="monitor", cascade="all, delete-orphan")
