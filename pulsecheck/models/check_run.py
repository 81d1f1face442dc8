"""CheckRun model - idempotency token for one dispatched check job."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean

from ..database import Base


class CheckRun(Base):
    """Write-ahead marker: created before a check runs, processed once."""

    __tablename__ = "check_runs"

    id = Column(String, primary_key=True)  # uuid4 minted at enqueue time
    monitor_id = Column(Integer, nullable=False, index=True)  # no FK, monitor may be deleted
    processed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)
