"""CheckHistory model - append-only probe outcomes."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship

from ..database import Base


class CheckHistory(Base):
    """One executed probe. Never updated after insert."""

    __tablename__ = "check_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    monitor_id = Column(Integer, ForeignKey("monitors.id", ondelete="CASCADE"), nullable=False, index=True)
    check_run_id = Column(String, nullable=False, unique=True)
    status_code = Column(Integer, nullable=True)
    response_time_ms = Column(Integer, nullable=True)
    ok = Column(Boolean, nullable=False, default=False)
    body_hash = Column(String, nullable=True)  # sha256 hex
    response_snippet = Column(String, nullable=True)
    error = Column(String, nullable=True)
    checked_at = Column(DateTime, default=datetime.utcnow, index=True)

    # Relationships
    monitor = relationship("Monitor", back_populates="history")
