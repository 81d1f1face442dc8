"""User model - monitor owners and their alert preferences."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean
from sqlalchemy.orm import relationship

from ..database import Base


class User(Base):
    """Owner of monitors. Accounts are managed outside the pipeline."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True, unique=True)

    # Notification preferences
    alerts_enabled = Column(Boolean, nullable=False, default=True)
    alert_on_down = Column(Boolean, nullable=False, default=True)
    alert_on_up = Column(Boolean, nullable=False, default=True)
    cooldown_minutes = Column(Integer, nullable=True, default=10)  # NULL = server default

    created_at = Column(DateTime, default=datetime.utcnow)

    monitors = relationship("Monitor", back_populates="owner")
