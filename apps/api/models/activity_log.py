"""Lifecycle event log model."""

from sqlalchemy import Column, DateTime, JSON, String
from sqlalchemy.sql import func
import uuid

from database import Base


class ActivityLog(Base):
    """Fire-and-forget lifecycle event (match_detected, rental_completed, ...)."""

    __tablename__ = "activity_log"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=True, index=True)
    event_type = Column(String, nullable=False, index=True)
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
