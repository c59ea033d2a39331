"""Database models for missions."""

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class MissionModel(Base):
    """Mission database model."""
    __tablename__ = "missions"

    id = Column(String(100), primary_key=True)
    prompt = Column(Text, nullable=False)
    context = Column(Text)
    priority = Column(String(20), index=True, nullable=False, default="normal")  # critical, high, normal, low
    type = Column(String(20))  # extraction, analysis, synthesis, review, general
    status = Column(String(20), index=True, default="pending")
    timeout_ms = Column(Integer, default=300_000)
    max_retries = Column(Integer, default=3)
    retry_count = Column(Integer, default=0)
    retry_delay_ms = Column(Integer)
    depends_on = Column(JSON)
    assigned_to = Column(Integer, index=True)
    error = Column(JSON)
    result = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
