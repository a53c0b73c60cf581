"""Database models."""
from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class CallRecord(Base):
    """A placed call and its outcome."""

    __tablename__ = "calls"

    id = Column(Integer, primary_key=True, index=True)
    call_id = Column(String, unique=True, index=True, nullable=False)
    kind = Column(String, default="escalation", nullable=False)  # escalation, conversation, test
    session_key = Column(String, nullable=True)
    event_type = Column(String, nullable=True)
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    status = Column(String, default="in_progress", nullable=False)  # in_progress, completed, no_response, failed
    transcript = Column(Text, nullable=True)
    final_response = Column(Text, nullable=True)
