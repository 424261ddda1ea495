"""SQLAlchemy database models for the workflow engine."""

from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, JSON, Integer

from .database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class RunCheckpointModel(Base):
    """Suspension checkpoint of a workflow run awaiting a decision."""
    __tablename__ = "run_checkpoints"

    run_id = Column(String, primary_key=True)
    status = Column(String, nullable=False)  # suspended while resumable
    cursor = Column(String, nullable=False)  # node id awaiting the decision
    graph = Column(JSON, nullable=False)
    context = Column(JSON, nullable=False)
    sequence = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
