"""SQLAlchemy database models for the mitigation workflow engine."""

from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text, JSON, Integer, Boolean, Float
from .database import Base


def _utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class WorkflowDefinitionModel(Base):
    """Database model for workflow definitions (playbooks)."""
    __tablename__ = "workflow_definitions"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    position = Column(Integer, nullable=False)  # Registration order, kept across replacements
    definition = Column(JSON, nullable=False)  # Stores the complete definition document
    created_at = Column(DateTime, default=_utcnow_naive)
    updated_at = Column(DateTime, default=_utcnow_naive, onupdate=_utcnow_naive)


class WorkflowExecutionModel(Base):
    """Database model for workflow executions."""
    __tablename__ = "workflow_executions"

    id = Column(String, primary_key=True)
    definition_id = Column(String, nullable=False, index=True)
    instruction_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, index=True)  # initiated, in_progress, paused, completed, failed, cancelled
    current_step = Column(Integer, nullable=False, default=1)
    effectiveness = Column(Float)
    document = Column(JSON, nullable=False)  # Full execution including the step execution log
    started_at = Column(DateTime, nullable=False, index=True)  # Naive UTC
    ended_at = Column(DateTime)
    updated_at = Column(DateTime, default=_utcnow_naive, onupdate=_utcnow_naive)
