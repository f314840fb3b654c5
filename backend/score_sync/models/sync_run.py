"""
SQLAlchemy model for persisted score sync runs.
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, JSON, Float, Index, Enum as SQLEnum
)
from sqlalchemy.sql import func
from typing import Any, Dict

from score_sync.core.database import Base
from score_sync.models.flow import FlowStatus, SubmissionMode


class SyncRun(Base):
    """One finished flow run for a course."""

    __tablename__ = "score_sync_runs"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(String(64), unique=True, nullable=False)
    scope_id = Column(String(64), nullable=False, index=True)

    status = Column(SQLEnum(FlowStatus), nullable=False)
    submission_mode = Column(SQLEnum(SubmissionMode), nullable=True)

    # Counts
    number_of_updates = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)
    retried_count = Column(Integer, default=0)
    override_failed_count = Column(Integer, default=0)
    override_mismatch_count = Column(Integer, default=0)

    # Timing
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Results
    verification_converged = Column(Boolean, nullable=True)  # NULL when not verified
    error_type = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)
    state_path = Column(JSON, nullable=True)
    details = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('idx_score_sync_runs_scope_completed', 'scope_id', 'completed_at'),
    )

    @property
    def succeeded(self) -> bool:
        return self.status in (FlowStatus.COMPLETED, FlowStatus.NO_CHANGES)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_id': self.run_id,
            'scope_id': self.scope_id,
            'status': self.status.value if self.status else None,
            'submission_mode': self.submission_mode.value if self.submission_mode else None,
            'number_of_updates': self.number_of_updates,
            'failed_count': self.failed_count,
            'retried_count': self.retried_count,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'duration_seconds': self.duration_seconds,
            'error_message': self.error_message,
        }

    def __repr__(self):
        return f"<SyncRun(run_id={self.run_id}, scope_id={self.scope_id}, status={self.status})>"
