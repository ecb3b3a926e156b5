"""
Processing queue models.
One row per submitted unit of chart work; polled and claimed by workers.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from chartflow.models.base import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingJob(Base):
    """
    Represents a queued chart-processing job.

    A FAILED row with attempts < max_attempts is still claimable;
    with attempts >= max_attempts it is permanently failed.
    """

    __tablename__ = "processing_queue"
    __table_args__ = (
        # claim_next_job: WHERE status IN (...) ORDER BY created_at
        Index("ix_processing_queue_claim", "status", "created_at"),
        # release_stuck_jobs: WHERE status='processing' AND locked_at < cutoff
        Index("ix_processing_queue_stale", "status", "locked_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(
        String(36), unique=True, nullable=False, default=lambda: str(uuid.uuid4())
    )

    # Owner (chart) this job belongs to
    chart_id = Column(Integer, nullable=True)
    chart_number = Column(String(50), nullable=False, index=True)

    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    payload = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False)

    # Execution info
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    worker_id = Column(String(100), nullable=True)
    locked_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    # Timing
    created_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    @property
    def is_permanently_failed(self) -> bool:
        return (
            self.status == JobStatus.FAILED.value
            and (self.attempts or 0) >= (self.max_attempts or 0)
        )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<ProcessingJob {self.job_id} chart={self.chart_number} "
            f"status={self.status} attempts={self.attempts}/{self.max_attempts}>"
        )
