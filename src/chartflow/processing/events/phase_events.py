"""
Phase-transition events emitted by the worker while executing a job.
A status relay subscribes to these and forwards them to connected clients.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


class JobPhase(str, enum.Enum):
    PROCESSING = "processing"
    OCR_STARTED = "ocr_started"
    OCR_COMPLETED = "ocr_completed"
    AI_STARTED = "ai_started"
    AI_COMPLETED = "ai_completed"
    SAVING_RESULTS = "saving_results"
    COMPLETED = "completed"
    FAILED = "failed"


# Emission order within one job attempt; FAILED may follow any prefix.
PHASE_ORDER = list(JobPhase)


class PhaseEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str = "job.phase"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    chart_number: str
    job_id: str
    attempt: int = 0
    phase: JobPhase
    message: str = ""
    worker_id: Optional[str] = None
