"""
Failure taxonomy for the document pipeline.

Only PipelinePhaseFailure crosses the job boundary (it aborts the job and is
routed through QueueService.fail_job). Document and summary failures are
recorded values; processing continues with reduced results.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from chartflow.processing.models.job import ProcessingJob


class PipelinePhaseFailure(RuntimeError):
    """A required phase (OCR as a whole, AI coding) failed; the job attempt is over."""

    def __init__(self, phase: str, message: str) -> None:
        self.phase = phase
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class DocumentFailure:
    document_id: int
    filename: str
    error: str


@dataclass(frozen=True)
class SummaryFailure:
    document_id: int
    filename: str
    error: str


@dataclass(frozen=True)
class FailureOutcome:
    """Result of QueueService.fail_job."""

    job_id: str
    attempts: int
    max_attempts: int
    is_permanently_failed: bool
    # Advisory only; retries are claimable as soon as the row is FAILED.
    retry_after: Optional[datetime] = None
    # False when the report was ignored because the job was no longer held.
    applied: bool = True
    job: Optional["ProcessingJob"] = None
