from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from chartflow.database import get_db
from chartflow.exceptions import JobNotFoundError
from chartflow.processing.models.job import ProcessingJob
from chartflow.processing.services.chart_service import ChartService
from chartflow.processing.services.queue_service import QueueService

router = APIRouter(tags=["Queue"])


class JobResponse(BaseModel):
    job_id: str
    chart_number: str
    status: str
    attempts: int
    max_attempts: int
    permanently_failed: bool
    worker_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ChartStatusResponse(BaseModel):
    chart_number: str
    ai_status: str
    review_status: Optional[str] = None
    last_error: Optional[str] = None
    retry_count: int = 0
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    job: Optional[JobResponse] = None


class ReleaseResponse(BaseModel):
    released: int
    job_ids: List[str]


def _to_job_response(job: ProcessingJob) -> JobResponse:
    return JobResponse(
        job_id=job.job_id,
        chart_number=job.chart_number,
        status=job.status,
        attempts=job.attempts or 0,
        max_attempts=job.max_attempts or 0,
        permanently_failed=job.is_permanently_failed,
        worker_id=job.worker_id,
        error_message=job.error_message,
        created_at=job.created_at,
        started_at=job.started_at,
        locked_at=job.locked_at,
        completed_at=job.completed_at,
    )


@router.get("/queue/stats", response_model=Dict[str, int])
def queue_stats(db: Session = Depends(get_db)) -> Dict[str, int]:
    return QueueService(db).get_stats()


@router.get("/queue/jobs/{job_id}", response_model=JobResponse)
def get_job(job_id: str, db: Session = Depends(get_db)) -> JobResponse:
    job = QueueService(db).get_job(job_id)
    if not job:
        raise JobNotFoundError(job_id)
    return _to_job_response(job)


@router.post("/queue/release-stuck", response_model=ReleaseResponse)
def release_stuck(
    threshold_minutes: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
) -> ReleaseResponse:
    released = QueueService(db).release_stuck_jobs(threshold_minutes)
    return ReleaseResponse(
        released=len(released), job_ids=[job.job_id for job in released]
    )


@router.get("/charts/{chart_number}/status", response_model=ChartStatusResponse)
def chart_status(chart_number: str, db: Session = Depends(get_db)) -> ChartStatusResponse:
    chart = ChartService(db).get_by_chart_number(chart_number)
    if not chart:
        raise HTTPException(status_code=404, detail="Chart not found")
    jobs = QueueService(db).get_jobs_by_chart(chart_number)
    return ChartStatusResponse(
        chart_number=chart.chart_number,
        ai_status=chart.ai_status,
        review_status=chart.review_status,
        last_error=chart.last_error,
        retry_count=chart.retry_count or 0,
        processing_started_at=chart.processing_started_at,
        processing_completed_at=chart.processing_completed_at,
        job=_to_job_response(jobs[0]) if jobs else None,
    )
