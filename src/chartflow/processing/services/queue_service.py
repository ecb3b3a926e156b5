"""
Queue Service
Table-backed job queue shared by all worker processes.

Claims use FOR UPDATE SKIP LOCKED on PostgreSQL so concurrent workers never
select the same row or wait on each other. The claiming UPDATE is also
conditional on the row's observed status/attempts, which keeps SQLite
(dev/test) from double-claiming when two sessions race.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Dict, Iterator, List, Optional, Union

from sqlalchemy import and_, asc, case, delete, desc, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chartflow.config import get_settings
from chartflow.exceptions import JobNotFoundError, StoreError
from chartflow.processing.models.job import JobStatus, ProcessingJob, utcnow
from chartflow.processing.schemas.payload import JobPayload
from chartflow.processing.services.job_errors import FailureOutcome

logger = logging.getLogger(__name__)

STUCK_RELEASE_MESSAGE = "Released: worker timeout"
MAX_ERROR_MESSAGE_LENGTH = 2000


def _claimable_clause():
    return or_(
        ProcessingJob.status == JobStatus.PENDING.value,
        and_(
            ProcessingJob.status == JobStatus.FAILED.value,
            ProcessingJob.attempts < ProcessingJob.max_attempts,
        ),
    )


class QueueService:
    def __init__(self, session: Session):
        self.session = session

    @contextmanager
    def _store_operation(self, operation: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error("Queue operation %s failed: %s", operation, exc)
            raise StoreError(operation, exc) from exc

    def _dialect(self) -> str:
        try:
            return self.session.get_bind().dialect.name
        except Exception:
            return "unknown"

    def _get_by_job_id(self, job_id: str) -> Optional[ProcessingJob]:
        return (
            self.session.execute(
                select(ProcessingJob)
                .where(ProcessingJob.job_id == job_id)
                .execution_options(populate_existing=True)
            )
            .scalars()
            .first()
        )

    def add_job(
        self,
        chart_number: str,
        payload: Union[JobPayload, Dict[str, Any]],
        *,
        chart_id: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> ProcessingJob:
        """Insert a pending job with attempts=0."""
        settings = get_settings()
        resolved_max_attempts = (
            max_attempts
            if max_attempts is not None
            else settings.JOB_MAX_ATTEMPTS_DEFAULT
        )
        if isinstance(payload, JobPayload):
            payload = payload.model_dump(mode="json")

        job = ProcessingJob(
            chart_id=chart_id,
            chart_number=chart_number,
            status=JobStatus.PENDING.value,
            payload=payload,
            attempts=0,
            max_attempts=resolved_max_attempts,
            created_at=utcnow(),
        )
        with self._store_operation("add_job"):
            self.session.add(job)
            self.session.commit()

        logger.info("Job queued: %s for chart %s", job.job_id, chart_number)
        return job

    def claim_next_job(self, worker_id: str) -> Optional[ProcessingJob]:
        """
        Claim the oldest eligible job for this worker.

        Eligible: PENDING, or FAILED with attempts left. Ordered by original
        created_at, so a retried job keeps its place ahead of newer work.
        Returns None when nothing is eligible (or a race was lost).
        """
        query = (
            select(ProcessingJob)
            .where(_claimable_clause())
            .order_by(asc(ProcessingJob.created_at), asc(ProcessingJob.id))
            .limit(1)
            .execution_options(populate_existing=True)
        )

        # PostgreSQL: Use SKIP LOCKED to prevent race conditions
        if self._dialect() == "postgresql":
            query = query.with_for_update(skip_locked=True)

        with self._store_operation("claim_next_job"):
            job = self.session.execute(query).scalars().first()
            if job is None:
                self.session.commit()
                return None

            now = utcnow()
            result = self.session.execute(
                update(ProcessingJob)
                .where(
                    ProcessingJob.id == job.id,
                    ProcessingJob.status == job.status,
                    ProcessingJob.attempts == job.attempts,
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    worker_id=worker_id,
                    locked_at=now,
                    started_at=func.coalesce(ProcessingJob.started_at, now),
                    attempts=ProcessingJob.attempts + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.session.rollback()
                logger.debug(
                    "Worker %s lost claim race for job %s", worker_id, job.job_id
                )
                return None

            self.session.commit()
            self.session.refresh(job)

        logger.info(
            "Job claimed: %s by worker %s (attempt %s/%s)",
            job.job_id,
            worker_id,
            job.attempts,
            job.max_attempts,
        )
        return job

    def _transition_held_job(
        self, job: ProcessingJob, worker_id: Optional[str], **values: Any
    ) -> bool:
        """
        Move a PROCESSING job out of processing. Returns False (and writes
        nothing) when the row is no longer processing, or is now held by a
        different worker.
        """
        conditions = [
            ProcessingJob.id == job.id,
            ProcessingJob.status == JobStatus.PROCESSING.value,
        ]
        if worker_id is not None:
            conditions.append(ProcessingJob.worker_id == worker_id)

        result = self.session.execute(
            update(ProcessingJob)
            .where(*conditions)
            .values(worker_id=None, locked_at=None, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.rollback()
            return False
        self.session.commit()
        self.session.refresh(job)
        return True

    def complete_job(self, job_id: str, *, worker_id: Optional[str] = None) -> ProcessingJob:
        """
        Mark a job completed. Completing an already-completed job is a no-op.

        Only a PROCESSING row (held by `worker_id`, when given) is completed;
        a late report from a worker whose claim was released is ignored.
        """
        with self._store_operation("complete_job"):
            job = self._get_by_job_id(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status == JobStatus.COMPLETED.value:
                self.session.commit()
                return job

            applied = self._transition_held_job(
                job,
                worker_id,
                status=JobStatus.COMPLETED.value,
                completed_at=utcnow(),
            )
            if not applied:
                job = self._get_by_job_id(job_id)
                self.session.commit()

        if not applied:
            logger.warning(
                "Ignoring completion of job %s by %s: status=%s worker=%s",
                job_id,
                worker_id or "unknown worker",
                job.status,
                job.worker_id,
            )
            return job

        logger.info("Job completed: %s", job_id)
        return job

    def fail_job(
        self, job_id: str, error_message: str, *, worker_id: Optional[str] = None
    ) -> FailureOutcome:
        """
        Mark a job failed and release its lock.

        Whether it is retried is decided by attempts vs max_attempts at the
        next claim; nothing is scheduled here. Reports for rows that are not
        PROCESSING (or are held by another worker) change nothing and come
        back with applied=False.
        """
        settings = get_settings()
        with self._store_operation("fail_job"):
            job = self._get_by_job_id(job_id)
            if job is None:
                raise JobNotFoundError(job_id)

            applied = self._transition_held_job(
                job,
                worker_id,
                status=JobStatus.FAILED.value,
                error_message=str(error_message)[:MAX_ERROR_MESSAGE_LENGTH],
            )
            if not applied:
                job = self._get_by_job_id(job_id)
                self.session.commit()

        if not applied:
            logger.warning(
                "Ignoring failure report for job %s by %s (status=%s worker=%s): %s",
                job_id,
                worker_id or "unknown worker",
                job.status,
                job.worker_id,
                error_message,
            )
            return FailureOutcome(
                job_id=job.job_id,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                is_permanently_failed=False,
                applied=False,
                job=job,
            )

        permanent = job.attempts >= job.max_attempts
        retry_after = None
        if permanent:
            logger.error(
                "Job permanently failed: %s (%s/%s attempts)",
                job_id,
                job.attempts,
                job.max_attempts,
            )
        else:
            delay = max(settings.JOB_RETRY_BACKOFF_SECONDS, 0) * max(job.attempts, 1)
            retry_after = utcnow() + timedelta(seconds=delay)
            logger.warning(
                "Job failed, will retry: %s (%s/%s attempts)",
                job_id,
                job.attempts,
                job.max_attempts,
            )
        return FailureOutcome(
            job_id=job.job_id,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            is_permanently_failed=permanent,
            retry_after=retry_after,
            job=job,
        )

    def release_stuck_jobs(
        self, threshold_minutes: Optional[int] = None
    ) -> List[ProcessingJob]:
        """
        Return PROCESSING jobs whose lock is older than the threshold to PENDING.

        Only rows whose locked_at predates the cutoff are touched, so this is
        safe to run while other workers hold fresh locks.
        """
        if threshold_minutes is None:
            threshold_minutes = get_settings().JOB_STALE_TIMEOUT_MINUTES
        cutoff = utcnow() - timedelta(minutes=threshold_minutes)
        stale_filter = and_(
            ProcessingJob.status == JobStatus.PROCESSING.value,
            ProcessingJob.locked_at.isnot(None),
            ProcessingJob.locked_at < cutoff,
        )

        query = select(ProcessingJob.id).where(stale_filter)
        if self._dialect() == "postgresql":
            query = query.with_for_update(skip_locked=True)

        with self._store_operation("release_stuck_jobs"):
            stale_ids = list(self.session.execute(query).scalars().all())
            if not stale_ids:
                self.session.commit()
                return []

            self.session.execute(
                update(ProcessingJob)
                .where(ProcessingJob.id.in_(stale_ids), stale_filter)
                .values(
                    status=JobStatus.PENDING.value,
                    worker_id=None,
                    locked_at=None,
                    error_message=STUCK_RELEASE_MESSAGE,
                )
                .execution_options(synchronize_session=False)
            )
            self.session.commit()

            released = list(
                self.session.execute(
                    select(ProcessingJob)
                    .where(
                        ProcessingJob.id.in_(stale_ids),
                        ProcessingJob.status == JobStatus.PENDING.value,
                        ProcessingJob.locked_at.is_(None),
                    )
                    .order_by(asc(ProcessingJob.created_at))
                    .execution_options(populate_existing=True)
                )
                .scalars()
                .all()
            )

        if released:
            logger.warning(
                "Released %s stuck job(s) locked before %s",
                len(released),
                cutoff.isoformat(),
            )
        return released

    def get_stats(self) -> Dict[str, int]:
        """Counts per status bucket over the recent window."""
        settings = get_settings()
        window_start = utcnow() - timedelta(hours=settings.JOB_STATS_WINDOW_HOURS)
        status = ProcessingJob.status
        failed = status == JobStatus.FAILED.value
        exhausted = ProcessingJob.attempts >= ProcessingJob.max_attempts

        def _bucket(condition):
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        query = select(
            _bucket(status == JobStatus.PENDING.value).label("pending"),
            _bucket(status == JobStatus.PROCESSING.value).label("processing"),
            _bucket(status == JobStatus.COMPLETED.value).label("completed"),
            _bucket(and_(failed, exhausted)).label("permanently_failed"),
            _bucket(and_(failed, ~exhausted)).label("retrying"),
            func.count(ProcessingJob.id).label("total"),
        ).where(ProcessingJob.created_at > window_start)

        with self._store_operation("get_stats"):
            row = self.session.execute(query).one()
            self.session.commit()
        return {key: int(value or 0) for key, value in row._mapping.items()}

    def get_job(self, job_id: str) -> Optional[ProcessingJob]:
        with self._store_operation("get_job"):
            return self._get_by_job_id(job_id)

    def get_jobs_by_chart(self, chart_number: str) -> List[ProcessingJob]:
        with self._store_operation("get_jobs_by_chart"):
            return list(
                self.session.execute(
                    select(ProcessingJob)
                    .where(ProcessingJob.chart_number == chart_number)
                    .order_by(desc(ProcessingJob.created_at), desc(ProcessingJob.id))
                )
                .scalars()
                .all()
            )

    def cleanup_old_jobs(self, older_than_days: Optional[int] = None) -> int:
        """Delete completed jobs past the retention window."""
        if older_than_days is None:
            older_than_days = get_settings().JOB_RETENTION_DAYS
        cutoff = utcnow() - timedelta(days=older_than_days)
        with self._store_operation("cleanup_old_jobs"):
            result = self.session.execute(
                delete(ProcessingJob)
                .where(
                    ProcessingJob.status == JobStatus.COMPLETED.value,
                    ProcessingJob.completed_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info("Cleaned up %s old completed job(s)", removed)
        return removed
