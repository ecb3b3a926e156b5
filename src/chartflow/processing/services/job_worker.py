"""
Document Worker
Polls the processing queue, runs the document pipeline for each claimed job,
and reports the outcome to the queue and to the chart status projection.

Run several of these as separate processes; they coordinate only through
the queue table's row locks.
"""

from __future__ import annotations

import logging
import os
import signal
import socket
import threading
from typing import Callable, ContextManager, Iterable, Optional, Set

from pydantic import ValidationError as PayloadValidationError
from sqlalchemy.orm import Session

from chartflow.config import get_settings
from chartflow.database import get_db_session
from chartflow.integrations.ai import AiCodingClient
from chartflow.integrations.ocr import OcrClient
from chartflow.integrations.storage import ObjectStorageClient
from chartflow.processing.events.event_bus import EventBus, event_bus
from chartflow.processing.events.phase_events import JobPhase, PhaseEvent
from chartflow.processing.models.job import JobStatus, ProcessingJob
from chartflow.processing.schemas.payload import JobPayload
from chartflow.processing.services.chart_service import ChartService
from chartflow.processing.services.queue_service import QueueService
from chartflow.processing.sla import SlaTracker
from chartflow.processing.tasks.document_pipeline import DocumentPipeline, Downloader

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], ContextManager[Session]]


def default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}"


class WorkerLifecycle:
    """
    Cooperative stop flag handed to DocumentWorker.run().

    A stop request prevents further claims and wakes the loop from its poll
    sleep; a job already executing runs to completion.
    """

    def __init__(self) -> None:
        self._stop = threading.Event()
        self.reason: Optional[str] = None

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self, reason: str = "requested") -> None:
        if self._stop.is_set():
            return
        self.reason = reason
        logger.info("[SHUTDOWN REQUESTED] (%s) Finishing current job...", reason)
        self._stop.set()

    def sleep(self, seconds: float) -> bool:
        """Wait up to `seconds`; returns True if a stop was requested meanwhile."""
        return self._stop.wait(max(seconds, 0))

    def install_signal_handlers(
        self, signals: Iterable[int] = (signal.SIGTERM, signal.SIGINT)
    ) -> None:
        def _handler(signum, _frame):
            self.request_stop(signal.Signals(signum).name)

        for sig in signals:
            signal.signal(sig, _handler)


class PhaseEmitter:
    """Publishes each phase of one job attempt at most once."""

    def __init__(self, bus: EventBus, job: ProcessingJob, worker_id: str) -> None:
        self.bus = bus
        self.job = job
        self.worker_id = worker_id
        self.emitted: Set[JobPhase] = set()

    def __call__(self, phase: JobPhase, message: str = "") -> None:
        if phase in self.emitted:
            return
        self.emitted.add(phase)
        self.bus.publish(
            PhaseEvent(
                chart_number=self.job.chart_number,
                job_id=self.job.job_id,
                attempt=self.job.attempts or 0,
                phase=phase,
                message=message,
                worker_id=self.worker_id,
            )
        )


class DocumentWorker:
    def __init__(
        self,
        worker_id: Optional[str] = None,
        *,
        ocr_client: Optional[OcrClient] = None,
        ai_client: Optional[AiCodingClient] = None,
        storage: Optional[ObjectStorageClient] = None,
        downloader: Optional[Downloader] = None,
        session_factory: Optional[SessionFactory] = None,
        bus: Optional[EventBus] = None,
        poll_interval: Optional[float] = None,
        error_backoff: Optional[float] = None,
        stuck_threshold_minutes: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.worker_id = worker_id or default_worker_id()
        self.ocr_client = ocr_client or OcrClient()
        self.ai_client = ai_client or AiCodingClient()
        self.storage = storage
        self.downloader = downloader
        self.session_factory = session_factory or get_db_session
        self.bus = bus or event_bus
        self.poll_interval = (
            poll_interval
            if poll_interval is not None
            else settings.WORKER_POLL_INTERVAL_SECONDS
        )
        self.error_backoff = (
            error_backoff
            if error_backoff is not None
            else settings.WORKER_ERROR_BACKOFF_SECONDS
        )
        self.stuck_threshold_minutes = (
            stuck_threshold_minutes
            if stuck_threshold_minutes is not None
            else settings.JOB_STALE_TIMEOUT_MINUTES
        )

    def run(self, lifecycle: WorkerLifecycle) -> int:
        """Poll until a stop is requested. Returns the number of jobs processed."""
        logger.info("[WORKER STARTED] ID: %s", self.worker_id)
        self.release_stuck_jobs()

        processed = 0
        while not lifecycle.stop_requested:
            try:
                claimed = self.run_once()
            except Exception as e:
                logger.error(
                    f"Worker '{self.worker_id}' encountered an error during polling: {e}",
                    exc_info=True,
                )
                lifecycle.sleep(self.error_backoff)
                continue

            if claimed:
                processed += 1
            else:
                lifecycle.sleep(self.poll_interval)

        logger.info("[WORKER STOPPED] ID: %s processed=%s", self.worker_id, processed)
        return processed

    def release_stuck_jobs(self) -> int:
        """Crash-recovery sweep, run once before polling starts."""
        try:
            with self.session_factory() as session:
                released = QueueService(session).release_stuck_jobs(
                    self.stuck_threshold_minutes
                )
        except Exception as e:
            logger.error(
                f"Worker '{self.worker_id}' could not release stuck jobs: {e}",
                exc_info=True,
            )
            return 0
        if released:
            logger.warning(
                "Worker '%s' released %s stuck job(s) on startup",
                self.worker_id,
                len(released),
            )
        return len(released)

    def run_once(self) -> bool:
        """Claim and execute at most one job. Returns True if a job was claimed."""
        with self.session_factory() as session:
            job = QueueService(session).claim_next_job(self.worker_id)
            if job is None:
                logger.debug(
                    f"Worker '{self.worker_id}' found no pending jobs. Sleeping..."
                )
                return False
            self._execute_job(job, session)
            return True

    def _execute_job(self, job: ProcessingJob, session: Session) -> None:
        queue = QueueService(session)
        charts = ChartService(session)
        emit = PhaseEmitter(self.bus, job, self.worker_id)
        sla = SlaTracker().mark("upload_received")

        # Every claimed attempt reports processing before it can report failed.
        emit(JobPhase.PROCESSING, f"Attempt {job.attempts}/{job.max_attempts}")

        try:
            payload = JobPayload.model_validate(job.payload or {})
        except PayloadValidationError as exc:
            logger.error("Failed to parse job data for %s: %s", job.job_id, exc)
            self._handle_failure(job, queue, charts, emit, "Invalid job data format")
            return

        logger.info(
            "[PROCESSING] Chart: %s | Job: %s | Attempt: %s/%s",
            job.chart_number,
            job.job_id,
            job.attempts,
            job.max_attempts,
        )

        try:
            charts.mark_processing(job.chart_number)

            pipeline = DocumentPipeline(
                charts,
                ocr_client=self.ocr_client,
                ai_client=self.ai_client,
                on_phase=emit,
                downloader=self.downloader,
                storage=self.storage,
                sla=sla,
            )
            result = pipeline.run(payload)

            emit(JobPhase.SAVING_RESULTS, "Saving coding results")
            sla.mark("processing_complete")
            sla_summary = sla.summary()
            sla_summary["documents"] = {
                "total": len(result.documents),
                "ocr_failed": [
                    {"document_id": f.document_id, "filename": f.filename, "error": f.error}
                    for f in result.document_failures
                ],
                "summaries_generated": result.summaries_generated,
            }
            charts.update_with_ai_results(job.chart_number, result.coding, sla_summary)
            completed = queue.complete_job(job.job_id, worker_id=self.worker_id)
        except Exception as e:
            # A failed statement can leave the transaction aborted (PostgreSQL).
            session.rollback()
            error_message = str(e) or type(e).__name__
            logger.error(
                "[FAILED] Chart: %s | Job: %s | Error: %s",
                job.chart_number,
                job.job_id,
                error_message,
                exc_info=True,
            )
            self._handle_failure(job, queue, charts, emit, error_message)
            return

        if completed.status != JobStatus.COMPLETED.value:
            logger.warning(
                "[LOST] Chart: %s | Job: %s now %s (worker=%s); result not reported",
                job.chart_number,
                job.job_id,
                completed.status,
                completed.worker_id,
            )
            return

        emit(JobPhase.COMPLETED, "Chart ready for review")
        logger.info(
            "[COMPLETED] Chart: %s | Duration: %sms | SLA: %s",
            job.chart_number,
            sla_summary["durations_ms"]["total"],
            sla_summary["sla_status"]["status"],
        )

    def _handle_failure(
        self,
        job: ProcessingJob,
        queue: QueueService,
        charts: ChartService,
        emit: PhaseEmitter,
        error_message: str,
    ) -> None:
        outcome = queue.fail_job(job.job_id, error_message, worker_id=self.worker_id)

        if not outcome.applied:
            logger.warning(
                "[LOST] Chart: %s | Job: %s is no longer held by %s; failure not reported",
                job.chart_number,
                job.job_id,
                self.worker_id,
            )
            return

        if outcome.is_permanently_failed:
            emit(
                JobPhase.FAILED,
                f"{error_message} (attempt {outcome.attempts}/{outcome.max_attempts}, no retries left)",
            )
        else:
            emit(
                JobPhase.FAILED,
                f"{error_message} (attempt {outcome.attempts}/{outcome.max_attempts}, will retry)",
            )

        try:
            if outcome.is_permanently_failed:
                charts.mark_failed(job.chart_number, error_message)
                logger.info("  Chart %s marked as FAILED (max attempts reached)", job.chart_number)
            else:
                charts.mark_retry_pending(job.chart_number, error_message, outcome.attempts)
                logger.info(
                    "  Chart %s marked as RETRY_PENDING (attempt %s/%s)",
                    job.chart_number,
                    outcome.attempts,
                    outcome.max_attempts,
                )
        except Exception as e:
            logger.error(
                f"Could not update chart {job.chart_number} after job {job.job_id} failed: {e}",
                exc_info=True,
            )
