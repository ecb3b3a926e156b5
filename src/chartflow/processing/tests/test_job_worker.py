from __future__ import annotations

import os
import signal
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from chartflow.exceptions import StoreError
from chartflow.processing.events.phase_events import JobPhase
from chartflow.processing.models.chart import ChartAIStatus, ChartDocument, OcrStatus
from chartflow.processing.models.job import JobStatus, ProcessingJob, utcnow
from chartflow.processing.schemas.payload import ChartInfo
from chartflow.processing.services.chart_service import (
    ChartService,
    submit_chart_for_processing,
)
from chartflow.processing.services.job_worker import DocumentWorker, WorkerLifecycle
from chartflow.processing.services.queue_service import QueueService
from chartflow.processing.tasks.document_pipeline import ALL_OCR_FAILED_MESSAGE
from chartflow.processing.tests.fakes import FakeAiClient, FakeOcrClient, document_fields

SUCCESS_PHASES = [
    JobPhase.PROCESSING,
    JobPhase.OCR_STARTED,
    JobPhase.OCR_COMPLETED,
    JobPhase.AI_STARTED,
    JobPhase.AI_COMPLETED,
    JobPhase.SAVING_RESULTS,
    JobPhase.COMPLETED,
]


@pytest.fixture()
def make_worker(session_scope, fake_downloader, recorded_events):
    bus, _events = recorded_events

    def _make(worker_id="worker-a", *, ocr=None, ai=None):
        return DocumentWorker(
            worker_id,
            ocr_client=ocr or FakeOcrClient(),
            ai_client=ai or FakeAiClient(),
            downloader=fake_downloader,
            session_factory=session_scope,
            bus=bus,
            poll_interval=0,
            error_backoff=0,
            stuck_threshold_minutes=30,
        )

    return _make


def _phases(events, attempt=None):
    return [e.phase for e in events if attempt is None or e.attempt == attempt]


def _chart(session, chart_number="chart-1"):
    return ChartService(session).get_by_chart_number(chart_number)


def test_successful_job_completes_and_marks_chart_ready(
    session, chart_info, make_worker, recorded_events, fake_downloader
):
    _bus, events = recorded_events
    job = submit_chart_for_processing(
        session, chart_info, document_fields("note.pdf", "labs.pdf")
    )
    ai = FakeAiClient()

    assert make_worker(ai=ai).run_once() is True

    stored = QueueService(session).get_job(job.job_id)
    assert stored.status == JobStatus.COMPLETED.value
    assert stored.attempts == 1

    chart = _chart(session)
    assert chart.ai_status == ChartAIStatus.READY.value
    assert chart.diagnosis_codes["primary_diagnosis"] == [{"code": "R07.9"}]
    assert chart.sla_data["documents"]["total"] == 2
    assert chart.sla_data["documents"]["summaries_generated"] == 2
    assert chart.sla_data["sla_status"]["status"] == "excellent"

    assert _phases(events) == SUCCESS_PHASES
    assert {e.worker_id for e in events} == {"worker-a"}
    assert {e.attempt for e in events} == {1}
    assert {e.job_id for e in events} == {job.job_id}

    assert len(ai.coding_calls) == 1
    assert [d["filename"] for d in ai.coding_calls[0]] == ["note.pdf", "labs.pdf"]
    assert len(fake_downloader.created) == 2
    assert not any(path.exists() for path in fake_downloader.created)


def test_run_once_returns_false_on_empty_queue(make_worker, recorded_events):
    _bus, events = recorded_events
    assert make_worker().run_once() is False
    assert events == []


def test_partial_ocr_failure_still_completes(session, chart_info, make_worker):
    job = submit_chart_for_processing(
        session, chart_info, document_fields("note.pdf", "labs.pdf", "ekg.pdf")
    )
    ai = FakeAiClient()

    make_worker(ocr=FakeOcrClient(failing=("labs.pdf",)), ai=ai).run_once()

    assert QueueService(session).get_job(job.job_id).status == JobStatus.COMPLETED.value
    assert [d["filename"] for d in ai.coding_calls[0]] == ["note.pdf", "ekg.pdf"]
    assert ai.summary_calls == ["note.pdf", "ekg.pdf"]

    chart = _chart(session)
    assert chart.ai_status == ChartAIStatus.READY.value
    failed = chart.sla_data["documents"]["ocr_failed"]
    assert [f["filename"] for f in failed] == ["labs.pdf"]

    docs = {d.original_name: d for d in session.query(ChartDocument).all()}
    assert docs["note.pdf"].ocr_status == OcrStatus.COMPLETED.value
    assert docs["labs.pdf"].ocr_status == OcrStatus.FAILED.value


def test_all_ocr_failing_fails_job_before_ai(
    session, chart_info, make_worker, recorded_events, fake_downloader
):
    _bus, events = recorded_events
    job = submit_chart_for_processing(
        session, chart_info, document_fields("note.pdf", "labs.pdf", "ekg.pdf")
    )
    ai = FakeAiClient()

    make_worker(ocr=FakeOcrClient(failing=("note.pdf", "labs.pdf", "ekg.pdf")), ai=ai).run_once()

    assert ai.coding_calls == []
    assert ai.summary_calls == []
    stored = QueueService(session).get_job(job.job_id)
    assert stored.status == JobStatus.FAILED.value
    assert stored.error_message == ALL_OCR_FAILED_MESSAGE
    assert stored.attempts == 1

    chart = _chart(session)
    assert chart.ai_status == ChartAIStatus.RETRY_PENDING.value
    assert chart.last_error == ALL_OCR_FAILED_MESSAGE
    assert chart.retry_count == 1

    assert _phases(events) == [JobPhase.PROCESSING, JobPhase.OCR_STARTED, JobPhase.FAILED]
    assert "will retry" in events[-1].message
    assert not any(path.exists() for path in fake_downloader.created)


def test_summary_failures_do_not_fail_the_job(session, chart_info, make_worker):
    job = submit_chart_for_processing(
        session, chart_info, document_fields("note.pdf", "labs.pdf", "ekg.pdf")
    )
    ai = FakeAiClient(raising_summaries=("labs.pdf",), failing_summaries=("ekg.pdf",))

    make_worker(ai=ai).run_once()

    assert QueueService(session).get_job(job.job_id).status == JobStatus.COMPLETED.value
    assert ai.summary_calls == ["note.pdf", "labs.pdf", "ekg.pdf"]
    assert _chart(session).sla_data["documents"]["summaries_generated"] == 1

    docs = {d.original_name: d for d in session.query(ChartDocument).all()}
    assert docs["note.pdf"].ai_document_summary == {"title": "Summary of note.pdf"}
    assert docs["labs.pdf"].ai_document_summary is None


def test_failed_attempt_is_retried_by_another_worker(
    session, chart_info, make_worker, recorded_events
):
    _bus, events = recorded_events
    job = submit_chart_for_processing(session, chart_info, document_fields("note.pdf"))
    ai = FakeAiClient(coding_errors=["model timeout"])

    make_worker("worker-a", ai=ai).run_once()

    stored = QueueService(session).get_job(job.job_id)
    assert stored.status == JobStatus.FAILED.value
    assert stored.error_message == "AI processing failed: model timeout"
    assert _chart(session).ai_status == ChartAIStatus.RETRY_PENDING.value
    assert _phases(events, attempt=1) == [
        JobPhase.PROCESSING,
        JobPhase.OCR_STARTED,
        JobPhase.OCR_COMPLETED,
        JobPhase.AI_STARTED,
        JobPhase.FAILED,
    ]

    assert make_worker("worker-b", ai=ai).run_once() is True

    stored = QueueService(session).get_job(job.job_id)
    assert stored.status == JobStatus.COMPLETED.value
    assert stored.attempts == 2
    assert _chart(session).ai_status == ChartAIStatus.READY.value
    assert _phases(events, attempt=2) == SUCCESS_PHASES
    assert {e.worker_id for e in events if e.attempt == 2} == {"worker-b"}


def test_exhausted_attempts_mark_chart_failed(
    session, chart_info, make_worker, recorded_events
):
    _bus, events = recorded_events
    job = submit_chart_for_processing(
        session, chart_info, document_fields("note.pdf"), max_attempts=1
    )
    worker = make_worker(ai=FakeAiClient(coding_errors=["model timeout"]))

    worker.run_once()

    stored = QueueService(session).get_job(job.job_id)
    assert stored.is_permanently_failed
    chart = _chart(session)
    assert chart.ai_status == ChartAIStatus.FAILED.value
    assert chart.last_error == "AI processing failed: model timeout"
    assert events[-1].phase == JobPhase.FAILED
    assert "no retries left" in events[-1].message

    assert worker.run_once() is False


def test_invalid_payload_fails_the_job(session, chart_info, make_worker, recorded_events):
    _bus, events = recorded_events
    ChartService(session).create_chart(chart_info)
    job = QueueService(session).add_job("chart-1", {"job_type": "chart_processing"})

    assert make_worker().run_once() is True

    stored = QueueService(session).get_job(job.job_id)
    assert stored.status == JobStatus.FAILED.value
    assert stored.error_message == "Invalid job data format"
    assert _chart(session).ai_status == ChartAIStatus.RETRY_PENDING.value
    assert _phases(events) == [JobPhase.PROCESSING, JobPhase.FAILED]


def _steal_claim(session, job_id, new_owner="worker-b"):
    """The running worker's lock is swept as stale and another worker reclaims."""
    queue = QueueService(session)
    stale = session.query(ProcessingJob).filter_by(job_id=job_id).one()
    stale.locked_at = utcnow() - timedelta(minutes=31)
    session.commit()
    queue.release_stuck_jobs(30)
    assert queue.claim_next_job(new_owner).job_id == job_id


def test_late_failure_after_reassignment_is_not_reported(
    session, chart_info, make_worker, recorded_events
):
    _bus, events = recorded_events
    job = submit_chart_for_processing(session, chart_info, document_fields("note.pdf"))
    ai = FakeAiClient(coding_errors=["timeout"])
    ai.on_coding = lambda: _steal_claim(session, job.job_id)

    assert make_worker("worker-a", ai=ai).run_once() is True

    queue = QueueService(session)
    stored = queue.get_job(job.job_id)
    assert stored.status == JobStatus.PROCESSING.value
    assert stored.worker_id == "worker-b"
    assert queue.claim_next_job("worker-c") is None
    assert JobPhase.FAILED not in _phases(events)
    assert _chart(session).ai_status == ChartAIStatus.PROCESSING.value


def test_late_completion_after_reassignment_is_not_reported(
    session, chart_info, make_worker, recorded_events
):
    _bus, events = recorded_events
    job = submit_chart_for_processing(session, chart_info, document_fields("note.pdf"))
    ai = FakeAiClient()
    ai.on_coding = lambda: _steal_claim(session, job.job_id)

    make_worker("worker-a", ai=ai).run_once()

    stored = QueueService(session).get_job(job.job_id)
    assert stored.status == JobStatus.PROCESSING.value
    assert stored.worker_id == "worker-b"
    assert JobPhase.COMPLETED not in _phases(events)


def test_failed_chart_read_still_fails_the_job(
    session, chart_info, make_worker, recorded_events, monkeypatch
):
    """A failed read leaves the transaction unusable until it is rolled back."""
    _bus, events = recorded_events
    job = submit_chart_for_processing(session, chart_info, document_fields("note.pdf"))
    state = {"aborted": False, "raised": False}
    real_lookup = ChartService.get_by_chart_number
    real_execute = session.execute
    real_rollback = session.rollback

    def _lookup(self, chart_number):
        if not state["raised"]:
            state["raised"] = state["aborted"] = True
            raise OperationalError("SELECT charts", {}, Exception("connection reset"))
        return real_lookup(self, chart_number)

    def _execute(*args, **kwargs):
        if state["aborted"]:
            raise OperationalError(
                "statement", {}, Exception("current transaction is aborted")
            )
        return real_execute(*args, **kwargs)

    def _rollback():
        state["aborted"] = False
        real_rollback()

    monkeypatch.setattr(ChartService, "get_by_chart_number", _lookup)
    monkeypatch.setattr(session, "execute", _execute)
    monkeypatch.setattr(session, "rollback", _rollback)

    assert make_worker().run_once() is True

    stored = QueueService(session).get_job(job.job_id)
    assert stored.status == JobStatus.FAILED.value
    assert "connection reset" in stored.error_message
    assert _chart(session).ai_status == ChartAIStatus.RETRY_PENDING.value
    assert _phases(events) == [JobPhase.PROCESSING, JobPhase.FAILED]


def test_chart_update_failure_does_not_undo_job_failure(
    session, chart_info, make_worker, recorded_events, monkeypatch
):
    _bus, events = recorded_events
    job = submit_chart_for_processing(session, chart_info, document_fields("note.pdf"))

    def _broken(self, *_args, **_kwargs):
        raise StoreError("mark_retry_pending")

    monkeypatch.setattr(ChartService, "mark_retry_pending", _broken)

    make_worker(ai=FakeAiClient(coding_errors=["model timeout"])).run_once()

    assert QueueService(session).get_job(job.job_id).status == JobStatus.FAILED.value
    assert events[-1].phase == JobPhase.FAILED


def test_run_loop_survives_poll_errors_and_stops_on_request(make_worker, monkeypatch):
    worker = make_worker()
    lifecycle = WorkerLifecycle()
    calls = []

    def _run_once():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("database is locked")
        if len(calls) == 2:
            return True
        lifecycle.request_stop("test")
        return False

    monkeypatch.setattr(worker, "run_once", _run_once)

    assert worker.run(lifecycle) == 1
    assert len(calls) == 3
    assert lifecycle.reason == "test"


def test_stop_request_lets_current_job_finish(session, make_worker):
    first = submit_chart_for_processing(
        session, ChartInfo(chart_number="chart-1"), document_fields("note.pdf")
    )
    second = submit_chart_for_processing(
        session, ChartInfo(chart_number="chart-2"), document_fields("note.pdf")
    )
    lifecycle = WorkerLifecycle()
    ai = FakeAiClient()
    ai.on_coding = lambda: lifecycle.request_stop("SIGTERM")

    assert make_worker(ai=ai).run(lifecycle) == 1

    queue = QueueService(session)
    assert queue.get_job(first.job_id).status == JobStatus.COMPLETED.value
    assert queue.get_job(second.job_id).status == JobStatus.PENDING.value


def test_worker_releases_stuck_jobs_on_start(session, chart_info, make_worker):
    job = submit_chart_for_processing(session, chart_info, document_fields("note.pdf"))
    QueueService(session).claim_next_job("worker-crashed")
    stale = session.query(ProcessingJob).filter_by(job_id=job.job_id).one()
    stale.locked_at = utcnow() - timedelta(minutes=31)
    session.commit()

    lifecycle = WorkerLifecycle()
    ai = FakeAiClient()
    ai.on_coding = lambda: lifecycle.request_stop("test")

    assert make_worker("worker-b", ai=ai).run(lifecycle) == 1

    stored = QueueService(session).get_job(job.job_id)
    assert stored.status == JobStatus.COMPLETED.value
    assert stored.attempts == 2


def test_lifecycle_sleep_wakes_on_stop():
    lifecycle = WorkerLifecycle()
    assert lifecycle.sleep(0) is False
    lifecycle.request_stop("SIGINT")
    assert lifecycle.stop_requested
    assert lifecycle.sleep(5) is True

    # A second request keeps the first reason.
    lifecycle.request_stop("SIGTERM")
    assert lifecycle.reason == "SIGINT"


def test_lifecycle_signal_handler_requests_stop():
    lifecycle = WorkerLifecycle()
    previous = signal.getsignal(signal.SIGUSR1)
    try:
        lifecycle.install_signal_handlers((signal.SIGUSR1,))
        os.kill(os.getpid(), signal.SIGUSR1)
        assert lifecycle.stop_requested
        assert lifecycle.reason == "SIGUSR1"
    finally:
        signal.signal(signal.SIGUSR1, previous)
