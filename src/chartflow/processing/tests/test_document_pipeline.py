from __future__ import annotations

import tempfile

import httpx
import pytest

from chartflow.processing.events.phase_events import JobPhase
from chartflow.processing.schemas.payload import JobPayload
from chartflow.processing.services.chart_service import (
    ChartService,
    submit_chart_for_processing,
)
from chartflow.processing.services.job_errors import PipelinePhaseFailure
from chartflow.processing.tasks import document_pipeline
from chartflow.processing.tasks.document_pipeline import (
    ALL_OCR_FAILED_MESSAGE,
    DocumentOutcome,
    DocumentPipeline,
    download_to_temp,
    format_for_ai,
    safe_filename,
)
from chartflow.processing.tests.fakes import FakeAiClient, FakeOcrClient, document_fields


class _FakeStream:
    def __init__(self, chunks=(), error=None):
        self.chunks = list(chunks)
        self.error = error

    def __enter__(self):
        return self

    def __exit__(self, *_exc):
        return False

    def raise_for_status(self):
        if self.error is not None:
            raise self.error

    def iter_bytes(self):
        yield from self.chunks


@pytest.fixture()
def temp_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(tempfile, "tempdir", str(tmp_path))
    return tmp_path


def test_download_to_temp_writes_and_removes_file(temp_dir, monkeypatch):
    seen = {}

    def _stream(method, url, **kwargs):
        seen.update(method=method, url=url, **kwargs)
        return _FakeStream([b"%PDF-", b"1.7"])

    monkeypatch.setattr(document_pipeline.httpx, "stream", _stream)

    with download_to_temp("https://files.test/a.pdf", "scan 1.pdf", timeout_s=5) as path:
        assert path.read_bytes() == b"%PDF-1.7"
        assert path.name.endswith("_scan_1.pdf")

    assert not path.exists()
    assert seen["method"] == "GET"
    assert seen["timeout"] == 5
    assert list(temp_dir.iterdir()) == []


def test_download_to_temp_cleans_up_when_caller_fails(temp_dir, monkeypatch):
    monkeypatch.setattr(
        document_pipeline.httpx, "stream", lambda *a, **k: _FakeStream([b"data"])
    )

    with pytest.raises(RuntimeError):
        with download_to_temp("https://files.test/a.pdf", "a.pdf", timeout_s=5):
            raise RuntimeError("ocr crashed")

    assert list(temp_dir.iterdir()) == []


def test_download_to_temp_cleans_up_on_transport_error(temp_dir, monkeypatch):
    monkeypatch.setattr(
        document_pipeline.httpx,
        "stream",
        lambda *a, **k: _FakeStream(error=httpx.ConnectError("connection refused")),
    )

    with pytest.raises(httpx.ConnectError):
        with download_to_temp("https://files.test/a.pdf", "a.pdf", timeout_s=5):
            pass

    assert list(temp_dir.iterdir()) == []


def test_safe_filename_replaces_unsafe_characters():
    assert safe_filename("ED note (final).pdf") == "ED_note__final_.pdf"
    assert safe_filename("../../etc/passwd") == ".._.._etc_passwd"
    assert safe_filename("") == "document"


def test_format_for_ai_keeps_successful_documents_only():
    outcomes = [
        DocumentOutcome(1, "a.pdf", "ed_note", True, extracted_text="pain"),
        DocumentOutcome(2, "b.pdf", None, False, error="unreadable"),
    ]
    assert format_for_ai(outcomes) == [
        {
            "document_id": 1,
            "filename": "a.pdf",
            "document_type": "ed_note",
            "content": "pain",
        }
    ]


def _payload(session, chart_info, *names):
    job = submit_chart_for_processing(session, chart_info, document_fields(*names))
    return JobPayload.model_validate(job.payload)


class _RecordingStorage:
    def __init__(self):
        self.keys = []

    def presigned_url(self, key):
        self.keys.append(key)
        return f"https://signed.test/{key}?sig=1"


def test_pipeline_prefers_presigned_urls_when_storage_configured(
    session, chart_info, fake_downloader
):
    payload = _payload(session, chart_info, "note.pdf")
    storage = _RecordingStorage()
    phases = []

    result = DocumentPipeline(
        ChartService(session),
        ocr_client=FakeOcrClient(),
        ai_client=FakeAiClient(),
        on_phase=lambda phase, message: phases.append(phase),
        downloader=fake_downloader,
        storage=storage,
    ).run(payload)

    assert storage.keys == ["charts/chart-1/note.pdf"]
    assert fake_downloader.created[0].name.startswith("dl_0_")
    assert len(result.successful_documents) == 1
    assert result.summaries_generated == 1
    assert phases == [
        JobPhase.OCR_STARTED,
        JobPhase.OCR_COMPLETED,
        JobPhase.AI_STARTED,
        JobPhase.AI_COMPLETED,
    ]


def test_pipeline_treats_download_errors_as_document_failures(
    session, chart_info, fake_downloader
):
    payload = _payload(session, chart_info, "note.pdf", "labs.pdf")

    def _flaky_download(url, filename):
        if filename == "labs.pdf":
            raise httpx.ReadTimeout("timed out")
        return fake_downloader(url, filename)

    result = DocumentPipeline(
        ChartService(session),
        ocr_client=FakeOcrClient(),
        ai_client=FakeAiClient(),
        on_phase=lambda phase, message: None,
        downloader=_flaky_download,
    ).run(payload)

    assert [f.filename for f in result.document_failures] == ["labs.pdf"]
    assert result.document_failures[0].error == "timed out"
    assert [d.filename for d in result.successful_documents] == ["note.pdf"]


def test_pipeline_raises_when_no_document_is_extracted(
    session, chart_info, fake_downloader
):
    payload = _payload(session, chart_info, "note.pdf")
    phases = []

    with pytest.raises(PipelinePhaseFailure) as excinfo:
        DocumentPipeline(
            ChartService(session),
            ocr_client=FakeOcrClient(failing=("note.pdf",)),
            ai_client=FakeAiClient(),
            on_phase=lambda phase, message: phases.append(phase),
            downloader=fake_downloader,
        ).run(payload)

    assert excinfo.value.phase == "ocr"
    assert str(excinfo.value) == ALL_OCR_FAILED_MESSAGE
    assert phases == [JobPhase.OCR_STARTED]


def test_pipeline_raises_on_ai_coding_failure(session, chart_info, fake_downloader):
    payload = _payload(session, chart_info, "note.pdf")
    ai = FakeAiClient(coding_errors=["rate limited"])

    with pytest.raises(PipelinePhaseFailure) as excinfo:
        DocumentPipeline(
            ChartService(session),
            ocr_client=FakeOcrClient(),
            ai_client=ai,
            on_phase=lambda phase, message: None,
            downloader=fake_downloader,
        ).run(payload)

    assert excinfo.value.phase == "ai_coding"
    assert str(excinfo.value) == "AI processing failed: rate limited"
    assert ai.summary_calls == []
