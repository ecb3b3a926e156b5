"""
Document pipeline executed for one claimed job attempt.

Phases run strictly in order: per-document OCR (failures isolated per
document), AI coding (requires at least one extracted document), then
best-effort per-document summaries.
"""

from __future__ import annotations

import logging
import re
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, ContextManager, Dict, Iterator, List, Optional

import httpx

from chartflow.config import get_settings
from chartflow.integrations.ai import AiCodingClient
from chartflow.integrations.ocr import OcrClient, OcrResult
from chartflow.integrations.storage import ObjectStorageClient
from chartflow.processing.events.phase_events import JobPhase
from chartflow.processing.schemas.payload import DocumentRef, JobPayload
from chartflow.processing.services.chart_service import ChartService
from chartflow.processing.services.job_errors import (
    DocumentFailure,
    PipelinePhaseFailure,
    SummaryFailure,
)
from chartflow.processing.sla import SlaTracker

logger = logging.getLogger(__name__)

ALL_OCR_FAILED_MESSAGE = "All OCR processing failed - no text extracted from any document"

Downloader = Callable[[str, str], ContextManager[Path]]
PhaseCallback = Callable[[JobPhase, str], None]


def safe_filename(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9._-]", "_", name or "document")


@contextmanager
def download_to_temp(
    url: str, filename: str, *, timeout_s: Optional[float] = None
) -> Iterator[Path]:
    """Fetch `url` into a temp file; the file is removed on every exit path."""
    if timeout_s is None:
        timeout_s = get_settings().DOWNLOAD_TIMEOUT_SECONDS
    temp_file = tempfile.NamedTemporaryFile(
        delete=False, prefix="ocr_", suffix=f"_{safe_filename(filename)}"
    )
    path = Path(temp_file.name)
    try:
        with temp_file:
            with httpx.stream(
                "GET", url, timeout=timeout_s, follow_redirects=True
            ) as resp:
                resp.raise_for_status()
                for chunk in resp.iter_bytes():
                    temp_file.write(chunk)
        yield path
    finally:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove temp file %s: %s", path, exc)


@dataclass
class DocumentOutcome:
    document_id: int
    filename: str
    document_type: Optional[str]
    success: bool
    extracted_text: Optional[str] = None
    error: Optional[str] = None
    processing_time_ms: int = 0
    summary: Optional[Dict[str, Any]] = None

    def as_ai_document(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "filename": self.filename,
            "document_type": self.document_type or "unknown",
            "content": self.extracted_text or "",
        }


@dataclass
class PipelineResult:
    coding: Dict[str, Any]
    documents: List[DocumentOutcome]
    document_failures: List[DocumentFailure] = field(default_factory=list)
    summary_failures: List[SummaryFailure] = field(default_factory=list)

    @property
    def successful_documents(self) -> List[DocumentOutcome]:
        return [doc for doc in self.documents if doc.success]

    @property
    def summaries_generated(self) -> int:
        return sum(1 for doc in self.documents if doc.summary is not None)


def format_for_ai(outcomes: List[DocumentOutcome]) -> List[Dict[str, Any]]:
    return [doc.as_ai_document() for doc in outcomes if doc.success]


class DocumentPipeline:
    def __init__(
        self,
        charts: ChartService,
        *,
        ocr_client: OcrClient,
        ai_client: AiCodingClient,
        on_phase: PhaseCallback,
        downloader: Optional[Downloader] = None,
        storage: Optional[ObjectStorageClient] = None,
        sla: Optional[SlaTracker] = None,
    ) -> None:
        self.charts = charts
        self.ocr_client = ocr_client
        self.ai_client = ai_client
        self.on_phase = on_phase
        self.downloader = downloader or download_to_temp
        self.storage = storage
        self.sla = sla or SlaTracker()

    def run(self, payload: JobPayload) -> PipelineResult:
        chart_info = payload.chart_info.model_dump(mode="json")
        documents = payload.documents

        # Phase 1: OCR
        self.sla.mark("ocr_started")
        self.on_phase(JobPhase.OCR_STARTED, f"Running OCR on {len(documents)} document(s)")
        outcomes = []
        for index, doc in enumerate(documents, start=1):
            logger.info("  Processing %s/%s: %s", index, len(documents), doc.original_name)
            outcomes.append(self._ocr_document(doc))
        self.sla.mark("ocr_completed")

        failures = [
            DocumentFailure(doc.document_id, doc.filename, doc.error or "OCR failed")
            for doc in outcomes
            if not doc.success
        ]
        successful = [doc for doc in outcomes if doc.success]
        if not successful:
            raise PipelinePhaseFailure("ocr", ALL_OCR_FAILED_MESSAGE)
        self.on_phase(
            JobPhase.OCR_COMPLETED,
            f"OCR complete: {len(successful)}/{len(documents)} successful",
        )

        # Phase 2: AI coding
        self.sla.mark("ai_started")
        formatted = format_for_ai(outcomes)
        self.on_phase(JobPhase.AI_STARTED, f"Sending {len(formatted)} document(s) to AI")
        ai_result = self.ai_client.process_for_coding(formatted, chart_info)
        self.sla.mark("ai_completed")
        if not ai_result.success:
            raise PipelinePhaseFailure("ai_coding", f"AI processing failed: {ai_result.error}")
        self.on_phase(JobPhase.AI_COMPLETED, "AI coding analysis complete")

        # Phase 3: per-document summaries (best effort)
        summary_failures = self._summarize(successful, chart_info)
        logger.info(
            "  Generated %s/%s summaries",
            len(successful) - len(summary_failures),
            len(successful),
        )

        return PipelineResult(
            coding=ai_result.data,
            documents=outcomes,
            document_failures=failures,
            summary_failures=summary_failures,
        )

    def _resolve_url(self, doc: DocumentRef) -> Optional[str]:
        if self.storage is not None and doc.s3_key:
            return self.storage.presigned_url(doc.s3_key)
        return doc.s3_url

    def _ocr_document(self, doc: DocumentRef) -> DocumentOutcome:
        filename = doc.original_name
        try:
            url = self._resolve_url(doc)
            if not url:
                raise ValueError("Document has no fetchable URL")
            with self.downloader(url, filename) as local_path:
                result = self.ocr_client.extract_text(
                    local_path,
                    filename=filename,
                    document_type=doc.document_type,
                    mime_type=doc.mime_type,
                )
        except Exception as exc:
            # Download or transport problem for this document only
            result = OcrResult(
                success=False,
                filename=filename,
                document_type=doc.document_type,
                error=str(exc) or type(exc).__name__,
            )

        if result.success:
            self.charts.update_ocr_results(
                doc.document_id, result.extracted_text or "", result.processing_time_ms
            )
            logger.info("  OCR success: %s (%sms)", filename, result.processing_time_ms)
        else:
            self.charts.mark_ocr_failed(doc.document_id, result.error or "OCR failed")
            logger.warning("  OCR failed: %s - %s", filename, result.error)

        return DocumentOutcome(
            document_id=doc.document_id,
            filename=filename,
            document_type=doc.document_type,
            success=result.success,
            extracted_text=result.extracted_text if result.success else None,
            error=None if result.success else (result.error or "OCR failed"),
            processing_time_ms=result.processing_time_ms,
        )

    def _summarize(
        self, successful: List[DocumentOutcome], chart_info: Dict[str, Any]
    ) -> List[SummaryFailure]:
        failures: List[SummaryFailure] = []
        for doc in successful:
            try:
                summary = self.ai_client.generate_document_summary(
                    doc.as_ai_document(), chart_info
                )
                if not summary.success:
                    raise RuntimeError(summary.error or "summary generation failed")
                self.charts.update_ai_summary(doc.document_id, summary.data)
                doc.summary = summary.data
            except Exception as exc:
                logger.warning("  Summary failed for %s: %s", doc.filename, exc)
                failures.append(SummaryFailure(doc.document_id, doc.filename, str(exc)))
        return failures
