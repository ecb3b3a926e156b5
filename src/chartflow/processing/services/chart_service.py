"""
Chart Service
Reads and writes chart/document records, including the chart status
projection (ai_status) that clients poll.

Status transitions are written only by the worker, from its success and
failure paths.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chartflow.exceptions import StoreError, ValidationError
from chartflow.processing.models.chart import (
    Chart,
    ChartAIStatus,
    ChartDocument,
    OcrStatus,
)
from chartflow.processing.models.job import ProcessingJob, utcnow
from chartflow.processing.schemas.payload import ChartInfo, DocumentRef, JobPayload
from chartflow.processing.services.queue_service import QueueService

logger = logging.getLogger(__name__)


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"Invalid date_of_service: {value}", field="date_of_service")


def snapshot_original_codes(ai_results: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of the AI-suggested codes kept for later comparison with coder edits."""
    diagnosis = ai_results.get("diagnosis_codes") or {}
    return {
        "ed_em_level": diagnosis.get("ed_em_level") or [],
        "procedures": ai_results.get("procedures") or [],
        "primary_diagnosis": diagnosis.get("primary_diagnosis") or [],
        "secondary_diagnoses": diagnosis.get("secondary_diagnoses") or [],
        "modifiers": diagnosis.get("modifiers") or [],
        "generated_at": utcnow().isoformat(),
    }


class ChartService:
    def __init__(self, session: Session):
        self.session = session

    @contextmanager
    def _write(self, operation: str) -> Iterator[None]:
        try:
            yield
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreError(operation, exc) from exc

    def get_by_chart_number(self, chart_number: str) -> Optional[Chart]:
        return (
            self.session.execute(
                select(Chart)
                .where(Chart.chart_number == chart_number)
                .execution_options(populate_existing=True)
            )
            .scalars()
            .first()
        )

    def _require(self, chart_number: str) -> Optional[Chart]:
        chart = self.get_by_chart_number(chart_number)
        if chart is None:
            logger.warning("Chart %s not found; status update skipped", chart_number)
        return chart

    def create_chart(self, info: ChartInfo, *, document_count: int = 0) -> Chart:
        """Create the chart, or reset an existing one to queued."""
        service_date = _parse_date(info.date_of_service)
        chart = self.get_by_chart_number(info.chart_number)
        with self._write("create_chart"):
            if chart is None:
                chart = Chart(chart_number=info.chart_number)
                self.session.add(chart)
            chart.mrn = info.mrn
            chart.facility = info.facility
            chart.specialty = info.specialty
            chart.date_of_service = service_date
            chart.provider = info.provider
            chart.document_count = document_count
            chart.ai_status = ChartAIStatus.QUEUED.value
            chart.review_status = chart.review_status or "pending"
            chart.last_error = None
            chart.retry_count = 0
            chart.processing_started_at = None
            chart.processing_completed_at = None
        return chart

    def add_document(self, chart: Chart, **fields: Any) -> ChartDocument:
        document = ChartDocument(chart_id=chart.id, **fields)
        with self._write("add_document"):
            self.session.add(document)
        return document

    # Status projection

    def mark_processing(self, chart_number: str) -> Optional[Chart]:
        chart = self._require(chart_number)
        if chart is None:
            return None
        with self._write("mark_processing"):
            chart.ai_status = ChartAIStatus.PROCESSING.value
            chart.processing_started_at = chart.processing_started_at or utcnow()
        return chart

    def update_with_ai_results(
        self,
        chart_number: str,
        ai_results: Dict[str, Any],
        sla_data: Optional[Dict[str, Any]] = None,
    ) -> Optional[Chart]:
        chart = self._require(chart_number)
        if chart is None:
            return None
        with self._write("update_with_ai_results"):
            chart.ai_status = ChartAIStatus.READY.value
            chart.ai_summary = ai_results.get("ai_narrative_summary") or {}
            chart.diagnosis_codes = ai_results.get("diagnosis_codes") or {}
            chart.procedures = ai_results.get("procedures") or []
            chart.medications = ai_results.get("medications") or []
            chart.vitals_summary = ai_results.get("vitals_summary") or {}
            chart.lab_results_summary = ai_results.get("lab_results_summary") or []
            chart.coding_notes = ai_results.get("coding_notes") or {}
            chart.original_ai_codes = snapshot_original_codes(ai_results)
            chart.sla_data = sla_data or {}
            chart.last_error = None
            chart.processing_completed_at = utcnow()
        return chart

    def mark_retry_pending(
        self, chart_number: str, error_message: str, attempts: int
    ) -> Optional[Chart]:
        chart = self._require(chart_number)
        if chart is None:
            return None
        with self._write("mark_retry_pending"):
            chart.ai_status = ChartAIStatus.RETRY_PENDING.value
            chart.last_error = error_message
            chart.retry_count = attempts
        return chart

    def mark_failed(self, chart_number: str, error_message: str) -> Optional[Chart]:
        chart = self._require(chart_number)
        if chart is None:
            return None
        with self._write("mark_failed"):
            chart.ai_status = ChartAIStatus.FAILED.value
            chart.last_error = error_message
            chart.processing_completed_at = utcnow()
        return chart

    # Per-document results

    def _document(self, document_id: int) -> Optional[ChartDocument]:
        return self.session.get(ChartDocument, document_id)

    def update_ocr_results(
        self, document_id: int, ocr_text: str, processing_time_ms: Optional[int] = None
    ) -> Optional[ChartDocument]:
        document = self._document(document_id)
        if document is None:
            return None
        with self._write("update_ocr_results"):
            document.ocr_text = ocr_text
            document.ocr_status = OcrStatus.COMPLETED.value
            document.ocr_error = None
            document.ocr_processing_time = processing_time_ms
            document.ocr_completed_at = utcnow()
        return document

    def mark_ocr_failed(self, document_id: int, error: str) -> Optional[ChartDocument]:
        document = self._document(document_id)
        if document is None:
            return None
        with self._write("mark_ocr_failed"):
            document.ocr_status = OcrStatus.FAILED.value
            document.ocr_error = error
        return document

    def update_ai_summary(
        self, document_id: int, summary: Dict[str, Any]
    ) -> Optional[ChartDocument]:
        document = self._document(document_id)
        if document is None:
            return None
        with self._write("update_ai_summary"):
            document.ai_document_summary = summary
        return document


def submit_chart_for_processing(
    session: Session,
    chart_info: ChartInfo,
    documents: Iterable[Dict[str, Any]],
    *,
    document_type: Optional[str] = None,
    max_attempts: Optional[int] = None,
) -> ProcessingJob:
    """
    Record an uploaded chart and enqueue one processing job for it.

    `documents` are already stored objects: each dict carries filename,
    original_name, mime_type, file_size, s3_key and s3_url.
    """
    document_fields: List[Dict[str, Any]] = list(documents)
    if not document_fields:
        raise ValidationError("At least one document is required", field="documents")

    charts = ChartService(session)
    chart = charts.create_chart(chart_info, document_count=len(document_fields))

    refs: List[DocumentRef] = []
    for fields in document_fields:
        fields = dict(fields)
        fields.setdefault("document_type", document_type or "unknown")
        fields.setdefault("original_name", fields.get("filename"))
        document = charts.add_document(chart, **fields)
        refs.append(
            DocumentRef(
                document_id=document.id,
                original_name=document.original_name or document.filename,
                document_type=document.document_type,
                mime_type=document.mime_type,
                file_size=document.file_size,
                s3_key=document.s3_key,
                s3_url=document.s3_url,
            )
        )

    payload = JobPayload(
        chart_id=chart.id,
        chart_number=chart.chart_number,
        chart_info=chart_info,
        document_type=document_type,
        documents=refs,
    )
    return QueueService(session).add_job(
        chart.chart_number,
        payload,
        chart_id=chart.id,
        max_attempts=max_attempts,
    )
