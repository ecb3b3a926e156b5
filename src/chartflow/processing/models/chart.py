"""
Chart and document records.
Only the worker writes the processing-status fields of a chart.
"""

import enum

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from chartflow.models.base import Base
from chartflow.processing.models.job import utcnow

JSONType = JSON().with_variant(JSONB, "postgresql")


class ChartAIStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"
    RETRY_PENDING = "retry_pending"


class OcrStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Chart(Base):
    __tablename__ = "charts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chart_number = Column(String(50), unique=True, nullable=False, index=True)
    mrn = Column(String(50), nullable=True, index=True)
    facility = Column(String(255), nullable=True)
    specialty = Column(String(100), nullable=True)
    date_of_service = Column(Date, nullable=True)
    provider = Column(String(255), nullable=True)

    ai_status = Column(
        String(50), nullable=False, default=ChartAIStatus.QUEUED.value, index=True
    )
    review_status = Column(String(50), nullable=False, default="pending")
    document_count = Column(Integer, nullable=False, default=0)

    # AI results
    ai_summary = Column(JSONType, nullable=True)
    diagnosis_codes = Column(JSONType, nullable=True)
    procedures = Column(JSONType, nullable=True)
    medications = Column(JSONType, nullable=True)
    vitals_summary = Column(JSONType, nullable=True)
    lab_results_summary = Column(JSONType, nullable=True)
    coding_notes = Column(JSONType, nullable=True)
    original_ai_codes = Column(JSONType, nullable=True)

    # Processing bookkeeping
    sla_data = Column(JSONType, nullable=True)
    last_error = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    processing_started_at = Column(DateTime, nullable=True)
    processing_completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    documents = relationship(
        "ChartDocument",
        back_populates="chart",
        cascade="all, delete-orphan",
        order_by="ChartDocument.id",
    )


class ChartDocument(Base):
    __tablename__ = "chart_documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chart_id = Column(
        Integer, ForeignKey("charts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    document_type = Column(String(100), nullable=True)
    filename = Column(String(255), nullable=False)
    original_name = Column(String(255), nullable=True)
    mime_type = Column(String(100), nullable=True)
    file_size = Column(Integer, nullable=True)

    # Object storage
    s3_key = Column(String(500), nullable=True)
    s3_url = Column(String(1000), nullable=True)

    # OCR results
    ocr_text = Column(Text, nullable=True)
    ocr_status = Column(String(50), nullable=False, default=OcrStatus.PENDING.value)
    ocr_error = Column(Text, nullable=True)
    ocr_processing_time = Column(Integer, nullable=True)  # ms
    ocr_completed_at = Column(DateTime, nullable=True)

    ai_document_summary = Column(JSONType, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    chart = relationship("Chart", back_populates="documents")
