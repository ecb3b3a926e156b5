"""Structured job payload written at enqueue time and read by the claiming worker."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

CHART_PROCESSING = "chart_processing"


class ChartInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    chart_number: str
    mrn: Optional[str] = None
    facility: Optional[str] = None
    specialty: Optional[str] = None
    date_of_service: Optional[str] = None
    provider: Optional[str] = None


class DocumentRef(BaseModel):
    """An uploaded document the worker can fetch by URL (or storage key)."""

    document_id: int
    original_name: str
    document_type: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None
    s3_key: Optional[str] = None
    s3_url: Optional[str] = None


class JobPayload(BaseModel):
    # Discriminator for future job kinds; only one exists today.
    job_type: Literal["chart_processing"] = CHART_PROCESSING
    chart_id: Optional[int] = None
    chart_number: str
    chart_info: ChartInfo
    document_type: Optional[str] = None
    documents: List[DocumentRef] = Field(default_factory=list)
