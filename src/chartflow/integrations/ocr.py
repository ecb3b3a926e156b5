from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from chartflow.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class OcrResult:
    success: bool
    filename: str
    document_type: Optional[str] = None
    extracted_text: Optional[str] = None
    error: Optional[str] = None
    processing_time_ms: int = 0


class OcrClient:
    """Client for the OCR extraction service (file + document type -> text)."""

    def __init__(self, *, base_url: Optional[str] = None, timeout_s: Optional[float] = None) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.OCR_BASE_URL).rstrip("/")
        self.timeout_s = timeout_s if timeout_s is not None else settings.OCR_TIMEOUT_SECONDS

    def extract_text(
        self,
        file_path: Path,
        *,
        filename: str,
        document_type: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> OcrResult:
        """
        Call `/api/v1/ocr/extract`. Transport and HTTP errors become a failed
        OcrResult rather than an exception.
        """
        started = time.monotonic()
        data: Dict[str, Any] = {}
        if document_type:
            data["document_type"] = document_type
        try:
            with open(file_path, "rb") as fh:
                files = {"file": (filename, fh, mime_type or "application/octet-stream")}
                with httpx.Client(base_url=self.base_url, timeout=self.timeout_s) as client:
                    resp = client.post("/api/v1/ocr/extract", files=files, data=data)
                    resp.raise_for_status()
                    body = resp.json()
        except (httpx.HTTPError, OSError, ValueError) as exc:
            return OcrResult(
                success=False,
                filename=filename,
                document_type=document_type,
                error=str(exc) or type(exc).__name__,
                processing_time_ms=int((time.monotonic() - started) * 1000),
            )

        if not isinstance(body, dict):
            return OcrResult(
                success=False,
                filename=filename,
                document_type=document_type,
                error="OCR service returned a non-object response",
                processing_time_ms=int((time.monotonic() - started) * 1000),
            )
        text = body.get("text") or body.get("extracted_text")
        elapsed = body.get("processing_time_ms")
        if elapsed is None:
            elapsed = int((time.monotonic() - started) * 1000)
        if not text:
            return OcrResult(
                success=False,
                filename=filename,
                document_type=document_type,
                error=body.get("error") or "No text extracted",
                processing_time_ms=int(elapsed),
            )
        return OcrResult(
            success=True,
            filename=filename,
            document_type=document_type,
            extracted_text=text if isinstance(text, str) else str(text),
            processing_time_ms=int(elapsed),
        )
