from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from chartflow.config import get_settings


@dataclass
class AiResult:
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class AiCodingClient:
    """
    Client for the AI coding service.

    - process_for_coding: formatted OCR documents + chart info -> coding JSON
    - generate_document_summary: one OCR'd document -> structured summary
    """

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        service_token: Optional[str] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.AI_BASE_URL).rstrip("/")
        self.timeout_s = timeout_s if timeout_s is not None else settings.AI_TIMEOUT_SECONDS
        self._service_token = (
            service_token if service_token is not None else settings.AI_SERVICE_TOKEN
        )

    def _headers(self) -> Dict[str, str]:
        token = (self._service_token or "").strip()
        if not token:
            return {}
        if token.lower().startswith("bearer "):
            return {"Authorization": token}
        return {"Authorization": f"Bearer {token}"}

    def _post(self, path: str, payload: Dict[str, Any]) -> AiResult:
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout_s) as client:
                resp = client.post(path, json=payload, headers=self._headers())
                resp.raise_for_status()
                body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            return AiResult(success=False, error=str(exc) or type(exc).__name__)

        if not isinstance(body, dict):
            return AiResult(success=False, error="AI service returned a non-object response")
        if body.get("success") is False:
            return AiResult(success=False, error=body.get("error") or "AI service reported failure")
        data = body.get("data", body)
        return AiResult(success=True, data=data if isinstance(data, dict) else {"result": data})

    def process_for_coding(
        self, formatted_documents: List[Dict[str, Any]], chart_info: Dict[str, Any]
    ) -> AiResult:
        return self._post(
            "/api/v1/coding",
            {"documents": formatted_documents, "chart_info": chart_info},
        )

    def generate_document_summary(
        self, document: Dict[str, Any], chart_info: Dict[str, Any]
    ) -> AiResult:
        return self._post(
            "/api/v1/summaries",
            {"document": document, "chart_info": chart_info},
        )
