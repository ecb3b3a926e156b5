"""Stage timing for one job attempt, stored on the chart as sla_data."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

SLA_EXCELLENT_MS = 30_000
SLA_GOOD_MS = 60_000
SLA_ACCEPTABLE_MS = 120_000

_STAGES = (
    "upload_received",
    "ocr_started",
    "ocr_completed",
    "ai_started",
    "ai_completed",
    "processing_complete",
)


def sla_status(total_ms: int) -> Dict[str, str]:
    if total_ms < SLA_EXCELLENT_MS:
        return {"status": "excellent", "message": "Processed within 30 seconds"}
    if total_ms < SLA_GOOD_MS:
        return {"status": "good", "message": "Processed within 1 minute"}
    if total_ms < SLA_ACCEPTABLE_MS:
        return {"status": "acceptable", "message": "Processed within 2 minutes"}
    return {"status": "delayed", "message": "Processing exceeded 2 minutes"}


class SlaTracker:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self.marks: Dict[str, Optional[float]] = {stage: None for stage in _STAGES}

    def mark(self, stage: str) -> "SlaTracker":
        if stage not in self.marks:
            raise KeyError(f"Unknown SLA stage: {stage}")
        self.marks[stage] = self._clock()
        return self

    def _elapsed_ms(self, start: str, end: str) -> int:
        begin, finish = self.marks[start], self.marks[end]
        if begin is None or finish is None:
            return 0
        return int(round((finish - begin) * 1000))

    def summary(self) -> Dict[str, Any]:
        total = self._elapsed_ms("upload_received", "processing_complete")
        ocr = self._elapsed_ms("ocr_started", "ocr_completed")
        ai = self._elapsed_ms("ai_started", "ai_completed")
        return {
            "timestamps": {
                stage: (
                    datetime.fromtimestamp(value, tz=timezone.utc).isoformat()
                    if value is not None
                    else None
                )
                for stage, value in self.marks.items()
            },
            "durations_ms": {
                "total": total,
                "ocr": ocr,
                "ai": ai,
                "overhead": max(total - ocr - ai, 0),
            },
            "sla_status": sla_status(total),
        }
