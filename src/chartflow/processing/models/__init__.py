from chartflow.processing.models.chart import (
    Chart,
    ChartAIStatus,
    ChartDocument,
    OcrStatus,
)
from chartflow.processing.models.job import JobStatus, ProcessingJob

__all__ = [
    "Chart",
    "ChartAIStatus",
    "ChartDocument",
    "JobStatus",
    "OcrStatus",
    "ProcessingJob",
]
