from __future__ import annotations

from typing import Any, Dict, Optional


class ChartFlowException(Exception):
    """
    Base exception for the queue, worker and API layers.

    Carries message/code/status_code/details/user_message and renders
    itself with to_dict() for API responses.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "CHARTFLOW_ERROR",
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
    ) -> None:
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details: Dict[str, Any] = details or {}
        self.user_message = user_message or message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
        }

    def __str__(self) -> str:  # pragma: no cover
        return self.message


class ValidationError(ChartFlowException):
    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"field": field} if field else {}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            status_code=422,
            details=details,
            user_message=f"Validation failed: {message}",
        )


class StoreError(ChartFlowException):
    """The job store (database) was unavailable or a query failed."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None, **kwargs: Any):
        message = f"Job store operation failed: {operation}"
        if cause is not None:
            message += f" ({type(cause).__name__}: {cause})"
        details: Dict[str, Any] = {"operation": operation}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="STORE_ERROR",
            status_code=503,
            details=details,
            user_message="The processing queue is temporarily unavailable",
        )
        self.operation = operation


class JobNotFoundError(ChartFlowException):
    def __init__(self, job_id: str):
        super().__init__(
            message=f"Job not found: {job_id}",
            code="JOB_NOT_FOUND",
            status_code=404,
            details={"job_id": job_id},
            user_message="Job not found",
        )
        self.job_id = job_id


class ConfigurationError(ChartFlowException):
    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"config_key": config_key} if config_key else {}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="CONFIGURATION_ERROR",
            status_code=500,
            details=details,
            user_message="System configuration error",
        )
