from chartflow.exceptions.handlers import (
    ChartFlowException,
    ConfigurationError,
    JobNotFoundError,
    StoreError,
    ValidationError,
)

__all__ = [
    "ChartFlowException",
    "ConfigurationError",
    "JobNotFoundError",
    "StoreError",
    "ValidationError",
]
