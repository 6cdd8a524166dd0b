"""Library utilities for the job worker."""

from .pii_redactor import PIIRedactor
from .timeouts import run_with_timeout
from .json_logger import (
    JSONFormatter,
    StructuredLoggerAdapter,
    setup_logging,
    job_logger,
)

__all__ = [
    "PIIRedactor",
    "run_with_timeout",
    "JSONFormatter",
    "StructuredLoggerAdapter",
    "setup_logging",
    "job_logger",
]
