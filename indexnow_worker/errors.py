"""Error taxonomy for background jobs.

The queue decides between retry and fail-fast by exception class:

- PermanentJobError and subclasses: failed on the current attempt, never retried.
- TransientJobError and subclasses: retried according to the job's attempts/backoff.
- Anything else: treated as transient.
"""

from typing import Any, Optional


class JobError(Exception):
    """Base class for job processing errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class PermanentJobError(JobError):
    """Retrying cannot succeed (bad input, missing rows, policy violations)."""


class PayloadValidationError(PermanentJobError):
    """Job payload does not match its schema."""


class NotFoundError(PermanentJobError):
    """A referenced row does not exist."""


class SecurityViolationError(PermanentJobError):
    """A privileged operation was attempted with an invalid context."""


class TransientJobError(JobError):
    """Failure that may succeed on a later attempt."""


class ExternalServiceError(TransientJobError):
    """An outbound HTTP/SMTP call failed."""


class ExternalTimeoutError(TransientJobError):
    """An outbound call exceeded its deadline."""


class DatabaseError(TransientJobError):
    """The relational store rejected or failed a request."""


class QueueDisabledError(RuntimeError):
    """The job queue was used while ENABLE_JOB_QUEUE is off."""


def is_permanent(error: BaseException) -> bool:
    """True if the error must not be retried."""
    return isinstance(error, PermanentJobError)
