"""Structured JSON logging for the job worker.

One JSON object per line on stdout. Job-scoped fields (job_id, queue,
attempts, keyword_id, ...) sit at the top level of the object so the log
pipeline can filter a single job's history without parsing messages.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .pii_redactor import PIIRedactor

SERVICE_NAME = "indexnow-worker"

JOB_FIELDS = (
    "job_id", "job_name", "queue", "attempts",
    "keyword_id", "transaction_id", "order_id", "user_id",
    "status", "duration_ms", "error_code",
)

# Attributes every LogRecord carries; anything else came in through `extra`
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

_NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler", "uvicorn.access")


class JSONFormatter(logging.Formatter):
    def __init__(self, redact_pii: bool = True):
        super().__init__()
        self.redact_pii = redact_pii

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: Dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": self._clean(record.getMessage()),
        }

        extras = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS and not k.startswith("_")}
        for field in JOB_FIELDS:
            value = extras.pop(field, None)
            if value is not None:
                entry[field] = value
        for key, value in extras.items():
            entry[key] = self._clean(value)

        if record.exc_info and record.exc_info[1] is not None:
            error = record.exc_info[1]
            entry["error"] = {
                "type": type(error).__name__,
                "message": self._clean(str(error)),
                "stack": self.formatException(record.exc_info),
            }
            entry.setdefault("error_code", type(error).__name__)

        return json.dumps(entry, default=str, ensure_ascii=False)

    def _clean(self, value: Any) -> Any:
        if self.redact_pii and isinstance(value, str):
            return PIIRedactor.redact_for_logging(value)
        return value


class StructuredLoggerAdapter(logging.LoggerAdapter):
    """Attach a fixed set of job fields to every record logged through it.

    Per-call ``extra`` wins over the bound fields, so a processor can log a
    different ``status`` without rebinding.
    """

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs

    def with_context(self, **fields) -> "StructuredLoggerAdapter":
        return StructuredLoggerAdapter(self.logger, {**self.extra, **fields})


def setup_logging(level: str = "INFO", log_format: str = "json") -> None:
    """Install a single stdout handler on the root logger.

    ``log_format="json"`` emits redacted JSON lines; anything else falls back
    to plain text for local development.
    """
    handler = logging.StreamHandler(sys.stdout)
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s"))

    level_no = logging.getLevelName(level.upper())
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level_no if isinstance(level_no, int) else logging.INFO)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def job_logger(
    job_id: str,
    job_name: str,
    queue: Optional[str] = None,
    attempts: Optional[int] = None,
) -> StructuredLoggerAdapter:
    """Logger named after the queue, bound to one job's identifying fields."""
    fields = {"job_id": job_id, "job_name": job_name, "queue": queue, "attempts": attempts}
    return StructuredLoggerAdapter(
        logging.getLogger(f"worker.{queue or job_name}"),
        {k: v for k, v in fields.items() if v is not None},
    )
