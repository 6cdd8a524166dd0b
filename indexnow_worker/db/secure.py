"""Audit-logged wrapper for privileged (service-role) database operations.

Every operation is validated, recorded in ``indb_security_audit_logs``
before it runs, and marked successful or failed afterwards. Audit writes
are best effort: a failed audit insert or update is logged and never
blocks the operation itself.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from indexnow_worker.errors import SecurityViolationError
from .supabase import Filter, SupabaseClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

AUDIT_TABLE = "indb_security_audit_logs"
ALLOWED_OPERATION_TYPES = {"select", "insert", "update", "delete", "rpc"}
SYSTEM_USER = "system"


@dataclass
class SecurityContext:
    """Who performs a privileged operation, and why."""
    user_id: str
    operation: str
    source: str
    reason: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class QueryOptions:
    """What a privileged operation touches."""
    table: str
    operation_type: str
    columns: str = "*"
    filters: list[Filter] = field(default_factory=list)
    data: Optional[dict[str, Any]] = None


def system_context(operation: str, source: str, reason: str, **metadata) -> SecurityContext:
    """Context for operations started by scheduled workers."""
    return SecurityContext(
        user_id=SYSTEM_USER,
        operation=operation,
        source=source,
        reason=reason,
        user_agent="indexnow-worker",
        metadata=metadata,
    )


class SecureOperationWrapper:
    """Run database operations under validation and audit logging."""

    def __init__(self, db: SupabaseClient):
        self.db = db

    async def execute(
        self,
        context: SecurityContext,
        query: QueryOptions,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Validate, audit and run ``operation``.

        Raises:
            SecurityViolationError: context or query options are invalid
            Exception: whatever ``operation`` raises, after the failure is audited
        """
        self._validate(context, query)
        context = self._sanitize(context)

        started = time.monotonic()
        started_at = datetime.now(timezone.utc).isoformat()
        audit_id = await self._log_start(context, query, started_at)
        try:
            result = await operation()
        except Exception as e:
            await self._log_finish(audit_id, context, query, started, started_at, error=e)
            raise

        await self._log_finish(audit_id, context, query, started, started_at)
        return result

    # ==================== Validation ====================

    def _validate(self, context: SecurityContext, query: QueryOptions) -> None:
        missing = [
            name for name in ("user_id", "operation", "source", "reason")
            if not str(getattr(context, name) or "").strip()
        ]
        if missing:
            raise SecurityViolationError(
                f"Security context missing required fields: {', '.join(missing)}",
                details={"missing": missing},
            )
        if not query.table or not query.table.replace("_", "").isalnum():
            raise SecurityViolationError(f"Invalid table name: {query.table!r}")
        if query.operation_type not in ALLOWED_OPERATION_TYPES:
            raise SecurityViolationError(f"Invalid operation type: {query.operation_type!r}")

    @staticmethod
    def _sanitize(context: SecurityContext) -> SecurityContext:
        return SecurityContext(
            user_id=context.user_id.strip(),
            operation=context.operation.strip()[:200],
            source=context.source.strip()[:200],
            reason=context.reason.strip()[:500],
            ip_address=context.ip_address,
            user_agent=(context.user_agent or "")[:300] or None,
            metadata=context.metadata,
        )

    # ==================== Audit Log ====================

    async def _log_start(self, context: SecurityContext, query: QueryOptions, started_at: str) -> Optional[str]:
        row = {
            "user_id": None if context.user_id == SYSTEM_USER else context.user_id,
            "operation": context.operation[:100],
            "table_name": query.table,
            "reason": context.reason,
            "source": context.source[:50],
            "ip_address": context.ip_address,
            "user_agent": context.user_agent,
            "success": None,
            "metadata": self._metadata(context, query, started_at=started_at),
        }
        try:
            inserted = await self.db.insert(AUDIT_TABLE, row)
        except Exception as e:
            logger.error(f"Audit log insert failed for {context.operation}: {e}")
            return None
        return inserted[0].get("id") if inserted else None

    async def _log_finish(
        self,
        audit_id: Optional[str],
        context: SecurityContext,
        query: QueryOptions,
        started: float,
        started_at: str,
        error: Optional[BaseException] = None,
    ) -> None:
        if audit_id is None:
            return
        # The update replaces metadata, so the start time is written again
        outcome = {
            "started_at": started_at,
            "completed_at": datetime.now(timezone.utc).isoformat(),
            "duration_ms": int((time.monotonic() - started) * 1000),
        }
        if error is not None:
            outcome["error"] = str(error)[:500]
            outcome["error_type"] = error.__class__.__name__
        try:
            await self.db.update(
                AUDIT_TABLE,
                {"success": error is None, "metadata": self._metadata(context, query, **outcome)},
                [("id", "eq", audit_id)],
            )
        except Exception as e:
            logger.error(f"Audit log update failed for {audit_id}: {e}")

    @staticmethod
    def _metadata(context: SecurityContext, query: QueryOptions, **extra) -> dict[str, Any]:
        return {
            "event_type": "service_role_operation",
            "actor": context.user_id,
            "operation_type": query.operation_type,
            **context.metadata,
            **extra,
        }
