"""Post-reset housekeeping for user quotas and Google service accounts.

Google API quotas reset at midnight Pacific time; user quotas reset per
UTC day. Each run:

1. resets daily usage for profiles whose quota window has rolled over
2. reactivates service accounts that were disabled but show little usage today
3. resumes indexing jobs paused for quota exhaustion when their owner has an
   active service account again
4. deletes stale "quota exhausted" notifications
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from indexnow_worker.db.repositories import ServiceAccountRepository
from .quota_service import QuotaService

logger = logging.getLogger(__name__)

# Below this many requests today an inactive account is assumed to have been reset
REACTIVATION_REQUEST_THRESHOLD = 10
NOTIFICATION_MAX_AGE = timedelta(hours=24)


class QuotaResetMonitor:
    def __init__(
        self,
        quota_service: QuotaService,
        accounts: ServiceAccountRepository,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.quota_service = quota_service
        self.accounts = accounts
        self._clock = clock

    async def check_and_reactivate_accounts(self) -> dict[str, Any]:
        """
        Run every reset step; a failing step is logged and does not stop the others.

        Raises:
            Exception: the first error, when every step failed
        """
        steps: list[tuple[str, Callable[[], Awaitable[int]]]] = [
            ("quotas_reset", self.reset_user_quotas),
            ("accounts_reactivated", self.reactivate_service_accounts),
            ("jobs_resumed", self.resume_paused_jobs),
            ("notifications_deleted", self.cleanup_old_notifications),
        ]
        summary: dict[str, Any] = {"errors": []}
        first_error: Optional[Exception] = None

        for name, step in steps:
            try:
                summary[name] = await step()
            except Exception as e:
                logger.error(f"Quota reset step {name} failed: {e}")
                summary[name] = 0
                summary["errors"].append({"step": name, "error": str(e)})
                first_error = first_error or e

        if first_error is not None and len(summary["errors"]) == len(steps):
            raise first_error

        logger.info(
            "Quota reset check finished: "
            + ", ".join(f"{name}={summary[name]}" for name, _ in steps)
        )
        return summary

    async def reset_user_quotas(self) -> int:
        return await self.quota_service.reset_all_quotas(self._clock().date())

    async def reactivate_service_accounts(self) -> int:
        today = self._clock().date()
        reactivated = 0
        for account in await self.accounts.list_inactive():
            requests_today = await self.accounts.requests_made_on(account["id"], today)
            if requests_today < REACTIVATION_REQUEST_THRESHOLD:
                await self.accounts.reactivate(account["id"])
                reactivated += 1
                logger.info(f"Reactivated service account {account.get('name') or account['id']}")
        return reactivated

    async def resume_paused_jobs(self) -> int:
        resumed = 0
        for job in await self.accounts.list_quota_paused_jobs():
            if await self.accounts.has_active_account(job["user_id"]):
                await self.accounts.resume_job(job["id"])
                resumed += 1
                logger.info(f"Resumed indexing job {job.get('name') or job['id']}")
        return resumed

    async def cleanup_old_notifications(self) -> int:
        return await self.accounts.delete_quota_notifications(self._clock() - NOTIFICATION_MAX_AGE)
