"""Daily quota accounting for user profiles."""

import logging
from datetime import date, datetime, timezone
from typing import Any, Optional

from indexnow_worker.db.repositories import UserProfileRepository

logger = logging.getLogger(__name__)

UNLIMITED = -1


class QuotaService:
    """Check, consume and reset per-user daily quota."""

    def __init__(self, profiles: UserProfileRepository):
        self.profiles = profiles

    async def check_quota(self, user_id: str, count: int = 1) -> bool:
        """
        Soft pre-check: would ``count`` more units fit in today's quota?

        A limit of -1 means unlimited. Unknown users have no quota.
        """
        profile = await self.profiles.get_quota(user_id)
        if not profile:
            logger.warning(f"No profile found for quota check of user {user_id}")
            return False

        limit = profile.get("daily_quota_limit")
        if limit == UNLIMITED:
            return True
        used = profile.get("daily_quota_used") or 0
        return used + count <= (limit or 0)

    async def consume_quota(self, user_id: str, count: int = 1) -> bool:
        """
        Atomically consume ``count`` units.

        Returns:
            False if the user has insufficient quota left

        Raises:
            DatabaseError: the RPC failed (retryable)
        """
        consumed = bool(await self.profiles.consume_quota(user_id, count))
        if not consumed:
            logger.warning(f"Quota exhausted for user {user_id} (requested {count})")
        return consumed

    async def reset_all_quotas(self, today: Optional[date] = None) -> int:
        """Reset usage for every profile whose window ended before ``today``."""
        today = today or datetime.now(timezone.utc).date()
        reset = await self.profiles.reset_stale_quotas(today)
        logger.info(f"Reset daily quota for {reset} profile(s)")
        return reset

    async def get_quota_stats(self) -> dict[str, Any]:
        """Aggregate usage across all profiles."""
        rows = await self.profiles.list_quotas()
        limited = [r for r in rows if r.get("daily_quota_limit") != UNLIMITED]
        return {
            "total_users": len(rows),
            "unlimited_users": len(rows) - len(limited),
            "total_used": sum(r.get("daily_quota_used") or 0 for r in rows),
            "exhausted_users": sum(
                1 for r in limited
                if (r.get("daily_quota_used") or 0) >= (r.get("daily_quota_limit") or 0)
            ),
        }
