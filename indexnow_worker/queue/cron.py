"""Cron pattern helpers for repeatable jobs (APScheduler triggers)."""

from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.triggers.cron import CronTrigger


def build_trigger(pattern: str, tz: str = "UTC") -> CronTrigger:
    """
    Build a trigger from a five-field crontab expression.

    Raises:
        ValueError: malformed pattern or unknown timezone
    """
    try:
        return CronTrigger.from_crontab(pattern, timezone=tz)
    except (ValueError, KeyError, LookupError) as e:
        raise ValueError(f"Invalid cron pattern {pattern!r} ({tz}): {e}") from e


def next_fire_time(pattern: str, tz: str = "UTC", after: Optional[datetime] = None) -> datetime:
    """Next fire time strictly after ``after`` (default: now)."""
    trigger = build_trigger(pattern, tz)
    now = after or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    # The trigger returns times >= its argument; a fire at exactly ``now`` has already happened
    fire = trigger.get_next_fire_time(None, now + timedelta(microseconds=1))
    if fire is None:
        raise ValueError(f"Cron pattern {pattern!r} never fires")
    return fire


def next_fire_timestamp(pattern: str, tz: str = "UTC", after_ts: Optional[float] = None) -> float:
    """Epoch-seconds variant of :func:`next_fire_time`."""
    after = datetime.fromtimestamp(after_ts, tz=timezone.utc) if after_ts is not None else None
    return next_fire_time(pattern, tz, after).timestamp()
