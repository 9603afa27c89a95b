"""
Scheduling-time arithmetic for the daily trim trigger.

Continuations never use this; they are always "N seconds from now".
"""

from datetime import datetime, timedelta, timezone
from typing import Any

DEFAULT_CRON_HOUR = 3


def normalize_hour(value: Any, default: int = DEFAULT_CRON_HOUR) -> int:
    """Coerce a configured hour to 0-23, falling back to ``default`` if unparseable."""
    try:
        hour = int(value)
    except (TypeError, ValueError):
        hour = default
    return min(23, max(0, hour))


def calculate_next_run_time(
    cron_hour: Any,
    offset_minutes: int = 0,
    now: datetime | None = None,
) -> datetime:
    """Return the next moment strictly after ``now`` at ``cron_hour:00 + offset``.

    Args:
        cron_hour: Hour of day (0-23). Out-of-range values are clamped.
        offset_minutes: Minutes added to the hour. Negative values count as 0.
        now: Reference time (default: current UTC time).

    Returns:
        Timezone-aware datetime in the same zone as ``now``.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    hour = normalize_hour(cron_hour)
    offset = max(0, int(offset_minutes))

    scheduled = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    scheduled += timedelta(minutes=offset)
    if scheduled <= now:
        scheduled += timedelta(days=1)
    return scheduled
