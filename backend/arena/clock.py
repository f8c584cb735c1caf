"""Wall-clock helpers.

Every timestamp in the standings store is naive UTC. Services take a ``clock``
callable so sweeps and anti-cheat windows can be replayed in tests.
"""
from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def start_of_next_week(now: datetime) -> datetime:
    """Monday 00:00 of the week after ``now``."""
    monday = (now - timedelta(days=now.weekday())).replace(
        hour=0, minute=0, second=0, microsecond=0
    )
    return monday + timedelta(weeks=1)
