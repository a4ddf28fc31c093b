"""Wall-clock helpers used for TTL arithmetic and timestamps."""

import time
from datetime import datetime, timezone
from typing import Callable

# Returns seconds since the epoch, like time.time().
Clock = Callable[[], float]

system_clock: Clock = time.time


def utcnow() -> datetime:
    """Naive UTC timestamp with microsecond precision, as stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
