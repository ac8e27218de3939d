"""
Datetime utilities.
"""

import time
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def iso_now() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return utcnow().isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_ms() -> int:
    """Milliseconds since the epoch, as used by the request signer."""
    return int(time.time() * 1000)
