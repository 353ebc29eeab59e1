"""Time source shared by the serving core.

Services take a ``clock`` callable instead of reading the wall clock so that
recency windows and batch scheduling can be driven from tests.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)
