from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Callable

# Every timestamp in the engine is naive UTC; SQLite stores naive datetimes.
Clock = Callable[[], datetime]

_EPOCH = datetime(1970, 1, 1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def window_start(now: datetime, window_seconds: int) -> datetime:
    """Start of the fixed window containing ``now``.

    Boundaries are multiples of ``window_seconds`` since the epoch, so they
    never depend on when the first request arrived.
    """
    elapsed = (now - _EPOCH).total_seconds()
    return _EPOCH + timedelta(seconds=math.floor(elapsed / window_seconds) * window_seconds)


def seconds_until(now: datetime, moment: datetime) -> int:
    return max(0, math.ceil((moment - now).total_seconds()))
