from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable

from ..clock import utcnow
from ..records import Visit
from ..store import SecurityStore, StoreError

logger = logging.getLogger("threatguard.visits")


class VisitLogger:
    """Fire-and-forget append of one record per processed request.

    The visit log is the system of record for brute-force detection and
    dashboard statistics, but losing a row is preferable to failing the
    request, so write errors are logged and swallowed.
    """

    def __init__(self, store: SecurityStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def record(self, visit: Visit) -> None:
        if visit.created_at is None:
            visit = replace(visit, created_at=self._clock())
        try:
            self._store.append_visit(visit)
        except StoreError as exc:
            logger.warning(
                "Failed to log visit %s %s from %s: %s",
                visit.method, visit.path, visit.ip_address, exc,
            )
