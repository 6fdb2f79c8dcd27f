from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

from ..clock import utcnow
from ..records import BlockedCaller, SecurityAlert, Visit
from .base import SecurityStore


class InMemoryStore(SecurityStore):
    """Process-local store guarded by a single lock.

    Suitable for tests and single-process deployments; horizontally scaled
    instances need a shared store such as ``SqlStore``.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = Lock()
        self._windows: Dict[Tuple[str, str, datetime], int] = {}
        self._blocks: Dict[str, BlockedCaller] = {}
        self._visits: List[Visit] = []
        self._alerts: List[SecurityAlert] = []

    def increment_window(
        self, caller: str, endpoint: str, window_start: datetime, limit: int
    ) -> Optional[int]:
        key = (caller, endpoint, window_start)
        with self._lock:
            current = self._windows.get(key, 0)
            if current >= limit:
                return None
            self._windows[key] = current + 1
            return current + 1

    def find_active_block(self, caller: str, now: datetime) -> Optional[BlockedCaller]:
        with self._lock:
            block = self._blocks.get(caller)
        if block is not None and block.is_active(now):
            return block
        return None

    def list_active_blocks(self, now: datetime) -> List[BlockedCaller]:
        with self._lock:
            blocks = [b for b in reversed(list(self._blocks.values())) if b.is_active(now)]
        return sorted(blocks, key=lambda b: b.blocked_at, reverse=True)

    def upsert_block(self, block: BlockedCaller) -> None:
        with self._lock:
            self._blocks[block.ip_address] = block

    def delete_block(self, caller: str) -> bool:
        with self._lock:
            return self._blocks.pop(caller, None) is not None

    def append_visit(self, visit: Visit) -> None:
        if visit.created_at is None:
            visit = replace(visit, created_at=self._clock())
        with self._lock:
            self._visits.append(visit)

    def count_visits(self, caller: str, path: str, since: datetime) -> int:
        with self._lock:
            return sum(
                1 for v in self._visits
                if v.ip_address == caller and v.path == path and v.created_at >= since
            )

    def list_visits(
        self,
        since: datetime,
        limit: Optional[int] = None,
        with_coordinates: bool = False,
    ) -> List[Visit]:
        with self._lock:
            rows = [v for v in reversed(self._visits) if v.created_at >= since]
        if with_coordinates:
            rows = [v for v in rows if v.latitude is not None and v.longitude is not None]
        rows.sort(key=lambda v: v.created_at, reverse=True)
        return rows[:limit] if limit is not None else rows

    def append_alert(self, alert: SecurityAlert) -> None:
        if alert.created_at is None:
            alert = replace(alert, created_at=self._clock())
        with self._lock:
            self._alerts.append(alert)

    def list_alerts(
        self,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        severity: Optional[str] = None,
        alert_type: Optional[str] = None,
    ) -> List[SecurityAlert]:
        with self._lock:
            rows = list(reversed(self._alerts))
        if since is not None:
            rows = [a for a in rows if a.created_at >= since]
        if severity:
            rows = [a for a in rows if a.severity == severity]
        if alert_type:
            rows = [a for a in rows if a.alert_type == alert_type]
        rows.sort(key=lambda a: a.created_at, reverse=True)
        return rows[:limit] if limit is not None else rows
