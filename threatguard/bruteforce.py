"""
bruteforce.py — Reactive brute-force detection over the visit log
=================================================================
Counts recent visits for a (caller, endpoint) pair straight from the
durable visit log rather than keeping counters, so every instance sees
the same history. Crossing the threshold raises one alert and installs a
time-bounded block.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .blocklist import BlockRegistry
from .clock import utcnow
from .records import BRUTE_FORCE_ATTEMPT, AlertSeverity
from .store import SecurityStore, StoreError
from .telemetry import AlertEmitter

logger = logging.getLogger("threatguard.bruteforce")


class BruteForceDetector:

    def __init__(
        self,
        store: SecurityStore,
        registry: BlockRegistry,
        alerts: AlertEmitter,
        clock: Callable[[], datetime] = utcnow,
        window_minutes: int = 5,
        threshold: int = 20,
        block_hours: float = 1,
    ) -> None:
        self._store = store
        self._registry = registry
        self._alerts = alerts
        self._clock = clock
        self.window_minutes = window_minutes
        self.threshold = threshold
        self.block_hours = block_hours

    def check(
        self,
        caller: str,
        endpoint: str,
        window_minutes: Optional[int] = None,
        threshold: Optional[int] = None,
    ) -> bool:
        """Return True if an attack was detected and the caller was blocked."""
        window = window_minutes if window_minutes is not None else self.window_minutes
        limit = threshold if threshold is not None else self.threshold
        since = self._clock() - timedelta(minutes=window)

        try:
            count = self._store.count_visits(caller, endpoint, since)
        except StoreError as exc:
            logger.warning("Brute-force scan failed for %s on %s: %s", caller, endpoint, exc)
            return False

        if count < limit:
            return False

        logger.warning(
            "Brute force detected: %d requests from %s to %s in %d minutes",
            count, caller, endpoint, window,
        )
        self._alerts.emit(
            BRUTE_FORCE_ATTEMPT,
            AlertSeverity.HIGH,
            (
                f"Potential brute force attack detected: {count} requests to "
                f"{endpoint} in {window} minutes"
            ),
            ip_address=caller,
            metadata={"endpoint": endpoint, "request_count": count, "window_minutes": window},
        )
        try:
            self._registry.block(
                caller,
                f"Brute force attack detected on {endpoint}",
                ttl_hours=self.block_hours,
                actor="system",
            )
        except StoreError as exc:
            logger.warning("Failed to block %s after brute force on %s: %s", caller, endpoint, exc)
        return True
