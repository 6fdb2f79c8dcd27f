from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..clock import utcnow
from ..records import AlertSeverity, SecurityAlert
from ..store import SecurityStore, StoreError

logger = logging.getLogger("threatguard.alerts")


class AlertEmitter:
    """Appends operator-facing security events.

    Emitting is a side channel: a failed write is logged and dropped so it
    never interrupts the operation that raised the alert.
    """

    def __init__(self, store: SecurityStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def emit(
        self,
        alert_type: str,
        severity: AlertSeverity | str,
        description: str,
        ip_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        alert = SecurityAlert(
            alert_type=alert_type,
            severity=AlertSeverity(severity).value,
            description=description,
            ip_address=ip_address,
            metadata=metadata,
            created_at=self._clock(),
        )
        try:
            self._store.append_alert(alert)
        except StoreError as exc:
            logger.warning("Failed to record %s alert for %s: %s", alert_type, ip_address or "-", exc)

    def recent(
        self,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        severity: Optional[str] = None,
        alert_type: Optional[str] = None,
    ) -> List[SecurityAlert]:
        """Read-only listing for dashboards. Raises StoreError."""
        return self._store.list_alerts(
            since=since, limit=limit, severity=severity, alert_type=alert_type
        )
