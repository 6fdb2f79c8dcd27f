"""
records.py — Plain records exchanged with the security store
============================================================
Visits and alerts are append-only and blocks are replaced wholesale on
upsert, so every record is a frozen dataclass.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class ThreatLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    def raised_to(self, other: "ThreatLevel") -> "ThreatLevel":
        """Return the more severe of the two levels."""
        return other if other.rank > self.rank else self


_LEVEL_RANK = {
    ThreatLevel.NONE: 0,
    ThreatLevel.LOW: 1,
    ThreatLevel.MEDIUM: 2,
    ThreatLevel.HIGH: 3,
    ThreatLevel.CRITICAL: 4,
}


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"


# Alert kinds written by the engine
IP_BLOCKED = "ip_blocked"
IP_UNBLOCKED = "ip_unblocked"
BRUTE_FORCE_ATTEMPT = "brute_force_attempt"


@dataclass(frozen=True)
class Visit:
    ip_address: str
    path: str
    method: str
    user_agent: Optional[str] = None
    status_code: Optional[int] = None
    country: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    is_bot: bool = False
    is_suspicious: bool = False
    threat_level: str = ThreatLevel.NONE.value
    response_time_ms: Optional[int] = None
    detection: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class BlockedCaller:
    ip_address: str
    reason: str
    blocked_at: datetime
    expires_at: Optional[datetime] = None
    is_permanent: bool = False
    blocked_by: str = "system"

    def is_active(self, now: datetime) -> bool:
        if self.is_permanent:
            return True
        return self.expires_at is not None and self.expires_at > now


@dataclass(frozen=True)
class SecurityAlert:
    alert_type: str
    severity: str
    description: str
    ip_address: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = field(default=None)
    created_at: Optional[datetime] = None
