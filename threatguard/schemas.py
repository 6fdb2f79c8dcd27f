from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Dashboard statistics
# ---------------------------------------------------------------------------

class ThreatCount(BaseModel):
    threat_level: str
    count: int


class PathCount(BaseModel):
    path: str
    count: int


class CallerCount(BaseModel):
    ip_address: str
    count: int
    is_suspicious: bool = Field(..., description="True if any request from this caller was flagged.")


class AlertSummary(BaseModel):
    alert_type: str
    severity: str
    description: str
    created_at: datetime


class BotStats(BaseModel):
    total_bots: int = 0
    ai_bots: int = 0
    scrapers: int = 0
    blocked_bots: int = 0
    estimated: bool = Field(
        default=False,
        description="True when the split is the proportional 60/30/10 approximation.",
    )


class HourlyCount(BaseModel):
    hour: str
    count: int


class CountryCount(BaseModel):
    country: str
    count: int
    suspicious: int


class SecurityStats(BaseModel):
    """Read-only aggregate over the visit log, block registry and alerts."""

    window_hours: int
    total_visits: int
    unique_callers: int
    suspicious_requests: int
    blocked_callers: int
    threat_levels: Dict[str, int] = Field(
        default_factory=dict, description="Histogram over every threat level, including 'none'."
    )
    top_threats: List[ThreatCount] = Field(default_factory=list)
    top_paths: List[PathCount] = Field(default_factory=list)
    top_callers: List[CallerCount] = Field(default_factory=list)
    recent_alerts: List[AlertSummary] = Field(default_factory=list)
    bot_stats: BotStats = Field(default_factory=BotStats)
    threats_by_hour: List[HourlyCount] = Field(default_factory=list)
    countries: List[CountryCount] = Field(default_factory=list)


class GeoPoint(BaseModel):
    ip: str
    lat: float
    lng: float
    country: str
    country_code: str
    city: str
    count: int
    last_visit: datetime
    is_suspicious: bool
    is_blocked: bool


class HeatPoint(BaseModel):
    lat: float
    lng: float
    intensity: float
    count: int


class CountryGeoStat(BaseModel):
    country: str
    country_code: str
    visits: int
    unique_ips: int
    suspicious: int


class GeoSummary(BaseModel):
    visits: List[GeoPoint] = Field(default_factory=list)
    heat_map: List[HeatPoint] = Field(default_factory=list)
    country_stats: List[CountryGeoStat] = Field(default_factory=list)
    total_locations: int = 0
    total_visits: int = 0


# ---------------------------------------------------------------------------
# Block registry
# ---------------------------------------------------------------------------

class BlockedIPRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ip_address: str
    reason: str
    blocked_at: datetime
    expires_at: Optional[datetime] = None
    is_permanent: bool
    blocked_by: str


class BlockCreate(BaseModel):
    ip_address: str = Field(..., min_length=1, max_length=64)
    reason: str = Field(..., min_length=1)
    expires_in_hours: Optional[float] = Field(
        default=None, gt=0, description="Omit for a permanent block."
    )


class UnblockResult(BaseModel):
    success: bool = True
    was_blocked: bool


class BlockStatus(BaseModel):
    is_blocked: bool


# ---------------------------------------------------------------------------
# Alerts & visits
# ---------------------------------------------------------------------------

class AlertRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    alert_type: str
    severity: str
    ip_address: Optional[str] = None
    description: str
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime


class VisitCreate(BaseModel):
    """Visit reported by an external logger (edge function, proxy)."""

    ip_address: str = Field(..., min_length=1, max_length=64)
    user_agent: Optional[str] = None
    path: str = Field(..., min_length=1)
    method: str = "GET"
    status_code: Optional[int] = None
    country: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    is_bot: bool = False
    is_suspicious: bool = False
    threat_level: str = Field(default="none", pattern="^(none|low|medium|high|critical)$")
    response_time_ms: Optional[int] = None
    detection: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Engine status
# ---------------------------------------------------------------------------

class EngineStatus(BaseModel):
    fail_mode: str
    brute_force_enabled: bool
    rules_source: str
    signature_count: int
    endpoint_quotas: Dict[str, Dict[str, int]]


class LogVisitResult(BaseModel):
    success: bool
    error: Optional[str] = None
