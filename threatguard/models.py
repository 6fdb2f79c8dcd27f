from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .clock import utcnow
from .database import Base


class VisitRow(Base):
    """One processed request. Append-only."""

    __tablename__ = "security_visits"
    __table_args__ = (
        Index("ix_security_visits_ip_path_created", "ip_address", "path", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    ip_address: Mapped[str] = mapped_column(String(64), index=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    path: Mapped[str] = mapped_column(String(2048))
    method: Mapped[str] = mapped_column(String(16))
    status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Geo hints (best effort, supplied by the resolver)
    country: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    is_bot: Mapped[bool] = mapped_column(Boolean, default=False)
    is_suspicious: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    threat_level: Mapped[str] = mapped_column(String(16), default="none", index=True)
    response_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    detection: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON


class BlockedIPRow(Base):
    """Blocked caller, unique per IP. Active iff permanent or expires_at > now."""

    __tablename__ = "security_blocked_ips"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    ip_address: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    reason: Mapped[str] = mapped_column(Text)
    blocked_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    is_permanent: Mapped[bool] = mapped_column(Boolean, default=False)
    blocked_by: Mapped[str] = mapped_column(String(256), default="system")


class SecurityAlertRow(Base):
    """Operator-facing security event. No update or delete."""

    __tablename__ = "security_alerts"
    __table_args__ = (
        Index("ix_security_alerts_type_created", "alert_type", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    alert_type: Mapped[str] = mapped_column(String(64), index=True)
    # severity: info | warning | high | critical
    severity: Mapped[str] = mapped_column(String(16), index=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    description: Mapped[str] = mapped_column(Text)
    # ``metadata`` is reserved on declarative classes
    metadata_json: Mapped[Optional[str]] = mapped_column("metadata", Text, nullable=True)


class RateLimitRow(Base):
    """Fixed-window request counter keyed by (ip, endpoint, window_start)."""

    __tablename__ = "security_rate_limits"
    __table_args__ = (
        UniqueConstraint("ip_address", "endpoint", "window_start", name="uq_security_rate_limits_window"),
        Index("ix_security_rate_limits_window_start", "window_start"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    ip_address: Mapped[str] = mapped_column(String(64))
    endpoint: Mapped[str] = mapped_column(String(512))
    window_start: Mapped[datetime] = mapped_column(DateTime)
    request_count: Mapped[int] = mapped_column(Integer, default=0)
