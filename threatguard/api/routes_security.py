from __future__ import annotations

import logging
from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..auth import get_engine, require_admin
from ..engine import SecurityEngine
from ..records import Visit
from ..schemas import (
    AlertRead,
    BlockCreate,
    BlockedIPRead,
    BlockStatus,
    GeoSummary,
    LogVisitResult,
    SecurityStats,
    UnblockResult,
    VisitCreate,
)
from ..store import StoreError

logger = logging.getLogger("threatguard.api")

router = APIRouter(prefix="/security", tags=["security"])


# ---------------------------------------------------------------------------
# Dashboards
# ---------------------------------------------------------------------------

@router.get("/stats", response_model=SecurityStats)
def get_stats(
    hours: int = Query(24, ge=1, le=24 * 90),
    engine: SecurityEngine = Depends(get_engine),
    _admin: str = Depends(require_admin),
) -> SecurityStats:
    """Aggregated traffic, threat and bot figures for the last ``hours``."""
    return engine.stats.summarize(hours)


@router.get("/geo-visits", response_model=GeoSummary)
def get_geo_visits(
    hours: int = Query(24, ge=1, le=24 * 90),
    limit: int = Query(200, ge=1, le=5000),
    engine: SecurityEngine = Depends(get_engine),
    _admin: str = Depends(require_admin),
) -> GeoSummary:
    return engine.stats.geo_visits(hours, limit)


@router.get("/alerts", response_model=List[AlertRead])
def list_alerts(
    hours: int = Query(24, ge=1, le=24 * 90),
    limit: int = Query(50, ge=1, le=1000),
    severity: Optional[str] = Query(None, pattern="^(info|warning|high|critical)$"),
    alert_type: Optional[str] = Query(None),
    engine: SecurityEngine = Depends(get_engine),
    _admin: str = Depends(require_admin),
) -> List[AlertRead]:
    since = engine.clock() - timedelta(hours=hours)
    alerts = engine.alerts.recent(since=since, limit=limit, severity=severity, alert_type=alert_type)
    return [AlertRead.model_validate(a) for a in alerts]


# ---------------------------------------------------------------------------
# Block registry
# ---------------------------------------------------------------------------

@router.get("/blocked-ips", response_model=List[BlockedIPRead])
def list_blocked_ips(
    engine: SecurityEngine = Depends(get_engine),
    _admin: str = Depends(require_admin),
) -> List[BlockedIPRead]:
    return [BlockedIPRead.model_validate(b) for b in engine.registry.list_active()]


@router.post("/blocked-ips", response_model=BlockedIPRead, status_code=status.HTTP_201_CREATED)
def block_ip(
    body: BlockCreate,
    engine: SecurityEngine = Depends(get_engine),
    admin: str = Depends(require_admin),
) -> BlockedIPRead:
    """Block a caller. Re-blocking replaces the existing row."""
    block = engine.registry.block(
        body.ip_address,
        body.reason,
        ttl_hours=body.expires_in_hours,
        actor=admin,
    )
    return BlockedIPRead.model_validate(block)


@router.delete("/blocked-ips/{ip_address}", response_model=UnblockResult)
def unblock_ip(
    ip_address: str,
    engine: SecurityEngine = Depends(get_engine),
    admin: str = Depends(require_admin),
) -> UnblockResult:
    return UnblockResult(was_blocked=engine.registry.unblock(ip_address, actor=admin))


# ---------------------------------------------------------------------------
# External visit loggers
# ---------------------------------------------------------------------------

@router.post("/log-visit", response_model=LogVisitResult)
def log_visit(
    body: VisitCreate,
    engine: SecurityEngine = Depends(get_engine),
    _admin: str = Depends(require_admin),
) -> LogVisitResult:
    """Append a visit observed outside this process (edge function, proxy)."""
    visit = Visit(created_at=engine.clock(), **body.model_dump())
    try:
        engine.store.append_visit(visit)
    except StoreError as exc:
        logger.warning("Failed to log external visit from %s: %s", body.ip_address, exc)
        return LogVisitResult(success=False, error=str(exc))
    return LogVisitResult(success=True)


@router.get("/log-visit", response_model=BlockStatus)
def check_ip(
    ip: str = Query(..., min_length=1),
    engine: SecurityEngine = Depends(get_engine),
    _admin: str = Depends(require_admin),
) -> BlockStatus:
    check = engine.registry.check(ip)
    if check.degraded:
        raise HTTPException(status_code=503, detail="Security store unavailable.")
    return BlockStatus(is_blocked=check.blocked)
