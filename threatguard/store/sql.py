"""
store/sql.py — SQLAlchemy-backed security store
===============================================
Counters and block rows are written with a single
``INSERT ... ON CONFLICT DO UPDATE`` statement so concurrent requests on
different workers or instances can never over-admit or create duplicate
blocks. Supported dialects: SQLite (>= 3.35) and PostgreSQL.
"""
from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from sqlalchemy import func, or_, select, delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..database import SessionLocal, session_scope
from ..models import BlockedIPRow, RateLimitRow, SecurityAlertRow, VisitRow
from ..records import BlockedCaller, SecurityAlert, Visit
from .base import SecurityStore, StoreError


def _insert_for(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise StoreError(f"Atomic upsert is not supported on dialect '{dialect}'.")


def _dumps(value: Optional[dict]) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


def _loads(value: Optional[str]) -> Optional[dict]:
    if not value:
        return None
    try:
        return json.loads(value)
    except ValueError:
        return {"raw": value}


def _block_from_row(row: BlockedIPRow) -> BlockedCaller:
    return BlockedCaller(
        ip_address=row.ip_address,
        reason=row.reason,
        blocked_at=row.blocked_at,
        expires_at=row.expires_at,
        is_permanent=row.is_permanent,
        blocked_by=row.blocked_by,
    )


def _visit_from_row(row: VisitRow) -> Visit:
    return Visit(
        ip_address=row.ip_address,
        path=row.path,
        method=row.method,
        user_agent=row.user_agent,
        status_code=row.status_code,
        country=row.country,
        city=row.city,
        latitude=row.latitude,
        longitude=row.longitude,
        is_bot=row.is_bot,
        is_suspicious=row.is_suspicious,
        threat_level=row.threat_level,
        response_time_ms=row.response_time_ms,
        detection=_loads(row.detection),
        created_at=row.created_at,
    )


def _alert_from_row(row: SecurityAlertRow) -> SecurityAlert:
    return SecurityAlert(
        alert_type=row.alert_type,
        severity=row.severity,
        description=row.description,
        ip_address=row.ip_address,
        metadata=_loads(row.metadata_json),
        created_at=row.created_at,
    )


class SqlStore(SecurityStore):

    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self._factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with session_scope(self._factory) as session:
                yield session
        except SQLAlchemyError as exc:
            raise StoreError(f"{type(exc).__name__}: {exc}") from exc

    # -- rate-limit windows -------------------------------------------------

    def increment_window(
        self, caller: str, endpoint: str, window_start: datetime, limit: int
    ) -> Optional[int]:
        if limit <= 0:
            return None
        with self._session() as session:
            insert = _insert_for(session)
            stmt = insert(RateLimitRow).values(
                ip_address=caller,
                endpoint=endpoint,
                window_start=window_start,
                request_count=1,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["ip_address", "endpoint", "window_start"],
                set_={"request_count": RateLimitRow.request_count + 1},
                where=RateLimitRow.request_count < limit,
            ).returning(RateLimitRow.request_count)
            return session.execute(stmt).scalar_one_or_none()

    # -- blocked callers ----------------------------------------------------

    def find_active_block(self, caller: str, now: datetime) -> Optional[BlockedCaller]:
        with self._session() as session:
            row = session.execute(
                select(BlockedIPRow)
                .where(BlockedIPRow.ip_address == caller)
                .where(or_(BlockedIPRow.is_permanent == True, BlockedIPRow.expires_at > now))  # noqa: E712
            ).scalar_one_or_none()
            return _block_from_row(row) if row is not None else None

    def list_active_blocks(self, now: datetime) -> List[BlockedCaller]:
        with self._session() as session:
            rows = session.execute(
                select(BlockedIPRow)
                .where(or_(BlockedIPRow.is_permanent == True, BlockedIPRow.expires_at > now))  # noqa: E712
                .order_by(BlockedIPRow.blocked_at.desc(), BlockedIPRow.id.desc())
            ).scalars().all()
            return [_block_from_row(r) for r in rows]

    def upsert_block(self, block: BlockedCaller) -> None:
        with self._session() as session:
            insert = _insert_for(session)
            stmt = insert(BlockedIPRow).values(
                ip_address=block.ip_address,
                reason=block.reason,
                blocked_at=block.blocked_at,
                expires_at=block.expires_at,
                is_permanent=block.is_permanent,
                blocked_by=block.blocked_by,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["ip_address"],
                set_={
                    "reason": stmt.excluded.reason,
                    "blocked_at": stmt.excluded.blocked_at,
                    "expires_at": stmt.excluded.expires_at,
                    "is_permanent": stmt.excluded.is_permanent,
                    "blocked_by": stmt.excluded.blocked_by,
                },
            )
            session.execute(stmt)

    def delete_block(self, caller: str) -> bool:
        with self._session() as session:
            result = session.execute(
                delete(BlockedIPRow).where(BlockedIPRow.ip_address == caller)
            )
            return (result.rowcount or 0) > 0

    # -- visits -------------------------------------------------------------

    def append_visit(self, visit: Visit) -> None:
        with self._session() as session:
            row = VisitRow(
                ip_address=visit.ip_address,
                user_agent=visit.user_agent,
                path=visit.path,
                method=visit.method,
                status_code=visit.status_code,
                country=visit.country,
                city=visit.city,
                latitude=visit.latitude,
                longitude=visit.longitude,
                is_bot=visit.is_bot,
                is_suspicious=visit.is_suspicious,
                threat_level=visit.threat_level,
                response_time_ms=visit.response_time_ms,
                detection=_dumps(visit.detection),
            )
            if visit.created_at is not None:
                row.created_at = visit.created_at
            session.add(row)

    def count_visits(self, caller: str, path: str, since: datetime) -> int:
        with self._session() as session:
            return session.execute(
                select(func.count(VisitRow.id))
                .where(VisitRow.ip_address == caller)
                .where(VisitRow.path == path)
                .where(VisitRow.created_at >= since)
            ).scalar_one() or 0

    def list_visits(
        self,
        since: datetime,
        limit: Optional[int] = None,
        with_coordinates: bool = False,
    ) -> List[Visit]:
        stmt = (
            select(VisitRow)
            .where(VisitRow.created_at >= since)
            .order_by(VisitRow.created_at.desc(), VisitRow.id.desc())
        )
        if with_coordinates:
            stmt = stmt.where(VisitRow.latitude.is_not(None)).where(VisitRow.longitude.is_not(None))
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session() as session:
            return [_visit_from_row(r) for r in session.execute(stmt).scalars().all()]

    # -- alerts -------------------------------------------------------------

    def append_alert(self, alert: SecurityAlert) -> None:
        with self._session() as session:
            row = SecurityAlertRow(
                alert_type=alert.alert_type,
                severity=alert.severity,
                ip_address=alert.ip_address,
                description=alert.description,
                metadata_json=_dumps(alert.metadata),
            )
            if alert.created_at is not None:
                row.created_at = alert.created_at
            session.add(row)

    def list_alerts(
        self,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        severity: Optional[str] = None,
        alert_type: Optional[str] = None,
    ) -> List[SecurityAlert]:
        stmt = select(SecurityAlertRow).order_by(
            SecurityAlertRow.created_at.desc(), SecurityAlertRow.id.desc()
        )
        if since is not None:
            stmt = stmt.where(SecurityAlertRow.created_at >= since)
        if severity:
            stmt = stmt.where(SecurityAlertRow.severity == severity)
        if alert_type:
            stmt = stmt.where(SecurityAlertRow.alert_type == alert_type)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session() as session:
            return [_alert_from_row(r) for r in session.execute(stmt).scalars().all()]
