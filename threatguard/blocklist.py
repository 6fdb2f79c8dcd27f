"""
blocklist.py — Time-bounded registry of blocked callers
=======================================================
Rows are keyed by caller and replaced on repeated blocks. A block is
active while it is permanent or its expiry lies in the future; expired
rows are filtered at read time and never swept.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .clock import utcnow
from .records import IP_BLOCKED, IP_UNBLOCKED, AlertSeverity, BlockedCaller
from .store import SecurityStore, StoreError
from .telemetry import AlertEmitter

logger = logging.getLogger("threatguard.blocklist")


@dataclass(frozen=True)
class BlockCheck:
    blocked: bool
    block: Optional[BlockedCaller] = None
    degraded: bool = False
    warning: Optional[str] = None


class BlockRegistry:

    def __init__(
        self,
        store: SecurityStore,
        alerts: AlertEmitter,
        clock: Callable[[], datetime] = utcnow,
        fail_open: bool = True,
    ) -> None:
        self._store = store
        self._alerts = alerts
        self._clock = clock
        self._fail_open = fail_open

    def check(self, caller: str) -> BlockCheck:
        """Request-path lookup. Store failures yield a degraded result instead of raising."""
        try:
            block = self._store.find_active_block(caller, self._clock())
        except StoreError as exc:
            logger.warning("Block check failed for %s: %s", caller, exc)
            return BlockCheck(
                blocked=not self._fail_open,
                degraded=True,
                warning=f"block store unavailable: {exc}",
            )
        return BlockCheck(blocked=block is not None, block=block)

    def is_blocked(self, caller: str) -> bool:
        return self.check(caller).blocked

    def block(
        self,
        caller: str,
        reason: str,
        ttl_hours: Optional[float] = None,
        actor: str = "system",
    ) -> BlockedCaller:
        """Insert or replace the caller's block. No TTL means permanent.

        Raises StoreError if the row cannot be written; the ``ip_blocked``
        alert is emitted once the row is in place.
        """
        if ttl_hours is not None and ttl_hours < 0:
            raise ValueError("ttl_hours must not be negative.")

        now = self._clock()
        expires_at = now + timedelta(hours=ttl_hours) if ttl_hours else None
        record = BlockedCaller(
            ip_address=caller,
            reason=reason,
            blocked_at=now,
            expires_at=expires_at,
            is_permanent=expires_at is None,
            blocked_by=actor,
        )
        self._store.upsert_block(record)
        logger.warning(
            "IP %s blocked (%s) by %s: %s",
            caller,
            f"until {expires_at.isoformat()}" if expires_at else "permanent",
            actor,
            reason,
        )
        self._alerts.emit(
            IP_BLOCKED,
            AlertSeverity.WARNING,
            f"IP blocked: {reason}",
            ip_address=caller,
            metadata={
                "expires_at": expires_at.isoformat() if expires_at else None,
                "blocked_by": actor,
            },
        )
        return record

    def unblock(self, caller: str, actor: str = "admin") -> bool:
        """Delete the caller's block. Returns False (and alerts nothing) if none existed."""
        if not self._store.delete_block(caller):
            return False
        logger.info("IP %s unblocked by %s", caller, actor)
        self._alerts.emit(
            IP_UNBLOCKED,
            AlertSeverity.INFO,
            f"IP unblocked by {actor}",
            ip_address=caller,
        )
        return True

    def list_active(self) -> List[BlockedCaller]:
        """Raises StoreError."""
        return self._store.list_active_blocks(self._clock())
