"""
store/base.py — Narrow interface over the durable security store
================================================================
The engine keeps no cross-request state of its own. Rate-limit windows and
blocked callers are the only shared mutable collections, and both are
written through single atomic operations here:

  increment_window  conditional upsert that admits and bumps the counter
                    only while it is below the limit
  upsert_block      insert-or-replace keyed by caller

Implementations must raise ``StoreError`` (and nothing else) on failure,
including call timeouts.

Stale rate-limit windows and old visits are never deleted by the engine;
pruning them is left to the store's retention policy.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from ..records import BlockedCaller, SecurityAlert, Visit


class StoreError(Exception):
    """The security store could not complete a read or write."""


class SecurityStore(ABC):

    # -- rate-limit windows -------------------------------------------------

    @abstractmethod
    def increment_window(
        self, caller: str, endpoint: str, window_start: datetime, limit: int
    ) -> Optional[int]:
        """Atomically count one request if the window is below ``limit``.

        Returns the new count, or None when the window is already full
        (in which case nothing is written).
        """

    # -- blocked callers ----------------------------------------------------

    @abstractmethod
    def find_active_block(self, caller: str, now: datetime) -> Optional[BlockedCaller]:
        ...

    @abstractmethod
    def list_active_blocks(self, now: datetime) -> List[BlockedCaller]:
        """Active blocks, newest first."""

    @abstractmethod
    def upsert_block(self, block: BlockedCaller) -> None:
        ...

    @abstractmethod
    def delete_block(self, caller: str) -> bool:
        """Remove the caller's row. Returns False if there was none."""

    # -- visits -------------------------------------------------------------

    @abstractmethod
    def append_visit(self, visit: Visit) -> None:
        ...

    @abstractmethod
    def count_visits(self, caller: str, path: str, since: datetime) -> int:
        ...

    @abstractmethod
    def list_visits(
        self,
        since: datetime,
        limit: Optional[int] = None,
        with_coordinates: bool = False,
    ) -> List[Visit]:
        """Visits created at or after ``since``, newest first."""

    # -- alerts -------------------------------------------------------------

    @abstractmethod
    def append_alert(self, alert: SecurityAlert) -> None:
        ...

    @abstractmethod
    def list_alerts(
        self,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        severity: Optional[str] = None,
        alert_type: Optional[str] = None,
    ) -> List[SecurityAlert]:
        """Alerts newest first, optionally filtered."""
