"""
middleware.py — Starlette adapter for the security engine
=========================================================
Runs ``SecurityEngine.evaluate`` before the route handler and schedules
``SecurityEngine.record`` as a background task once the response has been
sent. Engine calls touch the store, so they run in the threadpool.
"""
from __future__ import annotations

import ipaddress
import logging
import time
from typing import Iterable, Optional, Tuple, Union

from fastapi import Request, Response
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

from .engine import RATE_LIMITED, RequestInfo, SecurityEngine, Verdict

logger = logging.getLogger("threatguard.middleware")

STATIC_SUFFIXES = (
    ".js", ".css", ".map", ".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico",
    ".webp", ".woff", ".woff2", ".ttf",
)
EXEMPT_PREFIXES = (
    "/security", "/admin", "/health", "/healthz",
    "/static", "/_next", "/docs", "/redoc", "/openapi.json",
)
_BODY_METHODS = ("POST", "PUT", "PATCH")

ProxyNetworks = Optional[Tuple[Union[ipaddress.IPv4Network, ipaddress.IPv6Network], ...]]


def proxy_networks(entries: Iterable[str]) -> ProxyNetworks:
    """Parse ``trusted_proxies``. ``None`` means every peer is trusted."""
    entries = list(entries)
    if "*" in entries:
        return None
    return tuple(ipaddress.ip_network(e, strict=False) for e in entries)


def _peer_is_trusted(peer: str, networks: ProxyNetworks) -> bool:
    if networks is None:
        return True
    try:
        addr = ipaddress.ip_address(peer)
    except ValueError:
        return False
    return any(addr in net for net in networks)


def client_ip(request: Request, trusted: ProxyNetworks = None) -> str:
    """Caller address: first X-Forwarded-For hop, X-Real-IP, CF-Connecting-IP, then the peer.

    Forwarding headers are only honoured when the peer is a trusted proxy.
    """
    peer = request.client.host if request.client else "unknown"
    if not _peer_is_trusted(peer, trusted):
        return peer

    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value and value.strip():
            return value.strip()
    return peer


class SecurityMiddleware(BaseHTTPMiddleware):

    def __init__(
        self,
        app: ASGIApp,
        engine: SecurityEngine,
        exempt_prefixes: Iterable[str] = EXEMPT_PREFIXES,
        max_body_bytes: Optional[int] = None,
    ) -> None:
        super().__init__(app)
        self.engine = engine
        self.exempt_prefixes: Tuple[str, ...] = tuple(exempt_prefixes)
        self.trusted_proxies = proxy_networks(engine.settings.trusted_proxies)
        self.max_body_bytes = (
            max_body_bytes if max_body_bytes is not None else engine.settings.max_body_bytes
        )

    def is_exempt(self, path: str) -> bool:
        if path.lower().endswith(STATIC_SUFFIXES):
            return True
        return any(path == p or path.startswith(p + "/") for p in self.exempt_prefixes)

    async def _read_body(self, request: Request) -> Optional[bytes]:
        if request.method not in _BODY_METHODS:
            return None
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_body_bytes:
            logger.debug("Skipping body inspection for %s: %s bytes", request.url.path, declared)
            return None
        body = await request.body()
        return body[: self.max_body_bytes] or None

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if self.is_exempt(request.url.path):
            return await call_next(request)

        path = request.url.path
        if request.url.query:
            path = f"{path}?{request.url.query}"
        info = RequestInfo(
            caller=client_ip(request, self.trusted_proxies),
            path=path,
            method=request.method,
            client_id=request.headers.get("user-agent"),
            body=await self._read_body(request),
        )

        started = time.perf_counter()
        verdict: Verdict = await run_in_threadpool(self.engine.evaluate, info)
        for warning in verdict.warnings:
            logger.warning("Degraded security check for %s: %s", info.caller, warning)

        if not verdict.allowed:
            response = self._denied(verdict)
        else:
            response = await call_next(request)
            if verdict.rate_limit is not None and not verdict.rate_limit.degraded:
                response.headers["X-RateLimit-Limit"] = str(verdict.rate_limit.limit)
                response.headers["X-RateLimit-Remaining"] = str(verdict.rate_limit.remaining)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        response.background = BackgroundTask(
            self.engine.record, info, verdict, response.status_code, elapsed_ms
        )
        return response

    @staticmethod
    def _denied(verdict: Verdict) -> Response:
        if verdict.reason == RATE_LIMITED:
            retry_after = str(verdict.retry_after or 0)
            return JSONResponse(
                status_code=429,
                content={
                    "error": "Too Many Requests",
                    "message": verdict.message,
                    "retry_after": verdict.retry_after,
                },
                headers={
                    "Retry-After": retry_after,
                    "X-RateLimit-Limit": str(verdict.rate_limit.limit if verdict.rate_limit else 0),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": retry_after,
                },
            )
        if verdict.status_code == 503:
            return JSONResponse(
                status_code=503,
                content={"error": "Service Unavailable", "message": verdict.message},
            )
        return JSONResponse(
            status_code=403,
            content={"error": "Access Denied", "message": verdict.message},
            headers={"X-Security-Block": "true"},
        )
