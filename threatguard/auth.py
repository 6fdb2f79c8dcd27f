from __future__ import annotations

import secrets

from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from .engine import SecurityEngine

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_engine(request: Request) -> SecurityEngine:
    return request.app.state.security_engine


def require_admin(request: Request, api_key: str | None = Security(api_key_header)) -> str:
    """Admin routes accept a single shared key from THREATGUARD_ADMIN_API_KEY."""
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No credentials provided.",
            headers={"WWW-Authenticate": "APIKey"},
        )
    expected = get_engine(request).settings.admin_api_key
    if not secrets.compare_digest(api_key, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key.")
    return "admin"
