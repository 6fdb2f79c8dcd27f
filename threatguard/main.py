from __future__ import annotations

import logging
import sys
from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pythonjsonlogger import jsonlogger
from sqlalchemy.engine import Engine

from . import __version__
from . import models as _models  # noqa: F401  registers tables
from .api import routes_admin, routes_security
from .clock import utcnow
from .config import Settings, settings
from .database import Base, engine as db_engine
from .detection import load_rules
from .engine import SecurityEngine
from .geo import GeoResolver
from .middleware import SecurityMiddleware
from .store import SecurityStore, SqlStore, StoreError

# ---------------------------------------------------------------------------
# Structured logging
# ---------------------------------------------------------------------------

def _configure_logging() -> None:
    """Configure structured JSON logging when log_format=json (default)."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format == "json":
        handler.setFormatter(jsonlogger.JsonFormatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        ))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.addHandler(handler)


_configure_logging()


def init_database(bind: Engine = db_engine) -> None:
    """Create any missing tables and indexes on ``bind``."""
    Base.metadata.create_all(bind=bind)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    store: Optional[SecurityStore] = None,
    config: Optional[Settings] = None,
    clock: Callable[[], datetime] = utcnow,
    geo: Optional[GeoResolver] = None,
) -> FastAPI:
    """Build the service. Without a store, tables are created on the configured database."""
    config = config or settings
    if store is None:
        init_database()
        store = SqlStore()

    security_engine = SecurityEngine(
        load_rules(config.rules_path or None),
        store,
        settings=config,
        clock=clock,
        geo=geo,
    )

    app = FastAPI(
        title="ThreatGuard",
        version=__version__,
        description=(
            "Request threat detection, per-endpoint rate limiting and caller "
            "blocking, with security telemetry for dashboards."
        ),
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.security_engine = security_engine

    @app.exception_handler(StoreError)
    async def _store_unavailable(request: Request, exc: StoreError) -> JSONResponse:
        logging.getLogger("threatguard.api").warning(
            "Store error on %s %s: %s", request.method, request.url.path, exc
        )
        return JSONResponse(status_code=503, content={"detail": "Security store unavailable."})

    app.add_middleware(SecurityMiddleware, engine=security_engine)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allow_cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(routes_security.router)
    app.include_router(routes_admin.router)

    @app.get("/", tags=["meta"])
    def root() -> dict:
        return {"status": "ok", "service": "threatguard", "version": __version__}

    @app.get("/health", tags=["meta"])
    def health() -> dict:
        return {"status": "healthy"}

    @app.get("/healthz", tags=["meta"])
    def healthz() -> dict:
        """Lightweight health check for load balancer probes."""
        return {"status": "ok"}

    return app


app = create_app()
