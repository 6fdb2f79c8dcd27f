from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ..auth import get_engine, require_admin
from ..detection import RuleError
from ..engine import SecurityEngine
from ..schemas import EngineStatus

router = APIRouter(prefix="/admin", tags=["admin"])


def _status(engine: SecurityEngine) -> EngineStatus:
    rules = engine.rules
    quotas = {"default": rules.default_quota, **rules.quotas}
    return EngineStatus(
        fail_mode=engine.settings.fail_mode,
        brute_force_enabled=engine.settings.brute_force_enabled,
        rules_source=rules.source,
        signature_count=len(rules.signatures),
        endpoint_quotas={
            name: {"requests": q.requests, "window_seconds": q.window_seconds}
            for name, q in quotas.items()
        },
    )


@router.get("/status", response_model=EngineStatus)
def get_status(
    engine: SecurityEngine = Depends(get_engine),
    _admin: str = Depends(require_admin),
) -> EngineStatus:
    """Return the engine's fail mode and the rule tables currently in force."""
    return _status(engine)


@router.post("/rules/reload", response_model=EngineStatus)
def reload_rules(
    engine: SecurityEngine = Depends(get_engine),
    _admin: str = Depends(require_admin),
) -> EngineStatus:
    """Re-read the configured rule file. A malformed file leaves the old rules in place."""
    try:
        engine.reload_rules()
    except RuleError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return _status(engine)
