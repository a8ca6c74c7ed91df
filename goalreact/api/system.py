"""System API: liveness, session diagnostics, scheduler status, manual start/stop."""

from fastapi import APIRouter, Depends

from goalreact.api.deps import get_runtime, require_admin
from goalreact.config import settings
from goalreact.engine.runtime import Runtime

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check(runtime: Runtime = Depends(get_runtime)):
    """Whether a session token is held, the last login error and the renewal schedule."""
    return {
        "ok": True,
        "service": "goalreact",
        "keepalive_interval_minutes": settings.keepalive_interval_minutes,
        **runtime.session.diagnostics(),
    }


@router.get("/scheduler")
def scheduler_status(runtime: Runtime = Depends(get_runtime)):
    return runtime.scheduler.status()


@router.post("/stop", dependencies=[Depends(require_admin)])
def stop_trading(runtime: Runtime = Depends(get_runtime)):
    runtime.scheduler.pause()
    return {"status": "paused"}


@router.post("/start", dependencies=[Depends(require_admin)])
def start_trading(runtime: Runtime = Depends(get_runtime)):
    runtime.scheduler.resume()
    return {"status": "running"}
