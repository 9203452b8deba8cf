"""
Health and diagnostics API.

Lightweight endpoints for operational monitoring without exposing secrets.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import inspect

from paygate.api.deps import get_engine
from paygate.core.database import check_connection, get_engine as get_db_engine
from paygate.core.logging import latency_bucket_ms, get_request_id
from paygate.features.engine import Engine
from paygate.models.access import GateHealthReport

logger = logging.getLogger("paygate")

router = APIRouter(prefix="/api/health", tags=["health"])
root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "resources",
    "deployed_contracts",
    "entitlements",
    "payments",
    "pending_access_requests",
    "reconciler_runs",
]


class DBHealth(BaseModel):
    connected: bool
    latency_ms: Optional[float] = None
    tables_present: List[str] = []


class HealthResponse(BaseModel):
    ok: bool
    db: DBHealth
    computed_at: str  # UTC ISO format


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    try:
        engine = get_db_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})


@router.get("/db", response_model=HealthResponse)
def health_db(now: Optional[str] = Query(None)):
    """Database connectivity. `now` pins the timestamp and drops latency for deterministic tests."""
    start = time.perf_counter()
    is_connected = check_connection()
    latency_ms = (time.perf_counter() - start) * 1000

    tables: List[str] = []
    if is_connected:
        try:
            inspector = inspect(get_db_engine())
            tables = [t for t in REQUIRED_TABLES if inspector.has_table(t)]
        except Exception as e:
            logger.warning(f"[health] Failed to list tables: {e}")

    logger.info(
        "health.db",
        extra={
            "request_id": get_request_id(),
            "status": "ok" if is_connected else "error",
            "latency_bucket": latency_bucket_ms(latency_ms if now is None else None),
        },
    )
    return HealthResponse(
        ok=is_connected,
        db=DBHealth(connected=is_connected, latency_ms=None if now else latency_ms, tables_present=tables),
        computed_at=now or datetime.now(timezone.utc).isoformat(),
    )


@router.get("/reconciler")
def health_reconciler(engine: Engine = Depends(get_engine)):
    """Reconciler liveness: 503 while the stall alert is raised."""
    status = engine.reconciler.status()
    if status["stalled"]:
        return JSONResponse(status_code=503, content={"ok": False, **status})
    return {"ok": True, **status}


@router.get("/gate", response_model=List[GateHealthReport])
def health_gate(refresh: bool = Query(False), engine: Engine = Depends(get_engine)):
    """Last gate privilege reports; `refresh=true` runs the check now."""
    if refresh or not engine.health.last_reports:
        return engine.health.check_all()
    return engine.health.last_reports
