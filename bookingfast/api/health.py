"""
bookingfast/api/health.py
Liveness and readiness probes.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from bookingfast.core.database import check_connection, get_engine, metadata


router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "unavailable", "missing_tables": []})

    present = set(inspect(get_engine()).get_table_names())
    missing = sorted(name for name in metadata.tables if name not in present)
    if missing:
        return JSONResponse(status_code=503, content={"status": "unavailable", "missing_tables": missing})
    return {"status": "ok"}
