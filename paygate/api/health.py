"""
Health, readiness and metrics endpoints.

Lightweight operational checks that never expose secrets.
"""

import logging

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from paygate.core.database import check_connection, get_engine
from paygate.core.metrics import METRICS

logger = logging.getLogger("paygate")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = ["entitlements", "payment_events"]


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    try:
        inspector = inspect(get_engine())
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning("readyz.missing_tables", extra={"detail": detail})
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except Exception as e:
        logger.error("readyz.failed", extra={"error": str(e)})
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})


@router.get("/metrics")
def metrics_endpoint():
    payload = METRICS.export_prometheus()
    return Response(content=payload, media_type="text/plain")
