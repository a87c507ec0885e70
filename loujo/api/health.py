"""Liveness, readiness and Prometheus metrics."""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from loujo.core.metrics import METRICS


logger = logging.getLogger("loujo")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz(request: Request):
    """Readiness check: DB connectivity."""
    if not request.app.state.database.check_connection():
        logger.error("[readyz] database unreachable")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
    return {"status": "ok"}


@router.get("/metrics", response_class=PlainTextResponse)
def metrics():
    return PlainTextResponse(METRICS.export_prometheus(), media_type="text/plain; version=0.0.4")
