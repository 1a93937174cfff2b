"""HTTP endpoints for metrics, health, readiness and liveness."""

from datetime import datetime, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from gas_relayer.obs.health import HealthStatus
from gas_relayer.obs.logger import log_event
from gas_relayer.obs.metrics import CONTENT_TYPE_LATEST, MetricsExportError
from gas_relayer.state import ApplicationState

router = APIRouter()


def get_app_state(request: Request) -> ApplicationState:
    return request.app.state.app_state


StateDep = Annotated[ApplicationState, Depends(get_app_state)]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/metrics")
async def metrics(state: StateDep, output_format: str = Query("text", alias="format")):
    if output_format == "json":
        return JSONResponse(state.metrics.snapshot())
    try:
        body = state.metrics.export()
    except MetricsExportError as e:
        log_event("metrics_export_failed", level="ERROR", error=str(e))
        return PlainTextResponse("Failed to export metrics", status_code=500)
    return Response(content=body, media_type=CONTENT_TYPE_LATEST)


@router.get("/health")
async def health(state: StateDep):
    system = await state.health.check()
    status_code = 503 if system.overall_status == HealthStatus.UNHEALTHY else 200
    return JSONResponse(system.to_dict(), status_code=status_code)


@router.get("/ready")
async def ready(state: StateDep):
    try:
        await state.db.ping()
    except Exception as e:
        log_event("readiness_check_failed", level="ERROR", error=str(e))
        return JSONResponse(
            {"status": "not_ready", "error": "Database connection failed", "timestamp": _now()},
            status_code=503,
        )
    return {"status": "ready", "timestamp": _now()}


@router.get("/alive")
async def alive():
    return {"status": "alive", "timestamp": _now()}


@router.get("/db-health")
async def db_health(state: StateDep):
    try:
        await state.db.ping()
    except Exception as e:
        log_event("db_health_failed", level="ERROR", error=str(e))
        return Response(status_code=500)
    return Response(status_code=200)
