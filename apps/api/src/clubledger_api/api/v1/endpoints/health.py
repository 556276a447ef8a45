from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clubledger_api.core.settings import settings
from clubledger_api.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")
    last_error: str | None = Field(default=None, description="Most recent error message")
    last_success_at: str | None = Field(default=None, description="ISO timestamp of most recent success")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        components["database"] = ComponentStatus(status="ready")
    except SQLAlchemyError as exc:
        components["database"] = ComponentStatus(status="error", detail="Database unreachable", last_error=str(exc))
        status = "error"

    worker = getattr(request.app.state, "xero_sync_worker", None)
    if settings.xero_sync_worker_enabled and worker is not None:
        running = bool(getattr(worker, "is_running", False))
        worker_status: Literal["ready", "starting", "disabled", "error"] = "ready" if running else "starting"
        detail = None if running else "Xero sync worker not running"
        last_run_at = getattr(worker, "last_run_at", None)
        last_error = getattr(worker, "last_error", None)
        if last_error:
            worker_status = "error"
            detail = "Last Xero sync sweep failed"
            status = "degraded" if status != "error" else status
        elif not running:
            status = "degraded" if status != "error" else status
        components["xero_sync"] = ComponentStatus(
            status=worker_status,
            detail=detail,
            last_error=last_error,
            last_success_at=last_run_at.isoformat() if last_run_at and not last_error else None,
        )
    else:
        components["xero_sync"] = ComponentStatus(
            status="disabled",
            detail="Xero sync worker disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)
