"""Request-scoped wiring for services built during application startup."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from clubledger_api.core.settings import settings
from clubledger_api.db.session import get_session
from clubledger_api.observability.batch import BatchObservabilityStore
from clubledger_api.services.accounting.staging import XeroStagingManager
from clubledger_api.services.accounting.sync import XeroSyncService
from clubledger_api.services.batch.processor import BatchProcessor


def _require_state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} is not initialised",
        )
    return value


def get_batch_processor(request: Request) -> BatchProcessor:
    return _require_state(request, "batch_processor")


def get_batch_observability(request: Request) -> BatchObservabilityStore:
    return _require_state(request, "batch_observability")


async def get_staging_manager(session: AsyncSession = Depends(get_session)) -> XeroStagingManager:
    return XeroStagingManager(session, default_bank_account_code=settings.xero_default_bank_account_code)


async def get_sync_service(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> XeroSyncService:
    factory = _require_state(request, "sync_service_factory")
    return factory(session)


__all__ = [
    "get_batch_observability",
    "get_batch_processor",
    "get_staging_manager",
    "get_sync_service",
]
