"""Admin endpoints for accounting staging and Xero sync."""

from __future__ import annotations

from dataclasses import asdict
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from clubledger_api.api.dependencies.security import require_admin_api_key
from clubledger_api.api.dependencies.services import (
    get_batch_observability,
    get_batch_processor,
    get_staging_manager,
    get_sync_service,
)
from clubledger_api.observability.batch import BatchObservabilityStore
from clubledger_api.schemas.staging import FreePurchaseEvent, RefundDetails, RefundStagingRequest, StagingPaymentData
from clubledger_api.services.accounting.staging import RefundStagingError, XeroStagingManager
from clubledger_api.services.accounting.sync import XeroSyncService
from clubledger_api.services.batch.processor import BatchProcessor


router = APIRouter(
    prefix="/accounting",
    tags=["Accounting"],
    dependencies=[Depends(require_admin_api_key)],
)


class StagingResponse(BaseModel):
    staged: bool = Field(..., description="Whether every required staging row was written")


class ResetResponse(BaseModel):
    invoices: int
    payments: int


class RefundStagingResponse(BaseModel):
    staged: bool
    credit_note_id: UUID | None = None


@router.get("/xero/status", summary="Staged record counts and sync worker state")
async def xero_sync_status(
    request: Request,
    service: XeroSyncService = Depends(get_sync_service),
) -> dict[str, object]:
    worker = getattr(request.app.state, "xero_sync_worker", None)
    return {
        "records": await service.get_status(),
        "worker": worker.status() if worker is not None else None,
    }


@router.post("/xero/sync", summary="Run one Xero sync sweep now")
async def trigger_xero_sync(request: Request) -> dict[str, object]:
    worker = getattr(request.app.state, "xero_sync_worker", None)
    if worker is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Xero sync worker unavailable")
    summary = await worker.run_once(triggered_by="api")
    return summary.as_dict()


@router.post("/xero/retry-failed", response_model=ResetResponse, summary="Requeue failed Xero records")
async def retry_failed_records(service: XeroSyncService = Depends(get_sync_service)) -> ResetResponse:
    reset = await service.reset_failed_records()
    return ResetResponse(**reset)


@router.post("/staging/purchase", response_model=StagingResponse, summary="Stage a completed purchase")
async def stage_purchase(
    data: StagingPaymentData,
    is_free: bool = False,
    manager: XeroStagingManager = Depends(get_staging_manager),
) -> StagingResponse:
    return StagingResponse(staged=await manager.create_immediate_staging(data, is_free=is_free))


@router.post("/staging/free-purchase", response_model=StagingResponse, summary="Stage a free membership or registration")
async def stage_free_purchase(
    event: FreePurchaseEvent,
    manager: XeroStagingManager = Depends(get_staging_manager),
) -> StagingResponse:
    return StagingResponse(staged=await manager.create_free_purchase_staging(event))


@router.post(
    "/staging/payments/{payment_id}/confirm",
    response_model=StagingResponse,
    summary="Confirm a paid purchase has staged records",
)
async def confirm_paid_purchase(
    payment_id: str,
    manager: XeroStagingManager = Depends(get_staging_manager),
) -> StagingResponse:
    return StagingResponse(staged=await manager.create_paid_purchase_staging(payment_id))


@router.post("/staging/refunds", response_model=RefundStagingResponse, summary="Stage a refund as a credit note")
async def stage_refund(
    refund: RefundStagingRequest,
    manager: XeroStagingManager = Depends(get_staging_manager),
) -> RefundStagingResponse:
    credit_note_id = await manager.create_refund_staging(refund)
    return RefundStagingResponse(staged=credit_note_id is not None, credit_note_id=credit_note_id)


@router.post("/staging/refunds/preview", summary="Credit note lines a refund would stage")
async def preview_refund(
    details: RefundDetails,
    manager: XeroStagingManager = Depends(get_staging_manager),
) -> dict[str, object]:
    try:
        preview = await manager.preview_refund_staging(details)
    except RefundStagingError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return {
        "line_items": [asdict(line) for line in preview.line_items],
        "total_amount": preview.total_amount,
    }


@router.get("/batch/metrics", summary="Batch executor metrics snapshot")
async def batch_metrics(
    store: BatchObservabilityStore = Depends(get_batch_observability),
    processor: BatchProcessor = Depends(get_batch_processor),
) -> dict[str, object]:
    return {"processor": processor.get_status(), "runs": store.snapshot().as_dict()}
