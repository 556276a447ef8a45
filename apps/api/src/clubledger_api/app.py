from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from clubledger_api.core.settings import settings
from clubledger_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.batch import BatchObservabilityStore
from .services.accounting.sync import XeroSyncService
from .services.accounting.xero_client import XeroAccountingClient
from .services.batch.processor import BatchProcessor
from .services.payments.stripe_fees import StripeFeeResolver
from .workers import XeroSyncWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


def build_sync_service_factory(
    client: XeroAccountingClient,
    processor: BatchProcessor,
    fee_resolver: StripeFeeResolver | None,
):
    def factory(session: AsyncSession) -> XeroSyncService:
        return XeroSyncService(
            session,
            client,
            processor,
            tenant_id=settings.xero_tenant_id,
            fee_resolver=fee_resolver,
            batch_size=settings.xero_sync_batch_size,
            concurrency=settings.xero_sync_concurrency,
            delay_between_batches_ms=settings.xero_sync_delay_between_batches_ms,
            stuck_after_seconds=settings.xero_sync_stuck_after_seconds,
        )

    return factory


@asynccontextmanager
async def lifespan(app: FastAPI):
    observability = BatchObservabilityStore()
    processor = BatchProcessor(
        rate_limit_delay_ms=settings.batch_rate_limit_delay_ms,
        rate_limit_max_delay_ms=settings.batch_rate_limit_max_delay_ms,
        observability=observability,
    )
    xero_client = XeroAccountingClient.from_settings(settings)
    sync_service_factory = build_sync_service_factory(
        xero_client,
        processor,
        StripeFeeResolver.from_settings(settings),
    )
    sync_worker = XeroSyncWorker(
        session_factory=_session_factory,
        sync_service_factory=sync_service_factory,
        interval_seconds=settings.xero_sync_interval_seconds,
        trigger_label=settings.xero_sync_trigger_label,
    )

    app.state.batch_observability = observability
    app.state.batch_processor = processor
    app.state.sync_service_factory = sync_service_factory
    app.state.xero_sync_worker = sync_worker

    sync_enabled = settings.xero_sync_worker_enabled
    if sync_enabled:
        sync_worker.start()
        logger.info(
            "Xero sync worker enabled",
            interval_seconds=sync_worker.interval_seconds,
            tenant_configured=bool(settings.xero_tenant_id),
        )
    else:
        logger.info(
            "Xero sync worker disabled",
            reason="xero_sync_worker_enabled is false",
        )

    try:
        yield
    finally:
        if sync_enabled and sync_worker.is_running:
            await sync_worker.stop()
        await xero_client.aclose()


def create_app() -> FastAPI:
    """Application factory for the clubledger accounting service."""
    configure_logging(
        service_name="clubledger-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Clubledger API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
