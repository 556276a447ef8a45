"""Worker wiring for scheduled Xero sync sweeps."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from clubledger_api.core.settings import settings
from clubledger_api.services.accounting.sync import SyncSummary, XeroSyncService

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]
SyncServiceFactory = Callable[[AsyncSession], XeroSyncService]


class XeroSyncWorker:
    """Periodically pushes staged accounting records to Xero."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        sync_service_factory: SyncServiceFactory,
        interval_seconds: int | None = None,
        trigger_label: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._sync_service_factory = sync_service_factory
        self.interval_seconds = interval_seconds or settings.xero_sync_interval_seconds
        self._trigger_label = trigger_label or settings.xero_sync_trigger_label
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self.is_running: bool = False
        self.last_run_at: datetime | None = None
        self.last_summary: SyncSummary | None = None
        self.last_error: str | None = None

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info("Xero sync worker started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Xero sync worker stopped")

    async def run_once(self, *, triggered_by: str | None = None) -> SyncSummary:
        """Run a single sweep. Overlapping triggers wait for the sweep in flight."""

        trigger = triggered_by or self._trigger_label
        async with self._lock:
            session = await self._ensure_session()
            async with session as managed_session:
                try:
                    service = self._sync_service_factory(managed_session)
                    summary = await service.sync_all_pending()
                except Exception as exc:
                    self.last_error = str(exc)
                    self.last_run_at = datetime.now(timezone.utc)
                    logger.exception("Xero sync sweep failed", trigger=trigger, error=str(exc))
                    raise

            self.last_run_at = datetime.now(timezone.utc)
            self.last_summary = summary
            self.last_error = None
            logger.info("Xero sync sweep completed", trigger=trigger, **summary.as_dict())
            return summary

    def status(self) -> Dict[str, object]:
        return {
            "is_running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_summary": self.last_summary.as_dict() if self.last_summary else None,
            "last_error": self.last_error,
        }

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - logged and retried next interval
                logger.exception("Xero sync iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session


__all__ = ["XeroSyncWorker"]
