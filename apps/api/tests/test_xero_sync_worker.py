import asyncio

import pytest

from clubledger_api.services.accounting.staging import XeroStagingManager
from clubledger_api.services.accounting.sync import XeroSyncService
from clubledger_api.services.batch.processor import BatchProcessor
from clubledger_api.workers.xero_sync import XeroSyncWorker


def _worker(session_factory, client, sleep, *, tenant_id="tenant-1", interval_seconds=3600) -> XeroSyncWorker:
    processor = BatchProcessor(sleep=sleep)

    def service_factory(session):
        return XeroSyncService(session, client, processor, tenant_id=tenant_id)

    return XeroSyncWorker(
        session_factory,
        sync_service_factory=service_factory,
        interval_seconds=interval_seconds,
        trigger_label="unit-default",
    )


@pytest.mark.asyncio
async def test_worker_run_once_syncs_and_records_status(
    session_factory, fake_xero_client, recording_sleep, member_seeder
):
    await member_seeder("u1")
    async with session_factory() as session:
        staged = await XeroStagingManager(session).create_immediate_staging(
            {
                "payment_id": "pay_w1",
                "user_id": "u1",
                "total_amount": 3000,
                "final_amount": 3000,
                "payment_items": [{"item_type": "registration", "item_amount": 3000}],
            }
        )
        assert staged is True

    worker = _worker(session_factory, fake_xero_client, recording_sleep)
    summary = await worker.run_once(triggered_by="unit-test")

    assert summary.invoices_synced == 1
    assert summary.payments_synced == 1
    status = worker.status()
    assert status["is_running"] is False
    assert status["last_summary"]["invoices_synced"] == 1
    assert status["last_run_at"] is not None
    assert status["last_error"] is None


@pytest.mark.asyncio
async def test_worker_records_failed_sweeps(session_factory, fake_xero_client, recording_sleep):
    def broken_factory(session):
        raise RuntimeError("xero credentials expired")

    worker = XeroSyncWorker(session_factory, sync_service_factory=broken_factory, interval_seconds=60)

    with pytest.raises(RuntimeError):
        await worker.run_once()

    assert worker.status()["last_error"] == "xero credentials expired"


@pytest.mark.asyncio
async def test_worker_start_and_stop(session_factory, fake_xero_client, recording_sleep):
    worker = _worker(session_factory, fake_xero_client, recording_sleep, tenant_id=None)

    worker.start()
    assert worker.is_running is True
    for _ in range(50):
        if worker.last_run_at is not None:
            break
        await asyncio.sleep(0.01)
    await worker.stop()

    assert worker.is_running is False
    assert worker.last_summary is not None
    assert worker.last_summary.skipped_reason == "tenant_not_configured"
