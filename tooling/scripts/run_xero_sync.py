"""Push staged accounting records to Xero once.

Intended usage: schedule via cron or run by hand after an outage, or run
with ``--reset-failed`` to requeue failed records before the sweep.

Example:
    python tooling/scripts/run_xero_sync.py --trigger cron
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Execute one Xero sync sweep")
    parser.add_argument(
        "--trigger",
        default="manual",
        help="Label logged with the sweep to describe the invocation source.",
    )
    parser.add_argument(
        "--reset-failed",
        action="store_true",
        help="Move failed invoices and payments back to staged before syncing.",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Override the requested batch size for this sweep.",
    )
    return parser.parse_args()


async def _run(trigger: str, reset_failed: bool, batch_size: int | None) -> dict[str, object]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from clubledger_api.core.settings import settings  # type: ignore import-position
    from clubledger_api.db.session import async_session  # type: ignore import-position
    from clubledger_api.services.accounting.sync import XeroSyncService  # type: ignore import-position
    from clubledger_api.services.accounting.xero_client import XeroAccountingClient  # type: ignore import-position
    from clubledger_api.services.batch.processor import BatchProcessor  # type: ignore import-position
    from clubledger_api.services.payments.stripe_fees import StripeFeeResolver  # type: ignore import-position
    from clubledger_api.workers import XeroSyncWorker  # type: ignore import-position

    processor = BatchProcessor(
        rate_limit_delay_ms=settings.batch_rate_limit_delay_ms,
        rate_limit_max_delay_ms=settings.batch_rate_limit_max_delay_ms,
    )
    fee_resolver = StripeFeeResolver.from_settings(settings)

    async with XeroAccountingClient.from_settings(settings) as client:

        def service_factory(session):
            return XeroSyncService(
                session,
                client,
                processor,
                tenant_id=settings.xero_tenant_id,
                fee_resolver=fee_resolver,
                batch_size=batch_size or settings.xero_sync_batch_size,
                concurrency=settings.xero_sync_concurrency,
                delay_between_batches_ms=settings.xero_sync_delay_between_batches_ms,
                stuck_after_seconds=settings.xero_sync_stuck_after_seconds,
            )

        if reset_failed:
            async with async_session() as session:
                reset = await service_factory(session).reset_failed_records()
            logger.info("Requeued failed Xero records", **reset)

        worker = XeroSyncWorker(
            async_session,  # type: ignore[arg-type]
            sync_service_factory=service_factory,
            trigger_label=settings.xero_sync_trigger_label,
        )
        summary = await worker.run_once(triggered_by=trigger)
    return summary.as_dict()


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.trigger, args.reset_failed, args.batch_size))
    logger.success("Xero sync run completed", trigger=args.trigger, **summary)
    failed = int(summary.get("invoices_failed", 0)) + int(summary.get("payments_failed", 0))
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
