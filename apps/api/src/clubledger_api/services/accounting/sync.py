"""Push staged accounting records to Xero through the batch executor."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Dict, Iterable, Sequence

from loguru import logger
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clubledger_api.core.logging import sync_logger
from clubledger_api.models import (
    InvoiceStatusEnum,
    StagingInvoice,
    StagingPayment,
    SyncStatusEnum,
    User,
    XeroContact,
)
from clubledger_api.schemas.staging import (
    StagingCreditNoteMetadataV1,
    StagingInvoiceMetadataV1,
    StagingPaymentMetadataV1,
    UnsupportedStagingMetadataError,
    parse_staging_metadata,
)
from clubledger_api.services.accounting.errors import AccountingApiError, AccountingErrorKind
from clubledger_api.services.accounting.staging import CREDIT_NOTE_TYPE, XeroStagingManager
from clubledger_api.services.accounting.xero_client import (
    XeroAccountingClient,
    XeroContactData,
    XeroInvoiceRef,
    XeroPaymentRef,
)
from clubledger_api.services.batch.processor import BatchFailure, BatchProcessor

if TYPE_CHECKING:
    from clubledger_api.services.payments.stripe_fees import StripeFeeResolver


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class SyncSummary:
    """Counts from one sync sweep.

    ``deferred`` rows were rate limited and stay staged; ``recovered`` rows were
    stuck in ``syncing`` from an interrupted sweep and were requeued.
    """

    invoices_synced: int = 0
    invoices_failed: int = 0
    invoices_deferred: int = 0
    payments_synced: int = 0
    payments_failed: int = 0
    payments_deferred: int = 0
    payments_waiting: int = 0
    invoices_recovered: int = 0
    payments_recovered: int = 0
    skipped_reason: str | None = None

    def as_dict(self) -> Dict[str, object]:
        return asdict(self)


class XeroSyncService:
    """Moves staged invoices, then staged payments, into Xero."""

    def __init__(
        self,
        session: AsyncSession,
        client: XeroAccountingClient,
        processor: BatchProcessor,
        *,
        tenant_id: str | None,
        fee_resolver: "StripeFeeResolver | None" = None,
        batch_size: int = 10,
        concurrency: int = 3,
        delay_between_batches_ms: float = 100,
        stuck_after_seconds: float = 30 * 60,
    ) -> None:
        self._session = session
        self._client = client
        self._processor = processor
        self._tenant_id = tenant_id
        self._fee_resolver = fee_resolver
        self._batch_size = batch_size
        self._concurrency = concurrency
        self._delay_between_batches_ms = delay_between_batches_ms
        self._stuck_after = timedelta(seconds=stuck_after_seconds)
        self._staging = XeroStagingManager(session)
        self._members: dict[str, User] = {}
        self._contacts: dict[str, str] = {}
        self._contact_locks: dict[str, asyncio.Lock] = {}

    async def get_pending_records(self):
        return await self._staging.get_pending_staging_records()

    async def sync_all_pending(self) -> SyncSummary:
        summary = SyncSummary()
        log = sync_logger("batch-sync")
        if not self._tenant_id:
            log.warning("Xero tenant is not configured; skipping sync")
            summary.skipped_reason = "tenant_not_configured"
            return summary

        recovered = await self.recover_stuck_records()
        summary.invoices_recovered = recovered["invoices"]
        summary.payments_recovered = recovered["payments"]

        pending = await self.get_pending_records()
        log.info(
            "Starting Xero sync",
            pending_invoices=len(pending.invoices),
            pending_payments=len(pending.payments),
        )

        if pending.invoices:
            await self._sync_invoices(pending.invoices, summary)

        ready: list[StagingPayment] = []
        for payment in pending.payments:
            if payment.invoice is not None and payment.invoice.xero_invoice_id:
                ready.append(payment)
            else:
                summary.payments_waiting += 1
        if summary.payments_waiting:
            log.info("Payments waiting on invoice sync", waiting=summary.payments_waiting)

        if ready:
            await self._apply_stripe_fees(ready)
            await self._sync_payments(ready, summary)

        log.info("Xero sync completed", **summary.as_dict())
        return summary

    async def reset_failed_records(self) -> Dict[str, int]:
        """Move failed invoices and payments back to ``staged`` so the next sweep retries them."""

        invoices = await self._session.execute(
            update(StagingInvoice)
            .where(StagingInvoice.sync_status == SyncStatusEnum.FAILED)
            .values(sync_status=SyncStatusEnum.STAGED, sync_error=None)
        )
        payments = await self._session.execute(
            update(StagingPayment)
            .where(StagingPayment.sync_status == SyncStatusEnum.FAILED)
            .values(sync_status=SyncStatusEnum.STAGED, sync_error=None)
        )
        await self._session.commit()
        reset = {"invoices": invoices.rowcount or 0, "payments": payments.rowcount or 0}
        sync_logger("reset-failed").info("Reset failed Xero records", **reset)
        return reset

    async def recover_stuck_records(self) -> Dict[str, int]:
        """Requeue rows left in ``syncing`` longer than the stuck threshold.

        A sweep that dies between marking rows ``syncing`` and recording the
        outcome would otherwise strand them, since only ``staged`` rows are
        picked up. Rows with no start time predate the column and count as stale.
        """

        cutoff = _utcnow() - self._stuck_after
        counts: Dict[str, int] = {}
        for key, model in (("invoices", StagingInvoice), ("payments", StagingPayment)):
            result = await self._session.execute(
                update(model)
                .where(model.sync_status == SyncStatusEnum.SYNCING)
                .where(or_(model.sync_started_at.is_(None), model.sync_started_at < cutoff))
                .values(sync_status=SyncStatusEnum.STAGED, sync_started_at=None)
                .execution_options(synchronize_session="fetch")
            )
            counts[key] = result.rowcount or 0
        await self._session.commit()
        if counts["invoices"] or counts["payments"]:
            sync_logger("recover-stuck").warning("Requeued records stuck in syncing", **counts)
        return counts

    async def get_status(self) -> Dict[str, Dict[str, int]]:
        return {
            "invoices": await self._count_by_status(StagingInvoice),
            "payments": await self._count_by_status(StagingPayment),
        }

    async def _count_by_status(self, model) -> Dict[str, int]:
        counts = {status.value: 0 for status in SyncStatusEnum}
        result = await self._session.execute(select(model.sync_status, func.count()).group_by(model.sync_status))
        for status, count in result.all():
            counts[SyncStatusEnum(status).value] = count
        return counts

    async def _sync_invoices(self, invoices: Sequence[StagingInvoice], summary: SyncSummary) -> None:
        await self._load_contacts(_member_ids(invoices))
        await self._mark_syncing(invoices)
        try:
            result = await self._processor.process_batch(
                invoices,
                self._push_invoice,
                batch_size=self._batch_size,
                concurrency=self._concurrency,
                delay_between_batches_ms=self._delay_between_batches_ms,
                operation_type="xero_api",
            )
        except Exception:
            await self._restore_staged(invoices)
            raise

        now = _utcnow()
        for invoice, ref in result.successful:
            invoice.tenant_id = self._tenant_id
            invoice.xero_invoice_id = ref.invoice_id
            invoice.invoice_number = ref.invoice_number
            invoice.invoice_status = InvoiceStatusEnum.AUTHORISED
            invoice.sync_status = SyncStatusEnum.SYNCED
            invoice.last_synced_at = now
            invoice.sync_error = None
            summary.invoices_synced += 1

        for failure in result.failed:
            if self._apply_failure(failure, now):
                summary.invoices_deferred += 1
            else:
                summary.invoices_failed += 1

        await self._session.commit()

    async def _sync_payments(self, payments: Sequence[StagingPayment], summary: SyncSummary) -> None:
        await self._mark_syncing(payments)
        try:
            result = await self._processor.process_batch(
                payments,
                self._push_payment,
                batch_size=self._batch_size,
                concurrency=self._concurrency,
                delay_between_batches_ms=self._delay_between_batches_ms,
                operation_type="xero_api",
            )
        except Exception:
            await self._restore_staged(payments)
            raise

        now = _utcnow()
        for payment, ref, reference in result.successful:
            payment.tenant_id = self._tenant_id
            payment.xero_payment_id = ref.payment_id
            payment.reference = reference
            payment.sync_status = SyncStatusEnum.SYNCED
            payment.last_synced_at = now
            payment.sync_error = None
            summary.payments_synced += 1

        for failure in result.failed:
            if self._apply_failure(failure, now):
                summary.payments_deferred += 1
            else:
                summary.payments_failed += 1

        await self._session.commit()

    async def _push_invoice(self, invoice: StagingInvoice) -> tuple[StagingInvoice, XeroInvoiceRef]:
        metadata = _read_metadata(invoice.staging_metadata, (StagingInvoiceMetadataV1, StagingCreditNoteMetadataV1))
        contact_id = await self._resolve_contact(metadata.user_id)
        if isinstance(metadata, StagingCreditNoteMetadataV1):
            ref = await self._client.create_credit_note(
                self._tenant_id or "",
                invoice,
                invoice.line_items,
                contact_id=contact_id,
                reference=f"Refund {metadata.refund_id[:8]}",
            )
        else:
            ref = await self._client.create_invoice(
                self._tenant_id or "",
                invoice,
                invoice.line_items,
                contact_id=contact_id,
                reference=metadata.stripe_payment_intent_id,
            )
        return invoice, ref

    async def _load_contacts(self, user_ids: set[str]) -> None:
        """Read members and cached Xero contacts up front; pushes share the session concurrently."""

        if not user_ids:
            return
        members = await self._session.execute(select(User).where(User.id.in_(user_ids)))
        self._members.update({member.id: member for member in members.scalars()})
        cached = await self._session.execute(
            select(XeroContact).where(
                XeroContact.tenant_id == self._tenant_id,
                XeroContact.user_id.in_(user_ids),
            )
        )
        self._contacts.update({row.user_id: row.xero_contact_id for row in cached.scalars()})

    async def _resolve_contact(self, user_id: str) -> str:
        lock = self._contact_locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            contact_id = self._contacts.get(user_id)
            if contact_id:
                return contact_id
            member = self._members.get(user_id)
            if member is None:
                raise AccountingApiError(
                    f"Member {user_id} not found; cannot resolve a Xero contact",
                    kind=AccountingErrorKind.PERMANENT,
                )
            ref = await self._client.get_or_create_contact(
                self._tenant_id or "",
                XeroContactData(
                    contact_number=member.id,
                    first_name=member.first_name or "",
                    last_name=member.last_name or "",
                    email=member.email,
                    member_id=member.member_id,
                ),
            )
            self._contacts[user_id] = ref.contact_id
            self._session.add(
                XeroContact(
                    user_id=user_id,
                    tenant_id=self._tenant_id,
                    xero_contact_id=ref.contact_id,
                    contact_name=ref.name,
                    sync_status=SyncStatusEnum.SYNCED,
                    last_synced_at=_utcnow(),
                )
            )
            return ref.contact_id

    async def _push_payment(self, payment: StagingPayment) -> tuple[StagingPayment, XeroPaymentRef, str]:
        invoice = payment.invoice
        reference = payment.reference or invoice.invoice_number or ""
        ref = await self._client.create_payment(
            self._tenant_id or "",
            invoice.xero_invoice_id,
            payment,
            reference,
            credit_note=invoice.invoice_type == CREDIT_NOTE_TYPE,
        )
        return payment, ref, reference

    async def _apply_stripe_fees(self, payments: Sequence[StagingPayment]) -> None:
        if self._fee_resolver is None:
            return
        for payment in payments:
            if payment.stripe_fee_amount:
                continue
            try:
                metadata = _read_metadata(payment.staging_metadata, StagingPaymentMetadataV1)
            except AccountingApiError as exc:
                logger.warning("Skipping Stripe fee lookup", payment_id=str(payment.id), error=str(exc))
                continue
            if not metadata.stripe_payment_intent_id:
                continue
            fee = await self._fee_resolver.get_fee_amount(metadata.stripe_payment_intent_id)
            if fee is None:
                continue
            payment.stripe_fee_amount = fee
            if payment.invoice is not None:
                payment.invoice.stripe_fee_amount = fee
        await self._session.commit()

    def _apply_failure(self, failure: BatchFailure, now: datetime) -> bool:
        """Record a failed push; returns ``True`` when the row was deferred for a rate limit."""

        record = failure.item
        record.sync_error = failure.error
        record.last_synced_at = now
        if failure.rate_limited:
            record.sync_status = SyncStatusEnum.STAGED
            logger.warning("Xero rate limit hit; record left staged", record_id=str(record.id), error=failure.error)
            return True
        record.sync_status = SyncStatusEnum.FAILED
        logger.error("Xero sync failed for record", record_id=str(record.id), error=failure.error)
        return False

    async def _mark_syncing(self, records: Sequence[StagingInvoice | StagingPayment]) -> None:
        now = _utcnow()
        for record in records:
            record.sync_status = SyncStatusEnum.SYNCING
            record.sync_started_at = now
        await self._session.commit()

    async def _restore_staged(self, records: Sequence[StagingInvoice | StagingPayment]) -> None:
        for record in records:
            if record.sync_status == SyncStatusEnum.SYNCING:
                record.sync_status = SyncStatusEnum.STAGED
                record.sync_started_at = None
        await self._session.commit()


def _read_metadata(raw, expected: type | tuple[type, ...]):
    try:
        metadata = parse_staging_metadata(raw)
    except UnsupportedStagingMetadataError as exc:
        raise AccountingApiError(str(exc), kind=AccountingErrorKind.PERMANENT, raw=raw) from exc
    if not isinstance(metadata, expected):
        raise AccountingApiError(
            f"Unexpected metadata kind {metadata.kind!r}",
            kind=AccountingErrorKind.PERMANENT,
            raw=raw,
        )
    return metadata


def _member_ids(invoices: Iterable[StagingInvoice]) -> set[str]:
    user_ids: set[str] = set()
    for invoice in invoices:
        raw = invoice.staging_metadata
        if isinstance(raw, dict) and isinstance(raw.get("user_id"), str):
            user_ids.add(raw["user_id"])
    return user_ids


__all__ = ["SyncSummary", "XeroSyncService"]
