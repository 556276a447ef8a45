"""Write-ahead staging of accounting records for completed purchases.

Every completed purchase is persisted as a staged invoice (plus line items
and, for paid purchases, a staged payment) before anything is sent to Xero.
Each insert is committed on its own so that a later failure leaves the
earlier rows recoverable. Refunds are staged the same way as ACCRECCREDIT
credit notes with a negative payment leg.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from clubledger_api.core.logging import sync_logger
from clubledger_api.models import (
    InvoiceStatusEnum,
    LineItemTypeEnum,
    Payment,
    StagingInvoice,
    StagingLineItem,
    StagingPayment,
    SyncStatusEnum,
    SystemAccountingCode,
    UserMembership,
    UserRegistration,
)
from clubledger_api.schemas.staging import (
    FreePurchaseEvent,
    PaymentItem,
    RefundDetails,
    RefundStagingRequest,
    StagingCreditNoteMetadataV1,
    StagingInvoiceMetadataV1,
    StagingPaymentData,
    StagingPaymentMetadataV1,
    dump_staging_metadata,
)

STRIPE_BANK_ACCOUNT_CODE_TYPE = "stripe_bank_account"
DEFAULT_BANK_ACCOUNT_CODE = "090"
DEFAULT_LINE_ACCOUNT_CODE = "SALES"
DEFAULT_REFUND_ACCOUNT_CODE = "200"
DEFAULT_DISCOUNT_ACCOUNT_CODE = "DISCOUNT"
SALE_INVOICE_TYPE = "ACCREC"
CREDIT_NOTE_TYPE = "ACCRECCREDIT"


@dataclass(slots=True)
class StagedLineItem:
    """Line item shape produced before it is bound to an invoice row."""

    item_type: str
    item_id: str | None
    discount_code_id: str | None
    description: str
    quantity: int
    unit_amount: int
    account_code: str
    line_amount: int


@dataclass(slots=True)
class PendingStagingRecords:
    invoices: list[StagingInvoice] = field(default_factory=list)
    payments: list[StagingPayment] = field(default_factory=list)


@dataclass(slots=True)
class RefundPreview:
    line_items: list[StagedLineItem]
    total_amount: int


class RefundStagingError(ValueError):
    """Raised when a refund request cannot be turned into credit note lines."""


def proportional_credit_lines(original: Sequence[StagingLineItem], refund_amount: int) -> list[StagedLineItem]:
    """Split a refund across the original lines, keeping each line's sign.

    Rounding drift is absorbed by the first line so the credit lines always
    sum to exactly ``refund_amount``.
    """

    invoice_total = sum(line.line_amount for line in original)
    lines = []
    for item in original:
        share = int(
            (Decimal(refund_amount) * item.line_amount / invoice_total).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        )
        lines.append(
            StagedLineItem(
                item_type=LineItemTypeEnum(item.line_item_type).value,
                item_id=item.item_id,
                discount_code_id=item.discount_code_id,
                description=f"Credit: {item.description}",
                quantity=1,
                unit_amount=share,
                account_code=item.account_code,
                line_amount=share,
            )
        )
    difference = refund_amount - sum(line.line_amount for line in lines)
    if difference and lines:
        lines[0].line_amount += difference
        lines[0].unit_amount = lines[0].line_amount
    return lines


def generate_line_items(data: StagingPaymentData) -> list[StagedLineItem]:
    """One line per payment item; quantity is always 1 at this layer."""

    return [_line_item_from(item) for item in data.payment_items]


def _line_item_from(item: PaymentItem) -> StagedLineItem:
    return StagedLineItem(
        item_type=item.item_type,
        item_id=item.item_id,
        discount_code_id=item.discount_code_id,
        description=item.description or f"{item.item_type} purchase",
        quantity=1,
        unit_amount=item.item_amount,
        account_code=item.accounting_code or DEFAULT_LINE_ACCOUNT_CODE,
        line_amount=item.item_amount,
    )


class XeroStagingManager:
    """Creates staged invoices, line items and payments for purchases."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        default_bank_account_code: str = DEFAULT_BANK_ACCOUNT_CODE,
    ) -> None:
        self._session = session
        self._default_bank_account_code = default_bank_account_code

    async def create_immediate_staging(
        self,
        data: StagingPaymentData | Mapping[str, Any],
        *,
        is_free: bool = False,
    ) -> bool:
        """Stage a purchase. Returns ``False`` if any required insert failed."""

        if not isinstance(data, StagingPaymentData):
            data = StagingPaymentData.model_validate(data)

        log = sync_logger("staging-immediate").bind(payment_id=data.payment_id, user_id=data.user_id)
        log.info("Creating immediate Xero staging", is_free=is_free, final_amount=data.final_amount)

        if data.final_amount != data.total_amount - data.discount_amount:
            log.warning(
                "Staged amounts do not reconcile",
                total_amount=data.total_amount,
                discount_amount=data.discount_amount,
                final_amount=data.final_amount,
            )

        invoice = StagingInvoice(
            payment_id=data.payment_id,
            tenant_id=None,
            invoice_type=SALE_INVOICE_TYPE,
            invoice_status=InvoiceStatusEnum.AUTHORISED if is_free else InvoiceStatusEnum.DRAFT,
            total_amount=data.total_amount,
            discount_amount=data.discount_amount,
            net_amount=data.final_amount,
            stripe_fee_amount=0,
            sync_status=SyncStatusEnum.STAGED,
            staging_metadata=dump_staging_metadata(StagingInvoiceMetadataV1.from_purchase(data)),
        )
        self._session.add(invoice)
        try:
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            if data.payment_id is not None and await self._has_staged_invoice(data.payment_id):
                log.info("Staging already exists for payment")
                return True
            log.error("Failed to create invoice staging", error=str(exc.orig or exc))
            return False
        except SQLAlchemyError as exc:
            await self._session.rollback()
            log.error("Failed to create invoice staging", error=str(exc))
            return False

        invoice_id = invoice.id
        log = log.bind(invoice_id=str(invoice_id))

        await self._link_business_records(data.payment_items, invoice_id)

        success = True
        for line in generate_line_items(data):
            if not await self._stage_line_item(invoice_id, line, log):
                success = False

        if data.final_amount > 0:
            bank_account_code = await self.get_bank_account_code()
            payment_metadata = StagingPaymentMetadataV1(
                payment_id=data.payment_id,
                stripe_payment_intent_id=data.stripe_payment_intent_id,
            )
            self._session.add(
                StagingPayment(
                    invoice_id=invoice_id,
                    tenant_id=None,
                    payment_method="stripe",
                    bank_account_code=bank_account_code,
                    amount_paid=data.final_amount,
                    stripe_fee_amount=0,
                    reference="",
                    sync_status=SyncStatusEnum.STAGED,
                    staging_metadata=dump_staging_metadata(payment_metadata),
                )
            )
            try:
                await self._session.commit()
            except SQLAlchemyError as exc:
                await self._session.rollback()
                log.error("Failed to create payment staging", amount=data.final_amount, error=str(exc))
                return False

        if success:
            log.info("Staging records created", is_free=is_free)
        else:
            log.error("Staging records created with missing line items", is_free=is_free)
        return success

    async def create_free_purchase_staging(self, event: FreePurchaseEvent | Mapping[str, Any]) -> bool:
        """Stage a zero-value membership or registration so it still reaches the ledger."""

        if not isinstance(event, FreePurchaseEvent):
            event = FreePurchaseEvent.model_validate(event)

        log = sync_logger("staging-free-purchase").bind(record_id=event.record_id, source=event.trigger_source)
        log.info("Creating Xero staging for free purchase")

        try:
            data = await self._load_free_purchase(event)
        except SQLAlchemyError as exc:
            log.error("Error loading free purchase", error=str(exc))
            return False

        if data is None:
            log.error("No purchase data found for free staging")
            return False

        return await self.create_immediate_staging(data, is_free=True)

    async def create_paid_purchase_staging(self, payment_id: str) -> bool:
        """Confirm a paid purchase was staged upstream; never synthesizes missing rows."""

        log = sync_logger("staging-paid-purchase").bind(payment_id=payment_id)
        try:
            exists = await self._has_staged_invoice(payment_id)
        except SQLAlchemyError as exc:
            log.error("Error checking existing staging", error=str(exc))
            return False

        if exists:
            log.info("Staging already exists for payment")
            return True

        log.warning("No existing staging data found for paid purchase")
        return False

    async def create_refund_staging(self, request: RefundStagingRequest | Mapping[str, Any]) -> UUID | None:
        """Stage a refund as a credit note plus an outgoing payment.

        Returns the staged credit note id, or ``None`` when nothing was kept.
        A credit note whose line items or payment leg could not be written is
        removed again so a half-staged refund never reaches Xero.
        """

        if not isinstance(request, RefundStagingRequest):
            request = RefundStagingRequest.model_validate(request)

        log = sync_logger("staging-refund").bind(
            refund_id=request.refund_id,
            payment_id=request.payment_id,
            refund_type=request.refund_type,
        )
        log.info("Creating credit note staging for refund")

        try:
            payment = await self._session.get(Payment, request.payment_id)
            if payment is None:
                log.error("Payment not found for refund staging")
                return None
            lines = await self._refund_line_items(request, allow_fallback=True)
        except RefundStagingError as exc:
            log.error("Invalid refund staging request", error=str(exc))
            return None
        except SQLAlchemyError as exc:
            await self._session.rollback()
            log.error("Error loading refund details", error=str(exc))
            return None

        refund_amount = sum(line.line_amount for line in lines)
        metadata = StagingCreditNoteMetadataV1(
            user_id=payment.user_id,
            refund_id=request.refund_id,
            refund_type=request.refund_type,
            refund_amount=refund_amount,
            original_payment_id=payment.id,
            discount_code=request.discount_code,
            discount_category=request.discount_category_name,
        )
        credit_note = StagingInvoice(
            payment_id=payment.id,
            tenant_id=None,
            invoice_type=CREDIT_NOTE_TYPE,
            invoice_status=InvoiceStatusEnum.DRAFT,
            total_amount=refund_amount,
            discount_amount=0,
            net_amount=refund_amount,
            stripe_fee_amount=0,
            sync_status=SyncStatusEnum.STAGED,
            staging_metadata=dump_staging_metadata(metadata),
        )
        self._session.add(credit_note)
        try:
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            log.error("Failed to create credit note staging", error=str(exc))
            return None

        credit_note_id = credit_note.id
        log = log.bind(credit_note_id=str(credit_note_id))

        for line in lines:
            if not await self._stage_line_item(credit_note_id, line, log):
                await self._discard_credit_note(credit_note_id, log)
                return None

        label = "Discount Refund" if request.refund_type == "discount_code" else "Refund"
        self._session.add(
            StagingPayment(
                invoice_id=credit_note_id,
                tenant_id=None,
                payment_method="stripe",
                bank_account_code=await self.get_bank_account_code(),
                amount_paid=-refund_amount,
                stripe_fee_amount=0,
                reference=f"{label} {request.refund_id[:8]}",
                sync_status=SyncStatusEnum.STAGED,
                staging_metadata=dump_staging_metadata(
                    StagingPaymentMetadataV1(payment_id=payment.id, refund_id=request.refund_id)
                ),
            )
        )
        try:
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            log.error("Failed to create refund payment staging", amount=refund_amount, error=str(exc))
            await self._discard_credit_note(credit_note_id, log)
            return None

        log.info("Credit note staging created", refund_amount=refund_amount, line_items=len(lines))
        return credit_note_id

    async def preview_refund_staging(self, details: RefundDetails | Mapping[str, Any]) -> RefundPreview:
        """Line items a refund would stage, without writing anything.

        Raises :class:`RefundStagingError` when the refund cannot be built,
        including a proportional refund with no original invoice to split.
        """

        if not isinstance(details, RefundDetails):
            details = RefundDetails.model_validate(details)
        lines = await self._refund_line_items(details, allow_fallback=False)
        return RefundPreview(line_items=lines, total_amount=sum(line.line_amount for line in lines))

    async def get_bank_account_code(self) -> str:
        """Settlement account for Stripe payouts, with the configured fallback."""

        try:
            code = await self._session.get(SystemAccountingCode, STRIPE_BANK_ACCOUNT_CODE_TYPE)
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.warning("Error reading Stripe bank account code, using default", error=str(exc))
            return self._default_bank_account_code

        if code is None or not code.accounting_code:
            logger.warning(
                "Stripe bank account code not configured, using default",
                default=self._default_bank_account_code,
            )
            return self._default_bank_account_code
        return code.accounting_code

    async def get_pending_staging_records(self) -> PendingStagingRecords:
        invoices = await self._session.execute(
            select(StagingInvoice)
            .options(selectinload(StagingInvoice.line_items))
            .where(StagingInvoice.sync_status == SyncStatusEnum.STAGED)
            .order_by(StagingInvoice.staged_at.asc())
        )
        payments = await self._session.execute(
            select(StagingPayment)
            .options(selectinload(StagingPayment.invoice))
            .where(StagingPayment.sync_status == SyncStatusEnum.STAGED)
            .order_by(StagingPayment.staged_at.asc())
        )
        return PendingStagingRecords(
            invoices=list(invoices.scalars().all()),
            payments=list(payments.scalars().all()),
        )

    async def _stage_line_item(self, invoice_id: UUID, line: StagedLineItem, log) -> bool:
        self._session.add(
            StagingLineItem(
                invoice_id=invoice_id,
                line_item_type=LineItemTypeEnum(line.item_type),
                item_id=line.item_id,
                discount_code_id=line.discount_code_id,
                description=line.description,
                quantity=line.quantity,
                unit_amount=line.unit_amount,
                account_code=line.account_code,
                tax_type="NONE",
                line_amount=line.line_amount,
            )
        )
        try:
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            log.error(
                "Failed to create line item staging",
                item_type=line.item_type,
                item_id=line.item_id,
                error=str(exc),
            )
            return False
        return True

    async def _refund_line_items(self, details: RefundDetails, *, allow_fallback: bool) -> list[StagedLineItem]:
        if details.refund_type == "discount_code":
            if not details.discount_code or not details.discount_amount:
                raise RefundStagingError("Discount-code refunds need a discount code and amount")
            return [
                StagedLineItem(
                    item_type=LineItemTypeEnum.DISCOUNT_REFUND.value,
                    item_id=None,
                    discount_code_id=None,
                    description=f"Credit: {details.discount_category_name} discount ({details.discount_code})",
                    quantity=1,
                    unit_amount=details.discount_amount,
                    account_code=details.discount_accounting_code or DEFAULT_DISCOUNT_ACCOUNT_CODE,
                    line_amount=details.discount_amount,
                )
            ]

        if not details.amount:
            raise RefundStagingError("Proportional refunds need an amount")
        original = await self._original_sale_lines(details.payment_id)
        if original and sum(line.line_amount for line in original) != 0:
            return proportional_credit_lines(original, details.amount)
        if not allow_fallback:
            raise RefundStagingError("Original invoice line items not found for payment")
        return [
            StagedLineItem(
                item_type=LineItemTypeEnum.REFUND.value,
                item_id=None,
                discount_code_id=None,
                description="Refund",
                quantity=1,
                unit_amount=details.amount,
                account_code=DEFAULT_REFUND_ACCOUNT_CODE,
                line_amount=details.amount,
            )
        ]

    async def _original_sale_lines(self, payment_id: str) -> list[StagingLineItem]:
        result = await self._session.execute(
            select(StagingInvoice)
            .options(selectinload(StagingInvoice.line_items))
            .where(StagingInvoice.payment_id == payment_id)
            .where(StagingInvoice.invoice_type == SALE_INVOICE_TYPE)
            .order_by(StagingInvoice.staged_at.desc())
            .limit(1)
        )
        invoice = result.scalar_one_or_none()
        return list(invoice.line_items) if invoice is not None else []

    async def _discard_credit_note(self, credit_note_id: UUID, log) -> None:
        try:
            await self._session.execute(delete(StagingLineItem).where(StagingLineItem.invoice_id == credit_note_id))
            await self._session.execute(delete(StagingInvoice).where(StagingInvoice.id == credit_note_id))
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            log.error("Failed to discard partial credit note staging", error=str(exc))

    async def _has_staged_invoice(self, payment_id: str) -> bool:
        result = await self._session.execute(
            select(StagingInvoice.id)
            .where(StagingInvoice.payment_id == payment_id)
            .where(StagingInvoice.invoice_type == SALE_INVOICE_TYPE)
            .where(StagingInvoice.sync_status == SyncStatusEnum.STAGED)
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def _link_business_records(self, items: Sequence[PaymentItem], invoice_id: UUID) -> None:
        targets = {"membership": UserMembership, "registration": UserRegistration}
        for item_type, model in targets.items():
            item = next((entry for entry in items if entry.item_type == item_type), None)
            if item is None or not item.item_id:
                continue
            try:
                await self._session.execute(
                    update(model).where(model.id == item.item_id).values(xero_invoice_id=str(invoice_id))
                )
                await self._session.commit()
            except SQLAlchemyError as exc:
                await self._session.rollback()
                logger.warning(
                    "Failed to link business record to staged invoice",
                    item_type=item_type,
                    item_id=item.item_id,
                    invoice_id=str(invoice_id),
                    error=str(exc),
                )
                continue
            logger.info(
                "Linked business record to staged invoice",
                item_type=item_type,
                item_id=item.item_id,
                invoice_id=str(invoice_id),
            )

    async def _load_free_purchase(self, event: FreePurchaseEvent) -> StagingPaymentData | None:
        if event.trigger_source == "user_registrations":
            result = await self._session.execute(
                select(UserRegistration)
                .options(selectinload(UserRegistration.payment))
                .where(UserRegistration.id == event.record_id)
            )
            registration = result.scalar_one_or_none()
            if registration is None:
                return None
            item = PaymentItem(
                item_type="registration",
                item_id=registration.id,
                item_amount=registration.amount_paid or 0,
                description=f"{registration.registration_name} - {registration.category_name or 'Standard'}",
                accounting_code=registration.accounting_code or "REGISTRATION",
            )
            return _purchase_from_record(event.user_id, registration.price, registration.payment, item)

        result = await self._session.execute(
            select(UserMembership)
            .options(selectinload(UserMembership.payment))
            .where(UserMembership.id == event.record_id)
        )
        membership = result.scalar_one_or_none()
        if membership is None:
            return None
        months = membership.months_purchased or 1
        item = PaymentItem(
            item_type="membership",
            item_id=membership.id,
            item_amount=membership.amount_paid or 0,
            description=f"{membership.membership_name} ({months} month{'' if months == 1 else 's'})",
            accounting_code=membership.accounting_code or "MEMBERSHIP",
        )
        return _purchase_from_record(event.user_id, membership.price, membership.payment, item)


def _purchase_from_record(user_id: str, price: int | None, payment: Any, item: PaymentItem) -> StagingPaymentData:
    """Whatever the member did not pay of the list price is recorded as discount."""

    final_amount = (payment.final_amount or 0) if payment is not None else item.item_amount
    total_amount = max(price or 0, final_amount)
    return StagingPaymentData(
        payment_id=payment.id if payment is not None else None,
        user_id=user_id,
        total_amount=total_amount,
        discount_amount=total_amount - final_amount,
        final_amount=final_amount,
        payment_items=[item],
        stripe_payment_intent_id=payment.stripe_payment_intent_id if payment is not None else None,
    )


__all__ = [
    "CREDIT_NOTE_TYPE",
    "DEFAULT_BANK_ACCOUNT_CODE",
    "PendingStagingRecords",
    "RefundPreview",
    "RefundStagingError",
    "SALE_INVOICE_TYPE",
    "StagedLineItem",
    "XeroStagingManager",
    "generate_line_items",
    "proportional_credit_lines",
]
