"""Xero staging models for invoices, line items and payments."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from clubledger_api.db.base import Base


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]

_STAGED_SALE_PREDICATE = "sync_status = 'staged' AND payment_id IS NOT NULL AND invoice_type = 'ACCREC'"


class SyncStatusEnum(str, Enum):
    """Lifecycle of a staged record against the accounting system."""

    STAGED = "staged"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"


class InvoiceStatusEnum(str, Enum):
    """Xero invoice status applied when the invoice is pushed."""

    DRAFT = "DRAFT"
    AUTHORISED = "AUTHORISED"


class LineItemTypeEnum(str, Enum):
    MEMBERSHIP = "membership"
    REGISTRATION = "registration"
    DISCOUNT = "discount"
    DONATION = "donation"
    REFUND = "refund"
    DISCOUNT_REFUND = "discount_refund"


class StagingInvoice(Base):
    """Locally durable copy of an invoice bound for Xero.

    Amounts are integer cents. ``staging_metadata`` carries the versioned
    purchase snapshot and is the source of truth if the columns fall short.
    """

    __tablename__ = "xero_invoices"
    __table_args__ = (
        Index(
            "uq_xero_invoices_staged_payment",
            "payment_id",
            unique=True,
            postgresql_where=text(_STAGED_SALE_PREDICATE),
            sqlite_where=text(_STAGED_SALE_PREDICATE),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    payment_id = Column(String, nullable=True, index=True)
    tenant_id = Column(String, nullable=True)
    xero_invoice_id = Column(String, nullable=True)
    invoice_number = Column(String, nullable=True)
    invoice_type = Column(String, nullable=False, default="ACCREC")
    invoice_status = Column(
        SqlEnum(InvoiceStatusEnum, name="xero_invoice_status_enum", values_callable=_enum_values),
        nullable=False,
        default=InvoiceStatusEnum.DRAFT,
    )
    total_amount = Column(Integer, nullable=False, default=0)
    discount_amount = Column(Integer, nullable=False, default=0)
    net_amount = Column(Integer, nullable=False, default=0)
    stripe_fee_amount = Column(Integer, nullable=False, default=0)
    sync_status = Column(
        SqlEnum(SyncStatusEnum, name="xero_sync_status_enum", values_callable=_enum_values),
        nullable=False,
        default=SyncStatusEnum.STAGED,
        index=True,
    )
    staged_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    sync_started_at = Column(DateTime(timezone=True), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    sync_error = Column(Text, nullable=True)
    staging_metadata = Column(JSON, nullable=False)

    line_items = relationship(
        "StagingLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
    )
    payments = relationship("StagingPayment", back_populates="invoice")


class StagingLineItem(Base):
    """One charge, discount or donation row of a staged invoice."""

    __tablename__ = "xero_invoice_line_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    invoice_id = Column(
        UUID(as_uuid=True),
        ForeignKey("xero_invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    line_item_type = Column(
        SqlEnum(LineItemTypeEnum, name="xero_line_item_type_enum", values_callable=_enum_values),
        nullable=False,
    )
    item_id = Column(String, nullable=True)
    discount_code_id = Column(String, nullable=True)
    description = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_amount = Column(Integer, nullable=False)
    account_code = Column(String, nullable=False)
    tax_type = Column(String, nullable=False, default="NONE")
    line_amount = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    invoice = relationship("StagingInvoice", back_populates="line_items")


class StagingPayment(Base):
    """Staged settlement of an invoice, present only for paid purchases."""

    __tablename__ = "xero_payments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    invoice_id = Column(
        UUID(as_uuid=True),
        ForeignKey("xero_invoices.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    tenant_id = Column(String, nullable=True)
    xero_payment_id = Column(String, nullable=True)
    payment_method = Column(String, nullable=False, default="stripe")
    bank_account_code = Column(String, nullable=False)
    amount_paid = Column(Integer, nullable=False)
    stripe_fee_amount = Column(Integer, nullable=False, default=0)
    reference = Column(String, nullable=False, default="")
    sync_status = Column(
        SqlEnum(SyncStatusEnum, name="xero_sync_status_enum", values_callable=_enum_values),
        nullable=False,
        default=SyncStatusEnum.STAGED,
        index=True,
    )
    staged_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    sync_started_at = Column(DateTime(timezone=True), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    sync_error = Column(Text, nullable=True)
    staging_metadata = Column(JSON, nullable=False)

    invoice = relationship("StagingInvoice", back_populates="payments")


class XeroContact(Base):
    """Local cache of the Xero contact resolved for a member in one tenant."""

    __tablename__ = "xero_contacts"
    __table_args__ = (UniqueConstraint("user_id", "tenant_id", name="uq_xero_contacts_user_tenant"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(String, nullable=False, index=True)
    tenant_id = Column(String, nullable=False)
    xero_contact_id = Column(String, nullable=False)
    contact_name = Column(String, nullable=True)
    sync_status = Column(
        SqlEnum(SyncStatusEnum, name="xero_sync_status_enum", values_callable=_enum_values),
        nullable=False,
        default=SyncStatusEnum.SYNCED,
    )
    last_synced_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class SystemAccountingCode(Base):
    """Organisation-wide accounting codes keyed by purpose."""

    __tablename__ = "system_accounting_codes"

    code_type = Column(String, primary_key=True)
    accounting_code = Column(String, nullable=False)
    description = Column(String, nullable=True)
