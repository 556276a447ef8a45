"""Typed purchase payloads and versioned staging metadata."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

LineItemType = Literal["membership", "registration", "discount", "donation"]
FreePurchaseSource = Literal["user_memberships", "user_registrations"]
RefundType = Literal["proportional", "discount_code"]

STAGING_METADATA_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentItem(BaseModel):
    """One line of a purchase; ``item_amount`` is cents and may be negative for discounts."""

    model_config = ConfigDict(frozen=True)

    item_type: LineItemType
    item_id: str | None = None
    item_amount: int
    description: str | None = None
    accounting_code: str | None = None
    discount_code_id: str | None = None


class DiscountCodeUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    amount_saved: int = Field(ge=0)
    category_name: str
    accounting_code: str | None = None
    discount_code_id: str | None = None


class StagingPaymentData(BaseModel):
    """Complete accounting view of a purchase at the moment it completes.

    ``total_amount`` is the undiscounted price, ``discount_amount`` the
    positive amount taken off it and ``final_amount`` what the member
    actually pays. All values are integer cents.
    """

    model_config = ConfigDict(frozen=True)

    payment_id: str | None = None
    user_id: str
    total_amount: int = Field(ge=0)
    discount_amount: int = Field(default=0, ge=0)
    final_amount: int = Field(ge=0)
    payment_items: list[PaymentItem] = Field(default_factory=list)
    discount_codes_used: list[DiscountCodeUsage] = Field(default_factory=list)
    stripe_payment_intent_id: str | None = None


class FreePurchaseEvent(BaseModel):
    """A free membership/registration that still needs an accounting record."""

    user_id: str
    record_id: str
    trigger_source: FreePurchaseSource


class RefundDetails(BaseModel):
    """What a refund credits back against an original payment.

    Proportional refunds need ``amount``; discount-code refunds need
    ``discount_code`` and ``discount_amount``. All amounts are positive cents.
    """

    payment_id: str
    refund_type: RefundType
    amount: int | None = Field(default=None, gt=0)
    discount_code: str | None = None
    discount_amount: int | None = Field(default=None, gt=0)
    discount_accounting_code: str | None = None
    discount_category_name: str | None = None


class RefundStagingRequest(RefundDetails):
    """A refund to stage as a credit note plus an outgoing payment."""

    refund_id: str


class StagingInvoiceMetadataV1(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    version: Literal[1] = 1
    kind: Literal["invoice"] = "invoice"
    user_id: str
    payment_items: list[PaymentItem]
    discount_codes_used: list[DiscountCodeUsage] = Field(default_factory=list)
    stripe_payment_intent_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_purchase(cls, data: StagingPaymentData) -> "StagingInvoiceMetadataV1":
        return cls(
            user_id=data.user_id,
            payment_items=list(data.payment_items),
            discount_codes_used=list(data.discount_codes_used),
            stripe_payment_intent_id=data.stripe_payment_intent_id,
        )


class StagingCreditNoteMetadataV1(BaseModel):
    """Snapshot of a refund staged as an ACCRECCREDIT credit note."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: Literal[1] = 1
    kind: Literal["credit_note"] = "credit_note"
    user_id: str
    refund_id: str
    refund_type: RefundType
    refund_amount: int
    original_payment_id: str
    discount_code: str | None = None
    discount_category: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class StagingPaymentMetadataV1(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    version: Literal[1] = 1
    kind: Literal["payment"] = "payment"
    payment_id: str | None = None
    refund_id: str | None = None
    stripe_payment_intent_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


StagingMetadata = Annotated[
    Union[StagingInvoiceMetadataV1, StagingCreditNoteMetadataV1, StagingPaymentMetadataV1],
    Field(discriminator="kind"),
]

_METADATA_ADAPTER: TypeAdapter[StagingMetadata] = TypeAdapter(StagingMetadata)


class UnsupportedStagingMetadataError(ValueError):
    """Raised when a stored metadata blob has an unknown shape or version."""


def dump_staging_metadata(
    metadata: StagingInvoiceMetadataV1 | StagingCreditNoteMetadataV1 | StagingPaymentMetadataV1,
) -> dict[str, Any]:
    return metadata.model_dump(mode="json")


def parse_staging_metadata(
    raw: Mapping[str, Any] | None,
) -> StagingInvoiceMetadataV1 | StagingCreditNoteMetadataV1 | StagingPaymentMetadataV1:
    """Decode a stored metadata blob, refusing versions this code does not know."""

    if not isinstance(raw, Mapping):
        raise UnsupportedStagingMetadataError("Staging metadata is missing or not an object")
    version = raw.get("version")
    if version != STAGING_METADATA_VERSION:
        raise UnsupportedStagingMetadataError(f"Unsupported staging metadata version: {version!r}")
    try:
        return _METADATA_ADAPTER.validate_python(dict(raw))
    except ValidationError as exc:
        raise UnsupportedStagingMetadataError(f"Invalid staging metadata: {exc.error_count()} errors") from exc


__all__ = [
    "DiscountCodeUsage",
    "FreePurchaseEvent",
    "FreePurchaseSource",
    "LineItemType",
    "PaymentItem",
    "RefundDetails",
    "RefundStagingRequest",
    "RefundType",
    "STAGING_METADATA_VERSION",
    "StagingCreditNoteMetadataV1",
    "StagingInvoiceMetadataV1",
    "StagingMetadata",
    "StagingPaymentData",
    "StagingPaymentMetadataV1",
    "UnsupportedStagingMetadataError",
    "dump_staging_metadata",
    "parse_staging_metadata",
]
