"""Async client for the Xero Accounting API contact, invoice, credit note and payment endpoints."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Mapping, Sequence

import httpx
from loguru import logger

from clubledger_api.services.accounting.errors import (
    AccountingApiError,
    AccountingErrorKind,
    normalize_accounting_error,
)

if TYPE_CHECKING:
    from clubledger_api.core.settings import Settings
    from clubledger_api.models import StagingInvoice, StagingLineItem, StagingPayment


@dataclass(slots=True)
class XeroInvoiceRef:
    """Identifiers Xero assigned to a pushed invoice."""

    invoice_id: str
    invoice_number: str | None
    status: str | None


@dataclass(slots=True)
class XeroPaymentRef:
    payment_id: str
    status: str | None


@dataclass(slots=True)
class XeroContactRef:
    contact_id: str
    name: str | None


@dataclass(slots=True)
class XeroContactData:
    """Member details used to find or create the matching Xero contact."""

    contact_number: str
    first_name: str
    last_name: str
    email: str | None = None
    member_id: int | None = None

    @property
    def name(self) -> str:
        full_name = f"{self.first_name} {self.last_name}".strip() or self.contact_number
        return f"{full_name} - {self.member_id}" if self.member_id else full_name


def cents_to_amount(cents: int) -> str:
    """Render integer cents as the two-decimal string Xero expects."""

    return str((Decimal(cents) / Decimal(100)).quantize(Decimal("0.01")))


class XeroAccountingClient:
    """Thin async wrapper over the Xero Accounting API using httpx."""

    def __init__(
        self,
        *,
        base_url: str,
        access_token: str,
        currency: str = "CAD",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._access_token = access_token
        self._currency = currency
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> "XeroAccountingClient":
        return cls(
            base_url=settings.xero_api_base_url,
            access_token=settings.xero_access_token,
            currency=settings.xero_default_currency,
            timeout=settings.xero_request_timeout_seconds,
            http_client=http_client,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "XeroAccountingClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def get_or_create_contact(self, tenant_id: str, contact: XeroContactData) -> XeroContactRef:
        """Resolve the member's Xero contact by exact name, then by email, creating it if neither matches.

        An archived contact holding the member's name is renamed out of the
        way first, since Xero refuses two contacts with the same name.
        """

        log = logger.bind(contact_number=contact.contact_number, contact_name=contact.name)
        for record in await self._search_contacts(tenant_id, f'Name=="{_escape(contact.name)}"'):
            if record.get("ContactStatus") == "ARCHIVED":
                await self._rename_archived_contact(tenant_id, record, contact.name)
                continue
            log.info("Matched Xero contact by name", xero_contact_id=record.get("ContactID"))
            return _contact_ref(record)

        if contact.email:
            for record in await self._search_contacts(tenant_id, f'EmailAddress=="{_escape(contact.email)}"'):
                if record.get("ContactStatus") != "ARCHIVED" and record.get("ContactNumber") == contact.contact_number:
                    log.info("Matched Xero contact by email", xero_contact_id=record.get("ContactID"))
                    return _contact_ref(record)

        payload: dict[str, Any] = {
            "Name": contact.name,
            "ContactNumber": contact.contact_number,
            "FirstName": contact.first_name,
            "LastName": contact.last_name,
        }
        if contact.email:
            payload["EmailAddress"] = contact.email
        body = await self._request("PUT", "/Contacts", tenant_id, {"Contacts": [payload]})
        record = _first_record(body, "Contacts")
        if not record.get("ContactID"):
            raise AccountingApiError(
                "Xero contact response did not include a ContactID",
                kind=AccountingErrorKind.PERMANENT,
                raw=body,
            )
        log.info("Created Xero contact", xero_contact_id=record["ContactID"])
        return _contact_ref(record)

    async def create_invoice(
        self,
        tenant_id: str,
        invoice: "StagingInvoice",
        line_items: Sequence["StagingLineItem"],
        *,
        contact_id: str,
        reference: str | None = None,
    ) -> XeroInvoiceRef:
        """Push a staged invoice. Anything sent to Xero is created AUTHORISED."""

        payload = self._document_payload(invoice, line_items, contact_id, reference)
        payload["Type"] = invoice.invoice_type or "ACCREC"
        payload["DueDate"] = _today()
        body = await self._request("PUT", "/Invoices", tenant_id, {"Invoices": [payload]})
        record = _first_record(body, "Invoices")
        invoice_id = record.get("InvoiceID")
        if not invoice_id:
            raise AccountingApiError(
                "Xero invoice response did not include an InvoiceID",
                kind=AccountingErrorKind.PERMANENT,
                raw=body,
            )
        logger.info("Pushed invoice to Xero", staging_invoice_id=str(invoice.id), xero_invoice_id=invoice_id)
        return XeroInvoiceRef(
            invoice_id=str(invoice_id),
            invoice_number=record.get("InvoiceNumber"),
            status=record.get("Status"),
        )

    async def create_credit_note(
        self,
        tenant_id: str,
        credit_note: "StagingInvoice",
        line_items: Sequence["StagingLineItem"],
        *,
        contact_id: str,
        reference: str | None = None,
    ) -> XeroInvoiceRef:
        payload = self._document_payload(credit_note, line_items, contact_id, reference)
        payload["Type"] = "ACCRECCREDIT"
        body = await self._request("PUT", "/CreditNotes", tenant_id, {"CreditNotes": [payload]})
        record = _first_record(body, "CreditNotes")
        credit_note_id = record.get("CreditNoteID")
        if not credit_note_id:
            raise AccountingApiError(
                "Xero credit note response did not include a CreditNoteID",
                kind=AccountingErrorKind.PERMANENT,
                raw=body,
            )
        logger.info("Pushed credit note to Xero", staging_invoice_id=str(credit_note.id), xero_credit_note_id=credit_note_id)
        return XeroInvoiceRef(
            invoice_id=str(credit_note_id),
            invoice_number=record.get("CreditNoteNumber"),
            status=record.get("Status"),
        )

    async def create_payment(
        self,
        tenant_id: str,
        xero_document_id: str,
        payment: "StagingPayment",
        reference: str,
        *,
        credit_note: bool = False,
    ) -> XeroPaymentRef:
        """Apply a payment to an invoice, or pay out a refund against a credit note.

        Refund legs are staged with a negative ``amount_paid``; Xero takes the
        absolute amount and infers the direction from the credit note.
        """

        document = (
            {"CreditNote": {"CreditNoteID": xero_document_id}}
            if credit_note
            else {"Invoice": {"InvoiceID": xero_document_id}}
        )
        payload = {
            **document,
            "Account": {"Code": payment.bank_account_code},
            "Amount": cents_to_amount(abs(payment.amount_paid)),
            "Date": _today(),
            "Reference": reference,
        }
        body = await self._request("PUT", "/Payments", tenant_id, {"Payments": [payload]})
        record = _first_record(body, "Payments")
        payment_id = record.get("PaymentID")
        if not payment_id:
            raise AccountingApiError(
                "Xero payment response did not include a PaymentID",
                kind=AccountingErrorKind.PERMANENT,
                raw=body,
            )
        logger.info("Pushed payment to Xero", staging_payment_id=str(payment.id), xero_payment_id=payment_id)
        return XeroPaymentRef(payment_id=str(payment_id), status=record.get("Status"))

    def _document_payload(
        self,
        document: "StagingInvoice",
        line_items: Sequence["StagingLineItem"],
        contact_id: str,
        reference: str | None,
    ) -> dict[str, Any]:
        return {
            "Contact": {"ContactID": contact_id},
            "Status": "AUTHORISED",
            "LineAmountTypes": "NoTax",
            "CurrencyCode": self._currency,
            "Date": _today(),
            "Reference": reference or str(document.id),
            "LineItems": [
                {
                    "Description": line.description,
                    "Quantity": line.quantity,
                    "UnitAmount": cents_to_amount(line.unit_amount),
                    "LineAmount": cents_to_amount(line.line_amount),
                    "AccountCode": line.account_code,
                    "TaxType": line.tax_type,
                }
                for line in line_items
            ],
        }

    async def _search_contacts(self, tenant_id: str, where: str) -> list[Mapping[str, Any]]:
        body = await self._request("GET", "/Contacts", tenant_id, params={"where": where})
        records = body.get("Contacts") if isinstance(body, Mapping) else None
        return [record for record in records or [] if isinstance(record, Mapping)]

    async def _rename_archived_contact(self, tenant_id: str, record: Mapping[str, Any], name: str) -> None:
        contact_id = record.get("ContactID")
        if not contact_id:
            return
        archived_name = f"{name} - Archived"
        await self._request(
            "POST",
            f"/Contacts/{contact_id}",
            tenant_id,
            {"Contacts": [{"ContactID": contact_id, "Name": archived_name}]},
        )
        logger.info("Renamed archived Xero contact", xero_contact_id=contact_id, contact_name=archived_name)

    async def _request(
        self,
        method: str,
        path: str,
        tenant_id: str,
        payload: Mapping[str, Any] | None = None,
        *,
        params: Mapping[str, str] | None = None,
    ) -> Any:
        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Xero-tenant-id": tenant_id,
            "Accept": "application/json",
        }
        try:
            response = await self._client.request(
                method,
                f"{self._base_url}{path}",
                json=payload,
                params=params,
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            error = normalize_accounting_error(exc)
            logger.warning(
                "Xero API request failed",
                path=path,
                kind=error.kind.value,
                status_code=error.status_code,
                error=str(error),
            )
            raise error from exc

        try:
            return response.json()
        except ValueError as exc:
            raise AccountingApiError(
                f"Xero API returned a non-JSON body for {path}",
                kind=AccountingErrorKind.TRANSIENT,
                status_code=response.status_code,
                raw=response.text,
            ) from exc


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _contact_ref(record: Mapping[str, Any]) -> XeroContactRef:
    return XeroContactRef(contact_id=str(record["ContactID"]), name=record.get("Name"))


def _first_record(body: Any, key: str) -> Mapping[str, Any]:
    records = body.get(key) if isinstance(body, Mapping) else None
    if isinstance(records, list) and records and isinstance(records[0], Mapping):
        return records[0]
    return {}


__all__ = [
    "XeroAccountingClient",
    "XeroContactData",
    "XeroContactRef",
    "XeroInvoiceRef",
    "XeroPaymentRef",
    "cents_to_amount",
]
