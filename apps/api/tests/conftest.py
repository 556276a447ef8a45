import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import clubledger_api.models  # noqa: E402,F401  registers tables on Base.metadata
from clubledger_api.app import create_app  # noqa: E402
from clubledger_api.db.base import Base  # noqa: E402
from clubledger_api.db.session import get_session  # noqa: E402
from clubledger_api.models import User  # noqa: E402
from clubledger_api.services.accounting.errors import AccountingApiError  # noqa: E402
from clubledger_api.services.accounting.xero_client import (  # noqa: E402
    XeroContactRef,
    XeroInvoiceRef,
    XeroPaymentRef,
)


class RecordingSleep:
    """Async sleep replacement that records requested delays (seconds) and returns immediately."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeXeroClient:
    """In-memory stand-in for ``XeroAccountingClient``."""

    def __init__(self) -> None:
        self.contact_calls: list[dict] = []
        self.invoice_calls: list[dict] = []
        self.credit_note_calls: list[dict] = []
        self.payment_calls: list[dict] = []
        self.invoice_errors: dict[str, AccountingApiError] = {}
        self.payment_errors: dict[str, AccountingApiError] = {}

    async def get_or_create_contact(self, tenant_id, contact):
        self.contact_calls.append(
            {"tenant_id": tenant_id, "contact_number": contact.contact_number, "name": contact.name}
        )
        return XeroContactRef(contact_id=f"contact-{contact.contact_number}", name=contact.name)

    async def create_invoice(self, tenant_id, invoice, line_items, *, contact_id, reference=None):
        self.invoice_calls.append(
            {
                "tenant_id": tenant_id,
                "invoice_id": str(invoice.id),
                "line_amounts": [line.line_amount for line in line_items],
                "contact_id": contact_id,
                "reference": reference,
            }
        )
        error = self.invoice_errors.get(invoice.payment_id or str(invoice.id))
        if error is not None:
            raise error
        number = len(self.invoice_calls)
        return XeroInvoiceRef(invoice_id=f"xero-inv-{number}", invoice_number=f"INV-{number:04d}", status="AUTHORISED")

    async def create_credit_note(self, tenant_id, credit_note, line_items, *, contact_id, reference=None):
        self.credit_note_calls.append(
            {
                "tenant_id": tenant_id,
                "invoice_id": str(credit_note.id),
                "line_amounts": [line.line_amount for line in line_items],
                "contact_id": contact_id,
                "reference": reference,
            }
        )
        number = len(self.credit_note_calls)
        return XeroInvoiceRef(invoice_id=f"xero-cn-{number}", invoice_number=f"CN-{number:04d}", status="AUTHORISED")

    async def create_payment(self, tenant_id, xero_document_id, payment, reference, *, credit_note=False):
        self.payment_calls.append(
            {
                "tenant_id": tenant_id,
                "xero_invoice_id": xero_document_id,
                "amount_paid": payment.amount_paid,
                "reference": reference,
                "credit_note": credit_note,
            }
        )
        error = self.payment_errors.get(xero_document_id)
        if error is not None:
            raise error
        return XeroPaymentRef(payment_id=f"xero-pay-{len(self.payment_calls)}", status="AUTHORISED")


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fake_xero_client() -> FakeXeroClient:
    return FakeXeroClient()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def member_seeder(session_factory):
    """Insert ``User`` rows so sync can resolve their Xero contacts."""

    async def seed(*user_ids: str) -> None:
        async with session_factory() as session:
            for index, user_id in enumerate(user_ids, start=1):
                if await session.get(User, user_id) is None:
                    session.add(
                        User(
                            id=user_id,
                            first_name="Member",
                            last_name=user_id,
                            email=f"{user_id}@example.com",
                            member_id=index,
                        )
                    )
            await session.commit()

    return seed
