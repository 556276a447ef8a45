"""SQLAlchemy models package."""

from .accounting import (  # noqa: F401
    InvoiceStatusEnum,
    LineItemTypeEnum,
    StagingInvoice,
    StagingLineItem,
    StagingPayment,
    SyncStatusEnum,
    SystemAccountingCode,
    XeroContact,
)
from .membership import (  # noqa: F401
    Payment,
    PaymentStatusEnum,
    User,
    UserMembership,
    UserRegistration,
)
