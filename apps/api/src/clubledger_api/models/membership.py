"""Business records the staging writer reads and back-links."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import relationship

from clubledger_api.db.base import Base


def _new_id() -> str:
    return str(uuid4())


class PaymentStatusEnum(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Payment(Base):
    """Internal payment captured for a membership or registration purchase."""

    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    total_amount = Column(Integer, nullable=False, default=0)
    discount_amount = Column(Integer, nullable=False, default=0)
    final_amount = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=PaymentStatusEnum.PENDING.value)
    payment_method = Column(String, nullable=False, default="stripe")
    stripe_payment_intent_id = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class User(Base):
    """Club member; the name fields feed the Xero contact."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_new_id)
    email = Column(String, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    member_id = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class UserMembership(Base):
    """A member's purchased membership term."""

    __tablename__ = "user_memberships"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    membership_id = Column(String, nullable=True)
    membership_name = Column(String, nullable=False)
    price = Column(Integer, nullable=False, default=0)
    amount_paid = Column(Integer, nullable=False, default=0)
    months_purchased = Column(Integer, nullable=False, default=1)
    accounting_code = Column(String, nullable=True)
    payment_id = Column(String, ForeignKey("payments.id", ondelete="SET NULL"), nullable=True)
    xero_invoice_id = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    payment = relationship("Payment")


class UserRegistration(Base):
    """A member's seasonal registration in a category."""

    __tablename__ = "user_registrations"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    registration_id = Column(String, nullable=True)
    registration_name = Column(String, nullable=False)
    category_name = Column(String, nullable=True)
    price = Column(Integer, nullable=False, default=0)
    amount_paid = Column(Integer, nullable=False, default=0)
    accounting_code = Column(String, nullable=True)
    payment_id = Column(String, ForeignKey("payments.id", ondelete="SET NULL"), nullable=True)
    xero_invoice_id = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    payment = relationship("Payment")
