"""
Lending Ledger - Database Schema
================================

Schema for the back-office lending ledger:
- Borrowers and their loans
- Loan disbursement through Paystack / Flutterwave transfers
- Repayments collected through gateway payment sessions

Loan and repayment status columns are driven by administrative actions and by
payment provider webhooks. Correlation references (disbursement_reference,
transaction_reference) are unique and are the only keys webhooks are matched on.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    String, Integer, Numeric, DateTime, Boolean, Text, ForeignKey, Index, JSON, func
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB on PostgreSQL, generic JSON elsewhere (sqlite in tests)
GatewayPayload = JSON().with_variant(JSONB(), "postgresql")


def _new_uuid() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DISBURSED = "DISBURSED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    DEFAULTED = "DEFAULTED"
    CANCELLED = "CANCELLED"


class RepaymentStatus(Enum):
    """Repayment lifecycle states"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    OVERDUE = "OVERDUE"


class PaymentMethod(Enum):
    """How a repayment is collected"""
    BANK_TRANSFER = "BANK_TRANSFER"
    CARD = "CARD"
    PAYSTACK = "PAYSTACK"
    FLUTTERWAVE = "FLUTTERWAVE"
    CASH = "CASH"


# ============================================================================
# CORE MODELS
# ============================================================================

class Borrower(Base):
    """Borrower managed by the lending back office"""
    __tablename__ = 'borrowers'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    phone: Mapped[str] = mapped_column(String(20), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    loans: Mapped[list["Loan"]] = relationship("Loan", back_populates="borrower")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Loan(Base):
    """Loan contract and its disbursement state"""
    __tablename__ = 'loans'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    borrower_id: Mapped[str] = mapped_column(String(36), ForeignKey('borrowers.id'), nullable=False, index=True)

    # Principal and terms
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    interest_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    term_in_months: Mapped[int] = mapped_column(Integer, nullable=False)
    purpose: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Calculated figures (computed upstream when the loan is created)
    monthly_payment: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=0, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=0, nullable=False)
    total_interest: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=0, nullable=False)
    outstanding_balance: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=0, nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=LoanStatus.PENDING.value, nullable=False, index=True)
    # Bumped by every guarded write; repayment bookings compare-and-set on it
    version: Mapped[int] = mapped_column(Integer, default=1, server_default="1", nullable=False)

    # Disbursement correlation - the only key transfer webhooks are matched on
    disbursement_reference: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    disbursement_gateway_response: Mapped[Optional[dict]] = mapped_column(GatewayPayload, nullable=True)

    # Important dates
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    disbursed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_payment_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    borrower: Mapped["Borrower"] = relationship("Borrower", back_populates="loans")
    repayments: Mapped[list["Repayment"]] = relationship("Repayment", back_populates="loan")

    def __repr__(self) -> str:
        return f"<Loan {self.id} status={self.status} amount={self.amount}>"


class Repayment(Base):
    """Repayment collected through a gateway payment session"""
    __tablename__ = 'repayments'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    loan_id: Mapped[str] = mapped_column(String(36), ForeignKey('loans.id'), nullable=False, index=True)
    borrower_id: Mapped[str] = mapped_column(String(36), ForeignKey('borrowers.id'), nullable=False, index=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    principal_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=0, nullable=False)
    interest_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=0, nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=RepaymentStatus.PENDING.value, nullable=False)
    method: Mapped[str] = mapped_column(String(20), default=PaymentMethod.PAYSTACK.value, nullable=False)

    # Payment correlation - the only key charge webhooks are matched on
    transaction_reference: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    gateway_response: Mapped[Optional[dict]] = mapped_column(GatewayPayload, nullable=True)

    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set once the completed repayment has been applied to its loan
    loan_booked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    loan: Mapped["Loan"] = relationship("Loan", back_populates="repayments")

    __table_args__ = (
        Index('ix_repayments_loan_status', 'loan_id', 'status'),
    )

    def __repr__(self) -> str:
        return f"<Repayment {self.id} loan={self.loan_id} status={self.status} amount={self.amount}>"
