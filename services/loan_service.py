"""
Loan Service - administrative loan operations (creation, approval, lookup, disbursement checks)
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from caching.simple_cache import borrower_loans_cache_key, loan_cache_key
from models import Loan, LoanStatus, Repayment
from repositories.loan_repository import LoanRepository
from repositories.repayment_repository import RepaymentRepository
from services.errors import (
    BorrowerNotFoundError,
    DisbursementError,
    GatewayConfigurationError,
    InvalidLoanStateError,
    LoanNotFoundError,
)
from services.payment_gateway import BasePaymentGateway, TransferResult
from utils.cache_invalidation import CacheInvalidator
from utils.helpers import to_decimal
from utils.loan_state_validator import LoanStateValidator

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def _json_value(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def serialize_repayment(repayment: Repayment) -> Dict[str, Any]:
    return {
        "id": repayment.id,
        "loan_id": repayment.loan_id,
        "amount": _json_value(repayment.amount),
        "principal_amount": _json_value(repayment.principal_amount),
        "interest_amount": _json_value(repayment.interest_amount),
        "status": repayment.status,
        "method": repayment.method,
        "transaction_reference": repayment.transaction_reference,
        "due_date": _json_value(repayment.due_date),
        "paid_at": _json_value(repayment.paid_at),
    }


def serialize_loan(loan: Loan, repayments: Optional[List[Repayment]] = None) -> Dict[str, Any]:
    data = {
        "id": loan.id,
        "borrower_id": loan.borrower_id,
        "amount": _json_value(loan.amount),
        "interest_rate": _json_value(loan.interest_rate),
        "term_in_months": loan.term_in_months,
        "monthly_payment": _json_value(loan.monthly_payment),
        "total_amount": _json_value(loan.total_amount),
        "total_interest": _json_value(loan.total_interest),
        "outstanding_balance": _json_value(loan.outstanding_balance),
        "purpose": loan.purpose,
        "status": loan.status,
        "disbursement_reference": loan.disbursement_reference,
        "applied_at": _json_value(loan.applied_at),
        "approved_at": _json_value(loan.approved_at),
        "disbursed_at": _json_value(loan.disbursed_at),
        "due_date": _json_value(loan.due_date),
        "next_payment_date": _json_value(loan.next_payment_date),
    }
    if repayments is not None:
        data["repayments"] = [serialize_repayment(r) for r in repayments]
    return data


class LoanService:
    """Approval and read paths for the admin API"""

    def __init__(
        self,
        loan_repository: LoanRepository,
        repayment_repository: RepaymentRepository,
        cache_invalidator: CacheInvalidator,
        gateway: Optional[BasePaymentGateway] = None,
    ):
        self.loan_repository = loan_repository
        self.repayment_repository = repayment_repository
        self.gateway = gateway
        self.cache_invalidator = cache_invalidator
        self.cache = cache_invalidator.cache

    def create_loan(
        self,
        borrower_id: str,
        amount,
        interest_rate,
        term_in_months: int,
        purpose: Optional[str] = None,
        total_interest=None,
        total_amount=None,
        monthly_payment=None,
    ) -> Loan:
        """
        Book a new PENDING loan for an active borrower.

        Repayment figures are priced upstream and stored as given; when the
        totals are omitted the loan is recorded interest-free with an even
        monthly split.
        """
        borrower = self.loan_repository.find_borrower(borrower_id)
        if not borrower or not borrower.is_active:
            raise BorrowerNotFoundError(borrower_id)

        principal = to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)
        interest = to_decimal(total_interest).quantize(CENT, rounding=ROUND_HALF_UP)
        total = to_decimal(total_amount, principal + interest).quantize(CENT, rounding=ROUND_HALF_UP)
        monthly = to_decimal(monthly_payment, total / term_in_months).quantize(CENT, rounding=ROUND_HALF_UP)

        loan = self.loan_repository.create(
            borrower_id=borrower_id,
            amount=principal,
            interest_rate=to_decimal(interest_rate),
            term_in_months=term_in_months,
            purpose=purpose,
            total_interest=interest,
            total_amount=total,
            monthly_payment=monthly,
            outstanding_balance=total,
            status=LoanStatus.PENDING,
        )
        self.cache_invalidator.invalidate_loan(loan.id, borrower_id, "loan_created")
        return loan

    def list_borrower_loans(self, borrower_id: str) -> List[Dict[str, Any]]:
        """Borrower's loans, newest first, cached until the next status change"""
        key = borrower_loans_cache_key(borrower_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        if not self.loan_repository.find_borrower(borrower_id):
            raise BorrowerNotFoundError(borrower_id)

        loans = [serialize_loan(loan) for loan in self.loan_repository.find_by_borrower_id(borrower_id)]
        self.cache.set(key, loans)
        return loans

    def approve_loan(self, loan_id: str) -> Loan:
        """PENDING -> APPROVED (sets approved_at)"""
        loan = self.loan_repository.find_by_id(loan_id)
        if not loan:
            raise LoanNotFoundError(loan_id)
        if loan.status != LoanStatus.PENDING.value:
            raise InvalidLoanStateError(loan_id, loan.status, [LoanStatus.PENDING.value])

        LoanStateValidator.ensure_transition(loan.status, LoanStatus.APPROVED, loan_id)
        approved = self.loan_repository.update_status(
            loan_id, LoanStatus.APPROVED, expected_statuses=[LoanStatus.PENDING]
        )
        if approved is None:
            current = self.loan_repository.find_by_id(loan_id)
            raise InvalidLoanStateError(
                loan_id, current.status if current else "MISSING", [LoanStatus.PENDING.value]
            )

        logger.info(f"✅ LOAN_APPROVED: loan {loan_id} amount={approved.amount}")
        self.cache_invalidator.invalidate_loan(loan_id, approved.borrower_id, "loan_approved")
        return approved

    def get_loan(self, loan_id: str) -> Dict[str, Any]:
        """Loan detail with repayments, served from the TTL cache when warm"""
        key = loan_cache_key(loan_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        loan = self.loan_repository.find_by_id(loan_id)
        if not loan:
            raise LoanNotFoundError(loan_id)

        data = serialize_loan(loan, self.repayment_repository.find_by_loan_id(loan_id))
        self.cache.set(key, data)
        return data

    async def verify_disbursement(self, loan_id: str) -> TransferResult:
        """Ask the gateway for the current status of the loan's transfer (read-only)"""
        loan = await asyncio.to_thread(self.loan_repository.find_by_id, loan_id)
        if not loan:
            raise LoanNotFoundError(loan_id)
        if not loan.disbursement_reference:
            raise DisbursementError(f"Loan {loan_id} has no disbursement reference")
        if self.gateway is None:
            raise GatewayConfigurationError("No payment gateway configured")

        result = await self.gateway.verify_transfer(loan.disbursement_reference)
        logger.info(
            f"🔍 DISBURSEMENT_VERIFIED: loan {loan_id} ref={loan.disbursement_reference} "
            f"gateway_status={result.status} loan_status={loan.status}"
        )
        return result
