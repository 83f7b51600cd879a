"""
Repayment Service
Opens a gateway payment session for a loan repayment and records the PENDING
repayment that the charge webhook later settles
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from config import Config
from models import Loan, LoanStatus, PaymentMethod, Repayment, RepaymentStatus
from repositories.loan_repository import LoanRepository
from repositories.repayment_repository import RepaymentRepository
from services.errors import InvalidLoanStateError, LoanNotFoundError, PaymentInitializationError
from services.payment_gateway import BasePaymentGateway
from utils.cache_invalidation import CacheInvalidator
from utils.datetime_helpers import utc_now
from utils.helpers import generate_repayment_reference, to_decimal
from utils.loan_state_validator import LoanStateValidator

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass
class RepaymentInitiation:
    repayment: Repayment
    reference: str
    payment_url: Optional[str] = None
    access_code: Optional[str] = None


def split_repayment(loan: Loan, amount: Decimal):
    """
    Split a repayment into (principal, interest) in the loan's own
    principal / total-repayable ratio.
    """
    total_amount = to_decimal(loan.total_amount)
    principal_total = to_decimal(loan.amount)
    if total_amount <= 0 or principal_total >= total_amount:
        return amount, Decimal("0.00")

    principal = (amount * principal_total / total_amount).quantize(CENT, rounding=ROUND_HALF_UP)
    return principal, amount - principal


class RepaymentService:
    """Repayment initiation through the configured payment gateway"""

    def __init__(
        self,
        loan_repository: LoanRepository,
        repayment_repository: RepaymentRepository,
        gateway: Optional[BasePaymentGateway],
        cache_invalidator: CacheInvalidator,
    ):
        self.loan_repository = loan_repository
        self.repayment_repository = repayment_repository
        self.gateway = gateway
        self.cache_invalidator = cache_invalidator

    async def initiate_repayment(
        self,
        loan_id: str,
        amount,
        email: Optional[str] = None,
        method: PaymentMethod = PaymentMethod.PAYSTACK,
    ) -> RepaymentInitiation:
        amount = to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)
        if amount <= 0:
            raise PaymentInitializationError("Repayment amount must be greater than zero")

        loan = await asyncio.to_thread(self.loan_repository.find_by_id, loan_id)
        if not loan:
            raise LoanNotFoundError(loan_id)
        if LoanStatus(loan.status) not in LoanStateValidator.REPAYABLE_STATES:
            raise InvalidLoanStateError(
                loan_id, loan.status, sorted(s.value for s in LoanStateValidator.REPAYABLE_STATES)
            )

        if not email:
            borrower = await asyncio.to_thread(self.loan_repository.find_borrower, loan.borrower_id)
            if borrower is not None:
                email = borrower.email or f"{borrower.phone}@temp.com"
        if not email:
            raise PaymentInitializationError("An email address is required to open a payment session")

        if self.gateway is None:
            raise PaymentInitializationError("No payment gateway configured for repayments")

        reference = generate_repayment_reference()
        payment = await self.gateway.initiate_payment(
            amount=amount,
            email=email,
            reference=reference,
            callback_url=f"{Config.APP_URL}/api/payments/callback",
            metadata={
                "loan_id": loan_id,
                "borrower_id": loan.borrower_id,
                "type": "repayment",
            },
        )
        if not payment.success:
            logger.error(f"❌ REPAYMENT_INIT_FAILED: loan {loan_id} ref={reference}: {payment.message}")
            raise PaymentInitializationError(
                f"Payment initialization failed: {payment.message}", gateway_response=payment.data
            )

        principal, interest = split_repayment(loan, amount)
        repayment = await asyncio.to_thread(
            self.repayment_repository.create,
            loan_id=loan_id,
            borrower_id=loan.borrower_id,
            amount=amount,
            principal_amount=principal,
            interest_amount=interest,
            method=method,
            status=RepaymentStatus.PENDING,
            transaction_reference=reference,
            due_date=loan.next_payment_date or utc_now(),
        )

        logger.info(
            f"💳 REPAYMENT_INITIATED: loan {loan_id} amount={amount} ref={reference} via {self.gateway.provider_name}"
        )
        self.cache_invalidator.invalidate_on_repayment(loan_id, loan.borrower_id, reference)
        return RepaymentInitiation(
            repayment=repayment,
            reference=reference,
            payment_url=payment.authorization_url,
            access_code=payment.access_code,
        )
