"""
Loan Disbursement Service
=========================

Sends an APPROVED loan's principal to the borrower's bank account.

Sequence:
1. Loan must exist and be APPROVED
2. Bank details validated and the bank code resolved
3. A ``DISB_`` reference is generated and stored on the loan BEFORE the
   gateway call, so a transfer webhook that races the HTTP response can
   always be matched
4. The gateway transfer is requested (or simulated in development)
5. The loan is marked DISBURSED only for simulated transfers or when
   OPTIMISTIC_DISBURSEMENT is on; otherwise it stays APPROVED until the
   provider's transfer webhook confirms it
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from config import Config
from models import Loan, LoanStatus
from repositories.loan_repository import LoanRepository
from services.bank_service import BankService
from services.errors import DisbursementError, InvalidLoanStateError, LoanNotFoundError
from services.payment_gateway import BasePaymentGateway, TransferResult
from utils.cache_invalidation import CacheInvalidator
from utils.helpers import generate_disbursement_reference, mask_account_number, to_decimal
from utils.loan_state_validator import LoanStateValidator

logger = logging.getLogger(__name__)


@dataclass
class BankAccountDetails:
    """Destination account for a disbursement"""
    account_number: str
    account_name: str
    bank_code: Optional[str] = None
    bank_name: Optional[str] = None


@dataclass
class DisbursementResult:
    loan: Loan
    reference: str
    transfer: TransferResult
    simulated: bool = False

    @property
    def awaiting_confirmation(self) -> bool:
        return self.loan.status == LoanStatus.APPROVED.value


class LoanDisbursementService:
    """Orchestrates bank transfers for approved loans"""

    def __init__(
        self,
        loan_repository: LoanRepository,
        gateway: Optional[BasePaymentGateway],
        cache_invalidator: CacheInvalidator,
        bank_service: Optional[BankService] = None,
    ):
        self.loan_repository = loan_repository
        self.gateway = gateway
        self.cache_invalidator = cache_invalidator
        self.bank_service = bank_service or BankService(gateway)

    @staticmethod
    def simulation_enabled() -> bool:
        """Simulated transfers are never honoured in production"""
        return Config.SIMULATE_TRANSFERS and not Config.IS_PRODUCTION

    async def disburse_loan(
        self,
        loan_id: str,
        bank_account: BankAccountDetails,
        notes: Optional[str] = None,
    ) -> DisbursementResult:
        loan = await asyncio.to_thread(self.loan_repository.find_by_id, loan_id)
        if not loan:
            raise LoanNotFoundError(loan_id)
        if loan.status != LoanStatus.APPROVED.value:
            raise InvalidLoanStateError(loan_id, loan.status, [LoanStatus.APPROVED.value])

        account_number, bank_code = await self._validate_bank_account(bank_account)

        reference = generate_disbursement_reference()
        assigned = await asyncio.to_thread(
            self.loan_repository.assign_disbursement_reference, loan_id, reference
        )
        if assigned is None:
            # Loan left APPROVED between the read and the write
            current = await asyncio.to_thread(self.loan_repository.find_by_id, loan_id)
            raise InvalidLoanStateError(
                loan_id, current.status if current else "MISSING", [LoanStatus.APPROVED.value]
            )

        logger.info(
            f"💸 DISBURSEMENT_STARTED: loan {loan_id} amount={loan.amount} ref={reference} "
            f"bank={bank_code} account={mask_account_number(account_number)}"
        )

        simulated = self.simulation_enabled()
        if simulated:
            logger.warning(f"🧪 DEVELOPMENT MODE: simulating transfer {reference}")
            transfer = self._simulated_transfer(loan, reference, bank_account.account_name, account_number, bank_code)
        else:
            if self.gateway is None:
                raise DisbursementError("No payment gateway configured for disbursement")
            transfer = await self.gateway.initiate_transfer(
                amount=loan.amount,
                bank_code=bank_code,
                account_number=account_number,
                account_name=bank_account.account_name,
                reference=reference,
                reason=notes or f"Loan disbursement {loan_id}",
            )

        if not transfer.success:
            await asyncio.to_thread(
                self.loan_repository.update,
                loan_id,
                {"disbursement_gateway_response": transfer.to_dict()},
                [LoanStatus.APPROVED],
            )
            logger.error(f"❌ DISBURSEMENT_FAILED: loan {loan_id} ref={reference}: {transfer.message or transfer.status}")
            self.cache_invalidator.invalidate_on_disbursement(loan_id, loan.borrower_id, reference)
            raise DisbursementError(
                f"Transfer failed: {transfer.message or transfer.status}",
                gateway_response=transfer.to_dict(),
            )

        if simulated or Config.OPTIMISTIC_DISBURSEMENT:
            LoanStateValidator.ensure_transition(LoanStatus.APPROVED, LoanStatus.DISBURSED, loan_id)
            updated = await asyncio.to_thread(
                self.loan_repository.update_status,
                loan_id,
                LoanStatus.DISBURSED,
                {"disbursement_gateway_response": transfer.to_dict()},
                [LoanStatus.APPROVED],
            )
            if updated:
                logger.info(f"✅ LOAN_DISBURSED: loan {loan_id} ref={reference} (simulated={simulated})")
        else:
            updated = await asyncio.to_thread(
                self.loan_repository.update,
                loan_id,
                {"disbursement_gateway_response": transfer.to_dict()},
                [LoanStatus.APPROVED],
            )
            if updated:
                logger.info(f"⏳ DISBURSEMENT_PENDING_CONFIRMATION: loan {loan_id} ref={reference} awaiting transfer webhook")

        if updated is None:
            # A webhook already moved the loan on; report the current row
            updated = await asyncio.to_thread(self.loan_repository.find_by_id, loan_id)

        self.cache_invalidator.invalidate_on_disbursement(loan_id, loan.borrower_id, reference)
        return DisbursementResult(loan=updated, reference=reference, transfer=transfer, simulated=simulated)

    async def _validate_bank_account(self, bank_account: BankAccountDetails):
        """Returns (formatted account number, bank code) or raises DisbursementError"""
        if not bank_account.account_number or not bank_account.account_name:
            raise DisbursementError("Account number and account name are required for disbursement")

        if not bank_account.bank_code and not bank_account.bank_name:
            raise DisbursementError("Either bank_code or bank_name is required for disbursement")

        if not BankService.validate_account_number(bank_account.account_number):
            raise DisbursementError("Invalid account number format. Nigerian account numbers must be 10 digits.")

        account_number = BankService.format_account_number(bank_account.account_number)

        bank_code = bank_account.bank_code
        if not bank_code:
            bank_code = await self.bank_service.find_bank_code(bank_account.bank_name)
            if not bank_code:
                raise DisbursementError(
                    f"Bank not found: {bank_account.bank_name}. Please check the bank name or provide bank_code."
                )

        if not await self.bank_service.validate_bank_code(bank_code):
            raise DisbursementError(f"Invalid bank code: {bank_code}. Please use a valid Nigerian bank code.")

        return account_number, BankService.format_account_number(bank_code)

    @staticmethod
    def _simulated_transfer(loan: Loan, reference: str, account_name: str, account_number: str, bank_code: str) -> TransferResult:
        return TransferResult(
            success=True,
            reference=reference,
            status="success",
            amount=to_decimal(loan.amount),
            transfer_code=f"SIM_{int(time.time() * 1000)}",
            recipient={
                "type": "bank",
                "name": account_name,
                "account_number": account_number,
                "bank_code": bank_code,
            },
        )
