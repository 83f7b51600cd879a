"""
Loan Admin Handlers
Back-office routes for creating, approving, disbursing and collecting on loans.
All routes require the shared X-Admin-Token header.
"""

import asyncio
import hmac
import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import Config
from models import PaymentMethod
from services.disbursement_service import BankAccountDetails
from services.errors import (
    BorrowerNotFoundError,
    DisbursementError,
    GatewayConfigurationError,
    InvalidLoanStateError,
    LendingError,
    LoanNotFoundError,
    PaymentInitializationError,
)
from services.loan_service import serialize_loan, serialize_repayment

logger = logging.getLogger(__name__)


def require_admin_token(x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")) -> None:
    expected = Config.ADMIN_API_TOKEN
    if not expected:
        logger.error("🔒 ADMIN_AUTH: ADMIN_API_TOKEN not configured - request rejected")
        raise HTTPException(status_code=401, detail="Admin access not configured")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        logger.warning("🚨 ADMIN_AUTH: invalid admin token")
        raise HTTPException(status_code=401, detail="Invalid admin token")


router = APIRouter(prefix="/api", tags=["loan-admin"], dependencies=[Depends(require_admin_token)])


class BankAccountRequest(BaseModel):
    account_number: str
    account_name: str
    bank_code: Optional[str] = None
    bank_name: Optional[str] = None


class DisbursementRequest(BaseModel):
    bank_account: BankAccountRequest
    notes: Optional[str] = None


class LoanCreateRequest(BaseModel):
    borrower_id: str
    amount: Decimal = Field(gt=0)
    interest_rate: Decimal = Field(ge=0, le=100)
    term_in_months: int = Field(ge=1, le=360)
    purpose: Optional[str] = None
    # priced upstream; stored as given
    total_interest: Optional[Decimal] = Field(default=None, ge=0)
    total_amount: Optional[Decimal] = Field(default=None, gt=0)
    monthly_payment: Optional[Decimal] = Field(default=None, gt=0)


class RepaymentRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    email: Optional[str] = None
    method: PaymentMethod = PaymentMethod.PAYSTACK


def _lending_error_response(error: LendingError) -> JSONResponse:
    if isinstance(error, (LoanNotFoundError, BorrowerNotFoundError)):
        status_code = 404
    elif isinstance(error, GatewayConfigurationError):
        status_code = 503
    else:
        status_code = 400
    return JSONResponse(status_code=status_code, content={"success": False, "message": str(error)})


@router.post("/loans", status_code=201)
async def create_loan(body: LoanCreateRequest, request: Request):
    loan_service = request.app.state.loan_service
    try:
        loan = await asyncio.to_thread(loan_service.create_loan, **body.model_dump())
    except BorrowerNotFoundError as e:
        return _lending_error_response(e)
    return {"success": True, "message": "Loan created", "data": serialize_loan(loan)}


@router.get("/borrowers/{borrower_id}/loans")
async def get_borrower_loans(borrower_id: str, request: Request):
    loan_service = request.app.state.loan_service
    try:
        loans = await asyncio.to_thread(loan_service.list_borrower_loans, borrower_id)
    except BorrowerNotFoundError as e:
        return _lending_error_response(e)
    return {"success": True, "data": {"loans": loans, "count": len(loans)}}


@router.post("/loans/{loan_id}/approve")
async def approve_loan(loan_id: str, request: Request):
    loan_service = request.app.state.loan_service
    try:
        loan = await asyncio.to_thread(loan_service.approve_loan, loan_id)
    except (LoanNotFoundError, InvalidLoanStateError) as e:
        return _lending_error_response(e)
    return {"success": True, "message": "Loan approved", "data": serialize_loan(loan)}


@router.post("/loans/{loan_id}/disburse")
async def disburse_loan(loan_id: str, body: DisbursementRequest, request: Request):
    disbursement_service = request.app.state.disbursement_service
    account = BankAccountDetails(**body.bank_account.model_dump())
    try:
        result = await disbursement_service.disburse_loan(loan_id, account, body.notes)
    except DisbursementError as e:
        logger.warning(f"⚠️ DISBURSEMENT_REJECTED: loan {loan_id}: {e}")
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": str(e), "gateway_response": e.gateway_response},
        )
    except LendingError as e:
        return _lending_error_response(e)

    message = (
        "Disbursement initiated, awaiting transfer confirmation"
        if result.awaiting_confirmation
        else "Loan disbursed successfully"
    )
    return {
        "success": True,
        "message": message,
        "data": {
            "loan": serialize_loan(result.loan),
            "reference": result.reference,
            "transfer_status": result.transfer.status,
            "simulated": result.simulated,
        },
    }


@router.post("/loans/{loan_id}/repayments")
async def create_repayment(loan_id: str, body: RepaymentRequest, request: Request):
    repayment_service = request.app.state.repayment_service
    try:
        initiation = await repayment_service.initiate_repayment(
            loan_id, body.amount, email=body.email, method=body.method
        )
    except PaymentInitializationError as e:
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": "Payment initialization failed", "error": str(e)},
        )
    except LendingError as e:
        return _lending_error_response(e)

    return {
        "success": True,
        "message": "Payment initialized successfully",
        "data": {
            "repayment": serialize_repayment(initiation.repayment),
            "payment_url": initiation.payment_url,
            "reference": initiation.reference,
        },
    }


@router.get("/loans/{loan_id}")
async def get_loan(loan_id: str, request: Request):
    loan_service = request.app.state.loan_service
    try:
        loan = await asyncio.to_thread(loan_service.get_loan, loan_id)
    except LoanNotFoundError as e:
        return _lending_error_response(e)
    return {"success": True, "data": loan}


@router.get("/loans/{loan_id}/disbursement")
async def verify_disbursement(loan_id: str, request: Request):
    loan_service = request.app.state.loan_service
    try:
        transfer = await loan_service.verify_disbursement(loan_id)
    except LendingError as e:
        return _lending_error_response(e)
    return {"success": True, "data": transfer.to_dict()}


@router.get("/banks")
async def get_supported_banks(request: Request):
    bank_service = request.app.state.bank_service
    banks = await bank_service.get_supported_banks()
    return {"success": True, "message": "Supported banks retrieved successfully", "data": {"banks": banks}}
