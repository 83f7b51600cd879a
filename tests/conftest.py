"""
Shared fixtures for the lending ledger test suite.

Key Components:
1. In-memory sqlite database (StaticPool so every thread sees the same data)
2. Loan / repayment repositories and factories
3. Recording cache invalidator
4. Fake payment gateway that records calls instead of hitting the network
5. Provider secrets and admin token patched onto Config
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from caching.simple_cache import SimpleCache
from config import Config
from database import build_session_factory
from models import Base, Borrower, LoanStatus, PaymentMethod, RepaymentStatus
from repositories.loan_repository import LoanRepository
from repositories.repayment_repository import RepaymentRepository
from services.payment_gateway import (
    BasePaymentGateway,
    PaymentInitResult,
    PaymentVerification,
    TransferResult,
)
from services.webhook_reconciliation_service import WebhookReconciliationService
from utils.cache_invalidation import CacheInvalidator
from tests.fixtures.webhook_signing import (
    ADMIN_TEST_TOKEN,
    FLUTTERWAVE_TEST_SECRET,
    PAYSTACK_TEST_SECRET,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def loan_repository(session_factory):
    return LoanRepository(session_factory)


@pytest.fixture
def repayment_repository(session_factory):
    return RepaymentRepository(session_factory)


# ============================================================================
# COLLABORATORS
# ============================================================================

class RecordingCacheInvalidator(CacheInvalidator):
    """Cache invalidator that remembers which loans it was asked to drop"""

    def __init__(self):
        super().__init__(SimpleCache(default_ttl=300))
        self.invalidated: List[Dict[str, Any]] = []

    def invalidate_loan(self, loan_id, borrower_id=None, reason="loan_status_change"):
        self.invalidated.append({"loan_id": loan_id, "borrower_id": borrower_id, "reason": reason})
        super().invalidate_loan(loan_id, borrower_id, reason)

    def loan_ids(self) -> List[str]:
        return [entry["loan_id"] for entry in self.invalidated]


class FakePaymentGateway(BasePaymentGateway):
    """In-memory gateway; flip the ``*_succeeds`` flags to simulate failures"""

    provider_name = "paystack"

    def __init__(self):
        super().__init__("sk_test_fake", "https://gateway.invalid")
        self.transfer_succeeds = True
        self.payment_succeeds = True
        self.transfers: List[Dict[str, Any]] = []
        self.payments: List[Dict[str, Any]] = []
        self.verified_transfers: List[str] = []
        self.before_transfer: Optional[Callable[[str], None]] = None
        self.banks: List[Dict[str, str]] = [
            {"name": "Guaranty Trust Bank", "code": "058"},
            {"name": "Zenith Bank", "code": "057"},
        ]

    async def initiate_payment(self, amount, email, reference, callback_url=None, metadata=None):
        self.payments.append({
            "amount": amount,
            "email": email,
            "reference": reference,
            "callback_url": callback_url,
            "metadata": metadata,
        })
        if not self.payment_succeeds:
            return PaymentInitResult(success=False, reference=reference, message="Declined by gateway")
        return PaymentInitResult(
            success=True,
            reference=reference,
            authorization_url=f"https://checkout.invalid/{reference}",
            access_code="access_123",
        )

    async def verify_payment(self, reference):
        return PaymentVerification(success=True, reference=reference, amount=Decimal("0"), status="success")

    async def initiate_transfer(self, amount, bank_code, account_number, account_name, reference, reason=None, currency="NGN"):
        if self.before_transfer is not None:
            self.before_transfer(reference)
        self.transfers.append({
            "amount": amount,
            "bank_code": bank_code,
            "account_number": account_number,
            "account_name": account_name,
            "reference": reference,
            "reason": reason,
        })
        if not self.transfer_succeeds:
            return TransferResult(
                success=False, reference=reference, status="failed", amount=Decimal(str(amount)),
                message="Insufficient balance",
            )
        return TransferResult(
            success=True, reference=reference, status="pending", amount=Decimal(str(amount)),
            transfer_code="TRF_test",
        )

    async def verify_transfer(self, reference):
        self.verified_transfers.append(reference)
        return TransferResult(success=True, reference=reference, status="success", amount=Decimal("0"))

    async def list_banks(self):
        return list(self.banks)


@pytest.fixture
def cache_invalidator():
    return RecordingCacheInvalidator()


@pytest.fixture
def fake_gateway():
    return FakePaymentGateway()


@pytest.fixture
def reconciliation_service(loan_repository, repayment_repository, cache_invalidator):
    return WebhookReconciliationService(loan_repository, repayment_repository, cache_invalidator)


# ============================================================================
# FACTORIES
# ============================================================================

@pytest.fixture
def borrower(session_factory):
    with session_factory.begin() as session:
        borrower = Borrower(
            id=str(uuid.uuid4()),
            first_name="Ada",
            last_name="Obi",
            phone="08031234567",
            email="ada.obi@example.com",
        )
        session.add(borrower)
    return borrower


@pytest.fixture
def make_loan(loan_repository, borrower):
    def _make_loan(
        status: LoanStatus = LoanStatus.APPROVED,
        amount: str = "100000.00",
        total_amount: str = "115000.00",
        disbursement_reference: Optional[str] = None,
        next_payment_date: Optional[datetime] = None,
    ):
        return loan_repository.create(
            borrower_id=borrower.id,
            amount=Decimal(amount),
            interest_rate=Decimal("15.00"),
            term_in_months=6,
            monthly_payment=(Decimal(total_amount) / 6).quantize(Decimal("0.01")),
            total_amount=Decimal(total_amount),
            total_interest=Decimal(total_amount) - Decimal(amount),
            status=status,
            disbursement_reference=disbursement_reference,
            next_payment_date=next_payment_date,
        )
    return _make_loan


@pytest.fixture
def make_repayment(repayment_repository):
    def _make_repayment(
        loan,
        amount: str = "20000.00",
        status: RepaymentStatus = RepaymentStatus.PENDING,
        transaction_reference: Optional[str] = None,
    ):
        return repayment_repository.create(
            loan_id=loan.id,
            borrower_id=loan.borrower_id,
            amount=Decimal(amount),
            principal_amount=Decimal(amount),
            interest_amount=Decimal("0.00"),
            method=PaymentMethod.PAYSTACK,
            status=status,
            transaction_reference=transaction_reference or f"RPY_{uuid.uuid4().hex[:12].upper()}",
            due_date=datetime.now(timezone.utc),
        )
    return _make_repayment


# ============================================================================
# CONFIG
# ============================================================================

@pytest.fixture
def webhook_secrets():
    """Configured provider secrets with fail-closed policy"""
    with patch.object(Config, "PAYSTACK_SECRET_KEY", PAYSTACK_TEST_SECRET), \
            patch.object(Config, "FLUTTERWAVE_WEBHOOK_SECRET", FLUTTERWAVE_TEST_SECRET), \
            patch.object(Config, "WEBHOOK_FAIL_OPEN_WITHOUT_SECRET", False):
        yield


@pytest.fixture
def admin_token():
    with patch.object(Config, "ADMIN_API_TOKEN", ADMIN_TEST_TOKEN):
        yield ADMIN_TEST_TOKEN


@pytest.fixture
def app(session_factory, fake_gateway, cache_invalidator, loan_repository, repayment_repository):
    from webhook_server import create_app

    return create_app(
        session_factory=session_factory,
        gateway=fake_gateway,
        cache_invalidator=cache_invalidator,
        loan_repository=loan_repository,
        repayment_repository=repayment_repository,
    )


@pytest.fixture
def client(app):
    return TestClient(app)
