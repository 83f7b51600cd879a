"""
FastAPI Webhook Server for the Lending Ledger
Receives Paystack / Flutterwave webhooks and serves the back-office loan API
"""
from contextlib import asynccontextmanager
import logging
import os
import time
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from config import Config
from caching.simple_cache import SimpleCache
from handlers.loan_admin import router as loan_admin_router
from handlers.payment_webhooks import router as payment_webhook_router
from repositories.loan_repository import LoanRepository
from repositories.repayment_repository import RepaymentRepository
from services.bank_service import BankService
from services.disbursement_service import LoanDisbursementService
from services.errors import GatewayConfigurationError
from services.loan_service import LoanService
from services.payment_gateway import BasePaymentGateway, create_payment_gateway
from services.repayment_service import RepaymentService
from services.webhook_reconciliation_service import WebhookReconciliationService
from utils.cache_invalidation import CacheInvalidator

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_UNSET = object()


def configure_logging(level: Optional[str] = None) -> None:
    """Root logging setup used by the server entry point"""
    logging.basicConfig(
        format=LOG_FORMAT,
        level=getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO),
    )


def _default_gateway() -> Optional[BasePaymentGateway]:
    try:
        return create_payment_gateway()
    except GatewayConfigurationError as e:
        logger.warning(f"⚠️ PAYMENT_GATEWAY_UNAVAILABLE: {e} - disbursements and repayments disabled")
        return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: verify the schema and log the effective configuration
    Shutdown: dispose of the connection pool
    """
    logger.info(f"🔧 Lending ledger worker {os.getpid()} starting...")
    Config.log_configuration()

    engine = app.state.engine
    if engine is not None:
        from database import check_connection, create_tables
        if check_connection(engine):
            create_tables(engine)

    app.state.startup_timestamp = time.time()
    yield

    logger.info(f"🔄 Lending ledger worker {os.getpid()} shutting down...")
    if engine is not None:
        engine.dispose()


def create_app(
    session_factory: Optional[sessionmaker] = None,
    engine: Optional[Engine] = None,
    gateway=_UNSET,
    cache_invalidator: Optional[CacheInvalidator] = None,
    loan_repository: Optional[LoanRepository] = None,
    repayment_repository: Optional[RepaymentRepository] = None,
    reconciliation_service: Optional[WebhookReconciliationService] = None,
) -> FastAPI:
    """
    Build the application with explicitly wired collaborators.

    Anything not passed in is constructed from ``Config`` and ``database``.
    """
    if session_factory is None:
        from database import SessionLocal, engine as default_engine
        session_factory = SessionLocal
        engine = engine or default_engine

    if gateway is _UNSET:
        gateway = _default_gateway()

    cache_invalidator = cache_invalidator or CacheInvalidator(SimpleCache(default_ttl=Config.CACHE_TTL_SECONDS))
    loan_repository = loan_repository or LoanRepository(session_factory)
    repayment_repository = repayment_repository or RepaymentRepository(session_factory)
    bank_service = BankService(gateway)

    app = FastAPI(
        title="Lending Ledger",
        description="Loan ledger with webhook-driven payment reconciliation",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.startup_timestamp = None
    app.state.reconciliation_service = reconciliation_service or WebhookReconciliationService(
        loan_repository, repayment_repository, cache_invalidator
    )
    app.state.bank_service = bank_service
    app.state.disbursement_service = LoanDisbursementService(
        loan_repository, gateway, cache_invalidator, bank_service
    )
    app.state.repayment_service = RepaymentService(
        loan_repository, repayment_repository, gateway, cache_invalidator
    )
    app.state.loan_service = LoanService(loan_repository, repayment_repository, cache_invalidator, gateway)

    app.include_router(payment_webhook_router)
    app.include_router(loan_admin_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        started = app.state.startup_timestamp
        return {
            "status": "ok",
            "service": "lending-ledger",
            "environment": Config.CURRENT_ENVIRONMENT,
            "uptime_seconds": round(time.time() - started, 2) if started else None,
        }

    return app


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    uvicorn.run(create_app(), host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
