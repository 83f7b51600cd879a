"""
Repayment Ledger Repository
Lookups by transaction reference, guarded status transitions and per-loan totals
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from models import Repayment, RepaymentStatus, PaymentMethod
from utils.datetime_helpers import utc_now
from utils.helpers import to_decimal

logger = logging.getLogger(__name__)


@dataclass
class RepaymentTotals:
    """Sum of COMPLETED repayments for one loan"""

    total_amount: Decimal
    total_principal: Decimal
    total_interest: Decimal
    completed_count: int


class RepaymentRepository:
    """Repayment lookups and atomic status transitions"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def find_by_id(self, repayment_id: str) -> Optional[Repayment]:
        with self.session_factory() as session:
            return session.get(Repayment, repayment_id)

    def find_by_transaction_reference(self, reference: str) -> Optional[Repayment]:
        if not reference:
            return None
        with self.session_factory() as session:
            stmt = select(Repayment).where(Repayment.transaction_reference == reference)
            return session.execute(stmt).scalar_one_or_none()

    def find_by_loan_id(self, loan_id: str) -> List[Repayment]:
        with self.session_factory() as session:
            stmt = (
                select(Repayment)
                .where(Repayment.loan_id == loan_id)
                .order_by(Repayment.created_at)
            )
            return list(session.execute(stmt).scalars().all())

    def create(self, **fields) -> Repayment:
        status = fields.pop("status", RepaymentStatus.PENDING)
        method = fields.pop("method", PaymentMethod.PAYSTACK)
        repayment = Repayment(
            status=status.value if isinstance(status, RepaymentStatus) else status,
            method=method.value if isinstance(method, PaymentMethod) else method,
            **fields,
        )
        with self.session_factory.begin() as session:
            session.add(repayment)
            session.flush()
            session.refresh(repayment)

        logger.info(
            f"📝 REPAYMENT_CREATED: {repayment.id} loan={repayment.loan_id} "
            f"amount={repayment.amount} ref={repayment.transaction_reference}"
        )
        return repayment

    def update_status(
        self,
        repayment_id: str,
        new_status: RepaymentStatus,
        extra_fields: Optional[Dict[str, Any]] = None,
        expected_statuses: Optional[Iterable[RepaymentStatus]] = None,
    ) -> Optional[Repayment]:
        """
        Guarded status change; sets ``paid_at`` on COMPLETED.

        Returns the refreshed repayment, or None when the guard rejected it.
        """
        now = utc_now()
        values: Dict[str, Any] = {"status": new_status.value, "updated_at": now}
        if new_status == RepaymentStatus.COMPLETED:
            values["paid_at"] = now
        if extra_fields:
            values.update(extra_fields)

        stmt = update(Repayment).where(Repayment.id == repayment_id)
        if expected_statuses is not None:
            stmt = stmt.where(Repayment.status.in_([s.value for s in expected_statuses]))
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        try:
            with self.session_factory.begin() as session:
                result = session.execute(stmt)
                if result.rowcount == 0:
                    logger.debug(f"🔒 REPAYMENT_UPDATE_SKIPPED: {repayment_id} guard={expected_statuses}")
                    return None
                return session.get(Repayment, repayment_id, populate_existing=True)
        except SQLAlchemyError as e:
            logger.error(f"❌ REPAYMENT_UPDATE_FAILED: {repayment_id}: {e}")
            raise

    def get_total_completed_by_loan_id(self, loan_id: str) -> RepaymentTotals:
        """Aggregate over COMPLETED repayments only"""
        stmt = select(
            func.coalesce(func.sum(Repayment.amount), 0),
            func.coalesce(func.sum(Repayment.principal_amount), 0),
            func.coalesce(func.sum(Repayment.interest_amount), 0),
            func.count(Repayment.id),
        ).where(
            Repayment.loan_id == loan_id,
            Repayment.status == RepaymentStatus.COMPLETED.value,
        )
        with self.session_factory() as session:
            total_amount, total_principal, total_interest, count = session.execute(stmt).one()

        return RepaymentTotals(
            total_amount=to_decimal(total_amount),
            total_principal=to_decimal(total_principal),
            total_interest=to_decimal(total_interest),
            completed_count=int(count or 0),
        )
