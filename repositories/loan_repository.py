"""
Loan Ledger Repository
======================

Persistence boundary for loans. Every method runs in its own short
transaction. Status changes are a single guarded statement:

    UPDATE loans SET status = :new, ... WHERE id = :id AND status IN (:expected)

so two concurrent deliveries of the same webhook can never both apply a
transition. Zero rows updated means the guard rejected the write and the
caller gets ``None`` back.

Every write also bumps ``version``. Repayment bookings, which derive the next
schedule from values read earlier, compare-and-set on it.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from models import Borrower, Loan, LoanStatus, Repayment, RepaymentStatus
from services.errors import OptimisticLockingError
from utils.datetime_helpers import utc_now

logger = logging.getLogger(__name__)


def _status_values(statuses: Iterable) -> List[str]:
    return [s.value if isinstance(s, LoanStatus) else str(s) for s in statuses]


class LoanRepository:
    """Loan lookups and atomic status transitions"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def find_by_id(self, loan_id: str) -> Optional[Loan]:
        with self.session_factory() as session:
            return session.get(Loan, loan_id)

    def find_by_disbursement_reference(self, reference: str) -> Optional[Loan]:
        if not reference:
            return None
        with self.session_factory() as session:
            stmt = select(Loan).where(Loan.disbursement_reference == reference)
            return session.execute(stmt).scalar_one_or_none()

    def find_borrower(self, borrower_id: str) -> Optional[Borrower]:
        with self.session_factory() as session:
            return session.get(Borrower, borrower_id)

    def find_by_borrower_id(self, borrower_id: str) -> List[Loan]:
        with self.session_factory() as session:
            stmt = (
                select(Loan)
                .where(Loan.borrower_id == borrower_id)
                .order_by(Loan.created_at.desc())
            )
            return list(session.execute(stmt).scalars().all())

    def create(self, **fields) -> Loan:
        """Insert a loan; ``status`` may be given as a LoanStatus"""
        status = fields.pop("status", LoanStatus.PENDING)
        loan = Loan(status=status.value if isinstance(status, LoanStatus) else status, **fields)
        if loan.outstanding_balance is None and loan.total_amount is not None:
            loan.outstanding_balance = loan.total_amount

        with self.session_factory.begin() as session:
            session.add(loan)
            session.flush()
            session.refresh(loan)

        logger.info(f"📝 LOAN_CREATED: {loan.id} amount={loan.amount} status={loan.status}")
        return loan

    def update_status(
        self,
        loan_id: str,
        new_status: LoanStatus,
        extra_fields: Optional[Dict[str, Any]] = None,
        expected_statuses: Optional[Iterable[LoanStatus]] = None,
    ) -> Optional[Loan]:
        """
        Move a loan to ``new_status`` if its current status is one of
        ``expected_statuses`` (any status when omitted).

        Sets ``updated_at``; ``approved_at`` the first time the loan becomes
        APPROVED; ``disbursed_at`` on DISBURSED. ``extra_fields`` are written in
        the same statement and win over the automatic timestamps.

        Returns the refreshed loan, or None when no row matched.
        """
        now = utc_now()
        values: Dict[str, Any] = {"status": new_status.value, "updated_at": now}
        if new_status == LoanStatus.APPROVED:
            values["approved_at"] = func.coalesce(Loan.approved_at, now)
        elif new_status == LoanStatus.DISBURSED:
            values["disbursed_at"] = now
        if extra_fields:
            values.update(extra_fields)

        return self._guarded_update(loan_id, values, expected_statuses)

    def update(
        self,
        loan_id: str,
        fields: Dict[str, Any],
        expected_statuses: Optional[Iterable[LoanStatus]] = None,
    ) -> Optional[Loan]:
        """Partial update of non-status fields"""
        values = dict(fields)
        values["updated_at"] = utc_now()
        return self._guarded_update(loan_id, values, expected_statuses)

    def assign_disbursement_reference(self, loan_id: str, reference: str) -> Optional[Loan]:
        """
        Record the correlation reference for a disbursement attempt.

        Only an APPROVED loan accepts a reference; a retry after a failed
        transfer overwrites the previous one.
        """
        return self._guarded_update(
            loan_id,
            {"disbursement_reference": reference, "updated_at": utc_now()},
            [LoanStatus.APPROVED],
        )

    def book_repayment(
        self,
        loan_id: str,
        repayment_id: str,
        values: Dict[str, Any],
        expected_statuses: Iterable[LoanStatus],
        expected_version: int,
    ) -> Optional[Loan]:
        """
        Apply a completed repayment to its loan in one transaction.

        The repayment is claimed (``loan_booked_at`` set) and the loan written
        with ``values`` only if it still has ``expected_version`` and one of
        ``expected_statuses``. Either both land or neither does.

        Returns the refreshed loan, or None when the repayment was already
        booked. Raises OptimisticLockingError when the loan moved on since it
        was read; the caller re-reads and retries.
        """
        now = utc_now()
        claim = (
            update(Repayment)
            .where(
                Repayment.id == repayment_id,
                Repayment.status == RepaymentStatus.COMPLETED.value,
                Repayment.loan_booked_at.is_(None),
            )
            .values(loan_booked_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        write = (
            update(Loan)
            .where(
                Loan.id == loan_id,
                Loan.version == expected_version,
                Loan.status.in_(_status_values(expected_statuses)),
            )
            .values(version=Loan.version + 1, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )

        with self.session_factory() as session:
            try:
                if session.execute(claim).rowcount == 0:
                    session.rollback()
                    logger.info(f"🔁 REPAYMENT_ALREADY_BOOKED: repayment {repayment_id} on loan {loan_id}")
                    return None

                if session.execute(write).rowcount == 0:
                    session.rollback()
                    logger.warning(
                        f"🔒 LOAN_VERSION_CONFLICT: loan {loan_id} expected_version={expected_version} "
                        f"(booking repayment {repayment_id})"
                    )
                    raise OptimisticLockingError(loan_id, expected_version)

                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"❌ REPAYMENT_BOOKING_FAILED: loan {loan_id} repayment {repayment_id}: {e}")
                raise

            return session.get(Loan, loan_id, populate_existing=True)

    def _guarded_update(
        self,
        loan_id: str,
        values: Dict[str, Any],
        expected_statuses: Optional[Iterable[LoanStatus]],
    ) -> Optional[Loan]:
        stmt = update(Loan).where(Loan.id == loan_id)
        if expected_statuses is not None:
            stmt = stmt.where(Loan.status.in_(_status_values(expected_statuses)))
        stmt = stmt.values(version=Loan.version + 1, **values).execution_options(synchronize_session=False)

        try:
            with self.session_factory.begin() as session:
                result = session.execute(stmt)
                if result.rowcount == 0:
                    logger.debug(f"🔒 LOAN_UPDATE_SKIPPED: {loan_id} guard={expected_statuses}")
                    return None
                return session.get(Loan, loan_id, populate_existing=True)
        except SQLAlchemyError as e:
            logger.error(f"❌ LOAN_UPDATE_FAILED: {loan_id}: {e}")
            raise
