"""
Webhook Reconciliation Service
==============================

Applies verified, classified provider events to the loan and repayment ledger.

Every transition is a single guarded write (``WHERE status IN (allowed)``), so
redelivered or concurrent duplicate events are no-ops. When the guard rejects
a write the current record is re-read only to report why:

- ALREADY_APPLIED: record already sits in the target status (duplicate delivery)
- STALE: record moved somewhere the event may no longer touch (out-of-order delivery)

A completed repayment is booked against its loan exactly once: the booking
claims the repayment and writes the loan in one transaction. A redelivery that
finds the repayment COMPLETED but unbooked finishes the booking, so a failed
loan write is recovered by the provider retrying.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, Optional

from sqlalchemy.exc import SQLAlchemyError

from models import Loan, LoanStatus, Repayment, RepaymentStatus
from repositories.loan_repository import LoanRepository
from repositories.repayment_repository import RepaymentRepository
from services.errors import OptimisticLockingError
from services.webhook_events import WebhookEvent, WebhookEventKind
from utils.cache_invalidation import CacheInvalidator
from utils.datetime_helpers import add_months, ensure_aware_utc, utc_now
from utils.helpers import DISBURSEMENT_PREFIX, REPAYMENT_PREFIX, is_payment_reference, to_decimal

logger = logging.getLogger(__name__)


class ReconciliationOutcome(Enum):
    """What a delivery did to the ledger"""
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    STALE = "stale"
    NOT_FOUND = "not_found"
    IGNORED = "ignored"


@dataclass(frozen=True)
class TransitionRule:
    """Target status and the statuses the event may move a record out of"""
    target: Enum
    allowed: FrozenSet[Enum]


LOAN_EVENT_RULES: Dict[WebhookEventKind, TransitionRule] = {
    WebhookEventKind.TRANSFER_SUCCESS: TransitionRule(
        target=LoanStatus.DISBURSED,
        allowed=frozenset({LoanStatus.APPROVED}),
    ),
    WebhookEventKind.TRANSFER_FAILED: TransitionRule(
        target=LoanStatus.APPROVED,
        allowed=frozenset({LoanStatus.APPROVED, LoanStatus.DISBURSED}),
    ),
    WebhookEventKind.TRANSFER_REVERSED: TransitionRule(
        target=LoanStatus.CANCELLED,
        allowed=frozenset({LoanStatus.APPROVED, LoanStatus.DISBURSED, LoanStatus.ACTIVE}),
    ),
}

REPAYMENT_EVENT_RULES: Dict[WebhookEventKind, TransitionRule] = {
    WebhookEventKind.PAYMENT_SUCCESS: TransitionRule(
        target=RepaymentStatus.COMPLETED,
        allowed=frozenset({RepaymentStatus.PENDING, RepaymentStatus.PROCESSING, RepaymentStatus.OVERDUE}),
    ),
    WebhookEventKind.PAYMENT_FAILED: TransitionRule(
        target=RepaymentStatus.FAILED,
        allowed=frozenset({RepaymentStatus.PENDING, RepaymentStatus.PROCESSING, RepaymentStatus.OVERDUE}),
    ),
}

# Loan statuses that still accept repayment bookkeeping
REPAYABLE_LOAN_STATUSES = (LoanStatus.DISBURSED, LoanStatus.ACTIVE)

MAX_BOOKING_ATTEMPTS = 3


def _reference_origin(reference: str, prefix: str) -> str:
    return "ledger-issued format" if is_payment_reference(reference, prefix) else "foreign format"


@dataclass
class ReconciliationResult:
    """Result of reconciling one webhook delivery"""
    outcome: ReconciliationOutcome
    kind: WebhookEventKind
    reference: Optional[str] = None
    entity_id: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    loan_status: Optional[str] = None
    message: str = ""

    @property
    def applied(self) -> bool:
        return self.outcome == ReconciliationOutcome.APPLIED


class WebhookReconciliationService:
    """Drives loan/repayment state from provider webhooks"""

    def __init__(
        self,
        loan_repository: LoanRepository,
        repayment_repository: RepaymentRepository,
        cache_invalidator: CacheInvalidator,
    ):
        self.loan_repository = loan_repository
        self.repayment_repository = repayment_repository
        self.cache_invalidator = cache_invalidator

    def process_event(self, event: WebhookEvent) -> ReconciliationResult:
        """
        Reconcile one verified delivery.

        Storage errors are logged and re-raised so the provider redelivers.
        """
        if event.kind == WebhookEventKind.UNKNOWN:
            logger.info(f"ℹ️ WEBHOOK_EVENT_IGNORED: {event.provider.value} event {event.event_type!r} not handled")
            return ReconciliationResult(
                outcome=ReconciliationOutcome.IGNORED,
                kind=event.kind,
                message=f"Unhandled event type {event.event_type!r}",
            )

        if not event.reference:
            logger.warning(
                f"⚠️ WEBHOOK_REFERENCE_MISSING: {event.provider.value} {event.event_type} carried no reference"
            )
            return ReconciliationResult(
                outcome=ReconciliationOutcome.IGNORED,
                kind=event.kind,
                message="Missing reference",
            )

        try:
            if event.kind.is_transfer:
                return self.handle_transfer_event(event)
            return self.handle_payment_event(event)
        except (SQLAlchemyError, OptimisticLockingError) as e:
            logger.error(
                f"❌ RECONCILIATION_STORAGE_ERROR: {event.provider.value} {event.event_type} "
                f"ref={event.reference}: {e}",
                exc_info=True,
            )
            raise

    # ------------------------------------------------------------------
    # Transfers (loan disbursement)
    # ------------------------------------------------------------------

    def handle_transfer_event(self, event: WebhookEvent) -> ReconciliationResult:
        rule = LOAN_EVENT_RULES[event.kind]
        loan = self.loan_repository.find_by_disbursement_reference(event.reference)
        if not loan:
            logger.warning(
                f"⚠️ REFERENCE_NOT_FOUND: no loan for disbursement reference {event.reference} ({event.event_type}, "
                f"{_reference_origin(event.reference, DISBURSEMENT_PREFIX)})"
            )
            return ReconciliationResult(
                outcome=ReconciliationOutcome.NOT_FOUND,
                kind=event.kind,
                reference=event.reference,
            )

        updated = self.loan_repository.update_status(
            loan.id,
            rule.target,
            extra_fields={"disbursement_gateway_response": event.data},
            expected_statuses=rule.allowed,
        )
        if updated is None:
            return self._rejected_loan_transition(event, loan.id, rule)

        logger.info(
            f"✅ LOAN_{rule.target.value}: loan {loan.id} {loan.status} -> {updated.status} "
            f"via {event.provider.value} {event.event_type} ref={event.reference}"
        )
        self.cache_invalidator.invalidate_on_disbursement(loan.id, loan.borrower_id, event.reference)
        return ReconciliationResult(
            outcome=ReconciliationOutcome.APPLIED,
            kind=event.kind,
            reference=event.reference,
            entity_id=loan.id,
            previous_status=loan.status,
            new_status=updated.status,
            loan_status=updated.status,
        )

    def _rejected_loan_transition(
        self, event: WebhookEvent, loan_id: str, rule: TransitionRule
    ) -> ReconciliationResult:
        current = self.loan_repository.find_by_id(loan_id)
        if current is None:
            return ReconciliationResult(
                outcome=ReconciliationOutcome.NOT_FOUND, kind=event.kind, reference=event.reference
            )

        if current.status == rule.target.value:
            logger.info(
                f"🔁 WEBHOOK_DUPLICATE: loan {loan_id} already {current.status} ({event.event_type} ref={event.reference})"
            )
            outcome = ReconciliationOutcome.ALREADY_APPLIED
        else:
            logger.warning(
                f"⚠️ WEBHOOK_STALE_EVENT: {event.event_type} for loan {loan_id} ignored, loan is {current.status} "
                f"(accepts only {sorted(s.value for s in rule.allowed)})"
            )
            outcome = ReconciliationOutcome.STALE

        return ReconciliationResult(
            outcome=outcome,
            kind=event.kind,
            reference=event.reference,
            entity_id=loan_id,
            previous_status=current.status,
            new_status=current.status,
            loan_status=current.status,
        )

    # ------------------------------------------------------------------
    # Charges (repayments)
    # ------------------------------------------------------------------

    def handle_payment_event(self, event: WebhookEvent) -> ReconciliationResult:
        rule = REPAYMENT_EVENT_RULES[event.kind]
        repayment = self.repayment_repository.find_by_transaction_reference(event.reference)
        if not repayment:
            logger.warning(
                f"⚠️ REFERENCE_NOT_FOUND: no repayment for transaction reference {event.reference} ({event.event_type}, "
                f"{_reference_origin(event.reference, REPAYMENT_PREFIX)})"
            )
            return ReconciliationResult(
                outcome=ReconciliationOutcome.NOT_FOUND,
                kind=event.kind,
                reference=event.reference,
            )

        updated = self.repayment_repository.update_status(
            repayment.id,
            rule.target,
            extra_fields={"gateway_response": event.data},
            expected_statuses=rule.allowed,
        )
        if updated is None:
            result = self._rejected_repayment_transition(event, repayment.id, rule)
            if result.outcome == ReconciliationOutcome.ALREADY_APPLIED and rule.target == RepaymentStatus.COMPLETED:
                self._resume_unbooked_repayment(event, repayment.id, result)
            return result

        logger.info(
            f"✅ REPAYMENT_{rule.target.value}: repayment {repayment.id} {repayment.status} -> {updated.status} "
            f"amount={updated.amount} ref={event.reference}"
        )

        loan_status = None
        if rule.target == RepaymentStatus.COMPLETED:
            loan = self.update_loan_after_payment(updated)
            loan_status = loan.status if loan else None

        self.cache_invalidator.invalidate_on_repayment(updated.loan_id, updated.borrower_id, event.reference)
        return ReconciliationResult(
            outcome=ReconciliationOutcome.APPLIED,
            kind=event.kind,
            reference=event.reference,
            entity_id=repayment.id,
            previous_status=repayment.status,
            new_status=updated.status,
            loan_status=loan_status,
        )

    def _rejected_repayment_transition(
        self, event: WebhookEvent, repayment_id: str, rule: TransitionRule
    ) -> ReconciliationResult:
        current = self.repayment_repository.find_by_id(repayment_id)
        if current is None:
            return ReconciliationResult(
                outcome=ReconciliationOutcome.NOT_FOUND, kind=event.kind, reference=event.reference
            )

        if current.status == rule.target.value:
            logger.info(
                f"🔁 WEBHOOK_DUPLICATE: repayment {repayment_id} already {current.status} "
                f"({event.event_type} ref={event.reference})"
            )
            outcome = ReconciliationOutcome.ALREADY_APPLIED
        else:
            logger.warning(
                f"⚠️ WEBHOOK_STALE_EVENT: {event.event_type} for repayment {repayment_id} ignored, "
                f"repayment is {current.status}"
            )
            outcome = ReconciliationOutcome.STALE

        return ReconciliationResult(
            outcome=outcome,
            kind=event.kind,
            reference=event.reference,
            entity_id=repayment_id,
            previous_status=current.status,
            new_status=current.status,
        )

    def _resume_unbooked_repayment(
        self, event: WebhookEvent, repayment_id: str, result: ReconciliationResult
    ) -> None:
        """Finish a booking an earlier delivery started but failed to write"""
        repayment = self.repayment_repository.find_by_id(repayment_id)
        if repayment is None or repayment.loan_booked_at is not None:
            return

        logger.warning(
            f"🔁 REPAYMENT_BOOKING_RESUMED: repayment {repayment_id} completed but never booked "
            f"against loan {repayment.loan_id} (ref={event.reference})"
        )
        loan = self.update_loan_after_payment(repayment)
        result.loan_status = loan.status if loan else None
        self.cache_invalidator.invalidate_on_repayment(repayment.loan_id, repayment.borrower_id, event.reference)

    # ------------------------------------------------------------------
    # Loan completion
    # ------------------------------------------------------------------

    def update_loan_after_payment(self, repayment: Repayment) -> Optional[Loan]:
        """
        Book a completed repayment against its loan, exactly once.

        Once completed repayments cover the principal the loan is COMPLETED;
        otherwise the next payment date moves one month on and a DISBURSED
        loan becomes ACTIVE in the same write. The write is compare-and-set on
        the loan version, so a concurrent booking forces a re-read instead of
        both advancing from the same schedule.
        """
        for attempt in range(1, MAX_BOOKING_ATTEMPTS + 1):
            loan = self.loan_repository.find_by_id(repayment.loan_id)
            if not loan:
                logger.warning(f"⚠️ LOAN_NOT_FOUND: repayment {repayment.id} points at missing loan {repayment.loan_id}")
                return None

            if loan.status not in {s.value for s in REPAYABLE_LOAN_STATUSES}:
                logger.warning(
                    f"⚠️ LOAN_NOT_REPAYABLE: loan {loan.id} is {loan.status}, repayment {repayment.id} recorded without "
                    f"loan update"
                )
                return loan

            totals = self.repayment_repository.get_total_completed_by_loan_id(loan.id)
            principal = to_decimal(loan.amount)
            repayable_total = to_decimal(loan.total_amount) or principal
            outstanding = max(repayable_total - totals.total_amount, Decimal("0"))

            if totals.total_amount >= principal:
                values = {
                    "status": LoanStatus.COMPLETED.value,
                    "outstanding_balance": outstanding,
                    "next_payment_date": None,
                }
                expected_statuses = REPAYABLE_LOAN_STATUSES
                next_payment_date = None
            else:
                next_payment_date = add_months(ensure_aware_utc(loan.next_payment_date) or utc_now(), 1)
                values = {"next_payment_date": next_payment_date, "outstanding_balance": outstanding}
                if loan.status == LoanStatus.DISBURSED.value:
                    values["status"] = LoanStatus.ACTIVE.value
                expected_statuses = [LoanStatus(loan.status)]

            try:
                booked = self.loan_repository.book_repayment(
                    loan.id, repayment.id, values, expected_statuses, expected_version=loan.version
                )
            except OptimisticLockingError:
                logger.info(
                    f"🔄 LOAN_BOOKING_RETRY: loan {loan.id} repayment {repayment.id} "
                    f"attempt {attempt}/{MAX_BOOKING_ATTEMPTS}"
                )
                continue

            if booked is None:
                return self.loan_repository.find_by_id(loan.id)

            if booked.status == LoanStatus.COMPLETED.value:
                logger.info(
                    f"🎉 LOAN_COMPLETED: loan {loan.id} repaid {totals.total_amount} over "
                    f"{totals.completed_count} repayments"
                )
            else:
                logger.info(
                    f"📅 LOAN_SCHEDULE_ADVANCED: loan {loan.id} {booked.status} next payment "
                    f"{next_payment_date.date().isoformat()} outstanding={outstanding}"
                )
            return booked

        logger.error(
            f"❌ LOAN_BOOKING_CONFLICT: loan {repayment.loan_id} repayment {repayment.id} still contended "
            f"after {MAX_BOOKING_ATTEMPTS} attempts"
        )
        raise OptimisticLockingError(repayment.loan_id, loan.version)
