"""
Reconciliation engine tests: state transitions driven by classified webhook events.

Covers duplicate delivery, out-of-order delivery, unknown references and the
loan completion step that follows a completed repayment.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from models import LoanStatus, RepaymentStatus
from services.errors import OptimisticLockingError
from services.webhook_events import WebhookProvider, parse_webhook_event
from services.webhook_reconciliation_service import (
    LOAN_EVENT_RULES,
    MAX_BOOKING_ATTEMPTS,
    REPAYMENT_EVENT_RULES,
    ReconciliationOutcome,
)
from utils.helpers import generate_repayment_reference
from utils.loan_state_validator import LoanStateValidator, RepaymentStateValidator


def paystack_event(event_type, reference, **data):
    return parse_webhook_event(
        WebhookProvider.PAYSTACK,
        {"event": event_type, "data": {"reference": reference, **data}},
    )


def flutterwave_event(event_type, **data):
    return parse_webhook_event(WebhookProvider.FLUTTERWAVE, {"event": event_type, "data": data})


def as_utc(dt):
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class TestTransferEvents:

    def test_transfer_success_marks_loan_disbursed(self, reconciliation_service, make_loan, loan_repository, cache_invalidator):
        loan = make_loan(status=LoanStatus.APPROVED, disbursement_reference="DISB_1_ABCDEF")

        result = reconciliation_service.process_event(
            paystack_event("transfer.success", "DISB_1_ABCDEF", status="success")
        )

        assert result.outcome == ReconciliationOutcome.APPLIED
        stored = loan_repository.find_by_id(loan.id)
        assert stored.status == LoanStatus.DISBURSED.value
        assert stored.disbursed_at is not None
        assert stored.disbursement_gateway_response["status"] == "success"
        assert loan.id in cache_invalidator.loan_ids()

    def test_duplicate_transfer_success_is_a_no_op(self, reconciliation_service, make_loan, loan_repository):
        loan = make_loan(status=LoanStatus.APPROVED, disbursement_reference="DISB_2_ABCDEF")
        event = paystack_event("transfer.success", "DISB_2_ABCDEF")

        first = reconciliation_service.process_event(event)
        after_first = loan_repository.find_by_id(loan.id)

        second = reconciliation_service.process_event(event)
        after_second = loan_repository.find_by_id(loan.id)

        assert first.outcome == ReconciliationOutcome.APPLIED
        assert second.outcome == ReconciliationOutcome.ALREADY_APPLIED
        assert after_second.status == LoanStatus.DISBURSED.value
        assert after_second.disbursed_at == after_first.disbursed_at
        assert after_second.updated_at == after_first.updated_at

    def test_unknown_disbursement_reference_changes_nothing(self, reconciliation_service, make_loan, loan_repository, cache_invalidator):
        loan = make_loan(status=LoanStatus.APPROVED, disbursement_reference="DISB_3_ABCDEF")

        result = reconciliation_service.process_event(paystack_event("transfer.success", "DISB_UNKNOWN"))

        assert result.outcome == ReconciliationOutcome.NOT_FOUND
        assert loan_repository.find_by_id(loan.id).status == LoanStatus.APPROVED.value
        assert cache_invalidator.invalidated == []

    def test_transfer_failed_reverts_to_approved(self, reconciliation_service, make_loan, loan_repository):
        loan = make_loan(status=LoanStatus.APPROVED, disbursement_reference="DISB_4_ABCDEF")

        result = reconciliation_service.process_event(
            paystack_event("transfer.failed", "DISB_4_ABCDEF", reason="Account closed")
        )

        stored = loan_repository.find_by_id(loan.id)
        assert result.outcome == ReconciliationOutcome.APPLIED
        assert stored.status == LoanStatus.APPROVED.value
        assert stored.status not in (LoanStatus.CANCELLED.value, LoanStatus.REJECTED.value)
        assert stored.disbursement_gateway_response["reason"] == "Account closed"

    def test_transfer_failed_after_optimistic_disbursement_reverts(self, reconciliation_service, make_loan, loan_repository):
        loan = make_loan(status=LoanStatus.DISBURSED, disbursement_reference="DISB_5_ABCDEF")

        reconciliation_service.process_event(paystack_event("transfer.failed", "DISB_5_ABCDEF"))

        assert loan_repository.find_by_id(loan.id).status == LoanStatus.APPROVED.value

    @pytest.mark.parametrize("status", [LoanStatus.ACTIVE, LoanStatus.COMPLETED])
    def test_transfer_failed_after_loan_progressed_is_stale(self, reconciliation_service, make_loan, loan_repository, status):
        loan = make_loan(status=status, disbursement_reference=f"DISB_6_{status.value[:6]}")

        result = reconciliation_service.process_event(
            paystack_event("transfer.failed", f"DISB_6_{status.value[:6]}")
        )

        assert result.outcome == ReconciliationOutcome.STALE
        assert loan_repository.find_by_id(loan.id).status == status.value

    @pytest.mark.parametrize("status", [LoanStatus.APPROVED, LoanStatus.DISBURSED, LoanStatus.ACTIVE])
    def test_transfer_reversed_cancels_from_reachable_states(self, reconciliation_service, make_loan, loan_repository, status):
        reference = f"DISB_7_{status.value[:6]}"
        loan = make_loan(status=status, disbursement_reference=reference)

        result = reconciliation_service.process_event(paystack_event("transfer.reversed", reference))

        assert result.outcome == ReconciliationOutcome.APPLIED
        assert loan_repository.find_by_id(loan.id).status == LoanStatus.CANCELLED.value

    def test_transfer_success_after_reversal_does_not_resurrect(self, reconciliation_service, make_loan, loan_repository):
        loan = make_loan(status=LoanStatus.APPROVED, disbursement_reference="DISB_8_ABCDEF")
        reconciliation_service.process_event(paystack_event("transfer.reversed", "DISB_8_ABCDEF"))

        result = reconciliation_service.process_event(paystack_event("transfer.success", "DISB_8_ABCDEF"))

        assert result.outcome == ReconciliationOutcome.STALE
        assert loan_repository.find_by_id(loan.id).status == LoanStatus.CANCELLED.value

    def test_flutterwave_transfer_completed_uses_reference(self, reconciliation_service, make_loan, loan_repository):
        loan = make_loan(status=LoanStatus.APPROVED, disbursement_reference="DISB_9_ABCDEF")

        result = reconciliation_service.process_event(
            flutterwave_event("transfer.completed", reference="DISB_9_ABCDEF", status="SUCCESSFUL")
        )

        assert result.outcome == ReconciliationOutcome.APPLIED
        assert loan_repository.find_by_id(loan.id).status == LoanStatus.DISBURSED.value


class TestPaymentEvents:

    def test_charge_success_completes_repayment(self, reconciliation_service, make_loan, make_repayment, repayment_repository):
        loan = make_loan(status=LoanStatus.ACTIVE, amount="50000.00", total_amount="57500.00")
        repayment = make_repayment(loan, amount="10000.00", transaction_reference="RPY_1_ABCDEF")

        result = reconciliation_service.process_event(
            paystack_event("charge.success", "RPY_1_ABCDEF", amount=1000000)
        )

        stored = repayment_repository.find_by_id(repayment.id)
        assert result.outcome == ReconciliationOutcome.APPLIED
        assert stored.status == RepaymentStatus.COMPLETED.value
        assert stored.paid_at is not None
        assert stored.gateway_response["amount"] == 1000000

    def test_charge_failed_marks_repayment_failed(self, reconciliation_service, make_loan, make_repayment, repayment_repository, loan_repository):
        loan = make_loan(status=LoanStatus.ACTIVE)
        repayment = make_repayment(loan, transaction_reference="RPY_2_ABCDEF")

        result = reconciliation_service.process_event(paystack_event("charge.failed", "RPY_2_ABCDEF"))

        assert result.outcome == ReconciliationOutcome.APPLIED
        assert repayment_repository.find_by_id(repayment.id).status == RepaymentStatus.FAILED.value
        assert loan_repository.find_by_id(loan.id).next_payment_date is None

    def test_duplicate_charge_success_does_not_double_count(
        self, reconciliation_service, make_loan, make_repayment, repayment_repository, loan_repository
    ):
        start = datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc)
        loan = make_loan(status=LoanStatus.ACTIVE, amount="50000.00", total_amount="57500.00", next_payment_date=start)
        make_repayment(loan, amount="30000.00", transaction_reference="RPY_3_ABCDEF")
        event = paystack_event("charge.success", "RPY_3_ABCDEF")

        first = reconciliation_service.process_event(event)
        second = reconciliation_service.process_event(event)

        totals = repayment_repository.get_total_completed_by_loan_id(loan.id)
        stored = loan_repository.find_by_id(loan.id)
        assert first.outcome == ReconciliationOutcome.APPLIED
        assert second.outcome == ReconciliationOutcome.ALREADY_APPLIED
        assert totals.total_amount == Decimal("30000.00")
        assert totals.completed_count == 1
        # advanced exactly once
        assert as_utc(stored.next_payment_date) == datetime(2024, 4, 15, 9, 0, tzinfo=timezone.utc)

    def test_charge_failed_after_completion_is_stale(self, reconciliation_service, make_loan, make_repayment, repayment_repository):
        loan = make_loan(status=LoanStatus.ACTIVE)
        repayment = make_repayment(loan, transaction_reference="RPY_4_ABCDEF")
        reconciliation_service.process_event(paystack_event("charge.success", "RPY_4_ABCDEF"))

        result = reconciliation_service.process_event(paystack_event("charge.failed", "RPY_4_ABCDEF"))

        assert result.outcome == ReconciliationOutcome.STALE
        assert repayment_repository.find_by_id(repayment.id).status == RepaymentStatus.COMPLETED.value

    def test_unknown_transaction_reference_is_not_found(self, reconciliation_service):
        result = reconciliation_service.process_event(paystack_event("charge.success", "RPY_MISSING"))

        assert result.outcome == ReconciliationOutcome.NOT_FOUND

    @pytest.mark.parametrize("reference,origin", [
        (None, "ledger-issued format"),
        ("ORDER-7781", "foreign format"),
    ])
    def test_not_found_log_reports_reference_origin(self, reconciliation_service, caplog, reference, origin):
        reference = reference or generate_repayment_reference()

        with caplog.at_level(logging.WARNING):
            reconciliation_service.process_event(paystack_event("charge.success", reference))

        assert f"{reference} (charge.success, {origin})" in caplog.text

    def test_flutterwave_tx_ref_and_paystack_reference_resolve_the_same_way(
        self, reconciliation_service, make_loan, make_repayment, repayment_repository
    ):
        loan = make_loan(status=LoanStatus.ACTIVE, amount="90000.00", total_amount="100000.00")
        paystack_repayment = make_repayment(loan, amount="1000.00", transaction_reference="RPY_5_PAYSTK")
        flutterwave_repayment = make_repayment(loan, amount="1000.00", transaction_reference="RPY_5_FLWAVE")

        reconciliation_service.process_event(paystack_event("charge.success", "RPY_5_PAYSTK"))
        reconciliation_service.process_event(
            flutterwave_event("charge.completed", tx_ref="RPY_5_FLWAVE", reference="FLW-MOCK-123", status="successful")
        )

        assert repayment_repository.find_by_id(paystack_repayment.id).status == RepaymentStatus.COMPLETED.value
        assert repayment_repository.find_by_id(flutterwave_repayment.id).status == RepaymentStatus.COMPLETED.value


class TestLoanCompletion:

    def test_repayments_covering_principal_complete_the_loan(
        self, reconciliation_service, make_loan, make_repayment, loan_repository
    ):
        loan = make_loan(status=LoanStatus.ACTIVE, amount="50000.00", total_amount="57500.00")
        make_repayment(loan, amount="30000.00", transaction_reference="RPY_6_FIRST1")
        make_repayment(loan, amount="20000.00", transaction_reference="RPY_6_SECND2")

        reconciliation_service.process_event(paystack_event("charge.success", "RPY_6_FIRST1"))
        assert loan_repository.find_by_id(loan.id).status == LoanStatus.ACTIVE.value

        result = reconciliation_service.process_event(paystack_event("charge.success", "RPY_6_SECND2"))

        assert result.loan_status == LoanStatus.COMPLETED.value
        assert loan_repository.find_by_id(loan.id).status == LoanStatus.COMPLETED.value

    def test_partial_repayments_advance_next_payment_date(
        self, reconciliation_service, make_loan, make_repayment, loan_repository
    ):
        start = datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)
        loan = make_loan(status=LoanStatus.ACTIVE, amount="50000.00", total_amount="57500.00", next_payment_date=start)
        make_repayment(loan, amount="30000.00", transaction_reference="RPY_7_FIRST1")
        make_repayment(loan, amount="10000.00", transaction_reference="RPY_7_SECND2")

        reconciliation_service.process_event(paystack_event("charge.success", "RPY_7_FIRST1"))
        reconciliation_service.process_event(paystack_event("charge.success", "RPY_7_SECND2"))

        stored = loan_repository.find_by_id(loan.id)
        assert stored.status == LoanStatus.ACTIVE.value
        # Jan 31 -> Feb 29 (leap year) -> Mar 29
        assert as_utc(stored.next_payment_date) == datetime(2024, 3, 29, 12, 0, tzinfo=timezone.utc)
        assert stored.outstanding_balance == Decimal("17500.00")

    def test_first_repayment_on_disbursed_loan_activates_it(
        self, reconciliation_service, make_loan, make_repayment, loan_repository
    ):
        loan = make_loan(status=LoanStatus.DISBURSED, amount="50000.00", total_amount="57500.00")
        make_repayment(loan, amount="5000.00", transaction_reference="RPY_8_ABCDEF")

        before = datetime.now(timezone.utc)
        result = reconciliation_service.process_event(paystack_event("charge.success", "RPY_8_ABCDEF"))

        stored = loan_repository.find_by_id(loan.id)
        assert result.loan_status == LoanStatus.ACTIVE.value
        assert stored.status == LoanStatus.ACTIVE.value
        assert as_utc(stored.next_payment_date) > before

    def test_failed_repayments_never_count_towards_completion(
        self, reconciliation_service, make_loan, make_repayment, loan_repository
    ):
        loan = make_loan(status=LoanStatus.ACTIVE, amount="50000.00", total_amount="57500.00")
        make_repayment(loan, amount="45000.00", status=RepaymentStatus.FAILED, transaction_reference="RPY_9_FAILED")
        make_repayment(loan, amount="10000.00", transaction_reference="RPY_9_GOOD01")

        reconciliation_service.process_event(paystack_event("charge.success", "RPY_9_GOOD01"))

        assert loan_repository.find_by_id(loan.id).status == LoanStatus.ACTIVE.value


class TestBookingRecovery:
    """A loan write that fails after the repayment completed is finished by redelivery"""

    @staticmethod
    def fail_first_booking(loan_repository):
        original = loan_repository.book_repayment
        calls = []

        def book(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise OperationalError("UPDATE loans", {}, Exception("database is locked"))
            return original(*args, **kwargs)

        return patch.object(loan_repository, "book_repayment", side_effect=book)

    def test_redelivery_completes_loan_after_failed_write(
        self, reconciliation_service, make_loan, make_repayment, loan_repository, repayment_repository
    ):
        loan = make_loan(status=LoanStatus.ACTIVE, amount="50000.00", total_amount="50000.00")
        repayment = make_repayment(loan, amount="50000.00", transaction_reference="RPY_R1_ABCDEF")
        event = paystack_event("charge.success", "RPY_R1_ABCDEF")

        with self.fail_first_booking(loan_repository):
            with pytest.raises(OperationalError):
                reconciliation_service.process_event(event)

            stored = repayment_repository.find_by_id(repayment.id)
            assert stored.status == RepaymentStatus.COMPLETED.value
            assert stored.loan_booked_at is None
            assert loan_repository.find_by_id(loan.id).status == LoanStatus.ACTIVE.value

            second = reconciliation_service.process_event(event)

        assert second.outcome == ReconciliationOutcome.ALREADY_APPLIED
        assert second.loan_status == LoanStatus.COMPLETED.value
        assert loan_repository.find_by_id(loan.id).status == LoanStatus.COMPLETED.value
        assert repayment_repository.find_by_id(repayment.id).loan_booked_at is not None

    def test_recovered_booking_advances_schedule_once(
        self, reconciliation_service, make_loan, make_repayment, loan_repository
    ):
        start = datetime(2024, 6, 10, 8, 0, tzinfo=timezone.utc)
        loan = make_loan(status=LoanStatus.ACTIVE, amount="50000.00", total_amount="57500.00", next_payment_date=start)
        make_repayment(loan, amount="10000.00", transaction_reference="RPY_R2_ABCDEF")
        event = paystack_event("charge.success", "RPY_R2_ABCDEF")

        with self.fail_first_booking(loan_repository):
            with pytest.raises(OperationalError):
                reconciliation_service.process_event(event)
            reconciliation_service.process_event(event)
        reconciliation_service.process_event(event)

        stored = loan_repository.find_by_id(loan.id)
        assert as_utc(stored.next_payment_date) == datetime(2024, 7, 10, 8, 0, tzinfo=timezone.utc)
        assert stored.outstanding_balance == Decimal("47500.00")

    def test_persistent_version_conflict_is_raised_for_redelivery(
        self, reconciliation_service, make_loan, make_repayment, loan_repository, repayment_repository
    ):
        loan = make_loan(status=LoanStatus.ACTIVE, amount="50000.00", total_amount="57500.00")
        repayment = make_repayment(loan, amount="10000.00", transaction_reference="RPY_R3_ABCDEF")

        with patch.object(
            loan_repository, "book_repayment", side_effect=OptimisticLockingError(loan.id, loan.version)
        ) as book:
            with pytest.raises(OptimisticLockingError):
                reconciliation_service.process_event(paystack_event("charge.success", "RPY_R3_ABCDEF"))

        assert book.call_count == MAX_BOOKING_ATTEMPTS
        assert repayment_repository.find_by_id(repayment.id).loan_booked_at is None


class TestConcurrentBookings:

    def test_interleaved_repayments_each_advance_schedule(
        self, reconciliation_service, make_loan, make_repayment, loan_repository, repayment_repository
    ):
        start = datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc)
        loan = make_loan(status=LoanStatus.ACTIVE, amount="50000.00", total_amount="57500.00", next_payment_date=start)
        first = make_repayment(loan, amount="1000.00", transaction_reference="RPY_C1_ABCDEF")
        second = make_repayment(loan, amount="1000.00", transaction_reference="RPY_C2_ABCDEF")

        original_find = loan_repository.find_by_id
        interleaved = []

        def read_then_interleave(loan_id):
            stale = original_find(loan_id)
            if not interleaved:
                interleaved.append(loan_id)
                # second repayment lands between this read and the guarded write
                reconciliation_service.process_event(paystack_event("charge.success", "RPY_C2_ABCDEF"))
            return stale

        with patch.object(loan_repository, "find_by_id", side_effect=read_then_interleave):
            result = reconciliation_service.process_event(paystack_event("charge.success", "RPY_C1_ABCDEF"))

        stored = loan_repository.find_by_id(loan.id)
        assert result.outcome == ReconciliationOutcome.APPLIED
        assert as_utc(stored.next_payment_date) == datetime(2024, 5, 15, 9, 0, tzinfo=timezone.utc)
        assert stored.outstanding_balance == Decimal("55500.00")
        assert stored.version == loan.version + 2
        assert repayment_repository.find_by_id(first.id).loan_booked_at is not None
        assert repayment_repository.find_by_id(second.id).loan_booked_at is not None


class TestEventFiltering:

    def test_unknown_event_type_is_ignored(self, reconciliation_service):
        event = parse_webhook_event(WebhookProvider.PAYSTACK, {"event": "subscription.create", "data": {}})

        result = reconciliation_service.process_event(event)

        assert result.outcome == ReconciliationOutcome.IGNORED

    def test_missing_reference_is_ignored(self, reconciliation_service):
        event = parse_webhook_event(WebhookProvider.PAYSTACK, {"event": "transfer.success", "data": {}})

        result = reconciliation_service.process_event(event)

        assert result.outcome == ReconciliationOutcome.IGNORED

    def test_storage_errors_propagate(self, reconciliation_service, loan_repository):
        event = paystack_event("transfer.success", "DISB_10_ABCDE")

        with patch.object(
            loan_repository, "find_by_disbursement_reference",
            side_effect=OperationalError("SELECT", {}, Exception("database is locked")),
        ):
            with pytest.raises(OperationalError):
                reconciliation_service.process_event(event)


class TestGuardTablesMatchLifecycle:
    """Every webhook-driven move must be a legal lifecycle edge"""

    def test_loan_event_rules_are_valid_transitions(self):
        for kind, rule in LOAN_EVENT_RULES.items():
            for source in rule.allowed:
                is_valid, reason = LoanStateValidator.validate_transition(source, rule.target)
                assert is_valid, f"{kind}: {reason}"

    def test_repayment_event_rules_are_valid_transitions(self):
        for kind, rule in REPAYMENT_EVENT_RULES.items():
            for source in rule.allowed:
                is_valid, reason = RepaymentStateValidator.validate_transition(source, rule.target)
                assert is_valid, f"{kind}: {reason}"
