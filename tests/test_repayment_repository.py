"""Repayment repository tests"""

from decimal import Decimal

from models import LoanStatus, RepaymentStatus


class TestRepaymentTransitions:

    def test_completion_sets_paid_at(self, make_loan, make_repayment, repayment_repository):
        repayment = make_repayment(make_loan(status=LoanStatus.ACTIVE))

        updated = repayment_repository.update_status(
            repayment.id, RepaymentStatus.COMPLETED, expected_statuses=[RepaymentStatus.PENDING]
        )

        assert updated.status == RepaymentStatus.COMPLETED.value
        assert updated.paid_at is not None

    def test_failure_leaves_paid_at_empty(self, make_loan, make_repayment, repayment_repository):
        repayment = make_repayment(make_loan(status=LoanStatus.ACTIVE))

        updated = repayment_repository.update_status(repayment.id, RepaymentStatus.FAILED)

        assert updated.paid_at is None

    def test_guard_rejects_settled_repayment(self, make_loan, make_repayment, repayment_repository):
        repayment = make_repayment(make_loan(status=LoanStatus.ACTIVE), status=RepaymentStatus.FAILED)

        assert repayment_repository.update_status(
            repayment.id, RepaymentStatus.COMPLETED, expected_statuses=[RepaymentStatus.PENDING]
        ) is None

    def test_lookup_by_transaction_reference(self, make_loan, make_repayment, repayment_repository):
        repayment = make_repayment(make_loan(status=LoanStatus.ACTIVE), transaction_reference="RPY_REPO_0001")

        assert repayment_repository.find_by_transaction_reference("RPY_REPO_0001").id == repayment.id
        assert repayment_repository.find_by_transaction_reference(None) is None


class TestCompletedTotals:

    def test_only_completed_repayments_counted(self, make_loan, make_repayment, repayment_repository):
        loan = make_loan(status=LoanStatus.ACTIVE)
        make_repayment(loan, amount="10000.00", status=RepaymentStatus.COMPLETED)
        make_repayment(loan, amount="7500.50", status=RepaymentStatus.COMPLETED)
        make_repayment(loan, amount="90000.00", status=RepaymentStatus.FAILED)
        make_repayment(loan, amount="5000.00", status=RepaymentStatus.PENDING)

        totals = repayment_repository.get_total_completed_by_loan_id(loan.id)

        assert totals.total_amount == Decimal("17500.50")
        assert totals.completed_count == 2

    def test_no_repayments(self, make_loan, repayment_repository):
        totals = repayment_repository.get_total_completed_by_loan_id(make_loan().id)

        assert totals.total_amount == Decimal("0")
        assert totals.completed_count == 0

    def test_totals_scoped_to_loan(self, make_loan, make_repayment, repayment_repository):
        mine = make_loan(status=LoanStatus.ACTIVE)
        other = make_loan(status=LoanStatus.ACTIVE)
        make_repayment(mine, amount="1000.00", status=RepaymentStatus.COMPLETED)
        make_repayment(other, amount="2000.00", status=RepaymentStatus.COMPLETED)

        assert repayment_repository.get_total_completed_by_loan_id(mine.id).total_amount == Decimal("1000.00")
