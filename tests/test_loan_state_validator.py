"""Loan and repayment lifecycle rules"""

import pytest

from models import LoanStatus, RepaymentStatus
from utils.loan_state_validator import LoanStateValidator, RepaymentStateValidator, StateTransitionError


class TestLoanStateValidator:

    @pytest.mark.parametrize("from_status,to_status", [
        (LoanStatus.PENDING, LoanStatus.APPROVED),
        (LoanStatus.APPROVED, LoanStatus.DISBURSED),
        (LoanStatus.DISBURSED, LoanStatus.APPROVED),
        (LoanStatus.DISBURSED, LoanStatus.ACTIVE),
        (LoanStatus.ACTIVE, LoanStatus.COMPLETED),
        (LoanStatus.ACTIVE, LoanStatus.CANCELLED),
    ])
    def test_valid_transitions(self, from_status, to_status):
        is_valid, _ = LoanStateValidator.validate_transition(from_status, to_status)

        assert is_valid

    @pytest.mark.parametrize("from_status,to_status", [
        (LoanStatus.PENDING, LoanStatus.DISBURSED),
        (LoanStatus.CANCELLED, LoanStatus.DISBURSED),
        (LoanStatus.COMPLETED, LoanStatus.ACTIVE),
        (LoanStatus.ACTIVE, LoanStatus.APPROVED),
    ])
    def test_invalid_transitions(self, from_status, to_status):
        is_valid, reason = LoanStateValidator.validate_transition(from_status, to_status)

        assert not is_valid
        assert "Invalid transition" in reason

    def test_string_statuses_accepted(self):
        assert LoanStateValidator.validate_transition("APPROVED", "DISBURSED")[0]

    def test_ensure_transition_raises(self):
        with pytest.raises(StateTransitionError, match="Loan loan-1"):
            LoanStateValidator.ensure_transition(LoanStatus.REJECTED, LoanStatus.APPROVED, "loan-1")

    def test_terminal_states(self):
        assert LoanStateValidator.is_terminal_state(LoanStatus.CANCELLED)
        assert not LoanStateValidator.is_terminal_state(LoanStatus.DISBURSED)
        assert LoanStateValidator.get_valid_next_states(LoanStatus.COMPLETED) == set()


class TestRepaymentStateValidator:

    def test_settled_repayments_are_terminal(self):
        assert RepaymentStateValidator.is_terminal_state(RepaymentStatus.COMPLETED)
        assert RepaymentStateValidator.is_terminal_state(RepaymentStatus.FAILED)

    def test_failed_cannot_complete(self):
        assert not RepaymentStateValidator.validate_transition(RepaymentStatus.FAILED, RepaymentStatus.COMPLETED)[0]
