"""
Loan / Repayment State Transition Validator
===========================================

Prevents invalid status changes and keeps the loan and repayment lifecycles
consistent. Administrative operations (approve, disburse) check their move
here before writing; the webhook guard table is a subset of these edges.
"""

import logging
from typing import Dict, Set, Optional, Tuple, Type
from enum import Enum
from models import LoanStatus, RepaymentStatus

logger = logging.getLogger(__name__)


class StateTransitionError(Exception):
    """Raised when an invalid state transition is attempted"""
    pass


class _StateValidator:
    """Shared validation over a ``VALID_TRANSITIONS`` table"""

    ENTITY_NAME = "Entity"
    STATUS_ENUM: Type[Enum] = Enum
    VALID_TRANSITIONS: Dict[Enum, Set[Enum]] = {}
    TERMINAL_STATES: Set[Enum] = set()

    @classmethod
    def coerce(cls, status) -> Enum:
        return status if isinstance(status, cls.STATUS_ENUM) else cls.STATUS_ENUM(status)

    @classmethod
    def validate_transition(
        cls,
        from_status,
        to_status,
        entity_id: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """
        Validate if a state transition is allowed.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        from_status = cls.coerce(from_status)
        to_status = cls.coerce(to_status)
        entity_ref = f"{cls.ENTITY_NAME} {entity_id}" if entity_id else cls.ENTITY_NAME

        if from_status == to_status:
            return True, "No status change required"

        valid_next_states = cls.VALID_TRANSITIONS.get(from_status, set())
        if to_status in valid_next_states:
            logger.debug(f"✅ VALID_TRANSITION: {entity_ref} {from_status.value} -> {to_status.value}")
            return True, "Valid state transition"

        error_msg = (
            f"Invalid transition: {from_status.value} -> {to_status.value}. "
            f"Valid transitions from {from_status.value}: "
            f"{sorted(s.value for s in valid_next_states)}"
        )
        logger.warning(f"❌ INVALID_TRANSITION: {entity_ref} {from_status.value} -> {to_status.value}")
        return False, error_msg

    @classmethod
    def ensure_transition(cls, from_status, to_status, entity_id: Optional[str] = None) -> None:
        """Raise StateTransitionError when the move is not allowed"""
        is_valid, reason = cls.validate_transition(from_status, to_status, entity_id)
        if not is_valid:
            entity_ref = f"{cls.ENTITY_NAME} {entity_id}" if entity_id else cls.ENTITY_NAME
            raise StateTransitionError(f"{entity_ref}: {reason}")

    @classmethod
    def get_valid_next_states(cls, current_status) -> Set[Enum]:
        return cls.VALID_TRANSITIONS.get(cls.coerce(current_status), set())

    @classmethod
    def is_terminal_state(cls, status) -> bool:
        return cls.coerce(status) in cls.TERMINAL_STATES


class LoanStateValidator(_StateValidator):
    """
    Loan lifecycle:

    PENDING -> APPROVED -> DISBURSED -> ACTIVE -> COMPLETED
    APPROVED -> CANCELLED, DISBURSED -> APPROVED (transfer failed)
    REJECTED / DEFAULTED are administrative.
    """

    ENTITY_NAME = "Loan"
    STATUS_ENUM = LoanStatus

    VALID_TRANSITIONS: Dict[LoanStatus, Set[LoanStatus]] = {
        LoanStatus.PENDING: {
            LoanStatus.APPROVED,
            LoanStatus.REJECTED,
            LoanStatus.CANCELLED,
        },
        LoanStatus.APPROVED: {
            LoanStatus.DISBURSED,
            LoanStatus.REJECTED,
            LoanStatus.CANCELLED,
        },
        LoanStatus.DISBURSED: {
            LoanStatus.APPROVED,   # transfer failed after optimistic disbursement
            LoanStatus.ACTIVE,
            LoanStatus.COMPLETED,
            LoanStatus.CANCELLED,  # transfer reversed
            LoanStatus.DEFAULTED,
        },
        LoanStatus.ACTIVE: {
            LoanStatus.COMPLETED,
            LoanStatus.CANCELLED,
            LoanStatus.DEFAULTED,
        },
        LoanStatus.DEFAULTED: {
            LoanStatus.COMPLETED,
        },
        LoanStatus.COMPLETED: set(),
        LoanStatus.REJECTED: set(),
        LoanStatus.CANCELLED: set(),
    }

    TERMINAL_STATES: Set[LoanStatus] = {
        LoanStatus.COMPLETED,
        LoanStatus.REJECTED,
        LoanStatus.CANCELLED,
    }

    # Loans that have money out with the borrower
    REPAYABLE_STATES: Set[LoanStatus] = {
        LoanStatus.DISBURSED,
        LoanStatus.ACTIVE,
    }


class RepaymentStateValidator(_StateValidator):
    """Repayment lifecycle: PENDING -> COMPLETED | FAILED"""

    ENTITY_NAME = "Repayment"
    STATUS_ENUM = RepaymentStatus

    VALID_TRANSITIONS: Dict[RepaymentStatus, Set[RepaymentStatus]] = {
        RepaymentStatus.PENDING: {
            RepaymentStatus.PROCESSING,
            RepaymentStatus.COMPLETED,
            RepaymentStatus.FAILED,
            RepaymentStatus.OVERDUE,
        },
        RepaymentStatus.PROCESSING: {
            RepaymentStatus.COMPLETED,
            RepaymentStatus.FAILED,
        },
        RepaymentStatus.OVERDUE: {
            RepaymentStatus.PROCESSING,
            RepaymentStatus.COMPLETED,
            RepaymentStatus.FAILED,
        },
        RepaymentStatus.COMPLETED: set(),
        RepaymentStatus.FAILED: set(),
    }

    TERMINAL_STATES: Set[RepaymentStatus] = {
        RepaymentStatus.COMPLETED,
        RepaymentStatus.FAILED,
    }
