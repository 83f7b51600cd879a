"""
Lending Ledger Exceptions
Raised by the administrative services; the webhook path treats misses as no-ops
"""


class LendingError(Exception):
    """Base exception for lending ledger errors"""

    pass


class LoanNotFoundError(LendingError):
    """Loan lookup by id returned nothing"""

    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Loan {loan_id} not found")


class RepaymentNotFoundError(LendingError):
    """Repayment lookup returned nothing"""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Repayment {identifier} not found")


class InvalidLoanStateError(LendingError):
    """Operation attempted on a loan in the wrong status"""

    def __init__(self, loan_id: str, current_status: str, expected):
        self.loan_id = loan_id
        self.current_status = current_status
        self.expected = expected
        super().__init__(
            f"Loan {loan_id} is {current_status}, expected {' or '.join(expected)}"
        )


class DisbursementError(LendingError):
    """Disbursement rejected (bad bank details or gateway failure)"""

    def __init__(self, message: str, gateway_response=None):
        self.gateway_response = gateway_response
        super().__init__(message)


class PaymentInitializationError(LendingError):
    """Gateway refused to open a repayment session"""

    def __init__(self, message: str, gateway_response=None):
        self.gateway_response = gateway_response
        super().__init__(message)


class GatewayConfigurationError(LendingError):
    """Gateway requested without its credentials"""

    pass


class BorrowerNotFoundError(LendingError):
    """Borrower missing or deactivated"""

    def __init__(self, borrower_id: str):
        self.borrower_id = borrower_id
        super().__init__(f"Borrower {borrower_id} not found or inactive")


class OptimisticLockingError(LendingError):
    """Loan row changed between read and guarded write"""

    def __init__(self, loan_id: str, expected_version: int):
        self.loan_id = loan_id
        self.expected_version = expected_version
        super().__init__(
            f"Version conflict for loan {loan_id}: expected version {expected_version} "
            f"but it was modified concurrently"
        )
