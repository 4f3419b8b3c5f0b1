"""
Exception hierarchy for the royalty ledger.
Read paths swallow StoreUnavailable into safe defaults; write paths let every
RoyaltyError reach the caller.
"""


class RoyaltyError(Exception):
    """Base exception for ledger and reconciliation errors."""
    pass


class NotFound(RoyaltyError):
    """Referenced report, withdrawal or client does not exist."""
    pass


class ValidationError(RoyaltyError):
    """Input rejected before anything was written."""

    def __init__(self, message, issues=None):
        super().__init__(message)
        self.issues = issues or []


class WithdrawalStateError(ValidationError):
    """Status change attempted on a withdrawal that is no longer pending."""
    pass


class InsufficientBalance(RoyaltyError):
    """Withdrawal amount exceeds the balance computed at request time.

    Advisory only: two concurrent requests can both pass the check.
    """

    def __init__(self, amount, balance):
        super().__init__(f"Insufficient balance: requested {amount}, available {balance}")
        self.amount = amount
        self.balance = balance


class PartialIngestionFailure(RoyaltyError):
    """Report row was written but its ledger rows were not."""

    def __init__(self, report_id, cause):
        super().__init__(f"Report {report_id} saved but ledger expansion failed: {cause}")
        self.report_id = report_id
        self.cause = cause


class StoreUnavailable(RoyaltyError):
    """Backing store could not be reached or a query failed."""
    pass
