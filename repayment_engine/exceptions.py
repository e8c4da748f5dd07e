"""Exception hierarchy for the repayment engine."""


class RepaymentEngineError(ValueError):
    """Base exception for all repayment engine errors."""


class InvalidLoanTerms(RepaymentEngineError):
    """Raised when loan terms fail validation before any calculation."""


class InvalidPaymentAmount(RepaymentEngineError):
    """Raised for a non-positive amount or a starting month outside the tenor."""


class DuplicateSettlementReference(RepaymentEngineError):
    """Raised when a settlement reference has already been claimed by another payment."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Settlement reference {reference!r} has already been used")


class PartialBatchFailure(RepaymentEngineError):
    """Raised when only a subset of the per-member writes of a batch payment succeeded."""

    def __init__(self, result):
        self.result = result
        super().__init__(
            f"{result.success_count} recorded, {result.failure_count} failed "
            f"for batch payment {result.batch_payment_id}"
        )


class MalformedStatement(RepaymentEngineError):
    """Raised when a settlement statement cannot be reconciled at all."""


class LoanNotFound(RepaymentEngineError):
    """Raised when a referenced loan is not registered."""


class DuplicateKeyError(RepaymentEngineError):
    """Raised by storage backends when a unique key is already taken."""

    def __init__(self, table: str, key: str):
        self.table = table
        self.key = key
        super().__init__(f"Key {key!r} already exists in {table}")
