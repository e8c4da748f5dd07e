"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from datetime import date
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..amortization import LoanTerms
from ..batch import BatchMember
from ..currency import Currency, to_decimal
from ..statement import ColumnMapping


class LoanTermsModel(BaseModel):
    principal: str = Field(..., description="Decimal amount as string")
    annual_rate_percent: str = Field(..., description="Annual rate in percent, e.g. '6'")
    tenor_months: int
    moratorium_months: int = 0
    disbursement_date: str  # ISO date string
    currency: Optional[str] = None  # Defaults to the configured currency

    def to_loan_terms(self) -> LoanTerms:
        return LoanTerms(
            principal=to_decimal(self.principal),
            annual_rate_percent=to_decimal(self.annual_rate_percent),
            tenor_months=self.tenor_months,
            moratorium_months=self.moratorium_months,
            disbursement_date=date.fromisoformat(self.disbursement_date),
            currency=Currency[self.currency] if self.currency else None
        )


class ArrearsRequest(BaseModel):
    terms: LoanTermsModel
    total_paid: str = Field(..., description="Cumulative amount paid, as string")
    as_of: str  # ISO date string
    loan_status: str = "active"


class AllocationRequest(BaseModel):
    start_month: int
    total_amount_paid: str
    installment: str
    tenor_months: int
    settlement_reference: Optional[str] = None
    # Current balances of the loan; the proposed state is returned when both are given
    total_payment: Optional[str] = None
    total_paid: Optional[str] = None


class BatchMemberModel(BaseModel):
    ref: str
    installment: str
    name: str = ""

    def to_member(self) -> BatchMember:
        return BatchMember(ref=self.ref, installment=to_decimal(self.installment), name=self.name)


class BatchAllocationRequest(BaseModel):
    members: List[BatchMemberModel]
    included_refs: Optional[List[str]] = None  # Defaults to every member
    actual_amount_paid: str
    expected_amount: Optional[str] = None


class SystemPaymentModel(BaseModel):
    settlement_reference: str
    amount: str
    name: str = ""
    receipt_ref: Optional[str] = None

    def as_entry(self):
        return (self.settlement_reference, to_decimal(self.amount), self.name, self.receipt_ref)


class ColumnMappingModel(BaseModel):
    reference: str
    amount: str
    name: Optional[str] = None
    receipt: Optional[str] = None

    def to_mapping(self) -> ColumnMapping:
        return ColumnMapping(reference=self.reference, amount=self.amount,
                             name=self.name, receipt=self.receipt)


class ReconciliationRequest(BaseModel):
    rows: List[Dict[str, Any]] = Field(..., description="Statement rows as header -> cell")
    columns: Optional[ColumnMappingModel] = None  # Inferred from headers when omitted
    transactions: List[SystemPaymentModel] = []
    batch_payments: List[SystemPaymentModel] = []


def money(value: Optional[Decimal]) -> Optional[str]:
    """Serialize a Decimal amount as a string"""
    return None if value is None else str(value)
