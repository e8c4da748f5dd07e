"""
Payment Allocation Module

Auto-forward allocation of a single payment across installment months.
No currency is created or destroyed: the allocations always sum to the
amount paid, cent for cent.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import List, Optional
import uuid

from .currency import ZERO, round_money, to_decimal
from .exceptions import InvalidPaymentAmount
from .transactions import Transaction, TransactionSource, advance_reference


@dataclass(frozen=True)
class Allocation:
    """Portion of a payment credited to one schedule month"""
    month: int
    amount: Decimal
    is_advance: bool = False

    def allocation_reference(self, settlement_reference: str) -> str:
        """The first allocation keeps the settlement reference, advances get a suffix"""
        if not self.is_advance:
            return settlement_reference.strip()
        return advance_reference(settlement_reference, self.month)


class PaymentAllocator:
    """
    Walks the schedule forward from a starting month, each month consuming
    at most one installment. Anything left once the final month is reached
    stays on the final month rather than creating a month past maturity.
    """

    def allocate(
        self,
        start_month: int,
        total_amount_paid: Decimal,
        installment: Decimal,
        tenor_months: int
    ) -> List[Allocation]:
        """
        Allocate a payment across installment months

        Args:
            start_month: First schedule month to credit (1-based)
            total_amount_paid: Amount received
            installment: Monthly installment (EMI)
            tenor_months: Number of months in the schedule

        Returns:
            Allocations in month order, summing exactly to total_amount_paid

        Raises:
            InvalidPaymentAmount: For a non-positive amount or a start month outside the tenor
        """
        total_amount_paid = to_decimal(total_amount_paid)
        installment = to_decimal(installment)

        if total_amount_paid <= ZERO:
            raise InvalidPaymentAmount("Payment amount must be positive")
        if installment <= ZERO:
            raise InvalidPaymentAmount("Installment must be positive")
        if tenor_months <= 0 or start_month < 1 or start_month > tenor_months:
            raise InvalidPaymentAmount(
                f"Start month {start_month} is outside the tenor (1..{tenor_months})"
            )

        months = []
        remaining = total_amount_paid
        month = start_month

        while remaining > ZERO and month <= tenor_months:
            portion = min(remaining, installment)
            months.append(month)
            remaining -= portion
            month += 1

        # Round every month but the last; the last absorbs both the overflow
        # past maturity and the rounding residual.
        allocations = []
        allocated = ZERO
        for index, month in enumerate(months):
            is_last = index == len(months) - 1
            if is_last:
                amount = total_amount_paid - allocated
            else:
                amount = round_money(min(installment, total_amount_paid - allocated))
            allocated += amount
            allocations.append(Allocation(month=month, amount=amount, is_advance=index > 0))

        return allocations


def build_transactions(
    allocations: List[Allocation],
    beneficiary_ref: str,
    settlement_reference: str,
    date_paid: date,
    beneficiary_name: str = "",
    receipt_ref: Optional[str] = None,
    notes: Optional[str] = None,
    source: TransactionSource = TransactionSource.INDIVIDUAL,
    batch_payment_id: Optional[str] = None
) -> List[Transaction]:
    """Turn allocations into proposed Transaction rows for the system of record"""
    now = datetime.now(timezone.utc)
    transactions = []
    for allocation in allocations:
        transactions.append(Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            beneficiary_ref=beneficiary_ref,
            amount=allocation.amount,
            settlement_reference=settlement_reference.strip(),
            allocation_reference=allocation.allocation_reference(settlement_reference),
            date_paid=date_paid,
            month_for=allocation.month,
            is_advance=allocation.is_advance,
            source=source,
            batch_payment_id=batch_payment_id,
            beneficiary_name=beneficiary_name,
            receipt_ref=receipt_ref,
            notes=notes
        ))
    return transactions
