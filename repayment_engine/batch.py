"""
Batch Allocation Module

Splits one settlement receipt across the members of a loan batch. A full
or over-payment credits every included member its own installment; an
underpaid batch is pro-rated by the ratio actual / expected.

Reversal never recomputes a ratio: it replays the per-member amounts that
were actually recorded.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from .currency import ZERO, round_money, to_decimal
from .exceptions import InvalidPaymentAmount
from .storage import StorageRecord
from .transactions import Transaction


@dataclass(frozen=True)
class BatchMember:
    """A loan in a batch with the installment it owes per month"""
    ref: str
    installment: Decimal
    name: str = ""

    def __post_init__(self):
        object.__setattr__(self, 'installment', to_decimal(self.installment))


@dataclass(frozen=True)
class MemberAllocation:
    """Amount credited to one member; excluded members carry zero"""
    ref: str
    amount: Decimal
    included: bool
    installment: Decimal = ZERO

    @property
    def shortfall(self) -> Decimal:
        """How far below the installment this member was credited"""
        if not self.included:
            return ZERO
        return max(ZERO, self.installment - self.amount)


@dataclass
class BatchAllocation:
    """Outcome of allocating one batch receipt"""
    members: List[MemberAllocation]
    expected_amount: Decimal
    actual_amount_paid: Decimal
    ratio: Decimal

    @property
    def is_shortfall(self) -> bool:
        return self.actual_amount_paid < self.expected_amount

    @property
    def overpayment(self) -> Decimal:
        """Excess over expected; not distributed to members"""
        return max(ZERO, self.actual_amount_paid - self.expected_amount)

    @property
    def included(self) -> List[MemberAllocation]:
        return [m for m in self.members if m.included]

    @property
    def excluded(self) -> List[MemberAllocation]:
        return [m for m in self.members if not m.included]

    @property
    def excluded_count(self) -> int:
        return len(self.excluded)

    @property
    def total_allocated(self) -> Decimal:
        return sum((m.amount for m in self.members), ZERO)

    def amount_for(self, ref: str) -> Decimal:
        for member in self.members:
            if member.ref == ref:
                return member.amount
        raise KeyError(ref)


class BatchAllocator:
    """Allocates batch receipts across member loans"""

    def allocate_batch(
        self,
        members: List[BatchMember],
        included_refs: Set[str],
        actual_amount_paid: Decimal,
        expected_amount: Optional[Decimal] = None
    ) -> BatchAllocation:
        """
        Allocate a batch payment

        Args:
            members: All members of the batch, in display order
            included_refs: Members covered by this receipt
            actual_amount_paid: Amount actually received
            expected_amount: Sum of included installments; derived when omitted

        Returns:
            BatchAllocation with one MemberAllocation per member

        Raises:
            InvalidPaymentAmount: For a non-positive amount, no included members,
                unknown refs, or an expected amount that disagrees with the members
        """
        actual_amount_paid = to_decimal(actual_amount_paid)
        if actual_amount_paid <= ZERO:
            raise InvalidPaymentAmount("Batch payment amount must be positive")

        known_refs = {m.ref for m in members}
        unknown = set(included_refs) - known_refs
        if unknown:
            raise InvalidPaymentAmount(f"Included members not in batch: {', '.join(sorted(unknown))}")

        included = [m for m in members if m.ref in included_refs]
        if not included:
            raise InvalidPaymentAmount("At least one member must be included")

        computed_expected = sum((m.installment for m in included), ZERO)
        if expected_amount is not None and to_decimal(expected_amount) != computed_expected:
            raise InvalidPaymentAmount(
                f"Expected amount {expected_amount} does not match included installments {computed_expected}"
            )
        expected = computed_expected

        if actual_amount_paid >= expected:
            ratio = Decimal('1')
            credited = {m.ref: m.installment for m in included}
        else:
            ratio = actual_amount_paid / expected
            credited = {m.ref: round_money(m.installment * ratio) for m in included}
            # Fold the rounding residual into the last included member
            residual = actual_amount_paid - sum(credited.values(), ZERO)
            credited[included[-1].ref] += residual

        allocations = []
        for member in members:
            if member.ref in credited:
                allocations.append(MemberAllocation(
                    ref=member.ref,
                    amount=credited[member.ref],
                    included=True,
                    installment=member.installment
                ))
            else:
                allocations.append(MemberAllocation(
                    ref=member.ref,
                    amount=ZERO,
                    included=False,
                    installment=member.installment
                ))

        return BatchAllocation(
            members=allocations,
            expected_amount=expected,
            actual_amount_paid=actual_amount_paid,
            ratio=ratio
        )

    def reversal_deltas(self, transactions: Iterable[Transaction]) -> Dict[str, Decimal]:
        """
        Per-member total_paid deltas that undo recorded batch transactions

        Derived only from stored transaction amounts, never from current balances.
        """
        deltas: Dict[str, Decimal] = {}
        for transaction in transactions:
            deltas[transaction.beneficiary_ref] = deltas.get(transaction.beneficiary_ref, ZERO) - transaction.amount
        return deltas


@dataclass
class BatchRepaymentRecord(StorageRecord):
    """
    A recorded batch receipt. Persists what was intended, including the
    verbatim per-member allocation decision; individual transactions record
    what actually succeeded.
    """
    batch_id: str
    batch_name: str
    month_for: int
    expected_amount: Decimal
    actual_amount: Decimal
    settlement_reference: str
    payment_date: date
    allocations: Dict[str, Decimal] = field(default_factory=dict)
    excluded_refs: List[str] = field(default_factory=list)
    receipt_ref: Optional[str] = None
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['expected_amount'] = str(self.expected_amount)
        result['actual_amount'] = str(self.actual_amount)
        result['payment_date'] = self.payment_date.isoformat()
        result['allocations'] = {ref: str(amount) for ref, amount in self.allocations.items()}
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BatchRepaymentRecord':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            batch_id=data['batch_id'],
            batch_name=data.get('batch_name', ""),
            month_for=data['month_for'],
            expected_amount=Decimal(data['expected_amount']),
            actual_amount=Decimal(data['actual_amount']),
            settlement_reference=data['settlement_reference'],
            payment_date=date.fromisoformat(data['payment_date']),
            allocations={ref: Decimal(amount) for ref, amount in data.get('allocations', {}).items()},
            excluded_refs=list(data.get('excluded_refs', [])),
            receipt_ref=data.get('receipt_ref'),
            notes=data.get('notes')
        )
