"""
Loan Ledger Module

Append-only ledger of signed payment entries per loan. Balances are never
stored: total_paid is the sum of entries, outstanding balance and status are
derived from it on every read. Recording and reversing payments are the only
operations that change a loan's status.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple
from enum import Enum
import uuid

from .currency import ZERO, Currency, Money, to_decimal
from .exceptions import InvalidPaymentAmount


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"


class EntryKind(Enum):
    """Kinds of ledger entries"""
    PAYMENT = "payment"
    REVERSAL = "reversal"


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable signed amount credited to (or reversed from) a loan"""
    id: str
    loan_ref: str
    amount: Decimal                      # Positive for payments, negative for reversals
    kind: EntryKind
    created_at: datetime
    transaction_id: Optional[str] = None
    settlement_reference: Optional[str] = None
    reverses: Optional[str] = None       # Entry id this reversal undoes

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'loan_ref': self.loan_ref,
            'amount': str(self.amount),
            'kind': self.kind.value,
            'created_at': self.created_at.isoformat(),
            'transaction_id': self.transaction_id,
            'settlement_reference': self.settlement_reference,
            'reverses': self.reverses
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        return cls(
            id=data['id'],
            loan_ref=data['loan_ref'],
            amount=Decimal(data['amount']),
            kind=EntryKind(data['kind']),
            created_at=datetime.fromisoformat(data['created_at']),
            transaction_id=data.get('transaction_id'),
            settlement_reference=data.get('settlement_reference'),
            reverses=data.get('reverses')
        )


@dataclass(frozen=True)
class LoanState:
    """Derived balance view of a loan"""
    total_payment: Decimal
    total_paid: Decimal
    outstanding_balance: Decimal
    status: LoanStatus

    @property
    def is_completed(self) -> bool:
        return self.status == LoanStatus.COMPLETED

    def outstanding_money(self, currency: Currency = Currency.NGN) -> Money:
        return Money(self.outstanding_balance, currency)


@dataclass(frozen=True)
class LoanDelta:
    """Change produced by one ledger transition"""
    entry: LedgerEntry
    previous: LoanState
    current: LoanState

    @property
    def total_paid_delta(self) -> Decimal:
        return self.current.total_paid - self.previous.total_paid

    @property
    def status_changed(self) -> bool:
        return self.previous.status != self.current.status


def derive_status(outstanding_balance: Decimal, defaulted: bool = False) -> LoanStatus:
    """Status is a function of the balance, never set directly"""
    if outstanding_balance <= ZERO:
        return LoanStatus.COMPLETED
    if defaulted:
        return LoanStatus.DEFAULTED
    return LoanStatus.ACTIVE


def derive_state(total_payment: Decimal, total_paid: Decimal, defaulted: bool = False) -> LoanState:
    outstanding = max(ZERO, total_payment - total_paid)
    return LoanState(
        total_payment=total_payment,
        total_paid=total_paid,
        outstanding_balance=outstanding,
        status=derive_status(outstanding, defaulted)
    )


def apply_payment(state: LoanState, amount: Decimal) -> LoanState:
    """
    Delta for callers that keep their own balance fields

    total_paid += amount, outstanding = max(0, previous - amount); a negative
    amount applies a reversal.
    """
    amount = to_decimal(amount)
    outstanding = max(ZERO, state.outstanding_balance - amount)
    return LoanState(
        total_payment=state.total_payment,
        total_paid=state.total_paid + amount,
        outstanding_balance=outstanding,
        status=derive_status(outstanding, state.status == LoanStatus.DEFAULTED)
    )


class LoanLedger:
    """
    Ledger for a single loan

    Entries are only ever appended. A reversal replays the stored amount of
    the entry it undoes.
    """

    def __init__(
        self,
        loan_ref: str,
        total_payment: Decimal,
        entries: Optional[Iterable[LedgerEntry]] = None,
        defaulted: bool = False
    ):
        self.loan_ref = loan_ref
        self.total_payment = to_decimal(total_payment)
        self.defaulted = defaulted
        self._entries: List[LedgerEntry] = sorted(entries or [], key=lambda e: e.created_at)

    @property
    def entries(self) -> Tuple[LedgerEntry, ...]:
        return tuple(self._entries)

    @property
    def total_paid(self) -> Decimal:
        return sum((entry.amount for entry in self._entries), ZERO)

    @property
    def state(self) -> LoanState:
        return derive_state(self.total_payment, self.total_paid, self.defaulted)

    def record_payment(
        self,
        amount: Decimal,
        transaction_id: Optional[str] = None,
        settlement_reference: Optional[str] = None
    ) -> LoanDelta:
        """
        Credit a payment to the loan

        Raises:
            InvalidPaymentAmount: If the amount is not positive
        """
        amount = to_decimal(amount)
        if amount <= ZERO:
            raise InvalidPaymentAmount("Payment amount must be positive")

        return self._append(EntryKind.PAYMENT, amount, transaction_id, settlement_reference)

    def reverse_payment(self, transaction_id: str) -> LoanDelta:
        """
        Reverse the latest unreversed payment entry for a transaction

        Raises:
            ValueError: If no such payment is on the ledger
        """
        original = self.find_open_payment(transaction_id)
        if original is None:
            raise ValueError(f"No unreversed payment for transaction {transaction_id} on loan {self.loan_ref}")

        return self._append(
            EntryKind.REVERSAL,
            -original.amount,
            transaction_id,
            original.settlement_reference,
            reverses=original.id
        )

    def find_open_payment(self, transaction_id: str) -> Optional[LedgerEntry]:
        reversed_ids = {e.reverses for e in self._entries if e.kind == EntryKind.REVERSAL}
        for entry in reversed(self._entries):
            if (entry.kind == EntryKind.PAYMENT and entry.transaction_id == transaction_id
                    and entry.id not in reversed_ids):
                return entry
        return None

    def _append(self, kind: EntryKind, amount: Decimal, transaction_id: Optional[str],
                settlement_reference: Optional[str], reverses: Optional[str] = None) -> LoanDelta:
        previous = self.state
        entry = LedgerEntry(
            id=str(uuid.uuid4()),
            loan_ref=self.loan_ref,
            amount=amount,
            kind=kind,
            created_at=datetime.now(timezone.utc),
            transaction_id=transaction_id,
            settlement_reference=settlement_reference,
            reverses=reverses
        )
        self._entries.append(entry)
        return LoanDelta(entry=entry, previous=previous, current=self.state)
