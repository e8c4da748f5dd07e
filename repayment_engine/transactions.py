"""
Repayment Transaction Module

A Transaction is one credited installment-month: the allocators propose
them, the system of record persists them. All rows created from one payment
share its external settlement reference; each row also carries a unique
allocation reference so advance allocations stay individually traceable.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass
from typing import Any, Dict, Optional
from enum import Enum

from .storage import StorageRecord


ADVANCE_SUFFIX = "-ADV"


class TransactionSource(Enum):
    """Where a transaction came from"""
    INDIVIDUAL = "individual"
    BATCH = "batch"


def normalize_reference(reference: Optional[str]) -> str:
    """Lookup key for a settlement reference: trimmed and lower-cased"""
    return (reference or "").strip().lower()


def advance_reference(settlement_reference: str, month: int) -> str:
    """Allocation reference for an advance allocation, e.g. 'RRR-1-ADV6'"""
    return f"{settlement_reference.strip()}{ADVANCE_SUFFIX}{month}"


@dataclass
class Transaction(StorageRecord):
    """Credit of one installment-month on a loan"""
    beneficiary_ref: str
    amount: Decimal
    settlement_reference: str
    allocation_reference: str
    date_paid: date
    month_for: int
    is_advance: bool = False
    source: TransactionSource = TransactionSource.INDIVIDUAL
    batch_payment_id: Optional[str] = None
    beneficiary_name: str = ""
    receipt_ref: Optional[str] = None
    notes: Optional[str] = None

    @property
    def reference_key(self) -> str:
        return normalize_reference(self.settlement_reference)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['amount'] = str(self.amount)
        result['date_paid'] = self.date_paid.isoformat()
        result['source'] = self.source.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            beneficiary_ref=data['beneficiary_ref'],
            amount=Decimal(data['amount']),
            settlement_reference=data['settlement_reference'],
            allocation_reference=data['allocation_reference'],
            date_paid=date.fromisoformat(data['date_paid']),
            month_for=data['month_for'],
            is_advance=data.get('is_advance', False),
            source=TransactionSource(data.get('source', TransactionSource.INDIVIDUAL.value)),
            batch_payment_id=data.get('batch_payment_id'),
            beneficiary_name=data.get('beneficiary_name', ""),
            receipt_ref=data.get('receipt_ref'),
            notes=data.get('notes')
        )
