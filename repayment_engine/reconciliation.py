"""
Reconciliation Module

Matches settlement statement rows against the system's recorded payments.
Reconciliation is read-only: unmatched rows and amount mismatches are
classification outcomes, never errors, and no system record is changed.
Persisting a completed run is a separate, explicit step.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from enum import Enum
import uuid

from .batch import BatchRepaymentRecord
from .config import get_config
from .currency import ZERO
from .exceptions import MalformedStatement
from .statement import ReconciliationRow
from .storage import StorageRecord
from .transactions import Transaction, normalize_reference


class MatchType(Enum):
    """Outcome of matching one statement row"""
    EXACT = "exact"
    AMOUNT_MISMATCH = "amount_mismatch"
    UNMATCHED = "unmatched"


class MatchSource(Enum):
    """System record a statement row was matched against"""
    INDIVIDUAL = "individual"
    BATCH = "batch"


@dataclass
class IndexEntry:
    """Aggregated system amount for one settlement reference"""
    amount: Decimal
    names: List[str] = field(default_factory=list)
    receipt_ref: str = ""

    @property
    def label(self) -> str:
        return ", ".join(self.names)


@dataclass(frozen=True)
class MatchResult:
    """Classification of one statement row"""
    row: ReconciliationRow
    match_type: MatchType
    system_amount: Optional[Decimal] = None
    source: Optional[MatchSource] = None
    beneficiary_names: str = ""
    batch_name: str = ""
    system_receipt_ref: str = ""

    @property
    def difference(self) -> Optional[Decimal]:
        if self.system_amount is None:
            return None
        return self.row.amount - self.system_amount


def aggregate_references(entries: Iterable[Tuple[str, Decimal, str, Optional[str]]]) -> Dict[str, IndexEntry]:
    """
    Aggregate (reference, amount, name, receipt_ref) tuples by normalized reference

    Amounts are summed; distinct non-empty names are kept in first-seen order.
    Entries with a blank reference are skipped.
    """
    index: Dict[str, IndexEntry] = {}
    for reference, amount, name, receipt_ref in entries:
        key = normalize_reference(reference)
        if not key:
            continue
        entry = index.get(key)
        if entry is None:
            entry = index[key] = IndexEntry(amount=ZERO, receipt_ref=receipt_ref or "")
        entry.amount += amount
        if name and name not in entry.names:
            entry.names.append(name)
    return index


def build_transaction_index(transactions: Iterable[Transaction]) -> Dict[str, IndexEntry]:
    """Sum transaction amounts per reference, collecting distinct beneficiary names"""
    return aggregate_references(
        (t.settlement_reference, t.amount, t.beneficiary_name, t.receipt_ref) for t in transactions
    )


def build_batch_index(records: Iterable[BatchRepaymentRecord]) -> Dict[str, IndexEntry]:
    """Sum actual batch receipts per reference, collecting distinct batch names"""
    return aggregate_references(
        (r.settlement_reference, r.actual_amount, r.batch_name, r.receipt_ref) for r in records
    )


class ReconciliationMatcher:
    """Classifies statement rows as exact, amount mismatch or unmatched"""

    def __init__(self, tolerance: Optional[Decimal] = None):
        if tolerance is None:
            tolerance = get_config().match_tolerance_decimal
        self.tolerance = tolerance

    def match(
        self,
        statement_rows: Sequence[ReconciliationRow],
        transaction_index: Dict[str, IndexEntry],
        batch_index: Dict[str, IndexEntry]
    ) -> List[MatchResult]:
        """
        Match statement rows against the system indexes

        Individual transactions take precedence over batch records when both
        carry the same reference.

        Raises:
            MalformedStatement: If the statement has no rows
        """
        if not statement_rows:
            raise MalformedStatement("Statement has no rows to reconcile")

        return [self._match_row(row, transaction_index, batch_index) for row in statement_rows]

    def _match_row(self, row: ReconciliationRow, transaction_index: Dict[str, IndexEntry],
                   batch_index: Dict[str, IndexEntry]) -> MatchResult:
        key = normalize_reference(row.external_reference)

        if key in transaction_index:
            entry = transaction_index[key]
            return MatchResult(
                row=row,
                match_type=self._classify(entry.amount, row.amount),
                system_amount=entry.amount,
                source=MatchSource.INDIVIDUAL,
                beneficiary_names=entry.label,
                system_receipt_ref=entry.receipt_ref
            )

        if key in batch_index:
            entry = batch_index[key]
            return MatchResult(
                row=row,
                match_type=self._classify(entry.amount, row.amount),
                system_amount=entry.amount,
                source=MatchSource.BATCH,
                batch_name=entry.label,
                system_receipt_ref=entry.receipt_ref
            )

        return MatchResult(row=row, match_type=MatchType.UNMATCHED)

    def _classify(self, system_amount: Decimal, row_amount: Decimal) -> MatchType:
        if abs(system_amount - row_amount) < self.tolerance:
            return MatchType.EXACT
        return MatchType.AMOUNT_MISMATCH


@dataclass(frozen=True)
class ReconciliationSummary:
    """Counts and totals of a reconciliation run"""
    total_records: int
    matched_count: int
    mismatch_count: int
    unmatched_count: int
    statement_total: Decimal
    matched_amount: Decimal

    @property
    def is_fully_matched(self) -> bool:
        return self.matched_count > 0 and self.mismatch_count == 0 and self.unmatched_count == 0

    @property
    def can_save(self) -> bool:
        return self.matched_count > 0


def summarize(results: Sequence[MatchResult]) -> ReconciliationSummary:
    """Summarize match results"""
    matched = [r for r in results if r.match_type == MatchType.EXACT]
    return ReconciliationSummary(
        total_records=len(results),
        matched_count=len(matched),
        mismatch_count=sum(1 for r in results if r.match_type == MatchType.AMOUNT_MISMATCH),
        unmatched_count=sum(1 for r in results if r.match_type == MatchType.UNMATCHED),
        statement_total=sum((r.row.amount for r in results), ZERO),
        matched_amount=sum((r.row.amount for r in matched), ZERO)
    )


@dataclass
class ReconciliationSession(StorageRecord):
    """Persisted audit record of a completed reconciliation run"""
    organization: str
    payment_month: int
    payment_year: int
    file_name: str
    total_records: int
    matched_count: int
    mismatch_count: int
    unmatched_count: int
    statement_total: Decimal
    matched_amount: Decimal
    matches: List[Dict[str, Any]] = field(default_factory=list)
    notes: Optional[str] = None
    created_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['statement_total'] = str(self.statement_total)
        result['matched_amount'] = str(self.matched_amount)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReconciliationSession':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            organization=data['organization'],
            payment_month=data['payment_month'],
            payment_year=data['payment_year'],
            file_name=data.get('file_name', ""),
            total_records=data['total_records'],
            matched_count=data['matched_count'],
            mismatch_count=data['mismatch_count'],
            unmatched_count=data['unmatched_count'],
            statement_total=Decimal(data['statement_total']),
            matched_amount=Decimal(data['matched_amount']),
            matches=list(data.get('matches', [])),
            notes=data.get('notes'),
            created_by=data.get('created_by')
        )


def build_session(
    results: Sequence[MatchResult],
    organization: str,
    payment_month: int,
    payment_year: int,
    file_name: str = "",
    notes: Optional[str] = None,
    created_by: Optional[str] = None
) -> ReconciliationSession:
    """
    Build the session record for a reconciliation run

    Only exact rows are kept in full detail.

    Raises:
        ValueError: If the organization or period is invalid, or nothing matched
    """
    if not organization or not organization.strip():
        raise ValueError("Organization is required")
    if not 1 <= payment_month <= 12:
        raise ValueError(f"Invalid payment month: {payment_month}")

    summary = summarize(results)
    if not summary.can_save:
        raise ValueError("A reconciliation session needs at least one exact match")

    matches = []
    for result in results:
        if result.match_type != MatchType.EXACT:
            continue
        matches.append({
            'row_index': result.row.row_index,
            'external_reference': result.row.external_reference,
            'amount': str(result.row.amount),
            'system_amount': str(result.system_amount),
            'source': result.source.value,
            'beneficiary_names': result.beneficiary_names,
            'batch_name': result.batch_name,
            'receipt_ref': result.row.receipt_ref or result.system_receipt_ref
        })

    now = datetime.now(timezone.utc)
    return ReconciliationSession(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        organization=organization.strip(),
        payment_month=payment_month,
        payment_year=payment_year,
        file_name=file_name,
        total_records=summary.total_records,
        matched_count=summary.matched_count,
        mismatch_count=summary.mismatch_count,
        unmatched_count=summary.unmatched_count,
        statement_total=summary.statement_total,
        matched_amount=summary.matched_amount,
        matches=matches,
        notes=notes.strip() if notes and notes.strip() else None,
        created_by=created_by
    )
