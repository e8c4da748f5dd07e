"""
Statement Ingestion Module

Turns rows of an externally authored settlement statement, whose column
layout is not fixed, into normalized reconciliation rows. Columns are found
by pattern-matching header names; amounts are coerced from free text.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence
import re

from .currency import decimal_from_string
from .exceptions import MalformedStatement


REFERENCE_PATTERNS = [r'rrr', r'remita', r'retrieval', r'reference', r'ref']
AMOUNT_PATTERNS = [r'amount', r'sum', r'value', r'paid', r'credit']
NAME_PATTERNS = [r'name', r'beneficiary', r'customer', r'payer', r'subscriber']
RECEIPT_PATTERNS = [r'receipt', r'url', r'link', r'proof']


@dataclass(frozen=True)
class ReconciliationRow:
    """One normalized statement row"""
    row_index: int
    external_reference: str
    amount: Decimal
    receipt_ref: str = ""
    payer_name: str = ""


@dataclass(frozen=True)
class ColumnMapping:
    """Which statement headers hold which fields"""
    reference: Optional[str]
    amount: Optional[str]
    name: Optional[str] = None
    receipt: Optional[str] = None

    def require(self) -> None:
        missing = []
        if not self.reference:
            missing.append("reference")
        if not self.amount:
            missing.append("amount")
        if missing:
            raise MalformedStatement(f"Statement has no {' or '.join(missing)} column")


def find_column(headers: Sequence[str], patterns: Sequence[str]) -> Optional[str]:
    """First header (in column order) matching any of the patterns"""
    for header in headers:
        candidate = header.strip().lower()
        for pattern in patterns:
            if re.search(pattern, candidate):
                return header
    return None


def infer_columns(headers: Sequence[str]) -> ColumnMapping:
    """Guess the column mapping from header names"""
    return ColumnMapping(
        reference=find_column(headers, REFERENCE_PATTERNS),
        amount=find_column(headers, AMOUNT_PATTERNS),
        name=find_column(headers, NAME_PATTERNS),
        receipt=find_column(headers, RECEIPT_PATTERNS)
    )


def _cell(row: Dict[str, Any], column: Optional[str]) -> str:
    if not column:
        return ""
    value = row.get(column)
    return "" if value is None else str(value).strip()


def normalize_rows(raw_rows: Sequence[Dict[str, Any]],
                   mapping: Optional[ColumnMapping] = None) -> List[ReconciliationRow]:
    """
    Normalize raw statement rows

    Args:
        raw_rows: Rows as header -> cell dictionaries, in statement order
        mapping: Explicit column mapping; inferred from the first row's headers when omitted

    Returns:
        ReconciliationRows numbered from 1

    Raises:
        MalformedStatement: For an empty statement, a missing reference or
            amount column, or an amount that cannot be read
    """
    if not raw_rows:
        raise MalformedStatement("Statement has no data rows")

    if mapping is None:
        mapping = infer_columns(list(raw_rows[0].keys()))
    mapping.require()

    rows = []
    for index, raw in enumerate(raw_rows, start=1):
        amount_text = raw.get(mapping.amount)
        try:
            amount = decimal_from_string(amount_text)
        except ValueError:
            raise MalformedStatement(f"Row {index}: unreadable amount {amount_text!r}")

        rows.append(ReconciliationRow(
            row_index=index,
            external_reference=_cell(raw, mapping.reference),
            amount=amount,
            receipt_ref=_cell(raw, mapping.receipt),
            payer_name=_cell(raw, mapping.name)
        ))

    return rows
