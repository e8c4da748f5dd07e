"""
Portfolio Reporting Module

Aggregates per-loan states and arrears snapshots into portfolio figures
(collections, overdue and arrears totals, PAR30/PAR90, NPL ratio) and checks
recorded payment totals against the transactions behind them.

Delinquency thresholds are never re-derived here: every count comes from
the classifier's own snapshot.
"""

from decimal import Decimal
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .arrears import ArrearsSnapshot
from .config import get_config
from .currency import ZERO, CENT, round_money
from .ledger import LoanState, LoanStatus
from .transactions import Transaction


@dataclass(frozen=True)
class LoanPosition:
    """A loan's derived state and snapshot, as fed to portfolio reports"""
    loan_ref: str
    state: LoanState
    snapshot: ArrearsSnapshot


@dataclass(frozen=True)
class PortfolioSummary:
    """Portfolio-wide repayment figures"""
    total_loans: int
    active_count: int
    completed_count: int
    defaulted_count: int
    total_expected: Decimal
    total_collected: Decimal
    total_outstanding: Decimal
    total_overdue: Decimal
    total_arrears: Decimal
    overdue_count: int
    arrears_count: int
    par30_count: int
    par30_balance: Decimal
    par90_count: int
    par90_balance: Decimal
    npl_count: int
    npl_balance: Decimal
    npl_ratio: Decimal          # Percent of the outstanding balance of open loans

    @property
    def collection_rate(self) -> Decimal:
        if self.total_expected == ZERO:
            return ZERO
        return round_money(self.total_collected / self.total_expected * Decimal('100'))


def summarize_portfolio(positions: Iterable[LoanPosition]) -> PortfolioSummary:
    """
    Aggregate loan positions

    PAR30 is every loan the classifier has moved into arrears; PAR90 and NPL
    are the loans it flags as non-performing.
    """
    positions = list(positions)

    open_balance = ZERO
    par30 = []
    npl = []
    for position in positions:
        if position.state.status != LoanStatus.COMPLETED and position.state.outstanding_balance > ZERO:
            open_balance += position.state.outstanding_balance
        if position.snapshot.is_in_arrears:
            par30.append(position)
        if position.snapshot.is_npl:
            npl.append(position)

    npl_balance = sum((p.state.outstanding_balance for p in npl), ZERO)
    npl_ratio = round_money(npl_balance / open_balance * Decimal('100')) if open_balance > ZERO else ZERO

    return PortfolioSummary(
        total_loans=len(positions),
        active_count=sum(1 for p in positions if p.state.status == LoanStatus.ACTIVE),
        completed_count=sum(1 for p in positions if p.state.status == LoanStatus.COMPLETED),
        defaulted_count=sum(1 for p in positions if p.state.status == LoanStatus.DEFAULTED),
        total_expected=sum((p.state.total_payment for p in positions), ZERO),
        total_collected=sum((p.state.total_paid for p in positions), ZERO),
        total_outstanding=sum((p.state.outstanding_balance for p in positions), ZERO),
        total_overdue=sum((p.snapshot.overdue_amount for p in positions), ZERO),
        total_arrears=sum((p.snapshot.arrears_amount for p in positions), ZERO),
        overdue_count=sum(1 for p in positions if p.snapshot.is_overdue),
        arrears_count=len(par30),
        par30_count=len(par30),
        par30_balance=sum((p.state.outstanding_balance for p in par30), ZERO),
        par90_count=len(npl),
        par90_balance=npl_balance,
        npl_count=len(npl),
        npl_balance=npl_balance,
        npl_ratio=npl_ratio
    )


@dataclass(frozen=True)
class Discrepancy:
    """A loan whose recorded total disagrees with its transactions"""
    loan_ref: str
    system_total_paid: Decimal
    verified_total_paid: Decimal

    @property
    def variance(self) -> Decimal:
        return round_money(self.system_total_paid - self.verified_total_paid)


@dataclass
class IntegrityReport:
    """Result of an integrity check"""
    total_loans: int
    payment_variance: Decimal
    discrepancies: List[Discrepancy] = field(default_factory=list)

    @property
    def loans_with_discrepancies(self) -> int:
        return len(self.discrepancies)

    @property
    def status(self) -> str:
        if self.discrepancies or abs(self.payment_variance) > CENT:
            return "discrepancies_found"
        return "healthy"


def check_integrity(
    recorded_totals: Dict[str, Decimal],
    transactions: Iterable[Transaction],
    tolerance: Optional[Decimal] = None
) -> IntegrityReport:
    """
    Compare each loan's recorded total paid with the sum of its transactions

    Args:
        recorded_totals: loan_ref -> total paid as the system of record holds it
        transactions: Every persisted transaction
        tolerance: Largest variance that is not a discrepancy (default match tolerance)

    Returns:
        IntegrityReport listing loans whose variance exceeds the tolerance
    """
    if tolerance is None:
        tolerance = get_config().match_tolerance_decimal

    verified: Dict[str, Decimal] = {}
    for transaction in transactions:
        verified[transaction.beneficiary_ref] = verified.get(transaction.beneficiary_ref, ZERO) + transaction.amount

    discrepancies = []
    for loan_ref, recorded in sorted(recorded_totals.items()):
        verified_total = verified.get(loan_ref, ZERO)
        if abs(recorded - verified_total) > tolerance:
            discrepancies.append(Discrepancy(
                loan_ref=loan_ref,
                system_total_paid=recorded,
                verified_total_paid=verified_total
            ))

    system_total = sum(recorded_totals.values(), ZERO)
    verified_total = sum((verified.get(ref, ZERO) for ref in recorded_totals), ZERO)

    return IntegrityReport(
        total_loans=len(recorded_totals),
        payment_variance=round_money(system_total - verified_total),
        discrepancies=discrepancies
    )
