"""
Arrears Classification Module

Splits a loan's shortfall against its schedule into overdue and arrears
buckets by the age of the oldest unpaid installment, and labels the loan
with its days-past-due bucket and health. Snapshots are pure functions of
the stored total paid and the as-of date; they are never cached or stored.
"""

from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR
from datetime import date
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Union
from enum import Enum

from .amortization import ScheduleEntry
from .config import get_config
from .currency import ZERO, round_money, to_decimal
from .ledger import LoanStatus
from .transactions import Transaction


HALF_CENT = Decimal('0.005')


class DelinquencyBucket(Enum):
    """Days-past-due buckets"""
    CURRENT = "Current"
    DPD_1_30 = "1-30 DPD"
    DPD_31_60 = "31-60 DPD"
    DPD_61_90 = "61-90 DPD"
    DPD_90_PLUS = "90+ DPD"


class LoanHealth(Enum):
    """Loan health labels"""
    PERFORMING = "performing"
    DELINQUENT = "delinquent"
    NPL = "npl"
    COMPLETED = "completed"


class MonthStatus(Enum):
    """Repayment status of a single schedule month"""
    PAID = "paid"
    PAID_ADVANCE = "paid_advance"
    LATE_PAID = "late_paid"
    PARTIAL = "partial"
    OVERDUE = "overdue"
    CURRENT = "current"
    UPCOMING = "upcoming"


def dpd_bucket(days_overdue: int) -> DelinquencyBucket:
    """Bucket a days-past-due figure"""
    if days_overdue <= 0:
        return DelinquencyBucket.CURRENT
    elif days_overdue <= 30:
        return DelinquencyBucket.DPD_1_30
    elif days_overdue <= 60:
        return DelinquencyBucket.DPD_31_60
    elif days_overdue <= 90:
        return DelinquencyBucket.DPD_61_90
    else:
        return DelinquencyBucket.DPD_90_PLUS


@dataclass(frozen=True)
class ArrearsSnapshot:
    """Point-in-time delinquency view of one loan"""
    months_due: int
    months_paid: int
    expected_to_date: Decimal
    shortfall: Decimal
    overdue_amount: Decimal
    overdue_months: int
    arrears_amount: Decimal
    months_in_arrears: int
    days_overdue: int
    first_unpaid_due_date: Optional[date]
    dpd_bucket: DelinquencyBucket
    health: LoanHealth
    npl_days: int = 90

    @property
    def is_npl(self) -> bool:
        return self.days_overdue >= self.npl_days

    @property
    def is_overdue(self) -> bool:
        return self.overdue_amount > ZERO

    @property
    def is_in_arrears(self) -> bool:
        return self.arrears_amount > ZERO

    @classmethod
    def zero(cls, health: LoanHealth = LoanHealth.PERFORMING, npl_days: int = 90) -> 'ArrearsSnapshot':
        return cls(
            months_due=0,
            months_paid=0,
            expected_to_date=ZERO,
            shortfall=ZERO,
            overdue_amount=ZERO,
            overdue_months=0,
            arrears_amount=ZERO,
            months_in_arrears=0,
            days_overdue=0,
            first_unpaid_due_date=None,
            dpd_bucket=DelinquencyBucket.CURRENT,
            health=health,
            npl_days=npl_days
        )


class ArrearsClassifier:
    """
    Classifies a loan's shortfall into overdue and arrears

    A shortfall younger than grace_days (measured from the oldest unpaid due
    date) is wholly overdue; at or beyond grace_days it is wholly arrears.
    The two buckets are mutually exclusive.
    """

    def __init__(self, grace_days: Optional[int] = None, npl_days: Optional[int] = None):
        config = get_config()
        self.grace_days = config.grace_days if grace_days is None else grace_days
        self.npl_days = config.npl_days if npl_days is None else npl_days

    def classify(
        self,
        schedule: Sequence[ScheduleEntry],
        installment: Decimal,
        total_paid: Decimal,
        as_of: date,
        loan_status: Union[LoanStatus, str] = LoanStatus.ACTIVE
    ) -> ArrearsSnapshot:
        """
        Classify a loan as of a date

        Args:
            schedule: Schedule entries in month order
            installment: Monthly installment (rounded)
            total_paid: Cumulative amount paid on the loan
            as_of: Date of the snapshot
            loan_status: Current loan status

        Returns:
            ArrearsSnapshot; all-zero for completed loans
        """
        if isinstance(loan_status, str):
            loan_status = LoanStatus(loan_status)
        if loan_status == LoanStatus.COMPLETED:
            return ArrearsSnapshot.zero(LoanHealth.COMPLETED, self.npl_days)

        installment = to_decimal(installment)
        total_paid = to_decimal(total_paid)
        if installment <= ZERO:
            return ArrearsSnapshot.zero(npl_days=self.npl_days)

        months_due = sum(1 for entry in schedule if entry.due_date <= as_of)
        months_paid = months_covered(total_paid, installment)
        expected_to_date = round_money(installment * months_due)
        shortfall = max(ZERO, expected_to_date - total_paid)

        if shortfall == ZERO or months_due == 0:
            return ArrearsSnapshot(
                months_due=months_due,
                months_paid=months_paid,
                expected_to_date=expected_to_date,
                shortfall=ZERO,
                overdue_amount=ZERO,
                overdue_months=0,
                arrears_amount=ZERO,
                months_in_arrears=0,
                days_overdue=0,
                first_unpaid_due_date=None,
                dpd_bucket=DelinquencyBucket.CURRENT,
                health=LoanHealth.PERFORMING,
                npl_days=self.npl_days
            )

        # Payments covering fractions of a cent below a full month do not
        # leave that month unpaid; cap at the last due month.
        oldest_unpaid = schedule[min(months_paid, months_due - 1)].due_date
        days_overdue = max(0, (as_of - oldest_unpaid).days)

        if days_overdue < self.grace_days:
            overdue_amount, arrears_amount = shortfall, ZERO
        else:
            overdue_amount, arrears_amount = ZERO, shortfall

        return ArrearsSnapshot(
            months_due=months_due,
            months_paid=months_paid,
            expected_to_date=expected_to_date,
            shortfall=shortfall,
            overdue_amount=overdue_amount,
            overdue_months=self._month_count(overdue_amount, installment, months_due),
            arrears_amount=arrears_amount,
            months_in_arrears=self._month_count(arrears_amount, installment, months_due),
            days_overdue=days_overdue,
            first_unpaid_due_date=oldest_unpaid,
            dpd_bucket=dpd_bucket(days_overdue),
            health=self._health(days_overdue),
            npl_days=self.npl_days
        )

    def _month_count(self, amount: Decimal, installment: Decimal, months_due: int) -> int:
        if amount <= ZERO:
            return 0
        months = int((amount / installment).to_integral_value(rounding=ROUND_CEILING))
        return min(months, months_due)

    def _health(self, days_overdue: int) -> LoanHealth:
        if days_overdue >= self.npl_days:
            return LoanHealth.NPL
        elif days_overdue > 0:
            return LoanHealth.DELINQUENT
        return LoanHealth.PERFORMING


def months_covered(total_paid: Decimal, installment: Decimal) -> int:
    """
    Whole installment-months covered by cumulative payments

    Month k is covered once the money expected for k months, rounded to the
    cent, is within half a cent of the total paid.
    """
    if installment <= ZERO or total_paid <= ZERO:
        return 0
    limit = total_paid + HALF_CENT
    months = int((total_paid / installment).to_integral_value(rounding=ROUND_FLOOR))
    while months > 0 and round_money(installment * months) > limit:
        months -= 1
    while round_money(installment * (months + 1)) <= limit:
        months += 1
    return months


def month_statuses(
    schedule: Sequence[ScheduleEntry],
    transactions: Iterable[Transaction],
    as_of: date,
    tolerance: Optional[Decimal] = None
) -> Dict[int, MonthStatus]:
    """
    Status of every schedule month from the transactions credited to it

    A month within `tolerance` of its installment counts as paid. Paid months
    whose due date is still ahead are paid in advance; paid months with any
    credit dated after the due date are late-paid.
    """
    if tolerance is None:
        tolerance = get_config().installment_tolerance_decimal

    by_month: Dict[int, List[Transaction]] = {}
    for transaction in transactions:
        by_month.setdefault(transaction.month_for, []).append(transaction)

    statuses = {}
    for entry in schedule:
        credited = by_month.get(entry.month, [])
        paid = sum((t.amount for t in credited), ZERO)
        is_current_month = (entry.due_date.year, entry.due_date.month) == (as_of.year, as_of.month)

        if paid >= entry.installment - tolerance:
            if entry.due_date > as_of:
                status = MonthStatus.PAID_ADVANCE
            elif any(t.date_paid > entry.due_date for t in credited):
                status = MonthStatus.LATE_PAID
            else:
                status = MonthStatus.PAID
        elif paid > ZERO:
            status = MonthStatus.PARTIAL
        elif is_current_month:
            status = MonthStatus.CURRENT
        elif entry.due_date < as_of:
            status = MonthStatus.OVERDUE
        else:
            status = MonthStatus.UPCOMING

        statuses[entry.month] = status

    return statuses
