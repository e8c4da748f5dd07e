"""
Amortization Module

Derives the fixed-installment (EMI) repayment schedule for a loan from its
terms. The moratorium only shifts the first due date; it never adds
interest-only periods or capitalizes interest into the principal.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import List, Optional, Tuple
import calendar

from .currency import Currency, Money, ZERO, round_money, to_decimal
from .exceptions import InvalidLoanTerms
from .config import get_config


@dataclass(frozen=True)
class LoanTerms:
    """Loan terms fixed at origination"""
    principal: Decimal
    annual_rate_percent: Decimal        # e.g. Decimal('6') for 6% p.a.
    tenor_months: int
    moratorium_months: int
    disbursement_date: date
    currency: Optional[Currency] = None  # Configured default currency when omitted

    def __post_init__(self):
        object.__setattr__(self, 'principal', to_decimal(self.principal))
        object.__setattr__(self, 'annual_rate_percent', to_decimal(self.annual_rate_percent))
        if self.currency is None:
            code = get_config().default_currency.upper()
            if code not in Currency.__members__:
                raise InvalidLoanTerms(f"Unsupported currency {code}")
            object.__setattr__(self, 'currency', Currency[code])

    def validate(self, max_tenor_months: int) -> None:
        """Reject terms that no calculation should be attempted on"""
        if self.principal <= ZERO:
            raise InvalidLoanTerms("Principal must be positive")
        if self.tenor_months <= 0:
            raise InvalidLoanTerms("Tenor must be at least one month")
        if self.tenor_months > max_tenor_months:
            raise InvalidLoanTerms(
                f"Tenor of {self.tenor_months} months exceeds the maximum of {max_tenor_months}"
            )
        if self.annual_rate_percent < ZERO:
            raise InvalidLoanTerms("Interest rate cannot be negative")
        if self.moratorium_months < 0:
            raise InvalidLoanTerms("Moratorium cannot be negative")

    @property
    def monthly_rate(self) -> Decimal:
        """Periodic rate as a fraction, e.g. 0.005 for 6% p.a."""
        return self.annual_rate_percent / Decimal('100') / Decimal('12')


@dataclass(frozen=True)
class ScheduleEntry:
    """Single installment month in the repayment schedule"""
    month: int
    due_date: date
    opening_balance: Decimal
    principal: Decimal
    interest: Decimal
    installment: Decimal
    closing_balance: Decimal


@dataclass(frozen=True)
class AmortizationResult:
    """Derived repayment figures. Recomputed on demand, never the source of truth."""
    monthly_installment: Decimal        # Rounded for display/storage
    installment_exact: Decimal          # Full precision, used for totals
    total_interest: Decimal
    total_payment: Decimal
    commencement_date: date
    termination_date: date
    schedule: Tuple[ScheduleEntry, ...]
    currency: Currency = Currency.NGN

    @property
    def tenor_months(self) -> int:
        return len(self.schedule)

    @property
    def due_dates(self) -> List[date]:
        return [entry.due_date for entry in self.schedule]

    def entry_for(self, month: int) -> ScheduleEntry:
        """Get the schedule entry for a 1-based month number"""
        if month < 1 or month > len(self.schedule):
            raise ValueError(f"Month {month} is outside the schedule (1..{len(self.schedule)})")
        return self.schedule[month - 1]

    def installment_money(self) -> Money:
        return Money(self.monthly_installment, self.currency)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last valid day of the target month"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_installment(principal: Decimal, annual_rate_percent: Decimal, tenor_months: int) -> Decimal:
    """
    Full-precision equated monthly installment

    Standard reducing-balance annuity: P * r * (1+r)^n / ((1+r)^n - 1)
    Where P = principal, r = monthly rate, n = number of installments
    """
    monthly_rate = annual_rate_percent / Decimal('100') / Decimal('12')
    if monthly_rate == ZERO:
        return principal / Decimal(tenor_months)

    factor = (Decimal('1') + monthly_rate) ** tenor_months
    return principal * monthly_rate * factor / (factor - Decimal('1'))


class AmortizationCalculator:
    """
    Computes the schedule and summary figures for a set of loan terms.

    Pure and deterministic: identical terms always yield an identical result.
    """

    def __init__(self, max_tenor_months: Optional[int] = None):
        if max_tenor_months is None:
            max_tenor_months = get_config().max_tenor_months
        self.max_tenor_months = max_tenor_months

    def compute(self, terms: LoanTerms) -> AmortizationResult:
        """
        Compute the amortization result for loan terms

        Args:
            terms: Validated-at-the-boundary loan terms

        Returns:
            AmortizationResult with a schedule of exactly tenor_months entries

        Raises:
            InvalidLoanTerms: If principal or tenor is out of range
        """
        terms.validate(self.max_tenor_months)

        n = terms.tenor_months
        installment = calculate_installment(terms.principal, terms.annual_rate_percent, n)

        commencement_date = add_months(terms.disbursement_date, terms.moratorium_months)
        termination_date = add_months(commencement_date, n - 1)

        schedule = self._build_schedule(terms, installment, commencement_date)

        total_payment = round_money(installment * Decimal(n), terms.currency)
        total_interest = total_payment - round_money(terms.principal, terms.currency)

        return AmortizationResult(
            monthly_installment=round_money(installment, terms.currency),
            installment_exact=installment,
            total_interest=total_interest,
            total_payment=total_payment,
            commencement_date=commencement_date,
            termination_date=termination_date,
            schedule=tuple(schedule),
            currency=terms.currency
        )

    def _build_schedule(self, terms: LoanTerms, installment: Decimal,
                        commencement_date: date) -> List[ScheduleEntry]:
        """Build the due-date schedule with its reducing-balance breakdown"""
        schedule = []
        rate = terms.monthly_rate
        balance = terms.principal
        currency = terms.currency

        for month in range(1, terms.tenor_months + 1):
            interest = balance * rate
            principal_part = installment - interest

            # Final month retires whatever principal is left
            if month == terms.tenor_months:
                principal_part = balance
            closing_balance = max(ZERO, balance - principal_part)

            schedule.append(ScheduleEntry(
                month=month,
                # Offset from commencement so month-end clamping never accumulates
                due_date=add_months(commencement_date, month - 1),
                opening_balance=round_money(balance, currency),
                principal=round_money(principal_part, currency),
                interest=round_money(interest, currency),
                installment=round_money(installment, currency),
                closing_balance=round_money(closing_balance, currency)
            ))

            balance = closing_balance

        return schedule


def compute(terms: LoanTerms) -> AmortizationResult:
    """Compute an amortization result with the configured tenor limit"""
    return AmortizationCalculator().compute(terms)
