"""
Test suite for the loan ledger

Tests append-only payment entries, reversals that replay stored amounts,
and status derived from the outstanding balance.
"""

import pytest
from decimal import Decimal

from repayment_engine.exceptions import InvalidPaymentAmount
from repayment_engine.ledger import (
    EntryKind, LedgerEntry, LoanLedger, LoanStatus, apply_payment, derive_state, derive_status
)


TOTAL = Decimal('120000.00')


class TestLoanLedger:
    """Test ledger folding and transitions"""

    def setup_method(self):
        """Set up test fixtures"""
        self.ledger = LoanLedger("LN-001", TOTAL)

    def test_new_loan_is_active(self):
        """Test a loan with no payments"""
        state = self.ledger.state

        assert state.total_paid == Decimal('0')
        assert state.outstanding_balance == TOTAL
        assert state.status == LoanStatus.ACTIVE

    def test_record_payment(self):
        """Test a payment reduces the outstanding balance"""
        delta = self.ledger.record_payment(Decimal('10000.00'), "txn-1", "RRR-1")

        assert delta.total_paid_delta == Decimal('10000.00')
        assert delta.current.outstanding_balance == Decimal('110000.00')
        assert not delta.status_changed
        assert delta.entry.kind == EntryKind.PAYMENT

    def test_completion(self):
        """Test paying the total completes the loan"""
        for month in range(12):
            delta = self.ledger.record_payment(Decimal('10000.00'), f"txn-{month}")

        assert delta.status_changed
        assert self.ledger.state.status == LoanStatus.COMPLETED
        assert self.ledger.state.outstanding_balance == Decimal('0')

    def test_reversal_replays_stored_amount(self):
        """Test a reversal appends the negation of the original entry"""
        self.ledger.record_payment(Decimal('7500.25'), "txn-1")

        delta = self.ledger.reverse_payment("txn-1")

        assert delta.entry.amount == Decimal('-7500.25')
        assert delta.entry.kind == EntryKind.REVERSAL
        assert self.ledger.total_paid == Decimal('0')
        assert len(self.ledger.entries) == 2

    def test_reversal_reopens_completed_loan(self):
        """Test reversing a payment on a completed loan makes it active again"""
        self.ledger.record_payment(TOTAL, "txn-1")
        assert self.ledger.state.is_completed

        delta = self.ledger.reverse_payment("txn-1")

        assert delta.status_changed
        assert self.ledger.state.status == LoanStatus.ACTIVE

    def test_double_reversal(self):
        """Test a payment can only be reversed once"""
        self.ledger.record_payment(Decimal('100'), "txn-1")
        self.ledger.reverse_payment("txn-1")

        with pytest.raises(ValueError):
            self.ledger.reverse_payment("txn-1")

    def test_non_positive_payment(self):
        """Test zero payments are rejected"""
        with pytest.raises(InvalidPaymentAmount):
            self.ledger.record_payment(Decimal('0'))

    def test_entries_fold_to_total(self):
        """Test total paid is the sum of signed entries"""
        self.ledger.record_payment(Decimal('100'), "txn-1")
        self.ledger.record_payment(Decimal('250'), "txn-2")
        self.ledger.reverse_payment("txn-1")

        rebuilt = LoanLedger("LN-001", TOTAL, [LedgerEntry.from_dict(e.to_dict()) for e in self.ledger.entries])

        assert rebuilt.total_paid == Decimal('250')
        assert rebuilt.state == self.ledger.state

    def test_defaulted_flag(self):
        """Test a defaulted loan reports defaulted until fully paid"""
        ledger = LoanLedger("LN-002", TOTAL, defaulted=True)
        assert ledger.state.status == LoanStatus.DEFAULTED

        ledger.record_payment(TOTAL, "txn-1")
        assert ledger.state.status == LoanStatus.COMPLETED


class TestDerivedState:
    """Test the pure state helpers"""

    def test_derive_status(self):
        """Test status follows the outstanding balance"""
        assert derive_status(Decimal('0')) == LoanStatus.COMPLETED
        assert derive_status(Decimal('-5')) == LoanStatus.COMPLETED
        assert derive_status(Decimal('1')) == LoanStatus.ACTIVE
        assert derive_status(Decimal('1'), defaulted=True) == LoanStatus.DEFAULTED

    def test_overpayment_floors_outstanding(self):
        """Test outstanding never goes negative"""
        state = derive_state(Decimal('100'), Decimal('150'))

        assert state.outstanding_balance == Decimal('0')
        assert state.status == LoanStatus.COMPLETED

    def test_apply_payment_and_reversal(self):
        """Test the balance delta for callers that keep their own fields"""
        state = derive_state(Decimal('100'), Decimal('0'))

        paid = apply_payment(state, Decimal('150'))
        assert paid.total_paid == Decimal('150')
        assert paid.outstanding_balance == Decimal('0')
        assert paid.status == LoanStatus.COMPLETED

        partial = apply_payment(state, Decimal('40'))
        reversed_state = apply_payment(partial, Decimal('-40'))
        assert reversed_state.total_paid == Decimal('0')
        assert reversed_state.outstanding_balance == Decimal('100')
        assert reversed_state.status == LoanStatus.ACTIVE
