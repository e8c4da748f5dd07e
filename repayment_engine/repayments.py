"""
Repayment Service Module

System of record for loan repayments. Wires the pure calculators to
storage: registers loans, records individual and batch payments, edits and
reverses transactions, and runs reconciliations.

Settlement references are claimed through a storage uniqueness constraint;
the lookup before allocation only fails fast. Loan balances are folded from
the per-loan ledger on every read.
"""

from contextlib import contextmanager
from decimal import Decimal
from datetime import datetime, date, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set
import uuid

from .allocation import PaymentAllocator, build_transactions
from .amortization import AmortizationCalculator, AmortizationResult, LoanTerms
from .arrears import ArrearsClassifier, ArrearsSnapshot, MonthStatus, month_statuses, months_covered
from .audit import AuditTrail, AuditEventType
from .batch import BatchAllocation, BatchAllocator, BatchMember, BatchRepaymentRecord
from .config import EngineConfig, get_config
from .currency import Currency, ZERO, to_decimal
from .exceptions import (
    DuplicateKeyError, DuplicateSettlementReference, InvalidPaymentAmount, LoanNotFound, PartialBatchFailure
)
from .ledger import LedgerEntry, LoanLedger, LoanState, LoanStatus
from .logging_config import get_logger, log_action
from .portfolio import IntegrityReport, LoanPosition, PortfolioSummary, check_integrity, summarize_portfolio
from .reconciliation import (
    MatchResult, ReconciliationMatcher, ReconciliationSession,
    build_batch_index, build_session, build_transaction_index
)
from .statement import ColumnMapping, ReconciliationRow, normalize_rows
from .storage import SQLiteStorage, StorageInterface, StorageRecord
from .transactions import Transaction, TransactionSource, normalize_reference


logger = get_logger(__name__)


@dataclass
class LoanRecord(StorageRecord):
    """A registered loan: its terms plus the figures fixed at registration"""
    loan_ref: str
    beneficiary_name: str
    principal: Decimal
    annual_rate_percent: Decimal
    tenor_months: int
    moratorium_months: int
    disbursement_date: date
    monthly_installment: Decimal
    total_payment: Decimal
    currency: Currency = Currency.NGN
    organization: str = ""
    defaulted: bool = False

    @property
    def terms(self) -> LoanTerms:
        return LoanTerms(
            principal=self.principal,
            annual_rate_percent=self.annual_rate_percent,
            tenor_months=self.tenor_months,
            moratorium_months=self.moratorium_months,
            disbursement_date=self.disbursement_date,
            currency=self.currency
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['disbursement_date'] = self.disbursement_date.isoformat()
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanRecord':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_ref=data['loan_ref'],
            beneficiary_name=data.get('beneficiary_name', ""),
            principal=Decimal(data['principal']),
            annual_rate_percent=Decimal(data['annual_rate_percent']),
            tenor_months=data['tenor_months'],
            moratorium_months=data['moratorium_months'],
            disbursement_date=date.fromisoformat(data['disbursement_date']),
            monthly_installment=Decimal(data['monthly_installment']),
            total_payment=Decimal(data['total_payment']),
            currency=Currency[data.get('currency', 'NGN')],
            organization=data.get('organization', ""),
            defaulted=data.get('defaulted', False)
        )


@dataclass
class LoanBatch(StorageRecord):
    """A named group of loans repaid with one settlement receipt per month"""
    name: str
    loan_refs: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanBatch':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            name=data['name'],
            loan_refs=list(data.get('loan_refs', []))
        )


@dataclass(frozen=True)
class RecordedPayment:
    """Outcome of recording one individual payment"""
    transactions: List[Transaction]
    previous_state: LoanState
    state: LoanState

    @property
    def total_amount(self) -> Decimal:
        return sum((t.amount for t in self.transactions), ZERO)


@dataclass(frozen=True)
class MemberFailure:
    """A batch member whose write failed"""
    loan_ref: str
    amount: Decimal
    error: str


@dataclass
class BatchPaymentResult:
    """Per-member outcome of a batch payment"""
    batch_payment_id: str
    allocation: Optional[BatchAllocation]
    succeeded: List[str] = field(default_factory=list)
    failed: List[MemberFailure] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed)

    @property
    def excluded_count(self) -> int:
        return self.allocation.excluded_count if self.allocation else 0

    @property
    def is_complete(self) -> bool:
        return not self.failed

    def raise_for_failures(self) -> None:
        """Raise PartialBatchFailure if any member write failed"""
        if self.failed:
            raise PartialBatchFailure(self)


class RepaymentService:
    """
    Records repayments against registered loans

    Every individual or batch payment claims its settlement reference exactly
    once. Reversals replay the stored amounts of the rows they undo.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        config: Optional[EngineConfig] = None
    ):
        self.storage = storage
        self.config = config or get_config()
        self.audit_trail = audit_trail or AuditTrail(storage)

        self.calculator = AmortizationCalculator(self.config.max_tenor_months)
        self.classifier = ArrearsClassifier(self.config.grace_days, self.config.npl_days)
        self.allocator = PaymentAllocator()
        self.batch_allocator = BatchAllocator()
        self.matcher = ReconciliationMatcher(self.config.match_tolerance_decimal)

        self.loans_table = "loans"
        self.batches_table = "loan_batches"
        self.transactions_table = "transactions"
        self.batch_payments_table = "batch_repayments"
        self.ledger_table = "ledger_entries"
        self.claims_table = "reference_claims"
        self.sessions_table = "reconciliation_sessions"

        # Schedules are pure functions of the terms; balances are never cached
        self._schedules: Dict[str, AmortizationResult] = {}

    # Loans

    def register_loan(
        self,
        loan_ref: str,
        terms: LoanTerms,
        beneficiary_name: str = "",
        organization: str = "",
        user_id: Optional[str] = None
    ) -> LoanRecord:
        """
        Register a loan and fix its installment and total payment

        Raises:
            InvalidLoanTerms: If the terms fail validation
            ValueError: If the loan reference is already registered
        """
        result = self.calculator.compute(terms)
        now = datetime.now(timezone.utc)

        loan = LoanRecord(
            id=loan_ref,
            created_at=now,
            updated_at=now,
            loan_ref=loan_ref,
            beneficiary_name=beneficiary_name,
            principal=terms.principal,
            annual_rate_percent=terms.annual_rate_percent,
            tenor_months=terms.tenor_months,
            moratorium_months=terms.moratorium_months,
            disbursement_date=terms.disbursement_date,
            monthly_installment=result.monthly_installment,
            total_payment=result.total_payment,
            currency=terms.currency,
            organization=organization
        )

        with self.storage.atomic():
            try:
                self.storage.insert_unique(self.loans_table, loan_ref, loan.to_dict())
            except DuplicateKeyError:
                raise ValueError(f"Loan {loan_ref} is already registered")

            self._audit(
                event_type=AuditEventType.LOAN_REGISTERED,
                entity_type="loan",
                entity_id=loan_ref,
                metadata={
                    "principal": terms.principal,
                    "annual_rate_percent": terms.annual_rate_percent,
                    "tenor_months": terms.tenor_months,
                    "moratorium_months": terms.moratorium_months,
                    "monthly_installment": result.monthly_installment,
                    "total_payment": result.total_payment
                },
                user_id=user_id
            )

        self._schedules[loan_ref] = result
        log_action(logger, "info", f"Registered loan {loan_ref}",
                   action="register_loan", resource=loan_ref,
                   extra={"monthly_installment": result.installment_money().to_string()})
        return loan

    def get_loan(self, loan_ref: str) -> LoanRecord:
        data = self.storage.load(self.loans_table, loan_ref)
        if not data:
            raise LoanNotFound(f"Loan {loan_ref} not found")
        return LoanRecord.from_dict(data)

    def list_loans(self) -> List[LoanRecord]:
        return [LoanRecord.from_dict(data) for data in self.storage.load_all(self.loans_table)]

    def get_loan_terms(self, loan_ref: str) -> LoanTerms:
        return self.get_loan(loan_ref).terms

    def get_schedule(self, loan_ref: str) -> AmortizationResult:
        if loan_ref not in self._schedules:
            self._schedules[loan_ref] = self.calculator.compute(self.get_loan_terms(loan_ref))
        return self._schedules[loan_ref]

    def set_defaulted(self, loan_ref: str, defaulted: bool = True) -> LoanState:
        """Flag or clear a default; a fully paid loan stays completed either way"""
        loan = self.get_loan(loan_ref)
        loan.defaulted = defaulted
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan_ref, loan.to_dict())
        return self.get_state(loan_ref)

    def get_ledger(self, loan_ref: str) -> LoanLedger:
        loan = self.get_loan(loan_ref)
        return self._ledger_for(loan)

    def get_state(self, loan_ref: str) -> LoanState:
        return self.get_ledger(loan_ref).state

    def get_snapshot(self, loan_ref: str, as_of: Optional[date] = None) -> ArrearsSnapshot:
        """Arrears snapshot from the current ledger; recomputed on every call"""
        loan = self.get_loan(loan_ref)
        state = self._ledger_for(loan).state
        return self.classifier.classify(
            self.get_schedule(loan_ref).schedule,
            loan.monthly_installment,
            state.total_paid,
            as_of or date.today(),
            state.status
        )

    def get_month_statuses(self, loan_ref: str, as_of: Optional[date] = None) -> Dict[int, MonthStatus]:
        return month_statuses(
            self.get_schedule(loan_ref).schedule,
            self.get_transactions(loan_ref),
            as_of or date.today(),
            self.config.installment_tolerance_decimal
        )

    def get_transactions(self, loan_ref: str) -> List[Transaction]:
        transactions = [
            Transaction.from_dict(data)
            for data in self.storage.find(self.transactions_table, {'beneficiary_ref': loan_ref})
        ]
        transactions.sort(key=lambda t: (t.month_for, t.created_at))
        return transactions

    def get_transaction(self, transaction_id: str) -> Transaction:
        data = self.storage.load(self.transactions_table, transaction_id)
        if not data:
            raise ValueError(f"Transaction {transaction_id} not found")
        return Transaction.from_dict(data)

    # Individual payments

    def record_payment(
        self,
        loan_ref: str,
        amount: Decimal,
        settlement_reference: str,
        date_paid: date,
        start_month: Optional[int] = None,
        receipt_ref: Optional[str] = None,
        notes: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> RecordedPayment:
        """
        Record a payment, auto-forwarding any excess to the following months

        Args:
            loan_ref: Loan being repaid
            amount: Amount received
            settlement_reference: External settlement reference (e.g. RRR)
            date_paid: Date the payment settled
            start_month: First month to credit; defaults to the first month
                not yet covered by cumulative payments
            receipt_ref: Optional receipt link
            notes: Optional notes
            user_id: User recording the payment

        Returns:
            RecordedPayment with the persisted transactions and resulting state

        Raises:
            LoanNotFound: If the loan is not registered
            InvalidPaymentAmount: For a non-positive amount or start month outside the tenor
            DuplicateSettlementReference: If the reference was already claimed
        """
        loan = self.get_loan(loan_ref)
        reference = (settlement_reference or "").strip()
        if not reference:
            raise ValueError("Settlement reference is required")
        self._check_reference_available(reference, loan_ref, user_id)

        ledger = self._ledger_for(loan)
        previous_state = ledger.state
        if start_month is None:
            start_month = min(months_covered(previous_state.total_paid, loan.monthly_installment) + 1,
                              loan.tenor_months)

        allocations = self.allocator.allocate(start_month, to_decimal(amount),
                                              loan.monthly_installment, loan.tenor_months)
        transactions = build_transactions(
            allocations,
            beneficiary_ref=loan_ref,
            settlement_reference=reference,
            date_paid=date_paid,
            beneficiary_name=loan.beneficiary_name,
            receipt_ref=receipt_ref,
            notes=notes
        )

        with self._claiming(reference):
            self._claim_reference(reference, "individual", loan_ref)
            for transaction in transactions:
                self.storage.insert_unique(self.transactions_table, transaction.id, transaction.to_dict())
                delta = ledger.record_payment(transaction.amount, transaction.id, reference)
                self._save_entry(delta.entry)

            self._audit(
                event_type=AuditEventType.PAYMENT_RECORDED,
                entity_type="loan",
                entity_id=loan_ref,
                metadata={
                    "settlement_reference": reference,
                    "amount": to_decimal(amount),
                    "months": [t.month_for for t in transactions],
                    "transaction_ids": [t.id for t in transactions],
                    "total_paid": ledger.state.total_paid
                },
                user_id=user_id
            )
            self._log_completion(loan_ref, previous_state, ledger.state, user_id)

        log_action(logger, "info", f"Recorded payment {reference} on loan {loan_ref}",
                   action="record_payment", resource=loan_ref,
                   extra={"amount": str(amount), "allocations": len(transactions),
                          "outstanding": ledger.state.outstanding_money(loan.currency).to_string()})

        return RecordedPayment(transactions=transactions, previous_state=previous_state, state=ledger.state)

    def edit_transaction(
        self,
        transaction_id: str,
        amount: Optional[Decimal] = None,
        date_paid: Optional[date] = None,
        receipt_ref: Optional[str] = None,
        notes: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> LoanState:
        """
        Edit a transaction; an amount change reverses the stored amount and
        credits the new one

        Raises:
            InvalidPaymentAmount: If the new amount is not positive
        """
        transaction = self.get_transaction(transaction_id)
        loan = self.get_loan(transaction.beneficiary_ref)
        ledger = self._ledger_for(loan)
        previous_state = ledger.state
        old_amount = transaction.amount

        with self.storage.atomic():
            if amount is not None and to_decimal(amount) != old_amount:
                new_amount = to_decimal(amount)
                reversal = ledger.reverse_payment(transaction_id)
                credit = ledger.record_payment(new_amount, transaction_id, transaction.settlement_reference)
                self._save_entry(reversal.entry)
                self._save_entry(credit.entry)
                transaction.amount = new_amount

            if date_paid is not None:
                transaction.date_paid = date_paid
            if receipt_ref is not None:
                transaction.receipt_ref = receipt_ref
            if notes is not None:
                transaction.notes = notes
            transaction.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.transactions_table, transaction.id, transaction.to_dict())

            self._audit(
                event_type=AuditEventType.TRANSACTION_EDITED,
                entity_type="transaction",
                entity_id=transaction_id,
                metadata={
                    "loan_ref": loan.loan_ref,
                    "old_amount": old_amount,
                    "new_amount": transaction.amount,
                    "total_paid": ledger.state.total_paid
                },
                user_id=user_id
            )
            self._log_completion(loan.loan_ref, previous_state, ledger.state, user_id)

        return ledger.state

    def delete_transaction(self, transaction_id: str, user_id: Optional[str] = None) -> LoanState:
        """
        Delete a transaction, reversing exactly the amount it credited

        The settlement reference is released once no row of an individual
        payment still carries it.
        """
        transaction = self.get_transaction(transaction_id)
        loan = self.get_loan(transaction.beneficiary_ref)
        ledger = self._ledger_for(loan)

        with self.storage.atomic():
            delta = ledger.reverse_payment(transaction_id)
            self._save_entry(delta.entry)
            self.storage.delete(self.transactions_table, transaction_id)

            if transaction.source == TransactionSource.INDIVIDUAL:
                remaining = self.storage.find(self.transactions_table,
                                              {'settlement_reference': transaction.settlement_reference})
                if not remaining:
                    self.storage.delete(self.claims_table, transaction.reference_key)

            self._audit(
                event_type=AuditEventType.TRANSACTION_REVERSED,
                entity_type="transaction",
                entity_id=transaction_id,
                metadata={
                    "loan_ref": loan.loan_ref,
                    "amount": transaction.amount,
                    "month_for": transaction.month_for,
                    "settlement_reference": transaction.settlement_reference,
                    "total_paid": delta.current.total_paid
                },
                user_id=user_id
            )

        log_action(logger, "info", f"Reversed transaction {transaction_id}",
                   action="delete_transaction", resource=loan.loan_ref,
                   extra={"amount": str(transaction.amount)})
        return ledger.state

    # Batch payments

    def register_batch(self, batch_id: str, name: str, loan_refs: Sequence[str]) -> LoanBatch:
        """Register a batch of already registered loans"""
        for loan_ref in loan_refs:
            self.get_loan(loan_ref)

        now = datetime.now(timezone.utc)
        batch = LoanBatch(id=batch_id, created_at=now, updated_at=now, name=name, loan_refs=list(loan_refs))
        self.storage.save(self.batches_table, batch_id, batch.to_dict())
        return batch

    def get_batch(self, batch_id: str) -> LoanBatch:
        data = self.storage.load(self.batches_table, batch_id)
        if not data:
            raise ValueError(f"Batch {batch_id} not found")
        return LoanBatch.from_dict(data)

    def get_batch_payment(self, batch_payment_id: str) -> BatchRepaymentRecord:
        data = self.storage.load(self.batch_payments_table, batch_payment_id)
        if not data:
            raise ValueError(f"Batch payment {batch_payment_id} not found")
        return BatchRepaymentRecord.from_dict(data)

    def get_batch_transactions(self, batch_payment_id: str) -> List[Transaction]:
        return [
            Transaction.from_dict(data)
            for data in self.storage.find(self.transactions_table, {'batch_payment_id': batch_payment_id})
        ]

    def record_batch_payment(
        self,
        batch_id: str,
        actual_amount: Decimal,
        settlement_reference: str,
        payment_date: date,
        month_for: int,
        included_refs: Optional[Iterable[str]] = None,
        receipt_ref: Optional[str] = None,
        notes: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> BatchPaymentResult:
        """
        Record one settlement receipt covering several loans

        The batch record, with its verbatim per-member allocation, is persisted
        before any member is credited and survives member failures. Each member
        is then written independently.

        Args:
            batch_id: Registered batch
            actual_amount: Amount actually received
            settlement_reference: External settlement reference
            payment_date: Date the receipt settled
            month_for: Schedule month being paid
            included_refs: Members covered; defaults to the whole batch
            receipt_ref: Optional receipt link
            notes: Optional notes
            user_id: User recording the payment

        Returns:
            BatchPaymentResult listing members that succeeded and failed

        Raises:
            InvalidPaymentAmount: If the allocation inputs are invalid or the month
                is outside an included member's tenor
            DuplicateSettlementReference: If the reference was already claimed
        """
        batch = self.get_batch(batch_id)
        reference = (settlement_reference or "").strip()
        if not reference:
            raise ValueError("Settlement reference is required")

        loans = {ref: self.get_loan(ref) for ref in batch.loan_refs}
        included: Set[str] = set(batch.loan_refs if included_refs is None else included_refs)
        for ref in batch.loan_refs:
            if ref in included and not 1 <= month_for <= loans[ref].tenor_months:
                raise InvalidPaymentAmount(
                    f"Month {month_for} is outside the tenor of loan {ref} (1..{loans[ref].tenor_months})"
                )
        self._check_reference_available(reference, batch_id, user_id)

        members = [BatchMember(ref, loans[ref].monthly_installment, loans[ref].beneficiary_name)
                   for ref in batch.loan_refs]
        allocation = self.batch_allocator.allocate_batch(members, included, to_decimal(actual_amount))

        now = datetime.now(timezone.utc)
        record = BatchRepaymentRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            batch_id=batch_id,
            batch_name=batch.name,
            month_for=month_for,
            expected_amount=allocation.expected_amount,
            actual_amount=allocation.actual_amount_paid,
            settlement_reference=reference,
            payment_date=payment_date,
            allocations={m.ref: m.amount for m in allocation.included},
            excluded_refs=[m.ref for m in allocation.excluded],
            receipt_ref=receipt_ref,
            notes=notes
        )

        with self._claiming(reference):
            self._claim_reference(reference, "batch", record.id)
            self.storage.insert_unique(self.batch_payments_table, record.id, record.to_dict())

        result = BatchPaymentResult(batch_payment_id=record.id, allocation=allocation)
        for member in allocation.included:
            self._write_member(record, loans[member.ref], member.amount, result, user_id)

        self._audit(
            event_type=AuditEventType.BATCH_PAYMENT_RECORDED,
            entity_type="batch_payment",
            entity_id=record.id,
            metadata={
                "batch_id": batch_id,
                "settlement_reference": reference,
                "expected_amount": allocation.expected_amount,
                "actual_amount": allocation.actual_amount_paid,
                "ratio": allocation.ratio,
                "success_count": result.success_count,
                "failure_count": result.failure_count,
                "excluded_count": allocation.excluded_count
            },
            user_id=user_id
        )

        level = "warning" if result.failed else "info"
        log_action(logger, level,
                   f"Batch payment {reference}: {result.success_count} recorded, {result.failure_count} failed",
                   action="record_batch_payment", resource=batch_id,
                   extra={"batch_payment_id": record.id, "excluded_count": allocation.excluded_count})
        return result

    def delete_batch_payment(self, batch_payment_id: str, user_id: Optional[str] = None) -> Dict[str, Decimal]:
        """
        Delete a batch payment and every member row that was committed

        Returns:
            Per-member total_paid deltas, replayed from the stored transactions
        """
        record = self.get_batch_payment(batch_payment_id)
        transactions = self.get_batch_transactions(batch_payment_id)
        deltas = self.batch_allocator.reversal_deltas(transactions)

        with self.storage.atomic():
            for transaction in transactions:
                ledger = self._ledger_for(self.get_loan(transaction.beneficiary_ref))
                self._save_entry(ledger.reverse_payment(transaction.id).entry)
                self.storage.delete(self.transactions_table, transaction.id)

            self.storage.delete(self.batch_payments_table, batch_payment_id)
            self.storage.delete(self.claims_table, normalize_reference(record.settlement_reference))

            self._audit(
                event_type=AuditEventType.BATCH_PAYMENT_REVERSED,
                entity_type="batch_payment",
                entity_id=batch_payment_id,
                metadata={
                    "batch_id": record.batch_id,
                    "settlement_reference": record.settlement_reference,
                    "deltas": deltas
                },
                user_id=user_id
            )

        log_action(logger, "info", f"Reversed batch payment {batch_payment_id}",
                   action="delete_batch_payment", resource=record.batch_id,
                   extra={"members_reversed": len(deltas)})
        return deltas

    def repair_batch_payment(self, batch_payment_id: str, user_id: Optional[str] = None) -> BatchPaymentResult:
        """
        Write the member rows a batch payment intended but never committed

        The stored allocation decision is replayed verbatim and diffed against
        the persisted transactions; current balances play no part.
        """
        record = self.get_batch_payment(batch_payment_id)
        persisted = {t.beneficiary_ref for t in self.get_batch_transactions(batch_payment_id)}

        result = BatchPaymentResult(batch_payment_id=batch_payment_id, allocation=None)
        for loan_ref, amount in record.allocations.items():
            if loan_ref in persisted:
                continue
            self._write_member(record, self.get_loan(loan_ref), amount, result, user_id)

        self._audit(
            event_type=AuditEventType.BATCH_PAYMENT_REPAIRED,
            entity_type="batch_payment",
            entity_id=batch_payment_id,
            metadata={
                "repaired": result.succeeded,
                "still_failing": [f.loan_ref for f in result.failed]
            },
            user_id=user_id
        )
        return result

    def _write_member(self, record: BatchRepaymentRecord, loan: LoanRecord, amount: Decimal,
                      result: BatchPaymentResult, user_id: Optional[str]) -> None:
        try:
            ledger = self._ledger_for(loan)
            previous_state = ledger.state
            transaction = Transaction(
                id=str(uuid.uuid4()),
                created_at=datetime.now(timezone.utc),
                updated_at=datetime.now(timezone.utc),
                beneficiary_ref=loan.loan_ref,
                amount=amount,
                settlement_reference=record.settlement_reference,
                allocation_reference=record.settlement_reference,
                date_paid=record.payment_date,
                month_for=record.month_for,
                source=TransactionSource.BATCH,
                batch_payment_id=record.id,
                beneficiary_name=loan.beneficiary_name,
                receipt_ref=record.receipt_ref,
                notes=record.notes
            )
            with self.storage.atomic():
                self.storage.insert_unique(self.transactions_table, transaction.id, transaction.to_dict())
                delta = ledger.record_payment(amount, transaction.id, record.settlement_reference)
                self._save_entry(delta.entry)
                self._log_completion(loan.loan_ref, previous_state, ledger.state, user_id)
        except Exception as e:
            log_action(logger, "error", f"Batch member {loan.loan_ref} failed: {e}",
                       action="record_batch_member", resource=loan.loan_ref,
                       extra={"batch_payment_id": record.id, "amount": str(amount)})
            result.failed.append(MemberFailure(loan_ref=loan.loan_ref, amount=amount, error=str(e)))
        else:
            result.succeeded.append(loan.loan_ref)

    # Reconciliation

    def reconcile(self, rows: Sequence[ReconciliationRow]) -> List[MatchResult]:
        """Match normalized statement rows against every recorded payment (read-only)"""
        # Batch member rows share the receipt's reference; the receipt is matched via its batch record
        transactions = [
            Transaction.from_dict(d)
            for d in self.storage.find(self.transactions_table, {'source': TransactionSource.INDIVIDUAL.value})
        ]
        records = [BatchRepaymentRecord.from_dict(d) for d in self.storage.load_all(self.batch_payments_table)]
        return self.matcher.match(rows, build_transaction_index(transactions), build_batch_index(records))

    def reconcile_statement(self, raw_rows: Sequence[Dict[str, Any]],
                            mapping: Optional[ColumnMapping] = None) -> List[MatchResult]:
        return self.reconcile(normalize_rows(raw_rows, mapping))

    def save_reconciliation_session(
        self,
        results: Sequence[MatchResult],
        organization: str,
        payment_month: int,
        payment_year: int,
        file_name: str = "",
        notes: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> ReconciliationSession:
        """Persist a reconciliation run with the full detail of its exact matches"""
        session = build_session(results, organization, payment_month, payment_year,
                                file_name=file_name, notes=notes, created_by=user_id)

        with self.storage.atomic():
            self.storage.insert_unique(self.sessions_table, session.id, session.to_dict())
            self._audit(
                event_type=AuditEventType.RECONCILIATION_SAVED,
                entity_type="reconciliation_session",
                entity_id=session.id,
                metadata={
                    "organization": session.organization,
                    "period": f"{payment_year}-{payment_month:02d}",
                    "matched_count": session.matched_count,
                    "mismatch_count": session.mismatch_count,
                    "unmatched_count": session.unmatched_count,
                    "matched_amount": session.matched_amount
                },
                user_id=user_id
            )

        log_action(logger, "info", f"Saved reconciliation for {session.organization}",
                   action="save_reconciliation_session", resource=session.id,
                   extra={"matched_count": session.matched_count})
        return session

    def list_reconciliation_sessions(self) -> List[ReconciliationSession]:
        sessions = [ReconciliationSession.from_dict(d) for d in self.storage.load_all(self.sessions_table)]
        sessions.sort(key=lambda s: (s.payment_year, s.payment_month), reverse=True)
        return sessions

    # Reporting

    def portfolio_summary(self, as_of: Optional[date] = None) -> PortfolioSummary:
        positions = []
        for loan in self.list_loans():
            positions.append(LoanPosition(
                loan_ref=loan.loan_ref,
                state=self._ledger_for(loan).state,
                snapshot=self.get_snapshot(loan.loan_ref, as_of)
            ))
        return summarize_portfolio(positions)

    def integrity_report(self) -> IntegrityReport:
        """Compare each loan's ledger total against its persisted transactions"""
        recorded = {loan.loan_ref: self._ledger_for(loan).total_paid for loan in self.list_loans()}
        transactions = [Transaction.from_dict(d) for d in self.storage.load_all(self.transactions_table)]
        return check_integrity(recorded, transactions, self.config.match_tolerance_decimal)

    # Internals

    def _ledger_for(self, loan: LoanRecord) -> LoanLedger:
        entries = [
            LedgerEntry.from_dict(data)
            for data in self.storage.find(self.ledger_table, {'loan_ref': loan.loan_ref})
        ]
        return LoanLedger(loan.loan_ref, loan.total_payment, entries, defaulted=loan.defaulted)

    def _save_entry(self, entry: LedgerEntry) -> None:
        self.storage.insert_unique(self.ledger_table, entry.id, entry.to_dict())

    def _check_reference_available(self, reference: str, owner: str, user_id: Optional[str]) -> None:
        """Fast-fail lookup; the claim insert is what actually guarantees uniqueness"""
        if self.storage.exists(self.claims_table, normalize_reference(reference)):
            self._reject_duplicate(reference, owner, user_id)

    def _claim_reference(self, reference: str, owner_type: str, owner_id: str) -> None:
        self.storage.insert_unique(self.claims_table, normalize_reference(reference), {
            'reference': reference,
            'owner_type': owner_type,
            'owner_id': owner_id,
            'claimed_at': datetime.now(timezone.utc).isoformat()
        })

    @contextmanager
    def _claiming(self, reference: str):
        """Atomic block around a reference claim; a lost claim rolls back and surfaces as a duplicate"""
        try:
            with self.storage.atomic():
                yield
        except DuplicateKeyError as e:
            if e.table != self.claims_table:
                raise
            raise DuplicateSettlementReference(reference) from e

    def _audit(self, **event: Any) -> None:
        if self.config.enable_audit_logging:
            self.audit_trail.log_event(**event)

    def _reject_duplicate(self, reference: str, owner: str, user_id: Optional[str]) -> None:
        self._audit(
            event_type=AuditEventType.DUPLICATE_REFERENCE_REJECTED,
            entity_type="settlement_reference",
            entity_id=normalize_reference(reference),
            metadata={"reference": reference, "attempted_by": owner},
            user_id=user_id
        )
        log_action(logger, "warning", f"Rejected duplicate settlement reference {reference}",
                   action="duplicate_reference", resource=owner)
        raise DuplicateSettlementReference(reference)

    def _log_completion(self, loan_ref: str, previous: LoanState, current: LoanState,
                        user_id: Optional[str]) -> None:
        if previous.status != LoanStatus.COMPLETED and current.status == LoanStatus.COMPLETED:
            self._audit(
                event_type=AuditEventType.LOAN_COMPLETED,
                entity_type="loan",
                entity_id=loan_ref,
                metadata={"total_paid": current.total_paid},
                user_id=user_id
            )



def create_service(config: Optional[EngineConfig] = None) -> RepaymentService:
    """Service over the SQLite database named by `database_url`"""
    config = config or get_config()
    storage = SQLiteStorage.from_url(config.database_url)
    return RepaymentService(storage, AuditTrail(storage), config)
