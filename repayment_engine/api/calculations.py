"""
Calculation endpoints: amortization, arrears, payment and batch allocation
"""

from datetime import date
from fastapi import APIRouter, HTTPException, Depends

from .schemas import AllocationRequest, ArrearsRequest, BatchAllocationRequest, LoanTermsModel, money
from ..allocation import PaymentAllocator
from ..amortization import AmortizationCalculator
from ..arrears import ArrearsClassifier
from ..batch import BatchAllocator
from ..config import EngineConfig, get_config
from ..currency import to_decimal
from ..ledger import apply_payment, derive_state


router = APIRouter()


@router.post("/amortization")
async def compute_amortization(
    request: LoanTermsModel,
    config: EngineConfig = Depends(get_config)
):
    """Compute installment, totals and due-date schedule for loan terms"""
    try:
        result = AmortizationCalculator(config.max_tenor_months).compute(request.to_loan_terms())
    except (KeyError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "monthly_installment": money(result.monthly_installment),
        "installment_display": result.installment_money().to_display(),
        "total_interest": money(result.total_interest),
        "total_payment": money(result.total_payment),
        "commencement_date": result.commencement_date.isoformat(),
        "termination_date": result.termination_date.isoformat(),
        "currency": result.currency.code,
        "schedule": [
            {
                "month": entry.month,
                "due_date": entry.due_date.isoformat(),
                "opening_balance": money(entry.opening_balance),
                "principal": money(entry.principal),
                "interest": money(entry.interest),
                "installment": money(entry.installment),
                "closing_balance": money(entry.closing_balance)
            }
            for entry in result.schedule
        ]
    }


@router.post("/arrears")
async def classify_arrears(
    request: ArrearsRequest,
    config: EngineConfig = Depends(get_config)
):
    """Classify a loan's shortfall into overdue and arrears"""
    try:
        result = AmortizationCalculator(config.max_tenor_months).compute(request.terms.to_loan_terms())
        snapshot = ArrearsClassifier(config.grace_days, config.npl_days).classify(
            result.schedule,
            result.monthly_installment,
            to_decimal(request.total_paid),
            date.fromisoformat(request.as_of),
            request.loan_status
        )
    except (KeyError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "months_due": snapshot.months_due,
        "months_paid": snapshot.months_paid,
        "expected_to_date": money(snapshot.expected_to_date),
        "shortfall": money(snapshot.shortfall),
        "overdue_amount": money(snapshot.overdue_amount),
        "overdue_months": snapshot.overdue_months,
        "arrears_amount": money(snapshot.arrears_amount),
        "months_in_arrears": snapshot.months_in_arrears,
        "days_overdue": snapshot.days_overdue,
        "first_unpaid_due_date": (
            snapshot.first_unpaid_due_date.isoformat() if snapshot.first_unpaid_due_date else None
        ),
        "dpd_bucket": snapshot.dpd_bucket.value,
        "health": snapshot.health.value,
        "is_npl": snapshot.is_npl
    }


@router.post("/allocations")
async def allocate_payment(request: AllocationRequest):
    """Auto-forward a payment across installment months"""
    try:
        allocations = PaymentAllocator().allocate(
            request.start_month,
            to_decimal(request.total_amount_paid),
            to_decimal(request.installment),
            request.tenor_months
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    results = []
    for allocation in allocations:
        item = {
            "month": allocation.month,
            "amount": money(allocation.amount),
            "is_advance": allocation.is_advance
        }
        if request.settlement_reference:
            item["allocation_reference"] = allocation.allocation_reference(request.settlement_reference)
        results.append(item)

    response = {"allocations": results}
    if request.total_payment is not None and request.total_paid is not None:
        try:
            current = derive_state(to_decimal(request.total_payment), to_decimal(request.total_paid))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        proposed = apply_payment(current, to_decimal(request.total_amount_paid))
        response["state"] = {
            "total_paid": money(proposed.total_paid),
            "outstanding_balance": money(proposed.outstanding_balance),
            "status": proposed.status.value
        }
    return response


@router.post("/batch-allocations")
async def allocate_batch(request: BatchAllocationRequest):
    """Split a batch receipt across its members"""
    try:
        members = [m.to_member() for m in request.members]
        included = set(request.included_refs) if request.included_refs is not None else {m.ref for m in members}
        expected = to_decimal(request.expected_amount) if request.expected_amount is not None else None
        allocation = BatchAllocator().allocate_batch(
            members, included, to_decimal(request.actual_amount_paid), expected
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "expected_amount": money(allocation.expected_amount),
        "actual_amount_paid": money(allocation.actual_amount_paid),
        "ratio": str(allocation.ratio),
        "is_shortfall": allocation.is_shortfall,
        "overpayment": money(allocation.overpayment),
        "excluded_count": allocation.excluded_count,
        "members": [
            {"ref": m.ref, "amount": money(m.amount), "included": m.included}
            for m in allocation.members
        ]
    }
