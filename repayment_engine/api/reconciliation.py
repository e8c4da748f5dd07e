"""
Reconciliation endpoints
"""

from fastapi import APIRouter, HTTPException, Depends

from .schemas import ReconciliationRequest, money
from ..config import EngineConfig, get_config
from ..exceptions import MalformedStatement
from ..reconciliation import ReconciliationMatcher, aggregate_references, summarize
from ..statement import normalize_rows


router = APIRouter()


@router.post("/reconciliation")
async def reconcile_statement(
    request: ReconciliationRequest,
    config: EngineConfig = Depends(get_config)
):
    """Match statement rows against supplied system payments (read-only)"""
    try:
        mapping = request.columns.to_mapping() if request.columns else None
        rows = normalize_rows(request.rows, mapping)
        transaction_index = aggregate_references(t.as_entry() for t in request.transactions)
        batch_index = aggregate_references(b.as_entry() for b in request.batch_payments)
        results = ReconciliationMatcher(config.match_tolerance_decimal).match(
            rows, transaction_index, batch_index
        )
    except MalformedStatement as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    summary = summarize(results)
    return {
        "summary": {
            "total_records": summary.total_records,
            "matched_count": summary.matched_count,
            "mismatch_count": summary.mismatch_count,
            "unmatched_count": summary.unmatched_count,
            "statement_total": money(summary.statement_total),
            "matched_amount": money(summary.matched_amount),
            "is_fully_matched": summary.is_fully_matched
        },
        "results": [
            {
                "row_index": r.row.row_index,
                "external_reference": r.row.external_reference,
                "amount": money(r.row.amount),
                "match_type": r.match_type.value,
                "system_amount": money(r.system_amount),
                "source": r.source.value if r.source else None,
                "beneficiary_names": r.beneficiary_names,
                "batch_name": r.batch_name
            }
            for r in results
        ]
    }
