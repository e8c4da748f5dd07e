"""
Loan Repayment Engine

Deterministic amortization, arrears classification, payment allocation and
settlement reconciliation for a staff-loan portfolio. All financial math
uses Decimal.
"""

__version__ = "1.0.0"
