"""
Loan Repayment Ledger

Daily repayment schedules, payment edits, settlement and reconciliation
for manually collected loans. All money math uses Decimal.
"""

__version__ = "1.0.0"
