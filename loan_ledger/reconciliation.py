"""
Reconciliation Module

Re-derives the loan aggregate fields from the complete schedule collection.
Totals are never accumulated incrementally: every call recomputes them, so
reconciling twice yields the same loan.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from .clock import Clock
from .exceptions import ReconciliationError
from .models import LoanAccount, RepaymentSchedule, ScheduleStatus, SETTLEMENT_STATUSES
from .money import ZERO, money_sum, quantize
from .repository import LoanRepository


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoanTotals:
    """Aggregate values derived from a loan's periods"""
    repaid_periods: int
    paid_capital: Decimal
    paid_interest: Decimal
    total_fines: Decimal
    receiving_amount: Decimal
    overdue_count: int

    def as_dict(self) -> Dict[str, object]:
        return {
            'repaid_periods': self.repaid_periods,
            'paid_capital': self.paid_capital,
            'paid_interest': self.paid_interest,
            'total_fines': self.total_fines,
            'receiving_amount': self.receiving_amount,
            'overdue_count': self.overdue_count,
        }


def validate_schedules(loan_id: str, schedules: Sequence[RepaymentSchedule]) -> None:
    """
    Check the schedule collection before aggregating it.

    Raises:
        ReconciliationError: periods duplicated or not contiguous from 1,
            a period paid beyond its capital or interest, or total paid
            capital exceeding total capital
    """
    periods = sorted(s.period for s in schedules)
    if len(set(periods)) != len(periods):
        raise ReconciliationError(f"Loan {loan_id} has duplicate repayment periods")
    if periods != list(range(1, len(periods) + 1)):
        raise ReconciliationError(f"Loan {loan_id} repayment periods are not contiguous from 1")

    for schedule in schedules:
        if schedule.loan_id != loan_id:
            raise ReconciliationError(
                f"Schedule {schedule.id} belongs to loan {schedule.loan_id}, not {loan_id}"
            )
        if schedule.paid_capital > schedule.capital:
            raise ReconciliationError(
                f"Schedule {schedule.id} paid capital {schedule.paid_capital} "
                f"exceeds capital {schedule.capital}"
            )
        if schedule.paid_interest > schedule.interest:
            raise ReconciliationError(
                f"Schedule {schedule.id} paid interest {schedule.paid_interest} "
                f"exceeds interest {schedule.interest}"
            )
        if min(schedule.paid_capital, schedule.paid_interest, schedule.fines) < ZERO:
            raise ReconciliationError(f"Schedule {schedule.id} has a negative paid amount")

    total_capital = money_sum(s.capital for s in schedules)
    total_paid = money_sum(s.paid_capital for s in schedules)
    if total_paid > total_capital:
        raise ReconciliationError(
            f"Loan {loan_id} paid capital {total_paid} exceeds scheduled capital {total_capital}"
        )


def reconcile(loan: LoanAccount, schedules: Sequence[RepaymentSchedule],
              precision: int = 2) -> LoanTotals:
    """
    Derive the loan totals from its periods.

    Early-settlement capital counts towards paid capital (and so the
    receiving amount) once the loan is settled or blacklisted.
    """
    validate_schedules(loan.id, schedules)

    paid_capital = money_sum((s.paid_capital for s in schedules), precision)
    if loan.status in SETTLEMENT_STATUSES:
        paid_capital = quantize(paid_capital + loan.early_settlement_capital, precision)
    paid_interest = money_sum((s.paid_interest for s in schedules), precision)
    total_fines = money_sum((s.fines for s in schedules), precision)

    return LoanTotals(
        repaid_periods=sum(1 for s in schedules if s.status == ScheduleStatus.PAID),
        paid_capital=paid_capital,
        paid_interest=paid_interest,
        total_fines=total_fines,
        receiving_amount=quantize(paid_capital + paid_interest + total_fines, precision),
        overdue_count=sum(1 for s in schedules if s.status == ScheduleStatus.OVERDUE),
    )


def apply_totals(loan: LoanAccount, totals: LoanTotals) -> bool:
    """Copy totals onto the loan; returns whether anything changed"""
    changed = False
    for name, value in totals.as_dict().items():
        if getattr(loan, name) != value:
            setattr(loan, name, value)
            changed = True
    return changed


class Reconciler:
    """Reconciles loans inside the caller's loan transaction"""

    def __init__(self, repository: LoanRepository, clock: Clock, precision: int = 2):
        self.repository = repository
        self.clock = clock
        self.precision = precision

    def reconcile_loan(self, loan: LoanAccount,
                       schedules: Optional[List[RepaymentSchedule]] = None) -> bool:
        """
        Recompute and persist the loan aggregate.

        Returns:
            True if the stored loan changed
        """
        if schedules is None:
            schedules = self.repository.get_schedules(loan.id)
        totals = reconcile(loan, schedules, self.precision)
        if not apply_totals(loan, totals):
            return False

        loan.updated_at = self.clock.now()
        self.repository.save_loan(loan)
        logger.debug("Reconciled loan", extra={'loan_id': loan.id, 'extra': totals.as_dict()})
        return True


@dataclass(frozen=True)
class LoanSummary:
    """Read-only view of a loan's repayment position"""
    loan_id: str
    status: str
    total_periods: int
    repaid_periods: int
    overdue_count: int
    loan_amount: Decimal
    total_capital: Decimal
    total_interest: Decimal
    paid_capital: Decimal
    paid_interest: Decimal
    total_fines: Decimal
    receiving_amount: Decimal
    early_settlement_capital: Decimal
    remaining_capital: Decimal
    remaining_interest: Decimal
    unpaid_capital: Decimal


def summarize(loan: LoanAccount, schedules: Sequence[RepaymentSchedule],
              precision: int = 2) -> LoanSummary:
    """
    Summarize a loan from its periods. Closed (settled or blacklisted) loans
    report their stored totals and nothing remaining.
    """
    total_capital = money_sum((s.capital for s in schedules), precision)
    total_interest = money_sum((s.interest for s in schedules), precision)

    if loan.status in SETTLEMENT_STATUSES:
        remaining_capital = remaining_interest = ZERO
    else:
        period_paid_capital = money_sum((s.paid_capital for s in schedules), precision)
        period_paid_interest = money_sum((s.paid_interest for s in schedules), precision)
        remaining_capital = max(total_capital - period_paid_capital, ZERO)
        remaining_interest = max(total_interest - period_paid_interest, ZERO)

    return LoanSummary(
        loan_id=loan.id,
        status=loan.status.value,
        total_periods=loan.total_periods,
        repaid_periods=loan.repaid_periods,
        overdue_count=loan.overdue_count,
        loan_amount=loan.loan_amount,
        total_capital=total_capital,
        total_interest=total_interest,
        paid_capital=loan.paid_capital,
        paid_interest=loan.paid_interest,
        total_fines=loan.total_fines,
        receiving_amount=loan.receiving_amount,
        early_settlement_capital=loan.early_settlement_capital,
        remaining_capital=quantize(remaining_capital, precision),
        remaining_interest=quantize(remaining_interest, precision),
        unpaid_capital=quantize(remaining_capital, precision),
    )
