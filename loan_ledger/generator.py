"""
Schedule Generator Module

Builds the daily repayment periods of a loan at creation time.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import List

from .models import RepaymentSchedule, ScheduleStatus, schedule_id_for
from .money import ZERO, quantize


@dataclass
class PeriodPlan:
    """One generated period before it is persisted"""
    period: int
    due_start_date: date
    capital: Decimal
    interest: Decimal
    due_amount: Decimal
    status: ScheduleStatus


def initial_status(due_start_date: date, today: date) -> ScheduleStatus:
    """A period whose due day already passed starts out overdue"""
    if due_start_date < today:
        return ScheduleStatus.OVERDUE
    return ScheduleStatus.PENDING


def due_date_for(due_start_date: date, period: int) -> date:
    return due_start_date + timedelta(days=period - 1)


def generate_schedule(
    loan_amount: Decimal,
    total_periods: int,
    capital: Decimal,
    interest: Decimal,
    due_start_date: date,
    today: date,
    precision: int = 2
) -> List[PeriodPlan]:
    """
    Split the principal into daily periods.

    Every period but the last takes the per-period capital (never more than
    the principal still unallocated); the last period takes whatever
    remains, so the capitals always sum to the loan amount.

    Args:
        loan_amount: Principal to repay
        total_periods: Number of daily periods (0 yields no periods)
        capital: Capital due per period
        interest: Fixed interest per period
        due_start_date: Due day of period 1
        today: Calendar day used to decide initial statuses
        precision: Decimal places money is rounded to

    Returns:
        Periods ordered 1..N
    """
    if total_periods <= 0:
        return []

    interest = quantize(interest, precision)
    per_period_capital = quantize(capital, precision)
    remaining = quantize(loan_amount, precision)

    plans = []
    for period in range(1, total_periods + 1):
        if period < total_periods:
            period_capital = min(per_period_capital, remaining)
        else:
            period_capital = remaining
        period_capital = quantize(max(period_capital, ZERO), precision)
        remaining = quantize(remaining - period_capital, precision)

        due = due_date_for(due_start_date, period)
        plans.append(PeriodPlan(
            period=period,
            due_start_date=due,
            capital=period_capital,
            interest=interest,
            due_amount=quantize(period_capital + interest, precision),
            status=initial_status(due, today),
        ))

    return plans


def build_schedules(loan_id: str, plans: List[PeriodPlan], now: datetime) -> List[RepaymentSchedule]:
    """Turn generated periods into schedule records of a loan"""
    return [
        RepaymentSchedule(
            id=schedule_id_for(loan_id, plan.period),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            period=plan.period,
            due_start_date=plan.due_start_date,
            capital=plan.capital,
            interest=plan.interest,
            due_amount=plan.due_amount,
            status=plan.status,
        )
        for plan in plans
    ]
