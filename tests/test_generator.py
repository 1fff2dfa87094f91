"""
Test suite for the schedule generator

Period layout, remainder absorption by the last period, rounding and the
initial statuses decided against the injected calendar day.
"""

from decimal import Decimal
from datetime import date

from loan_ledger.generator import generate_schedule, initial_status, build_schedules
from loan_ledger.models import ScheduleStatus
from loan_ledger.clock import FixedClock


TODAY = date(2024, 1, 10)


class TestGenerateSchedule:
    """Test period generation"""

    def test_even_split(self):
        """300 over 3 periods of 100 capital and 10 interest"""
        plans = generate_schedule(
            loan_amount=Decimal('300'), total_periods=3,
            capital=Decimal('100'), interest=Decimal('10'),
            due_start_date=TODAY, today=TODAY
        )

        assert [(p.capital, p.interest) for p in plans] == [
            (Decimal('100.00'), Decimal('10.00')),
            (Decimal('100.00'), Decimal('10.00')),
            (Decimal('100.00'), Decimal('10.00')),
        ]
        assert all(p.due_amount == Decimal('110.00') for p in plans)
        assert [p.period for p in plans] == [1, 2, 3]

    def test_last_period_absorbs_remainder(self):
        """250 over 3 periods of 100 leaves 50 for the last one"""
        plans = generate_schedule(
            loan_amount=Decimal('250'), total_periods=3,
            capital=Decimal('100'), interest=Decimal('0'),
            due_start_date=TODAY, today=TODAY
        )

        assert [p.capital for p in plans] == [Decimal('100.00'), Decimal('100.00'), Decimal('50.00')]
        assert sum(p.capital for p in plans) == Decimal('250')

    def test_capital_larger_than_principal(self):
        """Per-period capital never exceeds what is still unallocated"""
        plans = generate_schedule(
            loan_amount=Decimal('50'), total_periods=3,
            capital=Decimal('100'), interest=Decimal('5'),
            due_start_date=TODAY, today=TODAY
        )

        assert [p.capital for p in plans] == [Decimal('50.00'), Decimal('0.00'), Decimal('0.00')]
        assert plans[1].due_amount == Decimal('5.00')

    def test_rounding_keeps_capital_sum(self):
        """Rounded per-period capital is corrected by the last period"""
        plans = generate_schedule(
            loan_amount=Decimal('100'), total_periods=3,
            capital=Decimal('33.333'), interest=Decimal('1.005'),
            due_start_date=TODAY, today=TODAY
        )

        assert [p.capital for p in plans] == [Decimal('33.33'), Decimal('33.33'), Decimal('33.34')]
        assert sum(p.capital for p in plans) == Decimal('100.00')
        # ROUND_HALF_UP
        assert plans[0].interest == Decimal('1.01')

    def test_zero_periods(self):
        plans = generate_schedule(
            loan_amount=Decimal('100'), total_periods=0,
            capital=Decimal('10'), interest=Decimal('1'),
            due_start_date=TODAY, today=TODAY
        )
        assert plans == []

    def test_due_dates_are_consecutive_days(self):
        plans = generate_schedule(
            loan_amount=Decimal('90'), total_periods=3,
            capital=Decimal('30'), interest=Decimal('1'),
            due_start_date=date(2024, 2, 28), today=TODAY
        )
        assert [p.due_start_date for p in plans] == [
            date(2024, 2, 28), date(2024, 2, 29), date(2024, 3, 1)
        ]

    def test_past_periods_start_overdue(self):
        """Periods due strictly before today start overdue; today and later start pending"""
        plans = generate_schedule(
            loan_amount=Decimal('400'), total_periods=4,
            capital=Decimal('100'), interest=Decimal('10'),
            due_start_date=date(2024, 1, 8), today=TODAY
        )

        assert [p.status for p in plans] == [
            ScheduleStatus.OVERDUE,   # Jan 8
            ScheduleStatus.OVERDUE,   # Jan 9
            ScheduleStatus.PENDING,   # Jan 10 (today)
            ScheduleStatus.PENDING,   # Jan 11
        ]


class TestInitialStatus:

    def test_boundaries(self):
        assert initial_status(date(2024, 1, 9), TODAY) == ScheduleStatus.OVERDUE
        assert initial_status(TODAY, TODAY) == ScheduleStatus.PENDING
        assert initial_status(date(2024, 1, 11), TODAY) == ScheduleStatus.PENDING


class TestBuildSchedules:

    def test_records_carry_loan_and_period_ids(self):
        clock = FixedClock.at_date(TODAY)
        plans = generate_schedule(
            loan_amount=Decimal('200'), total_periods=2,
            capital=Decimal('100'), interest=Decimal('10'),
            due_start_date=TODAY, today=TODAY
        )

        schedules = build_schedules("loan-1", plans, clock.now())

        assert [s.id for s in schedules] == ["loan-1_1", "loan-1_2"]
        assert all(s.loan_id == "loan-1" for s in schedules)
        assert all(s.paid_amount == Decimal('0') for s in schedules)
        assert schedules[0].created_at == clock.now()
