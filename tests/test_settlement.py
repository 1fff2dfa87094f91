"""
Test suite for the settlement engine
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, time, timezone

from loan_ledger.audit import AuditTrail, AuditEventType
from loan_ledger.clock import FixedClock
from loan_ledger.exceptions import InvalidStateError, LoanNotFoundError, ValidationError
from loan_ledger.loans import LoanManager
from loan_ledger.models import (
    Operator, LoanStatus, ScheduleStatus, LedgerEntryKind, RevisionAction,
    EARLY_SETTLEMENT_REMARK,
)
from loan_ledger.schemas import SettlementRequest
from loan_ledger.storage import InMemoryStorage


TODAY = date(2024, 1, 10)


class TestSettlementEngine:
    """Test early closing of loans"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.clock = FixedClock.at_date(TODAY)
        self.audit = AuditTrail(self.storage, self.clock)
        self.manager = LoanManager(self.storage, clock=self.clock, audit_trail=self.audit)
        self.operator = Operator(id="risk-1", name="Risk Officer")

        self.loan = self.manager.create_loan({
            'borrower_id': "borrower-1",
            'loan_amount': Decimal('300'),
            'capital': Decimal('100'),
            'interest': Decimal('10'),
            'total_periods': 3,
            'due_start_date': TODAY,
        }, self.operator)

    def statuses(self):
        return [s.status for s in self.manager.get_schedules(self.loan.id)]

    def settle(self, settlement_date=date(2024, 1, 11), capital=None, status=LoanStatus.SETTLED):
        return self.manager.settle(SettlementRequest(
            loan_id=self.loan.id,
            status=status,
            settlement_date=settlement_date,
            settlement_capital=capital,
        ), self.operator)

    def test_settlement_after_period_payment(self):
        """Period 1 paid, settle at period 2's due date with 150 capital"""
        self.manager.apply_payment({
            'schedule_id': f"{self.loan.id}_1",
            'pay_capital': '100',
            'pay_interest': '10',
        }, self.operator)

        outcome = self.settle(capital=Decimal('150'))
        loan = outcome.loan

        assert self.statuses() == [
            ScheduleStatus.PAID, ScheduleStatus.TERMINATED, ScheduleStatus.TERMINATED
        ]
        assert outcome.terminated_schedule_ids == [f"{self.loan.id}_2", f"{self.loan.id}_3"]
        assert loan.status == LoanStatus.SETTLED
        assert loan.early_settlement_capital == Decimal('150.00')
        assert loan.paid_capital == Decimal('250.00')
        assert loan.receiving_amount == Decimal('260.00')
        assert loan.repaid_periods == 1

        stored = self.manager.get_loan(self.loan.id)
        assert stored.paid_capital == Decimal('250.00')
        assert stored.repaid_periods == 1

    def test_due_end_date_pinned_to_end_of_settlement_day(self):
        loan = self.settle(settlement_date=date(2024, 1, 11)).loan

        assert loan.due_end_date == datetime.combine(
            date(2024, 1, 11), time(23, 59, 59), tzinfo=timezone.utc
        )

    def test_active_periods_survive(self):
        """A period that started collecting is not voided"""
        self.manager.apply_payment({
            'schedule_id': f"{self.loan.id}_2",
            'pay_capital': '30',
        }, self.operator)

        self.settle(settlement_date=date(2024, 1, 11))

        assert self.statuses() == [
            ScheduleStatus.PENDING, ScheduleStatus.ACTIVE, ScheduleStatus.TERMINATED
        ]

    def test_settlement_defaults_to_today(self):
        outcome = self.manager.settle({'loan_id': self.loan.id}, self.operator)

        assert outcome.loan.status == LoanStatus.SETTLED
        assert self.statuses() == [ScheduleStatus.TERMINATED] * 3

    def test_early_settlement_entry_recorded_once(self):
        first = self.settle(capital=Decimal('150'))
        second = self.settle(capital=Decimal('200'))

        entries = self.manager.get_ledger_entries(self.loan.id)
        assert len(entries) == 1
        assert entries[0].kind == LedgerEntryKind.EARLY_SETTLEMENT
        assert entries[0].remark == EARLY_SETTLEMENT_REMARK
        assert entries[0].paid_capital == Decimal('200.00')
        assert first.entry.id == second.entry.id

        transaction = self.manager.repository.get_transaction(entries[0].transaction_id)
        assert transaction.amount == Decimal('200.00')
        assert second.loan.paid_capital == Decimal('200.00')

        actions = [r.action for r in self.manager.get_ledger_history(self.loan.id)]
        assert actions == [RevisionAction.CREATED, RevisionAction.UPDATED]

    def test_reinvocation_is_idempotent(self):
        first = self.settle(capital=Decimal('150'))
        snapshot = self.manager.get_loan(self.loan.id).to_dict()
        events_before = self.audit.count_events()

        self.clock.set(datetime(2024, 1, 10, 18, 0, tzinfo=timezone.utc))
        second = self.settle(capital=Decimal('150'))

        assert second.terminated_schedule_ids == []
        assert not second.status_changed
        assert self.manager.get_loan(self.loan.id).to_dict() == snapshot
        assert second.loan.status_changed_at == first.loan.status_changed_at
        assert len(self.manager.get_ledger_history(self.loan.id)) == 1
        assert self.audit.count_events() == events_before

    def test_status_changed_at_stamped_on_change(self):
        outcome = self.settle()
        assert outcome.status_changed
        assert outcome.loan.status_changed_at == self.clock.now()

    def test_without_capital_paid_capital_is_period_sum(self):
        self.manager.apply_payment({
            'schedule_id': f"{self.loan.id}_1",
            'pay_capital': '40',
        }, self.operator)

        loan = self.settle().loan

        assert loan.early_settlement_capital == Decimal('0')
        assert loan.paid_capital == Decimal('40')
        assert self.manager.get_ledger_entries(self.loan.id)[0].kind == LedgerEntryKind.PERIOD_PAYMENT

    def test_blacklist_counts_settlement_capital(self):
        loan = self.settle(capital=Decimal('80'), status=LoanStatus.BLACKLIST).loan

        assert loan.status == LoanStatus.BLACKLIST
        assert loan.paid_capital == Decimal('80.00')
        assert loan.receiving_amount == Decimal('80.00')

    def test_no_unsettle(self):
        self.settle()

        with pytest.raises(InvalidStateError):
            self.manager.update_status(self.loan.id, LoanStatus.ACTIVE, self.operator)
        with pytest.raises(InvalidStateError):
            self.manager.update_status(self.loan.id, "negotiated", self.operator)

        assert self.manager.get_loan(self.loan.id).status == LoanStatus.SETTLED

    def test_non_closing_status_rejected(self):
        with pytest.raises(ValidationError):
            self.manager.settle({'loan_id': self.loan.id, 'status': 'active'}, self.operator)

    def test_unknown_loan(self):
        with pytest.raises(LoanNotFoundError):
            self.manager.settle({'loan_id': "missing"}, self.operator)

    def test_update_status_dispatches_to_settlement(self):
        loan = self.manager.update_status(
            self.loan.id, "settled", self.operator,
            settlement_date=date(2024, 1, 12), settlement_capital=Decimal('10')
        )

        assert loan.status == LoanStatus.SETTLED
        assert self.statuses() == [
            ScheduleStatus.PENDING, ScheduleStatus.PENDING, ScheduleStatus.TERMINATED
        ]
        events = self.audit.get_events_for_entity("loan", self.loan.id)
        assert events[-1].event_type == AuditEventType.LOAN_SETTLED

    def test_settlement_after_same_day_sweep(self):
        """A period the sweep activated but nobody paid is voided"""
        loan = self.manager.create_loan({
            'borrower_id': "borrower-2",
            'loan_amount': '300',
            'capital': '100',
            'interest': '10',
            'total_periods': 3,
            'due_start_date': date(2024, 1, 9),
        }, self.operator)
        self.manager.apply_payment({
            'schedule_id': f"{loan.id}_1",
            'pay_capital': '100',
            'pay_interest': '10',
        }, self.operator)

        self.manager.run_sweep()
        assert self.manager.get_schedule(f"{loan.id}_2").status == ScheduleStatus.ACTIVE

        outcome = self.manager.settle({'loan_id': loan.id, 'settlement_capital': '150'}, self.operator)

        expected = [ScheduleStatus.PAID, ScheduleStatus.TERMINATED, ScheduleStatus.TERMINATED]
        assert [s.status for s in self.manager.get_schedules(loan.id)] == expected
        assert outcome.terminated_schedule_ids == [f"{loan.id}_2", f"{loan.id}_3"]
        assert outcome.loan.paid_capital == Decimal('250.00')

        self.manager.run_sweep(date(2024, 1, 20))
        assert [s.status for s in self.manager.get_schedules(loan.id)] == expected
