"""
Loan Module

Entry point for loan lifecycle operations: origination with its repayment
schedule, payment edits, settlement, status changes, re-dating, deletion,
the daily status sweep and read access for statistics consumers.
"""

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Union

from .assets import AssetLedger
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import LedgerConfig, get_config
from .exceptions import HasDependentsError, InvalidStateError, ValidationError
from .generator import build_schedules, due_date_for, generate_schedule
from .logging_config import log_action
from .models import (
    LoanAccount, RepaymentSchedule, LedgerEntry, LedgerRevision, Operator,
    LoanStatus, ScheduleStatus, SETTLEMENT_STATUSES,
)
from .money import quantize
from .payments import PaymentApplier, PaymentOutcome
from .reconciliation import LoanSummary, Reconciler, summarize
from .repository import LoanRepository
from .schemas import ApplyPaymentRequest, CreateLoanRequest, RescheduleRequest, SettlementRequest
from .settlement import SettlementEngine, SettlementOutcome
from .storage import StorageInterface, create_storage
from .sweeper import StatusSweeper, SweepReport


logger = logging.getLogger(__name__)


def status_for_due_date(schedule: RepaymentSchedule, today: date) -> ScheduleStatus:
    """Status of an open period after its due date moved"""
    if schedule.due_start_date < today:
        return ScheduleStatus.OVERDUE
    if schedule.due_start_date == today or schedule.has_payment:
        return ScheduleStatus.ACTIVE
    return ScheduleStatus.PENDING


class LoanManager:
    """
    Loan ledger facade wiring storage, clock and the ledger components
    """

    def __init__(
        self,
        storage: StorageInterface,
        clock: Optional[Clock] = None,
        audit_trail: Optional[AuditTrail] = None,
        enable_asset_ledger: bool = True,
        precision: int = 2,
        sweep_batch_size: int = 500
    ):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.audit = audit_trail
        self.precision = precision
        self.repository = LoanRepository(storage)
        self.assets = (
            AssetLedger(storage, self.repository, self.clock, self.audit) if enable_asset_ledger else None
        )

        self.reconciler = Reconciler(self.repository, self.clock, precision)
        self.payments = PaymentApplier(
            self.repository, self.clock, self.reconciler, self.audit, self.assets, precision
        )
        self.settlement = SettlementEngine(
            self.repository, self.clock, self.reconciler, self.audit, self.assets, precision
        )
        self.sweeper = StatusSweeper(
            self.repository, self.clock, self.reconciler, self.audit, sweep_batch_size
        )

    @classmethod
    def from_config(cls, config: Optional[LedgerConfig] = None,
                    storage: Optional[StorageInterface] = None) -> 'LoanManager':
        """Build a manager from the environment configuration"""
        config = config or get_config()
        storage = storage or create_storage(config.database_url)
        clock = SystemClock(config.calendar_timezone)
        audit_trail = AuditTrail(storage, clock) if config.enable_audit_logging else None
        return cls(
            storage,
            clock=clock,
            audit_trail=audit_trail,
            enable_asset_ledger=config.enable_asset_ledger,
            precision=config.money_precision,
            sweep_batch_size=config.sweep_batch_size,
        )

    def _after_commit(self, event_type: AuditEventType, loan: LoanAccount,
                      operator: Optional[Operator], metadata: Dict[str, Any]) -> None:
        if self.audit:
            self.audit.try_log_event(event_type, "loan", loan.id, metadata=metadata, operator=operator)
        if self.assets:
            self.assets.refresh_for_loan(loan, operator)

    def create_loan(self, request: Union[CreateLoanRequest, Mapping[str, Any]],
                    operator: Operator) -> LoanAccount:
        """
        Originate a loan together with its repayment periods

        Args:
            request: Loan amounts, period layout and party references
            operator: Staff member creating the loan

        Returns:
            Created LoanAccount, already reconciled
        """
        request = CreateLoanRequest.coerce(request)
        now = self.clock.now()
        today = self.clock.today()
        loan_id = str(uuid.uuid4())

        plans = generate_schedule(
            loan_amount=request.loan_amount,
            total_periods=request.total_periods,
            capital=request.capital,
            interest=request.interest,
            due_start_date=request.due_start_date,
            today=today,
            precision=self.precision,
        )
        schedules = build_schedules(loan_id, plans, now)

        loan = LoanAccount(
            id=loan_id,
            created_at=now,
            updated_at=now,
            borrower_id=request.borrower_id,
            loan_amount=quantize(request.loan_amount, self.precision),
            capital=quantize(request.capital, self.precision),
            interest=quantize(request.interest, self.precision),
            total_periods=request.total_periods,
            due_start_date=request.due_start_date,
            due_end_date=self.clock.end_of_day(plans[-1].due_start_date) if plans else None,
            handling_fee=quantize(request.handling_fee, self.precision),
            company_cost=quantize(request.company_cost, self.precision),
            collector_id=request.collector_id,
            risk_controller_id=request.risk_controller_id,
            lender_id=request.lender_id,
            note=request.note,
            created_by=operator.id,
        )

        with self.storage.atomic():
            self.repository.save_loan(loan)
            self.repository.save_schedules(schedules)
            self.reconciler.reconcile_loan(loan, schedules)

        log_action(
            logger, "info", "Loan created",
            action="create_loan", loan_id=loan.id, operator_id=operator.id,
            extra={'total_periods': loan.total_periods, 'overdue_count': loan.overdue_count}
        )
        self._after_commit(AuditEventType.LOAN_CREATED, loan, operator, {'after': loan.to_dict()})
        return loan

    def apply_payment(self, request: Union[ApplyPaymentRequest, Mapping[str, Any]],
                      operator: Operator) -> PaymentOutcome:
        """Apply a payment edit to one period"""
        return self.payments.apply(request, operator)

    def settle(self, request: Union[SettlementRequest, Mapping[str, Any]],
               operator: Operator) -> SettlementOutcome:
        """Close a loan early as settled or blacklisted"""
        return self.settlement.settle(request, operator)

    def run_sweep(self, today: Optional[date] = None) -> SweepReport:
        """Run the daily status sweep"""
        return self.sweeper.run(today)

    def update_status(
        self,
        loan_id: str,
        status: Union[LoanStatus, str],
        operator: Operator,
        settlement_date: Optional[date] = None,
        settlement_capital: Optional[Decimal] = None
    ) -> LoanAccount:
        """
        Change a loan's status. Settled and blacklist go through the
        settlement engine; other statuses are set directly.

        Raises:
            ValidationError: Unknown status, or settlement arguments on a
                non-closing status
            InvalidStateError: The loan is already settled or blacklisted
        """
        try:
            status = LoanStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown loan status: {status}")

        if status in SETTLEMENT_STATUSES:
            request = SettlementRequest.parse(
                loan_id=loan_id,
                status=status,
                settlement_date=settlement_date,
                settlement_capital=settlement_capital,
            )
            return self.settlement.settle(request, operator).loan

        if settlement_date is not None or settlement_capital is not None:
            raise ValidationError("Settlement date and capital apply only to settled or blacklist")

        with self.repository.loan_transaction(loan_id) as loan:
            if loan.is_frozen:
                raise InvalidStateError(
                    f"Loan {loan_id} is {loan.status.value}; closed loans cannot change status"
                )
            before = loan.to_dict()
            if loan.status == status:
                return loan
            now = self.clock.now()
            loan.status = status
            if status == LoanStatus.NEGOTIATED:
                loan.status_changed_at = now
            loan.updated_at = now
            self.repository.save_loan(loan)

        log_action(
            logger, "info", f"Loan status changed to {status.value}",
            action="update_status", loan_id=loan_id, operator_id=operator.id
        )
        self._after_commit(AuditEventType.LOAN_STATUS_CHANGED, loan, operator,
                           {'before': before, 'after': loan.to_dict()})
        return loan

    def reschedule(self, request: Union[RescheduleRequest, Mapping[str, Any]],
                   operator: Operator) -> LoanAccount:
        """
        Move the loan's first due date and re-date every period after it.

        Open periods take the status their new due date implies; paid and
        terminated periods keep theirs.
        """
        request = RescheduleRequest.coerce(request)

        with self.repository.loan_transaction(request.loan_id) as loan:
            if loan.is_frozen:
                raise InvalidStateError(f"Loan {loan.id} is {loan.status.value} and cannot be rescheduled")
            before = loan.to_dict()
            now = self.clock.now()
            today = self.clock.today()

            schedules = self.repository.get_schedules(loan.id)
            for schedule in schedules:
                schedule.due_start_date = due_date_for(request.due_start_date, schedule.period)
                if schedule.status not in (ScheduleStatus.PAID, ScheduleStatus.TERMINATED):
                    schedule.status = status_for_due_date(schedule, today)
                schedule.updated_at = now
            self.repository.save_schedules(schedules)

            loan.due_start_date = request.due_start_date
            if schedules:
                loan.due_end_date = self.clock.end_of_day(schedules[-1].due_start_date)
            loan.updated_at = now
            self.repository.save_loan(loan)
            self.reconciler.reconcile_loan(loan, schedules)

        log_action(
            logger, "info", "Loan rescheduled",
            action="reschedule", loan_id=loan.id, operator_id=operator.id,
            extra={'due_start_date': request.due_start_date.isoformat()}
        )
        self._after_commit(AuditEventType.LOAN_RESCHEDULED, loan, operator,
                           {'before': before, 'after': loan.to_dict()})
        return loan

    def delete_loan(self, loan_id: str, operator: Operator, force: bool = False) -> Dict[str, int]:
        """
        Delete a loan with its periods.

        A loan with payment ledger entries is only deleted with ``force=True``,
        which removes the entries and their transactions as well.

        Returns:
            Number of removed rows per kind
        """
        with self.repository.loan_transaction(loan_id) as loan:
            entries = self.repository.get_ledger_entries(loan_id)
            if entries and not force:
                raise HasDependentsError(loan_id, len(entries))
            removed = self.repository.delete_loan_cascade(loan_id)

        log_action(
            logger, "warning", "Loan deleted",
            action="delete_loan", loan_id=loan_id, operator_id=operator.id, extra=removed
        )
        self._after_commit(AuditEventType.LOAN_DELETED, loan, operator,
                           {'before': loan.to_dict(), 'removed': removed, 'force': force})
        return removed

    # Read operations

    def get_loan(self, loan_id: str) -> LoanAccount:
        """Get a loan by ID"""
        return self.repository.require_loan(loan_id)

    def list_loans(self, status: Optional[LoanStatus] = None,
                   borrower_id: Optional[str] = None) -> List[LoanAccount]:
        """Loans filtered by status and/or borrower"""
        conditions = []
        if status is not None:
            conditions.append(('status', 'eq', LoanStatus(status)))
        if borrower_id is not None:
            conditions.append(('borrower_id', 'eq', borrower_id))
        return self.repository.find_loans(conditions)

    def get_schedules(self, loan_id: str) -> List[RepaymentSchedule]:
        """Periods of a loan ordered by period number"""
        self.repository.require_loan(loan_id)
        return self.repository.get_schedules(loan_id)

    def get_schedule(self, schedule_id: str) -> RepaymentSchedule:
        return self.repository.require_schedule(schedule_id)

    def get_ledger_entries(self, loan_id: str) -> List[LedgerEntry]:
        self.repository.require_loan(loan_id)
        return self.repository.get_ledger_entries(loan_id)

    def get_ledger_history(self, loan_id: str) -> List[LedgerRevision]:
        return self.repository.get_revisions(loan_id)

    def summarize(self, loan_id: str) -> LoanSummary:
        loan = self.repository.require_loan(loan_id)
        return summarize(loan, self.repository.get_schedules(loan_id), self.precision)
