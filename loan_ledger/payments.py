"""
Payment Applier Module

Applies a staff-entered payment edit to one repayment period. The submitted
amounts are the period's new totals, not increments; the loan aggregate is
re-derived by reconciliation afterwards.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional, Union

from .assets import AssetLedger
from .audit import AuditTrail, AuditEventType
from .clock import Clock
from .exceptions import InvalidStateError
from .logging_config import log_action
from .models import (
    LoanAccount, RepaymentSchedule, LedgerEntry, PaymentTransaction, Operator,
    ScheduleStatus, LedgerEntryKind, RevisionAction,
)
from .money import ZERO, quantize
from .reconciliation import Reconciler
from .repository import LoanRepository, revision_for
from .schemas import ApplyPaymentRequest


logger = logging.getLogger(__name__)


@dataclass
class PaymentOutcome:
    """Result of a payment edit"""
    loan: LoanAccount
    schedule: RepaymentSchedule
    entry: Optional[LedgerEntry]    # None when the payment was zeroed
    ledger_action: Optional[RevisionAction]


def derive_status(schedule: RepaymentSchedule, paid_capital: Decimal,
                  paid_interest: Decimal, fines: Decimal) -> ScheduleStatus:
    """
    New status of a period after an edit. A paid period stays paid; a period
    becomes paid once capital and interest are both covered, and active when
    anything at all is recorded.
    """
    if schedule.status == ScheduleStatus.PAID:
        return ScheduleStatus.PAID
    if paid_capital >= schedule.capital and paid_interest >= schedule.interest:
        return ScheduleStatus.PAID
    if paid_capital > ZERO or paid_interest > ZERO or fines > ZERO:
        return ScheduleStatus.ACTIVE
    return schedule.status


class PaymentApplier:
    """Applies payment edits under the loan lock"""

    def __init__(
        self,
        repository: LoanRepository,
        clock: Clock,
        reconciler: Reconciler,
        audit: Optional[AuditTrail] = None,
        assets: Optional[AssetLedger] = None,
        precision: int = 2
    ):
        self.repository = repository
        self.clock = clock
        self.reconciler = reconciler
        self.audit = audit
        self.assets = assets
        self.precision = precision

    def apply(self, request: Union[ApplyPaymentRequest, Mapping[str, Any]],
              operator: Operator) -> PaymentOutcome:
        """
        Apply a payment edit to one period.

        Args:
            request: Period id and new totals for capital, interest and fines
            operator: Staff member entering the payment

        Returns:
            PaymentOutcome with the updated loan, period and ledger entry

        Raises:
            ValidationError: Malformed request
            ScheduleNotFoundError: Unknown period
            InvalidStateError: Period was terminated by settlement
        """
        request = ApplyPaymentRequest.coerce(request)
        loan_id = self.repository.require_schedule(request.schedule_id).loan_id

        with self.repository.loan_transaction(loan_id) as loan:
            schedule = self.repository.require_schedule(request.schedule_id)
            if schedule.status == ScheduleStatus.TERMINATED:
                raise InvalidStateError(
                    f"Schedule {schedule.id} was terminated by settlement and cannot take payments"
                )

            before = schedule.to_dict()
            now = self.clock.now()

            paid_capital = quantize(min(request.pay_capital, schedule.capital), self.precision)
            paid_interest = quantize(min(request.pay_interest, schedule.interest), self.precision)
            fines = quantize(request.fines, self.precision)

            new_status = derive_status(schedule, paid_capital, paid_interest, fines)
            if new_status == ScheduleStatus.PAID and schedule.status != ScheduleStatus.PAID:
                schedule.paid_at = now

            schedule.paid_capital = paid_capital
            schedule.paid_interest = paid_interest
            schedule.fines = fines
            schedule.paid_amount = quantize(paid_capital + paid_interest + fines, self.precision)
            schedule.status = new_status
            schedule.operator_id = operator.id
            schedule.updated_at = now
            self.repository.save_schedule(schedule)

            entry, ledger_action = self._sync_entry(schedule, operator, now)

            loan.last_edit_pay_capital = paid_capital
            loan.last_edit_pay_interest = paid_interest
            loan.last_edit_fines = fines
            loan.last_repayment_date = now
            loan.updated_at = now
            self.repository.save_loan(loan)

            self.reconciler.reconcile_loan(loan)

        log_action(
            logger, "info", "Payment applied",
            action="apply_payment", loan_id=loan.id, schedule_id=schedule.id,
            operator_id=operator.id,
            extra={'status': schedule.status.value, 'paid_amount': str(schedule.paid_amount)}
        )

        if self.audit:
            self.audit.try_log_event(
                AuditEventType.PAYMENT_APPLIED, "schedule", schedule.id,
                metadata={'loan_id': loan.id, 'before': before, 'after': schedule.to_dict()},
                operator=operator,
            )
        if self.assets:
            self.assets.refresh_for_loan(loan, operator)

        return PaymentOutcome(loan=loan, schedule=schedule, entry=entry, ledger_action=ledger_action)

    def _sync_entry(self, schedule: RepaymentSchedule, operator: Operator,
                    now: datetime):
        """Keep exactly one live ledger entry for the period"""
        entry = self.repository.find_period_entry(schedule.id)

        if not schedule.has_payment:
            if entry is None:
                return None, None
            self.repository.delete_entry(entry.id)
            entry.updated_at = now
            self.repository.add_revision(
                revision_for(entry, RevisionAction.DELETED, str(uuid.uuid4()), operator.id)
            )
            if entry.transaction_id and self.repository.count_entries_for_transaction(entry.transaction_id) == 0:
                self.repository.delete_transaction(entry.transaction_id)
            return None, RevisionAction.DELETED

        if entry is None:
            transaction = PaymentTransaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=schedule.loan_id,
                amount=schedule.paid_amount,
                remark=f"period {schedule.period}",
                operator_id=operator.id,
            )
            self.repository.save_transaction(transaction)
            entry = LedgerEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=schedule.loan_id,
                kind=LedgerEntryKind.PERIOD_PAYMENT,
                schedule_id=schedule.id,
                transaction_id=transaction.id,
            )
            action = RevisionAction.CREATED
        else:
            action = RevisionAction.UPDATED
            transaction = self.repository.get_transaction(entry.transaction_id) if entry.transaction_id else None
            if transaction is not None:
                transaction.amount = schedule.paid_amount
                transaction.updated_at = now
                self.repository.save_transaction(transaction)

        entry.paid_capital = schedule.paid_capital
        entry.paid_interest = schedule.paid_interest
        entry.paid_fines = schedule.fines
        entry.paid_amount = schedule.paid_amount
        entry.paid_at = now
        entry.operator_id = operator.id
        entry.operator_name = operator.name
        entry.updated_at = now
        self.repository.save_entry(entry)
        self.repository.add_revision(revision_for(entry, action, str(uuid.uuid4()), operator.id))
        return entry, action
