"""
Settlement Engine Module

Early-closes a loan as settled or blacklisted. Periods due on or after the
settlement date that have not started collecting are voided, and an optional
lump of settlement capital is recorded against the loan.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Mapping, Optional, Union

from .assets import AssetLedger
from .audit import AuditTrail, AuditEventType
from .clock import Clock
from .logging_config import log_action
from .models import (
    LoanAccount, RepaymentSchedule, LedgerEntry, PaymentTransaction, Operator,
    ScheduleStatus, LedgerEntryKind, RevisionAction, EARLY_SETTLEMENT_REMARK,
)
from .money import ZERO, quantize
from .reconciliation import Reconciler
from .repository import LoanRepository, revision_for
from .schemas import SettlementRequest


logger = logging.getLogger(__name__)


def _survives_settlement(schedule: RepaymentSchedule) -> bool:
    """Closed periods and periods that already took a payment are kept"""
    if schedule.status in (ScheduleStatus.PAID, ScheduleStatus.TERMINATED):
        return True
    return schedule.has_payment


@dataclass
class SettlementOutcome:
    loan: LoanAccount
    terminated_schedule_ids: List[str] = field(default_factory=list)
    entry: Optional[LedgerEntry] = None
    status_changed: bool = False


class SettlementEngine:
    """Closes loans early and voids their future periods"""

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

    def settle(self, request: Union[SettlementRequest, Mapping[str, Any]],
               operator: Operator) -> SettlementOutcome:
        """
        Settle or blacklist a loan.

        Re-invoking on an already closed loan with the same date changes
        nothing; the early-settlement ledger entry is updated in place rather
        than duplicated.

        Raises:
            ValidationError: Malformed request or non-closing status
            LoanNotFoundError: Unknown loan
        """
        request = SettlementRequest.coerce(request)
        settlement_date = request.settlement_date or self.clock.today()

        with self.repository.loan_transaction(request.loan_id) as loan:
            before = loan.to_dict()
            now = self.clock.now()

            schedules = self.repository.get_schedules(loan.id)
            terminated = []
            for schedule in schedules:
                if _survives_settlement(schedule):
                    continue
                if schedule.due_start_date >= settlement_date:
                    schedule.status = ScheduleStatus.TERMINATED
                    schedule.updated_at = now
                    self.repository.save_schedule(schedule)
                    terminated.append(schedule.id)

            entry = self.repository.find_settlement_entry(loan.id)
            if request.settlement_capital is not None:
                capital = quantize(request.settlement_capital, self.precision)
                loan.early_settlement_capital = capital
                entry = self._sync_settlement_entry(loan, entry, capital, operator, now)

            status_changed = loan.status != request.status
            if status_changed:
                loan.status = request.status
                loan.status_changed_at = now
            loan.due_end_date = self.clock.end_of_day(settlement_date)

            after_fields = loan.to_dict()
            if after_fields != before:
                loan.updated_at = now
                self.repository.save_loan(loan)

            self.reconciler.reconcile_loan(loan, schedules)

        log_action(
            logger, "info", f"Loan closed as {loan.status.value}",
            action="settle", loan_id=loan.id, operator_id=operator.id,
            extra={
                'settlement_date': settlement_date.isoformat(),
                'terminated': len(terminated),
                'early_settlement_capital': str(loan.early_settlement_capital),
            }
        )

        if self.audit and (status_changed or terminated):
            self.audit.try_log_event(
                AuditEventType.LOAN_SETTLED, "loan", loan.id,
                metadata={'before': before, 'after': loan.to_dict(),
                          'terminated_schedule_ids': terminated},
                operator=operator,
            )
        if self.assets:
            self.assets.refresh_for_loan(loan, operator)

        return SettlementOutcome(
            loan=loan,
            terminated_schedule_ids=terminated,
            entry=entry,
            status_changed=status_changed,
        )

    def _sync_settlement_entry(self, loan: LoanAccount, entry: Optional[LedgerEntry],
                               capital: Decimal, operator: Operator,
                               now: datetime) -> Optional[LedgerEntry]:
        """Keep at most one early-settlement entry, matching the loan's capital"""
        if capital <= ZERO:
            if entry is not None:
                self.repository.delete_entry(entry.id)
                entry.updated_at = now
                self.repository.add_revision(
                    revision_for(entry, RevisionAction.DELETED, str(uuid.uuid4()), operator.id)
                )
                if entry.transaction_id and self.repository.count_entries_for_transaction(entry.transaction_id) == 0:
                    self.repository.delete_transaction(entry.transaction_id)
            return None

        if entry is not None and entry.paid_capital == capital:
            return entry

        if entry is None:
            transaction = PaymentTransaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                amount=capital,
                remark=EARLY_SETTLEMENT_REMARK,
                operator_id=operator.id,
            )
            self.repository.save_transaction(transaction)
            entry = LedgerEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                kind=LedgerEntryKind.EARLY_SETTLEMENT,
                transaction_id=transaction.id,
                remark=EARLY_SETTLEMENT_REMARK,
            )
            action = RevisionAction.CREATED
        else:
            action = RevisionAction.UPDATED
            transaction = self.repository.get_transaction(entry.transaction_id) if entry.transaction_id else None
            if transaction is not None:
                transaction.amount = capital
                transaction.updated_at = now
                self.repository.save_transaction(transaction)

        entry.paid_capital = capital
        entry.paid_amount = capital
        entry.paid_at = now
        entry.operator_id = operator.id
        entry.operator_name = operator.name
        entry.updated_at = now
        self.repository.save_entry(entry)
        self.repository.add_revision(revision_for(entry, action, str(uuid.uuid4()), operator.id))
        return entry
