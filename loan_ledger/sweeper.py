"""
Status Sweeper Module

Daily batch job advancing repayment periods by date:

    pending  -> active   when the period is due today
    pending  -> overdue  when the due day has passed
    active   -> overdue  when the due day has passed without full payment

Transitions are set-based conditional updates over all matching rows; the
affected loans are then reconciled one by one under their loan lock so the
overdue counts follow. Paid and terminated periods and the periods of
settled or blacklisted loans are never touched. Running twice on the same
day changes nothing.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterator, List, Optional, Sequence

from .audit import AuditTrail, AuditEventType
from .clock import Clock
from .exceptions import LedgerError, LoanNotFoundError
from .logging_config import log_action
from .models import LOANS_TABLE, ScheduleStatus, SETTLEMENT_STATUSES
from .reconciliation import Reconciler
from .repository import LoanRepository
from .storage import Subquery


logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """What one sweep run changed"""
    run_date: date
    activated: int = 0
    overdue: int = 0
    loans_reconciled: int = 0
    excluded_loans: int = 0
    failed_loans: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.activated or self.overdue or self.loans_reconciled)

    def as_dict(self) -> Dict[str, object]:
        return {
            'run_date': self.run_date.isoformat(),
            'activated': self.activated,
            'overdue': self.overdue,
            'loans_reconciled': self.loans_reconciled,
            'excluded_loans': self.excluded_loans,
            'failed_loans': list(self.failed_loans),
        }


def _chunks(items: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class StatusSweeper:
    """Advances period statuses by calendar day"""

    def __init__(
        self,
        repository: LoanRepository,
        clock: Clock,
        reconciler: Reconciler,
        audit: Optional[AuditTrail] = None,
        batch_size: int = 500
    ):
        self.repository = repository
        self.clock = clock
        self.reconciler = reconciler
        self.audit = audit
        self.batch_size = max(1, batch_size)

    def run(self, today: Optional[date] = None) -> SweepReport:
        """
        Run one sweep.

        Args:
            today: Calendar day to sweep for (defaults to the clock's today)

        Returns:
            SweepReport with transition and reconciliation counts
        """
        today = today or self.clock.today()
        now = self.clock.now()
        report = SweepReport(run_date=today)

        frozen = (('status', 'in', tuple(SETTLEMENT_STATUSES)),)
        report.excluded_loans = self.repository.count_loans(frozen)
        not_frozen = ('loan_id', 'not_in', Subquery(LOANS_TABLE, frozen))

        overdue = self.repository.transition_schedules(
            [
                ('status', 'in', [ScheduleStatus.PENDING, ScheduleStatus.ACTIVE]),
                ('due_start_date', 'lt', today),
                not_frozen,
            ],
            {'status': ScheduleStatus.OVERDUE, 'updated_at': now},
        )
        activated = self.repository.transition_schedules(
            [
                ('status', 'eq', ScheduleStatus.PENDING),
                ('due_start_date', 'eq', today),
                not_frozen,
            ],
            {'status': ScheduleStatus.ACTIVE, 'updated_at': now},
        )
        report.overdue = len(overdue)
        report.activated = len(activated)

        # Loans holding overdue periods are rechecked too, so an interrupted
        # run is repaired by the next one
        still_overdue = self.repository.find_schedules([
            ('status', 'eq', ScheduleStatus.OVERDUE),
            not_frozen,
        ])
        candidates = sorted({s.loan_id for s in overdue + activated + still_overdue})

        for chunk in _chunks(candidates, self.batch_size):
            for loan_id in chunk:
                self._reconcile(loan_id, report)

        log_action(
            logger, "info", "Status sweep finished",
            action="sweep", extra=report.as_dict()
        )
        if self.audit and report.changed:
            self.audit.try_log_event(
                AuditEventType.SCHEDULES_SWEPT, "sweep", today.isoformat(),
                metadata=report.as_dict(),
            )
        return report

    def _reconcile(self, loan_id: str, report: SweepReport) -> None:
        try:
            with self.repository.loan_transaction(loan_id) as loan:
                if loan.is_frozen:
                    return
                if self.reconciler.reconcile_loan(loan):
                    report.loans_reconciled += 1
        except LoanNotFoundError:
            # Deleted since the transition ran
            return
        except LedgerError:
            report.failed_loans.append(loan_id)
            logger.exception("Failed to reconcile loan during sweep",
                             extra={'loan_id': loan_id, 'action': 'sweep'})
