"""
Loan Repository Module

Persistence for the loan aggregate and its owned rows. The loan is the unit
of concurrency: every mutating operation enters ``loan_transaction`` which
serializes writers on the loan and spans one storage transaction.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Sequence

from .exceptions import LoanNotFoundError, ScheduleNotFoundError
from .models import (
    LoanAccount, RepaymentSchedule, LedgerEntry, LedgerRevision, PaymentTransaction,
    LedgerEntryKind, RevisionAction,
    LOANS_TABLE, SCHEDULES_TABLE, LEDGER_TABLE, LEDGER_HISTORY_TABLE, TRANSACTIONS_TABLE,
)
from .storage import StorageInterface, Condition


class LoanRepository:
    """Typed access to the ledger tables"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        # loan id -> [lock, number of holders and waiters]
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _loan_lock(self, loan_id: str) -> Iterator[None]:
        """Per-loan lock, dropped from the map once nobody holds or awaits it"""
        with self._locks_guard:
            entry = self._locks.get(loan_id)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[loan_id] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[loan_id]

    @property
    def held_locks(self) -> int:
        """Number of loans with a live lock entry"""
        with self._locks_guard:
            return len(self._locks)

    @contextmanager
    def loan_transaction(self, loan_id: str) -> Iterator[LoanAccount]:
        """
        Lock the loan and open a transaction over it and its rows.

        Lock order is always loan lock, then storage transaction, then row
        lock. Any exception rolls back every write made inside the block.
        """
        with self._loan_lock(loan_id):
            with self.storage.atomic():
                self.storage.lock_record(LOANS_TABLE, loan_id)
                loan = self.get_loan(loan_id)
                if loan is None:
                    raise LoanNotFoundError(loan_id)
                yield loan

    # Loans

    def get_loan(self, loan_id: str) -> Optional[LoanAccount]:
        data = self.storage.load(LOANS_TABLE, loan_id)
        return LoanAccount.from_dict(data) if data else None

    def require_loan(self, loan_id: str) -> LoanAccount:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise LoanNotFoundError(loan_id)
        return loan

    def save_loan(self, loan: LoanAccount) -> None:
        self.storage.save(LOANS_TABLE, loan.id, loan.to_dict())

    def find_loans(self, conditions: Sequence[Condition] = ()) -> List[LoanAccount]:
        return [LoanAccount.from_dict(data) for data in self.storage.query(LOANS_TABLE, conditions)]

    def count_loans(self, conditions: Sequence[Condition] = ()) -> int:
        return self.storage.count(LOANS_TABLE, conditions)

    def delete_loan(self, loan_id: str) -> bool:
        return self.storage.delete(LOANS_TABLE, loan_id)

    # Repayment periods

    def get_schedules(self, loan_id: str) -> List[RepaymentSchedule]:
        """All periods of a loan ordered by period number"""
        rows = self.storage.query(SCHEDULES_TABLE, [('loan_id', 'eq', loan_id)])
        schedules = [RepaymentSchedule.from_dict(data) for data in rows]
        schedules.sort(key=lambda s: s.period)
        return schedules

    def get_schedule(self, schedule_id: str) -> Optional[RepaymentSchedule]:
        data = self.storage.load(SCHEDULES_TABLE, schedule_id)
        return RepaymentSchedule.from_dict(data) if data else None

    def require_schedule(self, schedule_id: str) -> RepaymentSchedule:
        schedule = self.get_schedule(schedule_id)
        if schedule is None:
            raise ScheduleNotFoundError(schedule_id)
        return schedule

    def save_schedule(self, schedule: RepaymentSchedule) -> None:
        self.storage.save(SCHEDULES_TABLE, schedule.id, schedule.to_dict())

    def save_schedules(self, schedules: Sequence[RepaymentSchedule]) -> None:
        for schedule in schedules:
            self.save_schedule(schedule)

    def find_schedules(self, conditions: Sequence[Condition]) -> List[RepaymentSchedule]:
        rows = self.storage.query(SCHEDULES_TABLE, conditions)
        return [RepaymentSchedule.from_dict(data) for data in rows]

    def transition_schedules(self, conditions: Sequence[Condition],
                             changes: Dict) -> List[RepaymentSchedule]:
        """Set-based update of every matching period"""
        rows = self.storage.update_where(SCHEDULES_TABLE, conditions, changes)
        return [RepaymentSchedule.from_dict(data) for data in rows]

    # Payment ledger

    def get_ledger_entries(self, loan_id: str) -> List[LedgerEntry]:
        rows = self.storage.query(LEDGER_TABLE, [('loan_id', 'eq', loan_id)])
        entries = [LedgerEntry.from_dict(data) for data in rows]
        entries.sort(key=lambda e: e.created_at)
        return entries

    def find_period_entry(self, schedule_id: str) -> Optional[LedgerEntry]:
        rows = self.storage.query(LEDGER_TABLE, [
            ('schedule_id', 'eq', schedule_id),
            ('kind', 'eq', LedgerEntryKind.PERIOD_PAYMENT),
        ])
        return LedgerEntry.from_dict(rows[0]) if rows else None

    def find_settlement_entry(self, loan_id: str) -> Optional[LedgerEntry]:
        rows = self.storage.query(LEDGER_TABLE, [
            ('loan_id', 'eq', loan_id),
            ('kind', 'eq', LedgerEntryKind.EARLY_SETTLEMENT),
        ])
        return LedgerEntry.from_dict(rows[0]) if rows else None

    def save_entry(self, entry: LedgerEntry) -> None:
        self.storage.save(LEDGER_TABLE, entry.id, entry.to_dict())

    def delete_entry(self, entry_id: str) -> bool:
        return self.storage.delete(LEDGER_TABLE, entry_id)

    def add_revision(self, revision: LedgerRevision) -> None:
        self.storage.save(LEDGER_HISTORY_TABLE, revision.id, revision.to_dict())

    def get_revisions(self, loan_id: str) -> List[LedgerRevision]:
        rows = self.storage.query(LEDGER_HISTORY_TABLE, [('loan_id', 'eq', loan_id)])
        revisions = [LedgerRevision.from_dict(data) for data in rows]
        revisions.sort(key=lambda r: r.created_at)
        return revisions

    # Transactions

    def get_transaction(self, transaction_id: str) -> Optional[PaymentTransaction]:
        data = self.storage.load(TRANSACTIONS_TABLE, transaction_id)
        return PaymentTransaction.from_dict(data) if data else None

    def save_transaction(self, transaction: PaymentTransaction) -> None:
        self.storage.save(TRANSACTIONS_TABLE, transaction.id, transaction.to_dict())

    def delete_transaction(self, transaction_id: str) -> bool:
        return self.storage.delete(TRANSACTIONS_TABLE, transaction_id)

    def count_entries_for_transaction(self, transaction_id: str) -> int:
        return self.storage.count(LEDGER_TABLE, [('transaction_id', 'eq', transaction_id)])

    def get_transactions(self, loan_id: str) -> List[PaymentTransaction]:
        rows = self.storage.query(TRANSACTIONS_TABLE, [('loan_id', 'eq', loan_id)])
        return [PaymentTransaction.from_dict(data) for data in rows]

    def delete_loan_cascade(self, loan_id: str) -> Dict[str, int]:
        """Remove a loan with every owned row; caller holds the loan transaction"""
        by_loan = [('loan_id', 'eq', loan_id)]
        removed = {
            'ledger_entries': self.storage.delete_where(LEDGER_TABLE, by_loan),
            'transactions': self.storage.delete_where(TRANSACTIONS_TABLE, by_loan),
            'schedules': self.storage.delete_where(SCHEDULES_TABLE, by_loan),
        }
        removed['loan'] = 1 if self.delete_loan(loan_id) else 0
        return removed


def revision_for(entry: LedgerEntry, action: RevisionAction, revision_id: str,
                 operator_id: Optional[str] = None) -> LedgerRevision:
    """Snapshot a ledger entry into an append-only revision"""
    now = entry.updated_at
    return LedgerRevision(
        id=revision_id,
        created_at=now,
        updated_at=now,
        entry_id=entry.id,
        loan_id=entry.loan_id,
        action=action,
        snapshot=entry.to_dict(),
        schedule_id=entry.schedule_id,
        operator_id=operator_id,
    )
