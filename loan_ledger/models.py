"""
Ledger Models Module

Records persisted by the ledger: the loan aggregate, its repayment periods,
the payment ledger with its revision history, and completed payment
transactions. All money is Decimal; dates are stored as ISO strings.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .money import ZERO
from .storage import StorageRecord


LOANS_TABLE = "loan_accounts"
SCHEDULES_TABLE = "repayment_schedules"
LEDGER_TABLE = "payment_ledger"
LEDGER_HISTORY_TABLE = "payment_ledger_history"
TRANSACTIONS_TABLE = "payment_transactions"

EARLY_SETTLEMENT_REMARK = "early_settlement"


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"
    ACTIVE = "active"
    NEGOTIATED = "negotiated"
    SETTLED = "settled"          # Closed early, future periods voided
    BLACKLIST = "blacklist"      # Closed as uncollectable, future periods voided


# Loans in these states are frozen: no sweeps, no status changes back
SETTLEMENT_STATUSES = (LoanStatus.SETTLED, LoanStatus.BLACKLIST)


class ScheduleStatus(Enum):
    """Repayment period states"""
    PENDING = "pending"          # Due in the future
    ACTIVE = "active"            # Due today, or partially paid
    OVERDUE = "overdue"          # Due day passed without full payment
    PAID = "paid"                # Capital and interest fully covered
    TERMINATED = "terminated"    # Voided by settlement


class LedgerEntryKind(Enum):
    PERIOD_PAYMENT = "period_payment"
    EARLY_SETTLEMENT = "early_settlement"


class RevisionAction(Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class TransactionStatus(Enum):
    COMPLETED = "completed"


@dataclass(frozen=True)
class Operator:
    """Staff member acting on a loan, supplied by the caller"""
    id: str
    name: str


def schedule_id_for(loan_id: str, period: int) -> str:
    """Period ids are derived from the loan, so periods are unique per loan"""
    return f"{loan_id}_{period}"


class LedgerRecord(StorageRecord):
    """
    Shared (de)serialization for ledger records. Subclasses list which of
    their fields hold Decimals, dates, datetimes and enums.
    """

    _decimal_fields: tuple = ()
    _date_fields: tuple = ()
    _datetime_fields: tuple = ('created_at', 'updated_at')
    _enum_fields: Dict[str, type] = {}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerRecord':
        data = dict(data)
        for name in cls._decimal_fields:
            if data.get(name) is not None:
                data[name] = Decimal(str(data[name]))
        for name in cls._date_fields:
            if isinstance(data.get(name), str):
                data[name] = date.fromisoformat(data[name])
        for name in cls._datetime_fields:
            if isinstance(data.get(name), str):
                data[name] = datetime.fromisoformat(data[name])
        for name, enum_type in cls._enum_fields.items():
            if isinstance(data.get(name), str):
                data[name] = enum_type(data[name])

        # Ignore columns written by newer versions
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class LoanAccount(LedgerRecord):
    """Loan aggregate; the financial totals are derived by reconciliation"""
    borrower_id: str
    loan_amount: Decimal
    capital: Decimal                    # Default capital per period
    interest: Decimal                   # Fixed interest per period
    total_periods: int
    due_start_date: date
    due_end_date: Optional[datetime] = None
    status: LoanStatus = LoanStatus.PENDING

    # Derived from the schedule collection
    repaid_periods: int = 0
    paid_capital: Decimal = ZERO
    paid_interest: Decimal = ZERO
    total_fines: Decimal = ZERO
    receiving_amount: Decimal = ZERO
    overdue_count: int = 0
    early_settlement_capital: Decimal = ZERO

    # Feed the collector / risk controller asset balances
    handling_fee: Decimal = ZERO
    company_cost: Decimal = ZERO

    collector_id: Optional[str] = None
    risk_controller_id: Optional[str] = None
    lender_id: Optional[str] = None

    status_changed_at: Optional[datetime] = None

    # Most recent payment edit
    last_edit_pay_capital: Decimal = ZERO
    last_edit_pay_interest: Decimal = ZERO
    last_edit_fines: Decimal = ZERO
    last_repayment_date: Optional[datetime] = None

    note: Optional[str] = None
    created_by: Optional[str] = None

    _decimal_fields = (
        'loan_amount', 'capital', 'interest', 'paid_capital', 'paid_interest',
        'total_fines', 'receiving_amount', 'early_settlement_capital',
        'handling_fee', 'company_cost', 'last_edit_pay_capital',
        'last_edit_pay_interest', 'last_edit_fines',
    )
    _date_fields = ('due_start_date',)
    _datetime_fields = (
        'created_at', 'updated_at', 'due_end_date', 'status_changed_at',
        'last_repayment_date',
    )
    _enum_fields = {'status': LoanStatus}

    @property
    def is_frozen(self) -> bool:
        """Settled and blacklisted loans no longer move"""
        return self.status in SETTLEMENT_STATUSES


@dataclass
class RepaymentSchedule(LedgerRecord):
    """One daily repayment period of a loan"""
    loan_id: str
    period: int
    due_start_date: date
    capital: Decimal
    interest: Decimal
    due_amount: Decimal
    paid_capital: Decimal = ZERO
    paid_interest: Decimal = ZERO
    fines: Decimal = ZERO
    paid_amount: Decimal = ZERO
    status: ScheduleStatus = ScheduleStatus.PENDING
    paid_at: Optional[datetime] = None
    operator_id: Optional[str] = None

    _decimal_fields = (
        'capital', 'interest', 'due_amount', 'paid_capital', 'paid_interest',
        'fines', 'paid_amount',
    )
    _date_fields = ('due_start_date',)
    _datetime_fields = ('created_at', 'updated_at', 'paid_at')
    _enum_fields = {'status': ScheduleStatus}

    @property
    def has_payment(self) -> bool:
        return (self.paid_capital > 0 or self.paid_interest > 0 or self.fines > 0)


@dataclass
class LedgerEntry(LedgerRecord):
    """Live payment ledger row; at most one per period"""
    loan_id: str
    kind: LedgerEntryKind
    schedule_id: Optional[str] = None   # None for the early-settlement entry
    paid_capital: Decimal = ZERO
    paid_interest: Decimal = ZERO
    paid_fines: Decimal = ZERO
    paid_amount: Decimal = ZERO
    paid_at: Optional[datetime] = None
    operator_id: Optional[str] = None
    operator_name: Optional[str] = None
    transaction_id: Optional[str] = None
    remark: Optional[str] = None

    _decimal_fields = ('paid_capital', 'paid_interest', 'paid_fines', 'paid_amount')
    _datetime_fields = ('created_at', 'updated_at', 'paid_at')
    _enum_fields = {'kind': LedgerEntryKind}


@dataclass
class LedgerRevision(LedgerRecord):
    """Append-only history of ledger entry changes"""
    entry_id: str
    loan_id: str
    action: RevisionAction
    snapshot: Dict[str, Any] = field(default_factory=dict)
    schedule_id: Optional[str] = None
    operator_id: Optional[str] = None

    _enum_fields = {'action': RevisionAction}


@dataclass
class PaymentTransaction(LedgerRecord):
    """Completed transaction ("order") backing a ledger entry"""
    loan_id: str
    amount: Decimal
    status: TransactionStatus = TransactionStatus.COMPLETED
    remark: Optional[str] = None
    operator_id: Optional[str] = None

    _decimal_fields = ('amount',)
    _enum_fields = {'status': TransactionStatus}
