"""
Asset Ledger Module

Running balances of the staff parties attached to loans. A collector is
credited with the handling fees and fines of their loans; a risk controller
with handling fees plus receiving amounts minus company cost. Balances are
recomputed from the loans after every ledger change, and every change to a
balance appends an adjustment record.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from .audit import AuditTrail, AuditEventType
from .clock import Clock
from .exceptions import ValidationError
from .logging_config import log_action
from .models import LedgerRecord, LoanAccount, Operator
from .money import ZERO, money_sum, quantize, to_decimal
from .repository import LoanRepository
from .storage import StorageInterface


logger = logging.getLogger(__name__)

BALANCES_TABLE = "asset_balances"
ADJUSTMENTS_TABLE = "asset_adjustments"


class PartyRole(ABC):
    """A kind of party whose balance is derived from the loans it holds"""

    name: str = ""
    loan_field: str = ""                  # Loan attribute naming the party
    total_fields: Sequence[str] = ()      # Derived from loans
    reducible_fields: Sequence[str] = ()  # Manual reductions accumulate here

    @abstractmethod
    def compute(self, loans: Sequence[LoanAccount]) -> Dict[str, Decimal]:
        """Derive the total fields from the party's loans"""
        pass

    def party_of(self, loan: LoanAccount) -> Optional[str]:
        return getattr(loan, self.loan_field)


class CollectorRole(PartyRole):
    name = "collector"
    loan_field = "collector_id"
    total_fields = ("total_handling_fee", "total_fines")
    reducible_fields = ("reduced_handling_fee", "reduced_fines")

    def compute(self, loans: Sequence[LoanAccount]) -> Dict[str, Decimal]:
        return {
            "total_handling_fee": money_sum(loan.handling_fee for loan in loans),
            "total_fines": money_sum(loan.total_fines for loan in loans),
        }


class RiskControllerRole(PartyRole):
    name = "risk_controller"
    loan_field = "risk_controller_id"
    total_fields = ("total_amount",)
    reducible_fields = ("reduced_amount",)

    def compute(self, loans: Sequence[LoanAccount]) -> Dict[str, Decimal]:
        return {
            "total_amount": money_sum(
                loan.handling_fee + loan.receiving_amount - loan.company_cost
                for loan in loans
            ),
        }


PARTY_ROLES: Dict[str, PartyRole] = {
    role.name: role for role in (CollectorRole(), RiskControllerRole())
}


def get_role(name: str) -> PartyRole:
    try:
        return PARTY_ROLES[name]
    except KeyError:
        raise ValidationError(f"Unknown party role: {name}")


@dataclass
class AssetBalance(LedgerRecord):
    """Balance of one party in one role"""
    party_id: str
    role: str
    balances: Dict[str, Decimal] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data):
        balance = super().from_dict(data)
        balance.balances = {k: to_decimal(v) for k, v in balance.balances.items()}
        return balance

    def get(self, field_name: str) -> Decimal:
        return self.balances.get(field_name, ZERO)


@dataclass
class AssetAdjustment(LedgerRecord):
    """One change to one balance field"""
    party_id: str
    role: str
    field_name: str
    old_value: Decimal
    new_value: Decimal
    delta: Decimal
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None

    _decimal_fields = ('old_value', 'new_value', 'delta')


def balance_id(role: str, party_id: str) -> str:
    return f"{role}_{party_id}"


class AssetLedger:
    """Maintains party balances and their adjustment history"""

    def __init__(self, storage: StorageInterface, repository: LoanRepository, clock: Clock,
                 audit: Optional[AuditTrail] = None):
        self.storage = storage
        self.repository = repository
        self.clock = clock
        self.audit = audit

    def get_balance(self, role_name: str, party_id: str) -> AssetBalance:
        """Stored balance, or an all-zero balance when none exists yet"""
        role = get_role(role_name)
        data = self.storage.load(BALANCES_TABLE, balance_id(role.name, party_id))
        if data:
            return AssetBalance.from_dict(data)
        now = self.clock.now()
        return AssetBalance(
            id=balance_id(role.name, party_id),
            created_at=now,
            updated_at=now,
            party_id=party_id,
            role=role.name,
            balances={name: ZERO for name in (*role.total_fields, *role.reducible_fields)},
        )

    def get_adjustments(self, role_name: str, party_id: str,
                        field_name: Optional[str] = None) -> List[AssetAdjustment]:
        """Adjustment history of a party, newest first"""
        filters = {'role': get_role(role_name).name, 'party_id': party_id}
        if field_name:
            filters['field_name'] = field_name
        adjustments = [AssetAdjustment.from_dict(d) for d in self.storage.find(ADJUSTMENTS_TABLE, filters)]
        adjustments.sort(key=lambda a: a.created_at, reverse=True)
        return adjustments

    def refresh_for_loan(self, loan: LoanAccount, operator: Optional[Operator] = None) -> None:
        """
        Recompute the balances of every party attached to a loan.

        Failures are logged and swallowed; the loan operation that triggered
        the refresh has already committed.
        """
        for role in PARTY_ROLES.values():
            party_id = role.party_of(loan)
            if not party_id:
                continue
            try:
                self.refresh_party(role, party_id, operator)
            except Exception:
                logger.exception(
                    "Failed to refresh asset balance",
                    extra={'loan_id': loan.id, 'action': 'asset_refresh',
                           'extra': {'role': role.name, 'party_id': party_id}}
                )

    def refresh_party(self, role: PartyRole, party_id: str,
                      operator: Optional[Operator] = None) -> AssetBalance:
        """Recompute one party's totals from all of its loans"""
        loans = self.repository.find_loans([(role.loan_field, 'eq', party_id)])
        return self._apply(role, party_id, role.compute(loans), operator)

    def reduce(self, role_name: str, party_id: str, amounts: Dict[str, Decimal],
               operator: Operator) -> AssetBalance:
        """
        Record manual reductions; amounts accumulate onto the reduced fields.

        Raises:
            ValidationError: unknown field or negative amount
        """
        role = get_role(role_name)
        with self.storage.atomic():
            balance = self.get_balance(role.name, party_id)
            before = dict(balance.balances)
            changes = {}
            for field_name, amount in amounts.items():
                if field_name not in role.reducible_fields:
                    raise ValidationError(f"{field_name} is not reducible for {role.name}")
                amount = quantize(amount)
                if amount < ZERO:
                    raise ValidationError(f"Reduction of {field_name} must not be negative")
                if amount > ZERO:
                    changes[field_name] = balance.get(field_name) + amount
            balance = self._apply(role, party_id, changes, operator)

        if changes:
            log_action(
                logger, "info", f"Reduced {role.name} balance",
                action="reduce_balance", operator_id=operator.id,
                extra={'party_id': party_id, 'changes': changes}
            )
            if self.audit:
                self.audit.try_log_event(
                    AuditEventType.ASSET_BALANCE_CHANGED, "asset_balance", balance.id,
                    metadata={'before': before, 'after': balance.balances},
                    operator=operator,
                )
        return balance

    def _apply(self, role: PartyRole, party_id: str, values: Dict[str, Decimal],
               operator: Optional[Operator]) -> AssetBalance:
        with self.storage.atomic():
            balance = self.get_balance(role.name, party_id)
            now = self.clock.now()
            changed = False
            for field_name, new_value in values.items():
                new_value = quantize(new_value)
                old_value = balance.get(field_name)
                if new_value == old_value:
                    continue
                balance.balances[field_name] = new_value
                changed = True
                adjustment = AssetAdjustment(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    party_id=party_id,
                    role=role.name,
                    field_name=field_name,
                    old_value=old_value,
                    new_value=new_value,
                    delta=new_value - old_value,
                    actor_id=operator.id if operator else None,
                    actor_name=operator.name if operator else None,
                )
                self.storage.save(ADJUSTMENTS_TABLE, adjustment.id, adjustment.to_dict())

            if changed:
                balance.updated_at = now
                self.storage.save(BALANCES_TABLE, balance.id, balance.to_dict())
            return balance
