"""
Pydantic schemas for ledger operation requests
"""

from decimal import Decimal
from datetime import date
from typing import Any, Mapping, Optional, Union

import pydantic
from pydantic import BaseModel, Field, field_validator

from .exceptions import ValidationError
from .models import LoanStatus, SETTLEMENT_STATUSES


class LedgerRequest(BaseModel):
    """Base request; validation failures surface as ledger ValidationErrors"""

    model_config = {'extra': 'forbid'}

    @classmethod
    def parse(cls, **data: Any):
        try:
            return cls(**data)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid {cls.__name__}: {e}") from e

    @classmethod
    def coerce(cls, request: Union['LedgerRequest', Mapping[str, Any]]):
        """Accept either a built request or a plain mapping"""
        if isinstance(request, cls):
            return request
        if isinstance(request, Mapping):
            return cls.parse(**request)
        raise ValidationError(f"Expected {cls.__name__} or mapping, got {type(request).__name__}")


class CreateLoanRequest(LedgerRequest):
    borrower_id: str = Field(..., min_length=1)
    loan_amount: Decimal = Field(..., ge=0)
    capital: Decimal = Field(..., ge=0, description="Capital due per period")
    interest: Decimal = Field(..., ge=0, description="Fixed interest per period")
    total_periods: int = Field(..., ge=0)
    due_start_date: date
    handling_fee: Decimal = Field(Decimal('0'), ge=0)
    company_cost: Decimal = Field(Decimal('0'), ge=0)
    collector_id: Optional[str] = None
    risk_controller_id: Optional[str] = None
    lender_id: Optional[str] = None
    note: Optional[str] = None


class ApplyPaymentRequest(LedgerRequest):
    """New totals for one period; this is an edit, not an increment"""
    schedule_id: str = Field(..., min_length=1)
    pay_capital: Decimal = Field(Decimal('0'), ge=0)
    pay_interest: Decimal = Field(Decimal('0'), ge=0)
    fines: Decimal = Field(Decimal('0'), ge=0)


class SettlementRequest(LedgerRequest):
    loan_id: str = Field(..., min_length=1)
    status: LoanStatus = LoanStatus.SETTLED
    settlement_date: Optional[date] = None  # Defaults to today
    settlement_capital: Optional[Decimal] = Field(None, ge=0)

    @field_validator('status')
    @classmethod
    def status_must_close_loan(cls, value: LoanStatus) -> LoanStatus:
        if value not in SETTLEMENT_STATUSES:
            raise ValueError(f"Settlement status must be settled or blacklist, got {value.value}")
        return value


class RescheduleRequest(LedgerRequest):
    loan_id: str = Field(..., min_length=1)
    due_start_date: date
