"""Pydantic request bodies for the JSON write endpoints."""
from datetime import date
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class RequestModel(BaseModel):
    model_config = ConfigDict(extra='forbid', str_strip_whitespace=True)


class LoginForm(RequestModel):
    username: str = Field(..., min_length=1, max_length=80)
    password: str = Field(..., min_length=1)
    next: Optional[str] = None


class FacilityCreate(RequestModel):
    name: str = Field(..., min_length=1, max_length=140)
    address: Optional[str] = Field(None, max_length=255)


class TrainerAssign(RequestModel):
    username: str = Field(..., min_length=1, max_length=80)


class PlanCreate(RequestModel):
    name: str = Field(..., min_length=1, max_length=120)
    duration_days: int = Field(..., gt=0, description="Plan length in days")
    price: Decimal = Field(..., ge=0, decimal_places=2)
    description: Optional[str] = Field(None, max_length=500)


class PlanUpdate(RequestModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    duration_days: Optional[int] = Field(None, gt=0)
    price: Optional[Decimal] = Field(None, ge=0, decimal_places=2)
    description: Optional[str] = Field(None, max_length=500)


class MemberCreate(RequestModel):
    full_name: str = Field(..., min_length=1, max_length=120)
    email: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=50)
    admission_date: date = Field(default_factory=date.today)

    @field_validator('email')
    @classmethod
    def email_has_at(cls, v):
        if v and '@' not in v:
            raise ValueError('email must contain @')
        return v or None


class MemberUpdate(RequestModel):
    full_name: Optional[str] = Field(None, min_length=1, max_length=120)
    email: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=50)
    admission_date: Optional[date] = None
    is_active: Optional[bool] = None

    @field_validator('email')
    @classmethod
    def email_has_at(cls, v):
        if v and '@' not in v:
            raise ValueError('email must contain @')
        return v


class MembershipCreate(RequestModel):
    """Subscribe a member to a plan, paying in full or in part."""
    plan_id: int
    payment_method: str = Field('cash', max_length=50)
    discount: Decimal = Field(Decimal('0'), ge=0)
    is_full_payment: bool = True
    paid_amount: Decimal = Field(Decimal('0'), ge=0)


class BalancePayment(RequestModel):
    amount: Decimal = Field(..., gt=0)
    payment_method: str = Field('cash', max_length=50)


class TransactionCreate(RequestModel):
    amount: Decimal = Field(..., ge=0)
    type: Literal['income', 'other'] = 'income'
    status: Literal['received', 'paid', 'pending'] = 'received'
    member_id: Optional[int] = None
    plan_id: Optional[int] = None
    method: Optional[str] = Field(None, max_length=50)
    note: Optional[str] = Field(None, max_length=255)


class AttendanceCheck(RequestModel):
    model_config = ConfigDict(extra='forbid', str_strip_whitespace=True, populate_by_name=True)

    member_id: int
    day: Optional[date] = Field(None, alias='date')
    notes: Optional[str] = Field(None, max_length=255)


class AttendanceHistoryQuery(RequestModel):
    member_id: Optional[int] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    @model_validator(mode='after')
    def range_in_order(self):
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError('date_from must not be after date_to')
        return self
