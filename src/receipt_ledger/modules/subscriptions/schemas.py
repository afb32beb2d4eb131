from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from receipt_ledger.modules.subscriptions.models import (
    BillingFrequency,
    PaymentStatus,
    SubscriptionStatus,
)


class SubscriptionCreateIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    category: str | None = None
    amount: Decimal = Field(ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    billing_frequency: BillingFrequency = BillingFrequency.MONTHLY
    billing_day: int | None = Field(default=None, ge=1, le=31)
    custom_frequency_days: int | None = Field(default=None, ge=1)
    start_date: date
    end_date: date | None = None
    household_id: uuid.UUID | None = None
    is_business_expense: bool = False
    website: str | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def _check_schedule(self) -> SubscriptionCreateIn:
        if self.billing_frequency == BillingFrequency.CUSTOM and not self.custom_frequency_days:
            raise ValueError("custom_frequency_days is required for custom billing")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class SubscriptionUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    category: str | None = None
    amount: Decimal | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    billing_frequency: BillingFrequency | None = None
    billing_day: int | None = Field(default=None, ge=1, le=31)
    custom_frequency_days: int | None = Field(default=None, ge=1)
    status: SubscriptionStatus | None = None
    start_date: date | None = None
    end_date: date | None = None
    is_business_expense: bool | None = None
    website: str | None = None
    notes: str | None = None


class SubscriptionOut(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    household_id: uuid.UUID | None
    name: str
    description: str | None
    category: str | None
    amount: Decimal
    currency: str
    billing_frequency: BillingFrequency
    billing_day: int
    custom_frequency_days: int | None
    status: SubscriptionStatus
    start_date: date
    end_date: date | None
    next_billing_date: date | None
    last_payment_date: date | None
    is_business_expense: bool
    website: str | None
    notes: str | None
    missing_payments: int = 0
    created_at: datetime
    updated_at: datetime


class PaymentOut(BaseModel):
    id: uuid.UUID
    subscription_id: uuid.UUID
    expected_date: date
    expected_amount: Decimal
    status: PaymentStatus
    receipt_id: uuid.UUID | None
    actual_date: date | None
    actual_amount: Decimal | None
    notes: str | None


class PaymentLinkIn(BaseModel):
    receipt_id: uuid.UUID
    actual_date: date | None = None
    actual_amount: Decimal | None = None


class ReceiptSubscriptionOut(BaseModel):
    payment: PaymentOut | None = None
    subscription: SubscriptionOut | None = None
