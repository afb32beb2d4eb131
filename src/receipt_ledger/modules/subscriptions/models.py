from __future__ import annotations

import enum
import uuid
from datetime import date
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from receipt_ledger.core.models import Base, Timestamped, UUIDPrimaryKey


def _values(enum_cls: type[enum.Enum]) -> list[str]:
    return [m.value for m in enum_cls]


class BillingFrequency(str, enum.Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    MISSED = "missed"
    CANCELLED = "cancelled"


class Subscription(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "subscriptions_subscription"
    __table_args__ = (
        CheckConstraint("billing_day BETWEEN 1 AND 31", name="ck_subscription_billing_day"),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), index=True
    )
    household_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("identity_household.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3))

    billing_frequency: Mapped[BillingFrequency] = mapped_column(
        Enum(BillingFrequency, native_enum=False, values_callable=_values),
        default=BillingFrequency.MONTHLY,
    )
    billing_day: Mapped[int] = mapped_column(Integer)
    custom_frequency_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus, native_enum=False, values_callable=_values),
        default=SubscriptionStatus.ACTIVE,
        index=True,
    )
    start_date: Mapped[date] = mapped_column(Date)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    next_billing_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    last_payment_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    is_business_expense: Mapped[bool] = mapped_column(Boolean, default=False)
    website: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    payments: Mapped[list[SubscriptionPayment]] = relationship(
        back_populates="subscription",
        cascade="all, delete-orphan",
        order_by="SubscriptionPayment.expected_date",
    )


class SubscriptionPayment(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "subscriptions_payment"

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("subscriptions_subscription.id", ondelete="CASCADE"),
        index=True,
    )
    expected_date: Mapped[date] = mapped_column(Date, index=True)
    expected_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, native_enum=False, values_callable=_values),
        default=PaymentStatus.PENDING,
        index=True,
    )

    # One payment per receipt; deleting the receipt row only drops the link.
    receipt_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("receipts_receipt.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    actual_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    actual_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    subscription: Mapped[Subscription] = relationship(back_populates="payments")
