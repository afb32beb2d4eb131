from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from receipt_ledger.core.config import settings
from receipt_ledger.core.errors import NotFoundError, ValidationError
from receipt_ledger.core.logging import get_logger, log_event
from receipt_ledger.modules.identity.models import User
from receipt_ledger.modules.receipts.normalizer import normalize_currency
from receipt_ledger.modules.subscriptions.models import (
    BillingFrequency,
    Subscription,
    SubscriptionStatus,
)
from receipt_ledger.modules.subscriptions.schedule import (
    cancel_future_payments,
    generate_expected_payments,
    refresh_next_billing_date,
    regenerate_future_payments,
)

logger = get_logger(__name__)

# Changing any of these moves future billing dates.
SCHEDULE_FIELDS = frozenset(
    {
        "amount",
        "billing_frequency",
        "billing_day",
        "custom_frequency_days",
        "start_date",
        "end_date",
    }
)


def create_subscription(
    session: Session,
    *,
    user: User,
    today: date,
    name: str,
    amount: Decimal,
    start_date: date,
    billing_frequency: BillingFrequency = BillingFrequency.MONTHLY,
    billing_day: int | None = None,
    custom_frequency_days: int | None = None,
    currency: str | None = None,
    household_id: uuid.UUID | None = None,
    **extra: Any,
) -> Subscription:
    subscription = Subscription(
        user_id=user.id,
        household_id=household_id or user.default_household_id,
        name=name.strip(),
        amount=amount,
        currency=normalize_currency(currency, user.display_currency, settings.default_currency),
        billing_frequency=billing_frequency,
        billing_day=billing_day or start_date.day,
        custom_frequency_days=custom_frequency_days,
        start_date=start_date,
        status=SubscriptionStatus.ACTIVE,
        **{k: v for k, v in extra.items() if v is not None},
    )
    _validate_schedule(subscription)
    session.add(subscription)
    session.flush()
    refresh_next_billing_date(session, subscription=subscription, today=today)
    session.commit()
    session.refresh(subscription)

    log_event(
        logger,
        "subscription.created",
        subscription_id=str(subscription.id),
        billing_frequency=subscription.billing_frequency.value,
    )
    generate_expected_payments(session, subscription=subscription, today=today)
    session.refresh(subscription)
    return subscription


def get_subscription_for_user(
    session: Session, *, subscription_id: uuid.UUID, user: User
) -> Subscription:
    subscription = session.get(Subscription, subscription_id)
    if not subscription or subscription.user_id != user.id:
        raise NotFoundError("Subscription not found")
    return subscription


def list_subscriptions(
    session: Session, *, user: User, status: SubscriptionStatus | None = None
) -> list[Subscription]:
    stmt = select(Subscription).where(Subscription.user_id == user.id)
    if status is not None:
        stmt = stmt.where(Subscription.status == status)
    return list(session.scalars(stmt.order_by(Subscription.name.asc())))


def update_subscription(
    session: Session, *, subscription: Subscription, today: date, changes: dict
) -> Subscription:
    previous_status = subscription.status
    schedule_changed = False
    for field, value in changes.items():
        if value is None and field != "end_date":
            continue
        if field == "currency":
            value = normalize_currency(value) or subscription.currency
        if field in SCHEDULE_FIELDS and getattr(subscription, field) != value:
            schedule_changed = True
        setattr(subscription, field, value)
    _validate_schedule(subscription)
    session.add(subscription)
    session.flush()

    status = subscription.status
    if status == SubscriptionStatus.CANCELLED and previous_status != status:
        cancelled = cancel_future_payments(session, subscription=subscription, today=today)
        refresh_next_billing_date(session, subscription=subscription, today=today)
        session.commit()
        log_event(
            logger,
            "subscription.cancelled",
            subscription_id=str(subscription.id),
            cancelled_payments=cancelled,
        )
    elif schedule_changed or (
        status == SubscriptionStatus.ACTIVE and previous_status != status
    ):
        regenerate_future_payments(session, subscription=subscription, today=today)
    else:
        session.commit()

    session.refresh(subscription)
    return subscription


def delete_subscription(session: Session, *, subscription: Subscription) -> None:
    subscription_id = subscription.id
    session.delete(subscription)
    session.commit()
    log_event(logger, "subscription.deleted", subscription_id=str(subscription_id))


def _validate_schedule(subscription: Subscription) -> None:
    if not 1 <= subscription.billing_day <= 31:
        raise ValidationError("billing_day must be between 1 and 31")
    if subscription.billing_frequency == BillingFrequency.CUSTOM:
        if not subscription.custom_frequency_days or subscription.custom_frequency_days < 1:
            raise ValidationError("custom_frequency_days is required for custom billing")
    else:
        subscription.custom_frequency_days = None
    if subscription.end_date is not None and subscription.end_date < subscription.start_date:
        raise ValidationError("end_date must not be before start_date")
