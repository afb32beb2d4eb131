"""Projection of a subscription's billing configuration onto concrete dates.

Calendar periods (monthly, quarterly, yearly) are anchored on `billing_day`
and clamped to the end of short months, so a subscription billed on the 31st
lands on Feb 29, Mar 31, Apr 30 and never drifts to the 29th afterwards.
Custom periods step a fixed number of calendar days.
"""

from __future__ import annotations

import calendar
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from receipt_ledger.core.config import settings
from receipt_ledger.core.errors import InvalidStateError, ValidationError
from receipt_ledger.core.logging import get_logger, log_event
from receipt_ledger.modules.subscriptions.models import (
    BillingFrequency,
    PaymentStatus,
    Subscription,
    SubscriptionPayment,
    SubscriptionStatus,
)

logger = get_logger(__name__)

MAX_ITERATIONS = 1000

_PERIOD_MONTHS = {
    BillingFrequency.MONTHLY: 1,
    BillingFrequency.QUARTERLY: 3,
    BillingFrequency.YEARLY: 12,
}


@dataclass(frozen=True)
class ExpectedPayment:
    expected_date: date
    expected_amount: Decimal


def clamp_day(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def add_months(d: date, months: int, *, day: int) -> date:
    idx = d.year * 12 + (d.month - 1) + months
    return clamp_day(idx // 12, idx % 12 + 1, day)


def _anchor_day(subscription: Subscription) -> int:
    return subscription.billing_day or subscription.start_date.day


def _custom_days(subscription: Subscription) -> int:
    days = subscription.custom_frequency_days
    if not days or days < 1:
        raise ValidationError("custom_frequency_days is required for custom billing")
    return days


def first_billing_date(subscription: Subscription) -> date:
    """Earliest billing date on or after `start_date`."""
    start = subscription.start_date
    if subscription.billing_frequency == BillingFrequency.CUSTOM:
        return start
    day = _anchor_day(subscription)
    candidate = clamp_day(start.year, start.month, day)
    if candidate < start:
        candidate = add_months(candidate, 1, day=day)
    return candidate


def next_billing_date(subscription: Subscription, from_date: date) -> date:
    """Billing date one period after `from_date`."""
    if subscription.billing_frequency == BillingFrequency.CUSTOM:
        return from_date + timedelta(days=_custom_days(subscription))
    months = _PERIOD_MONTHS[subscription.billing_frequency]
    return add_months(from_date, months, day=_anchor_day(subscription))


def expected_payments(subscription: Subscription, through: date) -> list[ExpectedPayment]:
    """Every scheduled billing event from `start_date` up to `through` (inclusive).

    Stops at `end_date` when the subscription has one.
    """
    stop = through
    if subscription.end_date is not None and subscription.end_date < stop:
        stop = subscription.end_date

    out: list[ExpectedPayment] = []
    current = first_billing_date(subscription)
    for _ in range(MAX_ITERATIONS):
        if current > stop:
            break
        out.append(ExpectedPayment(expected_date=current, expected_amount=subscription.amount))
        following = next_billing_date(subscription, current)
        if following <= current:
            raise InvalidStateError(
                f"Billing schedule did not move forward for subscription {subscription.id}"
            )
        current = following
    return out


def default_horizon(today: date) -> date:
    return add_months(today, settings.payments_months_ahead, day=today.day)


def generate_expected_payments(
    session: Session,
    *,
    subscription: Subscription,
    today: date,
    through: date | None = None,
    since: date | None = None,
) -> int:
    """Insert the scheduled payments that do not exist yet. Existing rows are left alone."""
    if subscription.status != SubscriptionStatus.ACTIVE:
        return 0

    through = through or default_horizon(today)
    existing = set(
        session.scalars(
            select(SubscriptionPayment.expected_date).where(
                SubscriptionPayment.subscription_id == subscription.id
            )
        )
    )
    rows = [
        SubscriptionPayment(
            subscription_id=subscription.id,
            expected_date=p.expected_date,
            expected_amount=p.expected_amount,
            status=PaymentStatus.PENDING,
        )
        for p in expected_payments(subscription, through)
        if p.expected_date not in existing and (since is None or p.expected_date >= since)
    ]
    session.add_all(rows)
    session.flush()
    refresh_next_billing_date(session, subscription=subscription, today=today)
    session.commit()

    if rows:
        log_event(
            logger,
            "subscription.payments.generated",
            subscription_id=str(subscription.id),
            created=len(rows),
            through=through.isoformat(),
        )
    return len(rows)


def regenerate_future_payments(
    session: Session, *, subscription: Subscription, today: date
) -> int:
    """Rebuild the unpaid part of the schedule after its parameters changed.

    Only rows dated today or later, still pending (or cancelled) and without a
    receipt are replaced. Paid and past rows are kept as they are.
    """
    result = session.execute(
        delete(SubscriptionPayment)
        .where(
            SubscriptionPayment.subscription_id == subscription.id,
            SubscriptionPayment.status.in_([PaymentStatus.PENDING, PaymentStatus.CANCELLED]),
            SubscriptionPayment.receipt_id.is_(None),
            SubscriptionPayment.expected_date >= today,
        )
        .execution_options(synchronize_session=False)
    )
    session.expire(subscription, ["payments"])
    log_event(
        logger,
        "subscription.payments.regenerating",
        subscription_id=str(subscription.id),
        removed=result.rowcount,
    )
    created = generate_expected_payments(
        session, subscription=subscription, today=today, since=today
    )
    if subscription.status != SubscriptionStatus.ACTIVE:
        refresh_next_billing_date(session, subscription=subscription, today=today)
        session.commit()
    return created


def cancel_future_payments(session: Session, *, subscription: Subscription, today: date) -> int:
    payments = session.scalars(
        select(SubscriptionPayment).where(
            SubscriptionPayment.subscription_id == subscription.id,
            SubscriptionPayment.status == PaymentStatus.PENDING,
            SubscriptionPayment.receipt_id.is_(None),
            SubscriptionPayment.expected_date >= today,
        )
    ).all()
    for payment in payments:
        payment.status = PaymentStatus.CANCELLED
    session.flush()
    return len(payments)


def refresh_next_billing_date(
    session: Session, *, subscription: Subscription, today: date
) -> date | None:
    """Point `next_billing_date` at the earliest payment nobody has paid yet.

    Falls back to projecting one period past the latest known payment when
    every materialized row is settled. Leaves None once the subscription has
    run past its `end_date`.
    """
    earliest_open = session.scalar(
        select(SubscriptionPayment.expected_date)
        .where(
            SubscriptionPayment.subscription_id == subscription.id,
            SubscriptionPayment.status.in_([PaymentStatus.PENDING, PaymentStatus.MISSED]),
        )
        .order_by(SubscriptionPayment.expected_date.asc())
        .limit(1)
    )
    if earliest_open is not None:
        candidate = earliest_open
    else:
        latest = session.scalar(
            select(SubscriptionPayment.expected_date)
            .where(SubscriptionPayment.subscription_id == subscription.id)
            .order_by(SubscriptionPayment.expected_date.desc())
            .limit(1)
        )
        if latest is None:
            candidate = first_billing_date(subscription)
        else:
            candidate = next_billing_date(subscription, latest)

    if subscription.end_date is not None and candidate > subscription.end_date:
        candidate = None
    subscription.next_billing_date = candidate
    session.add(subscription)
    return candidate


def subscription_ids_with_status(session: Session, status: SubscriptionStatus) -> list[uuid.UUID]:
    return list(session.scalars(select(Subscription.id).where(Subscription.status == status)))
