from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from receipt_ledger.core.errors import ValidationError
from receipt_ledger.modules.identity.service import create_user
from receipt_ledger.modules.subscriptions.models import (
    BillingFrequency,
    PaymentStatus,
    Subscription,
    SubscriptionPayment,
    SubscriptionStatus,
)
from receipt_ledger.modules.subscriptions.schedule import (
    MAX_ITERATIONS,
    expected_payments,
    generate_expected_payments,
    next_billing_date,
)
from receipt_ledger.modules.subscriptions.service import create_subscription, update_subscription


def _subscription(**overrides) -> Subscription:
    values = {
        "name": "Streaming",
        "amount": Decimal("9.99"),
        "currency": "USD",
        "billing_frequency": BillingFrequency.MONTHLY,
        "billing_day": 1,
        "start_date": date(2024, 1, 1),
        "status": SubscriptionStatus.ACTIVE,
    }
    values.update(overrides)
    return Subscription(**values)


def _dates(subscription: Subscription, through: date) -> list[date]:
    return [p.expected_date for p in expected_payments(subscription, through)]


def test_month_end_billing_day_is_clamped_and_restored():
    sub = _subscription(billing_day=31, start_date=date(2024, 1, 31))

    assert next_billing_date(sub, date(2024, 1, 31)) == date(2024, 2, 29)
    assert next_billing_date(sub, date(2024, 2, 29)) == date(2024, 3, 31)
    assert next_billing_date(sub, date(2024, 3, 31)) == date(2024, 4, 30)
    assert _dates(sub, date(2024, 5, 31)) == [
        date(2024, 1, 31),
        date(2024, 2, 29),
        date(2024, 3, 31),
        date(2024, 4, 30),
        date(2024, 5, 31),
    ]


def test_non_leap_february_clamps_to_28th():
    sub = _subscription(billing_day=30, start_date=date(2023, 1, 30))
    assert next_billing_date(sub, date(2023, 1, 30)) == date(2023, 2, 28)


def test_monthly_schedule_includes_start_and_through():
    sub = _subscription()
    assert _dates(sub, date(2024, 4, 1)) == [
        date(2024, 1, 1),
        date(2024, 2, 1),
        date(2024, 3, 1),
        date(2024, 4, 1),
    ]
    assert {p.expected_amount for p in expected_payments(sub, date(2024, 4, 1))} == {
        Decimal("9.99")
    }


def test_first_date_rolls_to_next_month_when_billing_day_already_passed():
    sub = _subscription(billing_day=5, start_date=date(2024, 1, 20))
    assert _dates(sub, date(2024, 3, 31)) == [date(2024, 2, 5), date(2024, 3, 5)]


def test_quarterly_and_yearly_periods():
    quarterly = _subscription(
        billing_frequency=BillingFrequency.QUARTERLY, billing_day=31, start_date=date(2024, 1, 31)
    )
    assert _dates(quarterly, date(2024, 12, 31)) == [
        date(2024, 1, 31),
        date(2024, 4, 30),
        date(2024, 7, 31),
        date(2024, 10, 31),
    ]

    yearly = _subscription(
        billing_frequency=BillingFrequency.YEARLY, billing_day=29, start_date=date(2024, 2, 29)
    )
    assert _dates(yearly, date(2028, 3, 1)) == [
        date(2024, 2, 29),
        date(2025, 2, 28),
        date(2026, 2, 28),
        date(2027, 2, 28),
        date(2028, 2, 29),
    ]


def test_custom_period_steps_calendar_days():
    sub = _subscription(
        billing_frequency=BillingFrequency.CUSTOM,
        custom_frequency_days=10,
        start_date=date(2024, 2, 25),
    )
    assert _dates(sub, date(2024, 3, 20)) == [
        date(2024, 2, 25),
        date(2024, 3, 6),
        date(2024, 3, 16),
    ]


def test_custom_period_requires_days():
    sub = _subscription(billing_frequency=BillingFrequency.CUSTOM, custom_frequency_days=None)
    with pytest.raises(ValidationError):
        next_billing_date(sub, date(2024, 1, 1))


def test_schedule_stops_at_end_date():
    sub = _subscription(end_date=date(2024, 3, 15))
    assert _dates(sub, date(2025, 1, 1)) == [date(2024, 1, 1), date(2024, 2, 1), date(2024, 3, 1)]


def test_schedule_is_capped():
    sub = _subscription(
        billing_frequency=BillingFrequency.CUSTOM,
        custom_frequency_days=1,
        start_date=date(2000, 1, 1),
    )
    assert len(expected_payments(sub, date(2030, 1, 1))) == MAX_ITERATIONS


def test_generate_materializes_rows_once(database):
    with database.session() as session:
        user = create_user(session, email="subs@example.com")
        sub = create_subscription(
            session,
            user=user,
            today=date(2024, 1, 1),
            name="Gym",
            amount=Decimal("30.00"),
            start_date=date(2024, 1, 1),
            billing_day=1,
        )
        session.execute(
            SubscriptionPayment.__table__.delete().where(
                SubscriptionPayment.subscription_id == sub.id
            )
        )
        session.commit()

        created = generate_expected_payments(
            session, subscription=sub, today=date(2024, 1, 1), through=date(2024, 4, 1)
        )
        again = generate_expected_payments(
            session, subscription=sub, today=date(2024, 1, 1), through=date(2024, 4, 1)
        )

        rows = session.scalars(
            select(SubscriptionPayment)
            .where(SubscriptionPayment.subscription_id == sub.id)
            .order_by(SubscriptionPayment.expected_date)
        ).all()

    assert created == 4
    assert again == 0
    assert [r.expected_date for r in rows] == [
        date(2024, 1, 1),
        date(2024, 2, 1),
        date(2024, 3, 1),
        date(2024, 4, 1),
    ]
    assert all(r.status == PaymentStatus.PENDING for r in rows)


def test_create_subscription_fills_horizon_and_next_billing_date(database):
    with database.session() as session:
        user = create_user(session, email="subs@example.com", display_currency="eur")
        sub = create_subscription(
            session,
            user=user,
            today=date(2024, 1, 10),
            name="News",
            amount=Decimal("5.00"),
            start_date=date(2024, 1, 15),
        )

        dates = [p.expected_date for p in sub.payments]

    assert sub.currency == "EUR"
    assert sub.billing_day == 15
    assert sub.next_billing_date == date(2024, 1, 15)
    assert dates[0] == date(2024, 1, 15)
    assert dates[-1] == date(2024, 12, 15)
    assert len(dates) == 12


def test_schedule_change_regenerates_only_future_unpaid_payments(database):
    with database.session() as session:
        user = create_user(session, email="subs@example.com")
        sub = create_subscription(
            session,
            user=user,
            today=date(2024, 1, 1),
            name="Cloud",
            amount=Decimal("10.00"),
            start_date=date(2024, 1, 1),
            billing_day=1,
        )
        payments = {p.expected_date: p for p in sub.payments}
        paid = payments[date(2024, 5, 1)]
        paid.status = PaymentStatus.PAID
        paid.actual_amount = Decimal("10.00")
        session.commit()

        update_subscription(
            session,
            subscription=sub,
            today=date(2024, 3, 10),
            changes={"amount": Decimal("12.00"), "billing_day": 15},
        )

        rows = session.scalars(
            select(SubscriptionPayment)
            .where(SubscriptionPayment.subscription_id == sub.id)
            .order_by(SubscriptionPayment.expected_date)
        ).all()

    by_date = {r.expected_date: r for r in rows}
    # Past rows keep their original terms.
    assert by_date[date(2024, 2, 1)].expected_amount == Decimal("10.00")
    assert by_date[date(2024, 3, 1)].expected_amount == Decimal("10.00")
    # The paid future row is untouched.
    assert by_date[date(2024, 5, 1)].status == PaymentStatus.PAID
    assert by_date[date(2024, 5, 1)].expected_amount == Decimal("10.00")
    # Unpaid future rows follow the new schedule.
    assert date(2024, 4, 1) not in by_date
    assert by_date[date(2024, 3, 15)].expected_amount == Decimal("12.00")
    assert by_date[date(2024, 4, 15)].expected_amount == Decimal("12.00")


def test_cancelling_marks_future_payments_cancelled(database):
    with database.session() as session:
        user = create_user(session, email="subs@example.com")
        sub = create_subscription(
            session,
            user=user,
            today=date(2024, 1, 1),
            name="Music",
            amount=Decimal("11.99"),
            start_date=date(2024, 1, 1),
            billing_day=1,
        )
        update_subscription(
            session,
            subscription=sub,
            today=date(2024, 3, 10),
            changes={"status": SubscriptionStatus.CANCELLED},
        )
        rows = session.scalars(
            select(SubscriptionPayment).where(SubscriptionPayment.subscription_id == sub.id)
        ).all()

    past = [r for r in rows if r.expected_date < date(2024, 3, 10)]
    future = [r for r in rows if r.expected_date >= date(2024, 3, 10)]
    assert past and all(r.status == PaymentStatus.PENDING for r in past)
    assert future and all(r.status == PaymentStatus.CANCELLED for r in future)
    assert sub.next_billing_date == date(2024, 1, 1)
