"""Manual reconciliation of expected subscription payments against receipts."""

from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from receipt_ledger.core.errors import InvalidStateError, NotFoundError
from receipt_ledger.core.logging import get_logger, log_event
from receipt_ledger.modules.receipts.models import Receipt
from receipt_ledger.modules.subscriptions.models import (
    PaymentStatus,
    Subscription,
    SubscriptionPayment,
)
from receipt_ledger.modules.subscriptions.schedule import (
    generate_expected_payments,
    refresh_next_billing_date,
)

logger = get_logger(__name__)

OPEN_STATUSES = (PaymentStatus.PENDING, PaymentStatus.MISSED)


def get_payment(session: Session, *, payment_id: uuid.UUID) -> SubscriptionPayment:
    payment = session.get(SubscriptionPayment, payment_id)
    if not payment:
        raise NotFoundError("Payment not found")
    return payment


def get_payment_for_receipt(
    session: Session, *, receipt_id: uuid.UUID
) -> SubscriptionPayment | None:
    return session.scalar(
        select(SubscriptionPayment).where(SubscriptionPayment.receipt_id == receipt_id)
    )


def link_payment(
    session: Session,
    *,
    payment_id: uuid.UUID,
    receipt_id: uuid.UUID,
    today: date,
    actual_date: date | None = None,
    actual_amount: Decimal | None = None,
) -> SubscriptionPayment:
    payment = get_payment(session, payment_id=payment_id)
    receipt = session.scalar(
        select(Receipt).where(Receipt.id == receipt_id, Receipt.deleted_at.is_(None))
    )
    if not receipt:
        raise NotFoundError("Receipt not found")

    if payment.receipt_id is not None and payment.receipt_id != receipt_id:
        raise InvalidStateError("Payment is already linked to another receipt")
    other = get_payment_for_receipt(session, receipt_id=receipt_id)
    if other is not None and other.id != payment.id:
        raise InvalidStateError("Receipt is already linked to another payment")

    payment.receipt_id = receipt.id
    payment.status = PaymentStatus.PAID
    payment.actual_date = actual_date or receipt.transaction_date or payment.expected_date
    payment.actual_amount = (
        actual_amount
        if actual_amount is not None
        else receipt.total_amount
        if receipt.total_amount is not None
        else payment.expected_amount
    )
    session.add(payment)

    subscription = payment.subscription
    last = subscription.last_payment_date
    if last is None or payment.actual_date > last:
        subscription.last_payment_date = payment.actual_date
    try:
        session.flush()
    except IntegrityError as e:
        # Lost a race with another link of the same receipt.
        session.rollback()
        raise InvalidStateError("Receipt is already linked to another payment") from e

    refresh_next_billing_date(session, subscription=subscription, today=today)
    session.commit()
    session.refresh(payment)

    log_event(
        logger,
        "subscription.payment.linked",
        payment_id=str(payment.id),
        subscription_id=str(subscription.id),
        receipt_id=str(receipt.id),
    )
    # Top the schedule up now that a cycle has been consumed.
    generate_expected_payments(session, subscription=subscription, today=today)
    session.refresh(payment)
    return payment


def unlink_payment(
    session: Session, *, payment_id: uuid.UUID, today: date
) -> SubscriptionPayment:
    payment = get_payment(session, payment_id=payment_id)
    if payment.receipt_id is None:
        raise InvalidStateError("Payment has no linked receipt")

    receipt_id = payment.receipt_id
    _clear_link(session, payment=payment, today=today)
    session.commit()
    session.refresh(payment)

    log_event(
        logger,
        "subscription.payment.unlinked",
        payment_id=str(payment.id),
        subscription_id=str(payment.subscription_id),
        receipt_id=str(receipt_id),
        status=payment.status.value,
    )
    return payment


def detach_receipt(session: Session, *, receipt_id: uuid.UUID, today: date | None = None) -> bool:
    """Drop the payment link of a receipt that is going away. The caller commits."""
    payment = get_payment_for_receipt(session, receipt_id=receipt_id)
    if payment is None:
        return False
    _clear_link(session, payment=payment, today=today or date.today())
    log_event(
        logger,
        "subscription.payment.detached",
        payment_id=str(payment.id),
        receipt_id=str(receipt_id),
    )
    return True


def _clear_link(session: Session, *, payment: SubscriptionPayment, today: date) -> None:
    payment.receipt_id = None
    payment.actual_date = None
    payment.actual_amount = None
    payment.status = (
        PaymentStatus.PENDING if payment.expected_date >= today else PaymentStatus.MISSED
    )
    session.add(payment)
    session.flush()

    subscription = payment.subscription
    subscription.last_payment_date = session.scalar(
        select(func.max(SubscriptionPayment.actual_date)).where(
            SubscriptionPayment.subscription_id == subscription.id,
            SubscriptionPayment.status == PaymentStatus.PAID,
        )
    )
    refresh_next_billing_date(session, subscription=subscription, today=today)


def missing_payments_for(session: Session, *, subscription_id: uuid.UUID, today: date) -> int:
    """Expected payments whose date has passed with nothing linked. Computed on every read."""
    count = session.scalar(
        select(func.count(SubscriptionPayment.id)).where(
            SubscriptionPayment.subscription_id == subscription_id,
            SubscriptionPayment.expected_date < today,
            SubscriptionPayment.status.in_(OPEN_STATUSES),
        )
    )
    return int(count or 0)


def missing_payments_by_subscription(
    session: Session, *, subscription_ids: list[uuid.UUID], today: date
) -> dict[uuid.UUID, int]:
    if not subscription_ids:
        return {}
    rows = session.execute(
        select(SubscriptionPayment.subscription_id, func.count(SubscriptionPayment.id))
        .where(
            SubscriptionPayment.subscription_id.in_(subscription_ids),
            SubscriptionPayment.expected_date < today,
            SubscriptionPayment.status.in_(OPEN_STATUSES),
        )
        .group_by(SubscriptionPayment.subscription_id)
    ).all()
    counts = {sid: 0 for sid in subscription_ids}
    counts.update({sid: int(n) for sid, n in rows})
    return counts


def mark_missed_payments(session: Session, *, today: date) -> int:
    """Move pending payments whose date has passed to `missed`."""
    result = session.execute(
        update(SubscriptionPayment)
        .where(
            SubscriptionPayment.status == PaymentStatus.PENDING,
            SubscriptionPayment.expected_date < today,
        )
        .values(status=PaymentStatus.MISSED)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    marked = int(result.rowcount or 0)
    log_event(logger, "subscription.payments.missed", marked=marked, today=today.isoformat())
    return marked


def payments_for(session: Session, *, subscription: Subscription) -> list[SubscriptionPayment]:
    return list(
        session.scalars(
            select(SubscriptionPayment)
            .where(SubscriptionPayment.subscription_id == subscription.id)
            .order_by(SubscriptionPayment.expected_date.asc())
        )
    )
