from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from receipt_ledger.api.deps import get_current_user, today
from receipt_ledger.core.db import db_session
from receipt_ledger.core.errors import NotFoundError
from receipt_ledger.modules.identity.models import User
from receipt_ledger.modules.receipts.service import get_receipt_for_user
from receipt_ledger.modules.subscriptions.matching import (
    get_payment,
    get_payment_for_receipt,
    link_payment,
    missing_payments_by_subscription,
    missing_payments_for,
    payments_for,
    unlink_payment,
)
from receipt_ledger.modules.subscriptions.models import Subscription, SubscriptionStatus
from receipt_ledger.modules.subscriptions.schemas import (
    PaymentLinkIn,
    PaymentOut,
    ReceiptSubscriptionOut,
    SubscriptionCreateIn,
    SubscriptionOut,
    SubscriptionUpdateIn,
)
from receipt_ledger.modules.subscriptions.service import (
    create_subscription,
    delete_subscription,
    get_subscription_for_user,
    list_subscriptions,
    update_subscription,
)

router = APIRouter(tags=["subscriptions"])


def _subscription_out(subscription: Subscription, *, missing: int) -> SubscriptionOut:
    out = SubscriptionOut.model_validate(subscription, from_attributes=True)
    return out.model_copy(update={"missing_payments": missing})


def _owned_payment(session: Session, *, payment_id: uuid.UUID, user: User):
    payment = get_payment(session, payment_id=payment_id)
    if payment.subscription.user_id != user.id:
        raise NotFoundError("Payment not found")
    return payment


@router.post(
    "/subscriptions", response_model=SubscriptionOut, status_code=status.HTTP_201_CREATED
)
def create_subscription_endpoint(
    payload: SubscriptionCreateIn,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
    current_day: date = Depends(today),
) -> SubscriptionOut:
    subscription = create_subscription(
        session, user=user, today=current_day, **payload.model_dump()
    )
    missing = missing_payments_for(session, subscription_id=subscription.id, today=current_day)
    return _subscription_out(subscription, missing=missing)


@router.get("/subscriptions", response_model=list[SubscriptionOut])
def list_subscriptions_endpoint(
    subscription_status: SubscriptionStatus | None = None,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
    current_day: date = Depends(today),
) -> list[SubscriptionOut]:
    subscriptions = list_subscriptions(session, user=user, status=subscription_status)
    missing = missing_payments_by_subscription(
        session, subscription_ids=[s.id for s in subscriptions], today=current_day
    )
    return [_subscription_out(s, missing=missing.get(s.id, 0)) for s in subscriptions]


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionOut)
def get_subscription_endpoint(
    subscription_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
    current_day: date = Depends(today),
) -> SubscriptionOut:
    subscription = get_subscription_for_user(
        session, subscription_id=subscription_id, user=user
    )
    missing = missing_payments_for(session, subscription_id=subscription.id, today=current_day)
    return _subscription_out(subscription, missing=missing)


@router.patch("/subscriptions/{subscription_id}", response_model=SubscriptionOut)
def update_subscription_endpoint(
    subscription_id: uuid.UUID,
    payload: SubscriptionUpdateIn,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
    current_day: date = Depends(today),
) -> SubscriptionOut:
    subscription = get_subscription_for_user(
        session, subscription_id=subscription_id, user=user
    )
    subscription = update_subscription(
        session,
        subscription=subscription,
        today=current_day,
        changes=payload.model_dump(exclude_unset=True),
    )
    missing = missing_payments_for(session, subscription_id=subscription.id, today=current_day)
    return _subscription_out(subscription, missing=missing)


@router.delete("/subscriptions/{subscription_id}")
def delete_subscription_endpoint(
    subscription_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> Response:
    subscription = get_subscription_for_user(
        session, subscription_id=subscription_id, user=user
    )
    delete_subscription(session, subscription=subscription)
    return Response(status_code=204)


@router.get("/subscriptions/{subscription_id}/payments", response_model=list[PaymentOut])
def list_payments_endpoint(
    subscription_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[PaymentOut]:
    subscription = get_subscription_for_user(
        session, subscription_id=subscription_id, user=user
    )
    payments = payments_for(session, subscription=subscription)
    return [PaymentOut.model_validate(p, from_attributes=True) for p in payments]


@router.put("/subscriptions/payments/{payment_id}/receipt", response_model=PaymentOut)
def link_payment_endpoint(
    payment_id: uuid.UUID,
    payload: PaymentLinkIn,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
    current_day: date = Depends(today),
) -> PaymentOut:
    _owned_payment(session, payment_id=payment_id, user=user)
    get_receipt_for_user(session, receipt_id=payload.receipt_id, user=user)
    payment = link_payment(
        session,
        payment_id=payment_id,
        receipt_id=payload.receipt_id,
        today=current_day,
        actual_date=payload.actual_date,
        actual_amount=payload.actual_amount,
    )
    return PaymentOut.model_validate(payment, from_attributes=True)


@router.delete("/subscriptions/payments/{payment_id}/receipt", response_model=PaymentOut)
def unlink_payment_endpoint(
    payment_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
    current_day: date = Depends(today),
) -> PaymentOut:
    _owned_payment(session, payment_id=payment_id, user=user)
    payment = unlink_payment(session, payment_id=payment_id, today=current_day)
    return PaymentOut.model_validate(payment, from_attributes=True)


@router.get("/receipts/{receipt_id}/subscription", response_model=ReceiptSubscriptionOut)
def receipt_subscription_endpoint(
    receipt_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
    current_day: date = Depends(today),
) -> ReceiptSubscriptionOut:
    receipt = get_receipt_for_user(session, receipt_id=receipt_id, user=user)
    payment = get_payment_for_receipt(session, receipt_id=receipt.id)
    if payment is None:
        return ReceiptSubscriptionOut()
    subscription = payment.subscription
    missing = missing_payments_for(session, subscription_id=subscription.id, today=current_day)
    return ReceiptSubscriptionOut(
        payment=PaymentOut.model_validate(payment, from_attributes=True),
        subscription=_subscription_out(subscription, missing=missing),
    )
