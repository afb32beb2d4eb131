from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from receipt_ledger.core.errors import NotFoundError, ValidationError
from receipt_ledger.core.logging import get_logger, log_event
from receipt_ledger.modules.identity.models import User
from receipt_ledger.modules.insights.service import invalidate
from receipt_ledger.modules.receipts.models import ProcessingStatus, Receipt

logger = get_logger(__name__)


def create_pending_receipt(
    session: Session,
    *,
    user: User,
    image_url: str,
    household_id: uuid.UUID | None = None,
) -> Receipt:
    image_url = image_url.strip()
    if not image_url:
        raise ValidationError("Image URL is required")

    receipt = Receipt(
        user_id=user.id,
        household_id=household_id or user.default_household_id,
        image_url=image_url,
        processing_status=ProcessingStatus.PENDING,
    )
    session.add(receipt)
    session.commit()
    session.refresh(receipt)
    log_event(
        logger,
        "receipt.created",
        receipt_id=str(receipt.id),
        household_id=str(receipt.household_id) if receipt.household_id else None,
        processing_status=receipt.processing_status.value,
    )
    return receipt


def get_receipt(session: Session, *, receipt_id: uuid.UUID) -> Receipt:
    receipt = session.scalar(
        select(Receipt).where(Receipt.id == receipt_id, Receipt.deleted_at.is_(None))
    )
    if not receipt:
        raise NotFoundError("Receipt not found")
    return receipt


def get_receipt_for_user(session: Session, *, receipt_id: uuid.UUID, user: User) -> Receipt:
    receipt = get_receipt(session, receipt_id=receipt_id)
    if receipt.user_id != user.id:
        # Do not reveal receipts owned by someone else.
        raise NotFoundError("Receipt not found")
    return receipt


def list_receipts(
    session: Session,
    *,
    user: User,
    household_id: uuid.UUID | None = None,
    status: ProcessingStatus | None = None,
) -> list[Receipt]:
    stmt = select(Receipt).where(Receipt.user_id == user.id, Receipt.deleted_at.is_(None))
    if household_id is not None:
        stmt = stmt.where(Receipt.household_id == household_id)
    if status is not None:
        stmt = stmt.where(Receipt.processing_status == status)
    return list(
        session.scalars(
            stmt.order_by(Receipt.transaction_date.desc().nulls_last(), Receipt.created_at.desc())
        )
    )


def update_receipt(session: Session, *, receipt: Receipt, changes: dict) -> Receipt:
    if "is_business_expense" in changes and changes["is_business_expense"] is not None:
        receipt.is_business_expense = bool(changes["is_business_expense"])
    if "business_category" in changes:
        receipt.business_category = _clean(changes["business_category"])
    if "business_notes" in changes:
        receipt.business_notes = _clean(changes["business_notes"])
    if "category" in changes and _clean(changes["category"]):
        receipt.category = _clean(changes["category"]).lower()
    session.add(receipt)
    session.commit()
    session.refresh(receipt)

    invalidate(session, user_id=receipt.user_id, household_id=receipt.household_id)
    return receipt


def soft_delete_receipt(session: Session, *, receipt: Receipt) -> None:
    from receipt_ledger.modules.subscriptions.matching import detach_receipt

    receipt.deleted_at = datetime.now(UTC)
    session.add(receipt)
    detach_receipt(session, receipt_id=receipt.id)
    session.commit()
    log_event(logger, "receipt.deleted", receipt_id=str(receipt.id))

    invalidate(session, user_id=receipt.user_id, household_id=receipt.household_id)


def _clean(value: object) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None
