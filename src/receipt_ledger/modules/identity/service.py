from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from receipt_ledger.core.errors import InvalidStateError
from receipt_ledger.modules.identity.models import Household, User


def get_user(session: Session, *, user_id: uuid.UUID) -> User | None:
    return session.scalar(select(User).where(User.id == user_id))


def create_user(
    session: Session,
    *,
    email: str,
    display_currency: str | None = None,
    default_household_id: uuid.UUID | None = None,
) -> User:
    existing = session.scalar(select(User).where(User.email == email))
    if existing:
        raise InvalidStateError("Email already exists")

    user = User(
        email=email,
        display_currency=display_currency.upper() if display_currency else None,
        default_household_id=default_household_id,
        is_active=True,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def create_household(session: Session, *, name: str) -> Household:
    household = Household(name=name.strip() or "Household")
    session.add(household)
    session.commit()
    session.refresh(household)
    return household
