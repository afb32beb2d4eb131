from __future__ import annotations

import uuid

from sqlalchemy import Boolean, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from receipt_ledger.core.models import Base, Timestamped, UUIDPrimaryKey


class Household(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "identity_household"

    name: Mapped[str] = mapped_column(String(200))


class User(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "identity_user"

    email: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    display_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    default_household_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_household.id", ondelete="SET NULL"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
