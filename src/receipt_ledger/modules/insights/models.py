from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from receipt_ledger.core.models import Base, Timestamped, UUIDPrimaryKey


class InsightsCache(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "insights_cache"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "scope", "cache_type", "cache_key", name="uq_insights_cache_entry"
        ),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id", ondelete="CASCADE"), index=True
    )
    household_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("identity_household.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    # "user" or "household"
    scope: Mapped[str] = mapped_column(String(20), default="user")
    cache_type: Mapped[str] = mapped_column(String(50))
    cache_key: Mapped[str] = mapped_column(String(200))
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
