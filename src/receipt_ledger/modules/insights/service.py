from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from receipt_ledger.core.config import settings
from receipt_ledger.core.logging import get_logger, log_event, log_exception
from receipt_ledger.modules.insights.models import InsightsCache

logger = get_logger(__name__)


def invalidate(
    session: Session, *, user_id: uuid.UUID, household_id: uuid.UUID | None = None
) -> int:
    """Drop every cached insight for the user, plus the household scope when given.

    Invalidation is best-effort: a failure is logged and swallowed so that it never
    turns a successful receipt write into an error for the caller.
    """
    condition = InsightsCache.user_id == user_id
    if household_id is not None:
        condition = or_(condition, InsightsCache.household_id == household_id)
    try:
        result = session.execute(delete(InsightsCache).where(condition))
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        log_exception(
            logger,
            "insights.cache.invalidate.error",
            owner_id=str(user_id),
            household_id=str(household_id) if household_id else None,
        )
        return 0
    log_event(
        logger,
        "insights.cache.invalidated",
        owner_id=str(user_id),
        household_id=str(household_id) if household_id else None,
        deleted=result.rowcount,
    )
    return int(result.rowcount or 0)


def get_cached(
    session: Session,
    *,
    user_id: uuid.UUID,
    cache_type: str,
    cache_key: str,
    household_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> dict | None:
    now = now or datetime.now(UTC)
    entry = session.scalar(
        select(InsightsCache).where(
            InsightsCache.user_id == user_id,
            InsightsCache.scope == _scope(household_id),
            InsightsCache.cache_type == cache_type,
            InsightsCache.cache_key == cache_key,
        )
    )
    if not entry or _aware(entry.expires_at) <= now:
        return None
    return entry.payload


def put_cached(
    session: Session,
    *,
    user_id: uuid.UUID,
    cache_type: str,
    cache_key: str,
    payload: dict,
    household_id: uuid.UUID | None = None,
    ttl: timedelta | None = None,
    now: datetime | None = None,
) -> InsightsCache:
    now = now or datetime.now(UTC)
    expires_at = now + (ttl or timedelta(minutes=settings.insights_cache_ttl_minutes))
    scope = _scope(household_id)
    entry = session.scalar(
        select(InsightsCache).where(
            InsightsCache.user_id == user_id,
            InsightsCache.scope == scope,
            InsightsCache.cache_type == cache_type,
            InsightsCache.cache_key == cache_key,
        )
    )
    if entry is None:
        entry = InsightsCache(
            user_id=user_id,
            household_id=household_id,
            scope=scope,
            cache_type=cache_type,
            cache_key=cache_key,
        )
    entry.payload = payload
    entry.expires_at = expires_at
    session.add(entry)
    session.commit()
    session.refresh(entry)
    return entry


def _scope(household_id: uuid.UUID | None) -> str:
    return "household" if household_id is not None else "user"


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone=True columns.
    return value if value.tzinfo else value.replace(tzinfo=UTC)
