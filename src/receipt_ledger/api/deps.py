from __future__ import annotations

import uuid
from datetime import date

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from receipt_ledger.core.db import Database, db_session
from receipt_ledger.core.logging import set_user_context
from receipt_ledger.core.security import decode_access_token
from receipt_ledger.modules.extraction.ai import ReceiptExtractor
from receipt_ledger.modules.identity.models import User
from receipt_ledger.modules.identity.service import get_user
from receipt_ledger.modules.receipts.processing import ReceiptProcessor

bearer_scheme = HTTPBearer(auto_error=False)


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    session: Session = Depends(db_session),
) -> User:
    token = credentials.credentials if credentials else None
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    subject = decode_access_token(token)
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    try:
        user_id = uuid.UUID(subject)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from e

    user = get_user(session, user_id=user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user")
    set_user_context(str(user.id))
    return user


def get_receipt_processor(database: Database = Depends(get_database)) -> ReceiptProcessor:
    return ReceiptProcessor(database=database, extractor=ReceiptExtractor())


def today() -> date:
    return date.today()
