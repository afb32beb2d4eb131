from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from receipt_ledger.core.errors import ReceiptLedgerError
from receipt_ledger.core.logging import get_logger, log_event

logger = get_logger(__name__)


def receipt_ledger_error_handler(request: Request, exc: ReceiptLedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        log_event(
            logger,
            "http.error",
            path=request.url.path,
            error=exc.error,
            detail=exc.message,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "detail": exc.message},
    )
