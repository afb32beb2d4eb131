from __future__ import annotations

from fastapi import APIRouter

from receipt_ledger.modules.receipts.api import router as receipts_router
from receipt_ledger.modules.subscriptions.api import router as subscriptions_router

router = APIRouter()

router.include_router(receipts_router, prefix="/api")
router.include_router(subscriptions_router, prefix="/api")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}
