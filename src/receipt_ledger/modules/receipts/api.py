from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from receipt_ledger.api.deps import get_current_user, get_receipt_processor
from receipt_ledger.core.db import db_session
from receipt_ledger.modules.identity.models import User
from receipt_ledger.modules.receipts.models import ProcessingStatus
from receipt_ledger.modules.receipts.processing import EntryPoint, ReceiptProcessor, check_entry
from receipt_ledger.modules.receipts.schemas import (
    ProcessingOutcomeOut,
    ProcessingSubmittedOut,
    ReceiptCreateIn,
    ReceiptOut,
    ReceiptUpdateIn,
    receipt_out,
)
from receipt_ledger.modules.receipts.service import (
    create_pending_receipt,
    get_receipt_for_user,
    list_receipts,
    soft_delete_receipt,
    update_receipt,
)

router = APIRouter(tags=["receipts"])


@router.post("/receipts", response_model=ReceiptOut, status_code=status.HTTP_201_CREATED)
def create_receipt_endpoint(
    payload: ReceiptCreateIn,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ReceiptOut:
    receipt = create_pending_receipt(
        session, user=user, image_url=payload.image_url, household_id=payload.household_id
    )
    return receipt_out(receipt)


@router.get("/receipts", response_model=list[ReceiptOut])
def list_receipts_endpoint(
    processing_status: ProcessingStatus | None = None,
    household_id: uuid.UUID | None = None,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[ReceiptOut]:
    receipts = list_receipts(
        session, user=user, household_id=household_id, status=processing_status
    )
    return [receipt_out(r) for r in receipts]


@router.get("/receipts/{receipt_id}", response_model=ReceiptOut)
def get_receipt_endpoint(
    receipt_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ReceiptOut:
    return receipt_out(get_receipt_for_user(session, receipt_id=receipt_id, user=user))


@router.patch("/receipts/{receipt_id}", response_model=ReceiptOut)
def update_receipt_endpoint(
    receipt_id: uuid.UUID,
    payload: ReceiptUpdateIn,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ReceiptOut:
    receipt = get_receipt_for_user(session, receipt_id=receipt_id, user=user)
    receipt = update_receipt(
        session, receipt=receipt, changes=payload.model_dump(exclude_unset=True)
    )
    return receipt_out(receipt)


@router.delete("/receipts/{receipt_id}")
def delete_receipt_endpoint(
    receipt_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> Response:
    receipt = get_receipt_for_user(session, receipt_id=receipt_id, user=user)
    soft_delete_receipt(session, receipt=receipt)
    return Response(status_code=204)


@router.post("/receipts/{receipt_id}/process")
def process_receipt_endpoint(
    receipt_id: uuid.UUID,
    wait: bool = False,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
    processor: ReceiptProcessor = Depends(get_receipt_processor),
) -> JSONResponse:
    return _start(
        session,
        user=user,
        receipt_id=receipt_id,
        entry=EntryPoint.PROCESS,
        wait=wait,
        processor=processor,
    )


@router.post("/receipts/{receipt_id}/reprocess")
def reprocess_receipt_endpoint(
    receipt_id: uuid.UUID,
    wait: bool = False,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
    processor: ReceiptProcessor = Depends(get_receipt_processor),
) -> JSONResponse:
    return _start(
        session,
        user=user,
        receipt_id=receipt_id,
        entry=EntryPoint.REPROCESS,
        wait=wait,
        processor=processor,
    )


def _start(
    session: Session,
    *,
    user: User,
    receipt_id: uuid.UUID,
    entry: EntryPoint,
    wait: bool,
    processor: ReceiptProcessor,
) -> JSONResponse:
    receipt = get_receipt_for_user(session, receipt_id=receipt_id, user=user)
    check_entry(receipt, entry, stale_after=processor.stale_after)

    if wait:
        run = processor.reprocess if entry == EntryPoint.REPROCESS else processor.process
        outcome: ProcessingOutcomeOut = run(receipt.id)
        return JSONResponse(
            status_code=200 if outcome.success else 500,
            content=outcome.model_dump(mode="json"),
        )

    from receipt_ledger.worker.tasks import process_receipt_task

    result = process_receipt_task.delay(
        str(receipt.id), reprocess=entry == EntryPoint.REPROCESS
    )
    session.refresh(receipt)
    submitted = ProcessingSubmittedOut(
        receipt_id=receipt.id,
        task_id=str(result.id),
        processing_status=receipt.processing_status,
    )
    return JSONResponse(status_code=202, content=submitted.model_dump(mode="json"))
