"""Receipt processing lifecycle.

    pending ──start──> processing ──succeed──> completed
                          │  ^                    │
                         fail└──────start─────────┘
                          v  │
                        failed

`process` and `reprocess` run the same steps; they differ only in which states
they are allowed to start from.
"""

from __future__ import annotations

import enum
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from receipt_ledger.core.config import settings
from receipt_ledger.core.db import Database
from receipt_ledger.core.errors import (
    ExtractionError,
    ExtractionSchemaError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
)
from receipt_ledger.core.images import LoadedImage, load_image
from receipt_ledger.core.logging import get_logger, log_event, log_exception, monotonic_ms
from receipt_ledger.modules.extraction.schemas import ExtractionResult
from receipt_ledger.modules.identity.models import User
from receipt_ledger.modules.insights.service import invalidate
from receipt_ledger.modules.receipts.models import ProcessingStatus, Receipt, ReceiptItem
from receipt_ledger.modules.receipts.normalizer import NormalizedItem, ReceiptFields, normalize
from receipt_ledger.modules.receipts.schemas import ProcessingOutcomeOut, receipt_out

logger = get_logger(__name__)


class ProcessingEvent(str, enum.Enum):
    START = "start"
    # Take over a processing run that has been silent too long (crashed worker).
    RECLAIM = "reclaim"
    SUCCEED = "succeed"
    FAIL = "fail"


_TRANSITIONS: dict[tuple[ProcessingStatus, ProcessingEvent], ProcessingStatus] = {
    (ProcessingStatus.PENDING, ProcessingEvent.START): ProcessingStatus.PROCESSING,
    (ProcessingStatus.FAILED, ProcessingEvent.START): ProcessingStatus.PROCESSING,
    (ProcessingStatus.COMPLETED, ProcessingEvent.START): ProcessingStatus.PROCESSING,
    (ProcessingStatus.PROCESSING, ProcessingEvent.RECLAIM): ProcessingStatus.PROCESSING,
    (ProcessingStatus.PROCESSING, ProcessingEvent.SUCCEED): ProcessingStatus.COMPLETED,
    (ProcessingStatus.PROCESSING, ProcessingEvent.FAIL): ProcessingStatus.FAILED,
}


def transition(state: ProcessingStatus, event: ProcessingEvent) -> ProcessingStatus:
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidStateError(
            f"Cannot {event.value} a receipt that is {state.value}", status_code=400
        ) from None


class EntryPoint(str, enum.Enum):
    PROCESS = "process"
    REPROCESS = "reprocess"


_ENTRY_STATES: dict[EntryPoint, frozenset[ProcessingStatus]] = {
    EntryPoint.PROCESS: frozenset({ProcessingStatus.PENDING, ProcessingStatus.FAILED}),
    EntryPoint.REPROCESS: frozenset(
        {ProcessingStatus.PENDING, ProcessingStatus.FAILED, ProcessingStatus.COMPLETED}
    ),
}


def check_entry(
    receipt: Receipt, entry: EntryPoint, *, stale_after: timedelta | None = None
) -> None:
    """Reject a run that cannot start from the receipt's current state.

    `reprocess` may take over a `processing` receipt only once it has gone
    quiet for longer than `stale_after`.
    """
    status = receipt.processing_status
    if entry == EntryPoint.PROCESS and status == ProcessingStatus.COMPLETED:
        raise InvalidStateError("Receipt already processed", status_code=400)
    if status != ProcessingStatus.PROCESSING:
        return
    if entry == EntryPoint.REPROCESS and _is_stale(receipt, stale_after):
        return
    raise InvalidStateError("Receipt is already being processed", status_code=400)


def _is_stale(receipt: Receipt, stale_after: timedelta | None) -> bool:
    if stale_after is None:
        stale_after = timedelta(minutes=settings.processing_stale_after_minutes)
    updated_at = receipt.updated_at
    if updated_at is None:
        return True
    # SQLite hands back naive datetimes for timezone-aware columns.
    if updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=UTC)
    return updated_at < datetime.now(UTC) - stale_after


class Extractor(Protocol):
    def extract(self, image_bytes: bytes, mime_type: str) -> ExtractionResult: ...


@dataclass(frozen=True)
class _Claim:
    receipt_id: uuid.UUID
    user_id: uuid.UUID
    household_id: uuid.UUID | None
    image_url: str
    user_currency: str | None
    previous_status: ProcessingStatus


class ReceiptProcessor:
    def __init__(
        self,
        *,
        database: Database,
        extractor: Extractor,
        image_loader: Callable[[str], LoadedImage] = load_image,
        today: Callable[[], date] = date.today,
        stale_after: timedelta | None = None,
    ) -> None:
        self.database = database
        self.extractor = extractor
        self.image_loader = image_loader
        self.today = today
        self.stale_after = stale_after or timedelta(
            minutes=settings.processing_stale_after_minutes
        )

    def process(self, receipt_id: uuid.UUID) -> ProcessingOutcomeOut:
        return self._run(receipt_id, entry=EntryPoint.PROCESS)

    def reprocess(self, receipt_id: uuid.UUID) -> ProcessingOutcomeOut:
        return self._run(receipt_id, entry=EntryPoint.REPROCESS)

    def _run(self, receipt_id: uuid.UUID, *, entry: EntryPoint) -> ProcessingOutcomeOut:
        start = time.monotonic()
        claim = self._claim(receipt_id, entry=entry)
        log_event(
            logger,
            "receipt.process.start",
            receipt_id=str(receipt_id),
            entry=entry.value,
            from_status=claim.previous_status.value,
        )

        try:
            image = self.image_loader(claim.image_url)
            result = self.extractor.extract(image.body, image.mime_type)
        except ExtractionError as e:
            return self._fail(claim, e, start=start)
        except Exception as e:
            log_exception(logger, "receipt.process.error", receipt_id=str(receipt_id))
            return self._fail(claim, ExtractionError(f"Unexpected error: {e}"), start=start)

        try:
            fields, items = normalize(
                result.data,
                user_currency=claim.user_currency,
                default_currency=settings.default_currency,
                today=self.today(),
            )
        except Exception as e:
            log_exception(logger, "receipt.process.error", receipt_id=str(receipt_id))
            return self._fail(
                claim, ExtractionError(f"Failed to normalize receipt: {e}"), start=start
            )

        outcome = self._complete(claim, fields, items, result)
        log_event(
            logger,
            "receipt.process.finish",
            receipt_id=str(receipt_id),
            entry=entry.value,
            status=ProcessingStatus.COMPLETED.value,
            item_count=len(items),
            total_tokens=result.usage.total_tokens,
            duration_ms=monotonic_ms(start),
        )
        return outcome

    def _claim(self, receipt_id: uuid.UUID, *, entry: EntryPoint) -> _Claim:
        with self.database.session() as session:
            receipt = session.scalar(
                select(Receipt).where(Receipt.id == receipt_id, Receipt.deleted_at.is_(None))
            )
            if not receipt:
                raise NotFoundError("Receipt not found")
            previous = receipt.processing_status
            check_entry(receipt, entry, stale_after=self.stale_after)

            allowed = _ENTRY_STATES[entry]
            condition = Receipt.processing_status.in_(list(allowed))
            if entry == EntryPoint.REPROCESS:
                stale_before = datetime.now(UTC) - self.stale_after
                condition = or_(
                    condition,
                    (Receipt.processing_status == ProcessingStatus.PROCESSING)
                    & (Receipt.updated_at < stale_before),
                )
            event = (
                ProcessingEvent.RECLAIM
                if previous == ProcessingStatus.PROCESSING
                else ProcessingEvent.START
            )
            target = transition(previous, event)

            # Check-and-set in one statement so two callers cannot both start a run.
            result = session.execute(
                update(Receipt)
                .where(Receipt.id == receipt_id, condition)
                .values(
                    processing_status=target,
                    processing_error=None,
                    updated_at=datetime.now(UTC),
                )
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                session.rollback()
                raise InvalidStateError("Receipt is already being processed", status_code=400)
            session.commit()

            user_currency = session.scalar(
                select(User.display_currency).where(User.id == receipt.user_id)
            )
            log_event(
                logger,
                "receipt.status.changed",
                receipt_id=str(receipt_id),
                from_status=previous.value,
                to_status=target.value,
            )
            return _Claim(
                receipt_id=receipt.id,
                user_id=receipt.user_id,
                household_id=receipt.household_id,
                image_url=receipt.image_url,
                user_currency=user_currency,
                previous_status=previous,
            )

    def _fail(
        self, claim: _Claim, error: ExtractionError, *, start: float
    ) -> ProcessingOutcomeOut:
        message = error.message or "Unknown error"
        if isinstance(error, ExtractionSchemaError):
            log_event(
                logger,
                "extraction.schema_error",
                receipt_id=str(claim.receipt_id),
                issues=error.issues,
                raw_response=error.raw_response,
            )
        else:
            log_event(
                logger,
                "extraction.transport_error",
                receipt_id=str(claim.receipt_id),
                status=getattr(error, "status", None),
                error=message,
            )

        target = transition(ProcessingStatus.PROCESSING, ProcessingEvent.FAIL)
        with self.database.session() as session:
            # Status and message are written by one statement.
            session.execute(
                update(Receipt)
                .where(
                    Receipt.id == claim.receipt_id,
                    Receipt.processing_status == ProcessingStatus.PROCESSING,
                )
                .values(processing_status=target, processing_error=message)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            invalidate(session, user_id=claim.user_id, household_id=claim.household_id)

        log_event(
            logger,
            "receipt.process.finish",
            receipt_id=str(claim.receipt_id),
            status=target.value,
            error_type=type(error).__name__,
            duration_ms=monotonic_ms(start),
        )
        return ProcessingOutcomeOut(
            success=False, error="Failed to process receipt", message=message
        )

    def _complete(
        self,
        claim: _Claim,
        fields: ReceiptFields,
        items: list[NormalizedItem],
        result: ExtractionResult,
    ) -> ProcessingOutcomeOut:
        target = transition(ProcessingStatus.PROCESSING, ProcessingEvent.SUCCEED)
        with self.database.session() as session:
            try:
                receipt = session.get(Receipt, claim.receipt_id)
                if receipt is None or receipt.processing_status != ProcessingStatus.PROCESSING:
                    raise InvalidStateError(
                        "Receipt left processing before its result was saved", status_code=409
                    )
                _apply_fields(receipt, fields)
                receipt.processing_status = target
                receipt.processing_error = None
                receipt.processing_tokens = {
                    "prompt_tokens": result.usage.prompt_tokens,
                    "completion_tokens": result.usage.completion_tokens,
                    "total_tokens": result.usage.total_tokens,
                    "model": result.model,
                }
                session.execute(delete(ReceiptItem).where(ReceiptItem.receipt_id == receipt.id))
                session.add_all(_item_rows(receipt.id, items))
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                log_exception(logger, "receipt.process.error", receipt_id=str(claim.receipt_id))
                raise PersistenceError(f"Failed to save receipt: {e.__class__.__name__}") from e

            log_event(
                logger,
                "receipt.status.changed",
                receipt_id=str(claim.receipt_id),
                from_status=ProcessingStatus.PROCESSING.value,
                to_status=target.value,
            )
            invalidate(session, user_id=claim.user_id, household_id=claim.household_id)

            session.expire_all()
            receipt = session.get(Receipt, claim.receipt_id)
            return ProcessingOutcomeOut(
                success=True,
                receipt=receipt_out(receipt),
                extracted_data=_extracted_summary(result, items),
            )


def _apply_fields(receipt: Receipt, fields: ReceiptFields) -> None:
    receipt.merchant_name = fields.merchant_name
    receipt.total_amount = fields.total_amount
    receipt.currency = fields.currency
    receipt.transaction_date = fields.transaction_date
    receipt.category = fields.category
    receipt.payment_method = fields.payment_method
    receipt.location = fields.location
    receipt.receipt_number = fields.receipt_number
    receipt.subtotal = fields.subtotal
    receipt.tax = fields.tax
    receipt.service_charge = fields.service_charge
    receipt.ocr_data = fields.ocr_data
    receipt.ocr_schema_version = fields.ocr_schema_version


def _item_rows(receipt_id: uuid.UUID, items: list[NormalizedItem]) -> list[ReceiptItem]:
    return [
        ReceiptItem(
            receipt_id=receipt_id,
            position=idx,
            name=item.name,
            quantity=item.quantity,
            unit_price=item.unit_price,
            total_price=item.total_price,
            category=item.category,
            description=item.description,
            modifiers=[m.as_json() for m in item.modifiers],
        )
        for idx, item in enumerate(items)
    ]


def _extracted_summary(result: ExtractionResult, items: list[NormalizedItem]) -> dict[str, Any]:
    data = result.data.to_blob()
    data["items"] = [
        {
            "name": item.name,
            "quantity": str(item.quantity),
            "price": str(item.total_price),
            "category": item.category,
            "description": item.description,
            "modifiers": [m.as_json() for m in item.modifiers],
        }
        for item in items
    ]
    data["itemCount"] = len(items)
    return data
