from __future__ import annotations

import uuid
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from receipt_ledger.core.errors import (
    ExtractionSchemaError,
    ExtractionTransportError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
)
from receipt_ledger.core.images import LoadedImage
from receipt_ledger.modules.extraction.schemas import ExtractionResult, ExtractionV1, TokenUsage
from receipt_ledger.modules.identity.service import create_user
from receipt_ledger.modules.insights.models import InsightsCache
from receipt_ledger.modules.insights.service import put_cached
from receipt_ledger.modules.receipts.models import ProcessingStatus, Receipt, ReceiptItem
from receipt_ledger.modules.receipts import processing
from receipt_ledger.modules.receipts.processing import (
    ProcessingEvent,
    ReceiptProcessor,
    transition,
)
from receipt_ledger.modules.receipts.schemas import receipt_out
from receipt_ledger.modules.receipts.service import create_pending_receipt

COFFEE = {
    "merchant": "Coffee Co",
    "total": 4.50,
    "currency": "USD",
    "date": "2024-01-01",
    "items": [{"name": "Latte", "quantity": 1, "price": 4.50}],
}


class StubExtractor:
    def __init__(self, payload: dict | None = None, error: Exception | None = None):
        self.payload = payload
        self.error = error
        self.calls = 0

    def extract(self, image_bytes: bytes, mime_type: str) -> ExtractionResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return ExtractionResult(
            data=ExtractionV1.model_validate(self.payload),
            usage=TokenUsage(prompt_tokens=100, completion_tokens=50, total_tokens=150),
            model="gpt-4o",
        )


def _image(_url: str) -> LoadedImage:
    return LoadedImage(body=b"\x89PNG", mime_type="image/png")


def _processor(database, extractor) -> ReceiptProcessor:
    return ReceiptProcessor(
        database=database,
        extractor=extractor,
        image_loader=_image,
        today=lambda: date(2024, 6, 1),
    )


def _pending_receipt(database):
    with database.session() as session:
        user = create_user(session, email="owner@example.com")
        receipt = create_pending_receipt(session, user=user, image_url="https://img.test/r.png")
        return user.id, receipt.id


def _load(database, receipt_id) -> Receipt:
    with database.session() as session:
        receipt = session.get(Receipt, receipt_id)
        receipt.items  # noqa: B018
        session.expunge(receipt)
        return receipt


def test_transition_table():
    processing = ProcessingStatus.PROCESSING
    assert transition(ProcessingStatus.PENDING, ProcessingEvent.START) == processing
    assert transition(processing, ProcessingEvent.FAIL) == ProcessingStatus.FAILED
    assert (
        transition(ProcessingStatus.PROCESSING, ProcessingEvent.SUCCEED)
        == ProcessingStatus.COMPLETED
    )
    assert transition(ProcessingStatus.COMPLETED, ProcessingEvent.START) == processing

    with pytest.raises(InvalidStateError):
        transition(ProcessingStatus.PENDING, ProcessingEvent.SUCCEED)
    with pytest.raises(InvalidStateError):
        transition(ProcessingStatus.FAILED, ProcessingEvent.FAIL)


def test_process_completes_receipt(database):
    _, receipt_id = _pending_receipt(database)

    outcome = _processor(database, StubExtractor(COFFEE)).process(receipt_id)

    assert outcome.success is True
    assert outcome.error is None
    assert outcome.extracted_data["merchant"] == "Coffee Co"
    assert outcome.extracted_data["itemCount"] == 1

    receipt = _load(database, receipt_id)
    assert receipt.processing_status == ProcessingStatus.COMPLETED
    assert receipt.processing_error is None
    assert receipt.merchant_name == "Coffee Co"
    assert receipt.total_amount == Decimal("4.50")
    assert receipt.transaction_date == date(2024, 1, 1)
    assert receipt.processing_tokens["total_tokens"] == 150
    assert receipt.ocr_schema_version == 1
    assert len(receipt.items) == 1
    assert receipt.items[0].name == "Latte"
    assert receipt.items[0].unit_price == Decimal("4.50")


def test_transport_failure_marks_receipt_failed(database):
    _, receipt_id = _pending_receipt(database)
    extractor = StubExtractor(error=ExtractionTransportError("upstream exploded", status=503))

    outcome = _processor(database, extractor).process(receipt_id)

    assert outcome.success is False
    assert outcome.error == "Failed to process receipt"
    assert outcome.message == "upstream exploded"

    receipt = _load(database, receipt_id)
    assert receipt.processing_status == ProcessingStatus.FAILED
    assert "upstream exploded" in receipt.processing_error
    assert receipt.items == []


def test_schema_failure_marks_receipt_failed(database):
    _, receipt_id = _pending_receipt(database)
    extractor = StubExtractor(
        error=ExtractionSchemaError("Extraction response is not valid JSON", raw_response="nope")
    )

    outcome = _processor(database, extractor).process(receipt_id)

    assert outcome.success is False
    receipt = _load(database, receipt_id)
    assert receipt.processing_status == ProcessingStatus.FAILED
    assert receipt.processing_error == "Extraction response is not valid JSON"


def test_unexpected_extractor_error_marks_receipt_failed(database):
    _, receipt_id = _pending_receipt(database)

    outcome = _processor(database, StubExtractor(error=RuntimeError("boom"))).process(receipt_id)

    assert outcome.success is False
    receipt = _load(database, receipt_id)
    assert receipt.processing_status == ProcessingStatus.FAILED
    assert "boom" in receipt.processing_error


def test_process_rejects_completed_receipt(database):
    _, receipt_id = _pending_receipt(database)
    extractor = StubExtractor(COFFEE)
    processor = _processor(database, extractor)
    processor.process(receipt_id)

    with pytest.raises(InvalidStateError) as exc:
        processor.process(receipt_id)
    assert exc.value.status_code == 400
    assert extractor.calls == 1


def test_process_rejects_missing_and_deleted_receipts(database):
    _, receipt_id = _pending_receipt(database)
    processor = _processor(database, StubExtractor(COFFEE))

    with pytest.raises(NotFoundError):
        processor.process(uuid.uuid4())

    with database.session() as session:
        session.execute(
            update(Receipt).where(Receipt.id == receipt_id).values(deleted_at=datetime.now(UTC))
        )
        session.commit()
    with pytest.raises(NotFoundError):
        processor.process(receipt_id)


def test_process_rejects_receipt_already_processing(database):
    _, receipt_id = _pending_receipt(database)
    with database.session() as session:
        session.execute(
            update(Receipt)
            .where(Receipt.id == receipt_id)
            .values(processing_status=ProcessingStatus.PROCESSING)
        )
        session.commit()

    extractor = StubExtractor(COFFEE)
    with pytest.raises(InvalidStateError):
        _processor(database, extractor).process(receipt_id)
    with pytest.raises(InvalidStateError):
        _processor(database, extractor).reprocess(receipt_id)
    assert extractor.calls == 0


def test_reprocess_reclaims_stale_processing_receipt(database):
    _, receipt_id = _pending_receipt(database)
    with database.session() as session:
        session.execute(
            update(Receipt)
            .where(Receipt.id == receipt_id)
            .values(
                processing_status=ProcessingStatus.PROCESSING,
                updated_at=datetime.now(UTC) - timedelta(hours=1),
            )
        )
        session.commit()

    outcome = _processor(database, StubExtractor(COFFEE)).reprocess(receipt_id)

    assert outcome.success is True
    assert _load(database, receipt_id).processing_status == ProcessingStatus.COMPLETED


def test_reprocess_replaces_items(database):
    _, receipt_id = _pending_receipt(database)
    _processor(database, StubExtractor(COFFEE)).process(receipt_id)

    second = {
        "merchant": "Coffee Co",
        "total": 9.00,
        "items": [
            {"name": "Flat White", "quantity": 2, "price": 7.00},
            {"name": "Cookie", "quantity": 1, "price": 2.00},
        ],
    }
    outcome = _processor(database, StubExtractor(second)).reprocess(receipt_id)

    assert outcome.success is True
    receipt = _load(database, receipt_id)
    assert receipt.total_amount == Decimal("9.00")
    assert [i.name for i in receipt.items] == ["Flat White", "Cookie"]
    assert receipt.items[0].unit_price == Decimal("3.5000")
    with database.session() as session:
        count = len(
            session.scalars(select(ReceiptItem).where(ReceiptItem.receipt_id == receipt_id)).all()
        )
    assert count == 2


def test_failed_receipt_can_be_processed_again(database):
    _, receipt_id = _pending_receipt(database)
    _processor(database, StubExtractor(error=ExtractionTransportError("timeout"))).process(
        receipt_id
    )

    outcome = _processor(database, StubExtractor(COFFEE)).process(receipt_id)

    assert outcome.success is True
    receipt = _load(database, receipt_id)
    assert receipt.processing_status == ProcessingStatus.COMPLETED
    assert receipt.processing_error is None


def test_processing_invalidates_insights_cache(database):
    user_id, receipt_id = _pending_receipt(database)
    with database.session() as session:
        put_cached(
            session, user_id=user_id, cache_type="monthly", cache_key="2024-01", payload={"a": 1}
        )

    _processor(database, StubExtractor(COFFEE)).process(receipt_id)

    with database.session() as session:
        assert session.scalars(select(InsightsCache)).all() == []


def test_completed_receipt_exposes_typed_extraction(database):
    _, receipt_id = _pending_receipt(database)
    _processor(database, StubExtractor(COFFEE)).process(receipt_id)

    out = receipt_out(_load(database, receipt_id))

    assert out.extraction is not None
    assert out.extraction.merchant == "Coffee Co"
    assert out.extraction.items[0].name == "Latte"


def test_out_of_range_amounts_still_complete(database):
    _, receipt_id = _pending_receipt(database)
    payload = {
        "merchant": "Typo Mart",
        "total": 1e30,
        "items": [{"name": "Widget", "quantity": 1e20, "price": 1e30}],
    }

    outcome = _processor(database, StubExtractor(payload)).process(receipt_id)

    assert outcome.success is True
    receipt = _load(database, receipt_id)
    assert receipt.processing_status == ProcessingStatus.COMPLETED
    assert receipt.processing_error is None
    assert receipt.total_amount == Decimal("0.00")
    assert receipt.items[0].quantity == Decimal("1.000")
    assert receipt.items[0].total_price == Decimal("0.00")
    assert receipt.ocr_data["total"] == 1e30


def test_normalization_error_marks_receipt_failed(database, monkeypatch):
    _, receipt_id = _pending_receipt(database)

    def _explode(*args, **kwargs):
        raise ArithmeticError("overflow")

    monkeypatch.setattr(processing, "normalize", _explode)

    outcome = _processor(database, StubExtractor(COFFEE)).process(receipt_id)

    assert outcome.success is False
    assert "overflow" in outcome.message
    receipt = _load(database, receipt_id)
    assert receipt.processing_status == ProcessingStatus.FAILED
    assert receipt.processing_error.startswith("Failed to normalize receipt")


def test_persistence_failure_keeps_receipt_processing(database, monkeypatch):
    _, receipt_id = _pending_receipt(database)

    def _rows_without_name(receipt_id, items):
        return [
            ReceiptItem(
                receipt_id=receipt_id,
                position=0,
                name=None,
                quantity=Decimal("1.000"),
                unit_price=Decimal("4.5000"),
                total_price=Decimal("4.50"),
                modifiers=[],
            )
        ]

    monkeypatch.setattr(processing, "_item_rows", _rows_without_name)

    with pytest.raises(PersistenceError):
        _processor(database, StubExtractor(COFFEE)).process(receipt_id)

    receipt = _load(database, receipt_id)
    assert receipt.processing_status == ProcessingStatus.PROCESSING
    assert receipt.processing_error is None
    assert receipt.merchant_name is None
    assert receipt.items == []


class RecordingExtractor(StubExtractor):
    """Captures the stored status while extraction is in flight."""

    def __init__(self, database, receipt_id, **kwargs):
        super().__init__(**kwargs)
        self.database = database
        self.receipt_id = receipt_id
        self.seen: list[tuple[ProcessingStatus, str | None]] = []

    def extract(self, image_bytes: bytes, mime_type: str) -> ExtractionResult:
        receipt = _load(self.database, self.receipt_id)
        self.seen.append((receipt.processing_status, receipt.processing_error))
        return super().extract(image_bytes, mime_type)


def test_error_is_set_only_while_failed(database):
    _, receipt_id = _pending_receipt(database)
    snapshots = []

    def snapshot():
        receipt = _load(database, receipt_id)
        snapshots.append((receipt.processing_status, receipt.processing_error))

    snapshot()
    failing = RecordingExtractor(
        database, receipt_id, error=ExtractionTransportError("upstream exploded")
    )
    _processor(database, failing).process(receipt_id)
    snapshot()
    succeeding = RecordingExtractor(database, receipt_id, payload=COFFEE)
    _processor(database, succeeding).reprocess(receipt_id)
    snapshot()
    snapshots.extend(failing.seen + succeeding.seen)

    statuses = {status for status, _ in snapshots}
    assert statuses == {
        ProcessingStatus.PENDING,
        ProcessingStatus.PROCESSING,
        ProcessingStatus.FAILED,
        ProcessingStatus.COMPLETED,
    }
    for status, error in snapshots:
        assert (error is not None) == (status == ProcessingStatus.FAILED)
