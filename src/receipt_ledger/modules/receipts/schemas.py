from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from receipt_ledger.modules.extraction.schemas import ExtractionV1, parse_ocr_blob
from receipt_ledger.modules.receipts.models import ProcessingStatus


class ReceiptCreateIn(BaseModel):
    image_url: str = Field(min_length=1, max_length=2048)
    household_id: uuid.UUID | None = None


class ReceiptUpdateIn(BaseModel):
    is_business_expense: bool | None = None
    business_category: str | None = None
    business_notes: str | None = None
    category: str | None = None


class ModifierOut(BaseModel):
    name: str
    price: Decimal
    type: str


class ReceiptItemOut(BaseModel):
    id: uuid.UUID
    name: str
    quantity: Decimal
    unit_price: Decimal
    total_price: Decimal
    category: str | None
    description: str | None
    modifiers: list[ModifierOut]


class ReceiptOut(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    household_id: uuid.UUID | None
    image_url: str
    processing_status: ProcessingStatus
    processing_error: str | None
    processing_tokens: dict | None
    merchant_name: str | None
    currency: str | None
    transaction_date: date | None
    category: str | None
    payment_method: str | None
    location: str | None
    receipt_number: str | None
    subtotal: Decimal | None
    tax: Decimal | None
    service_charge: Decimal | None
    total_amount: Decimal | None
    is_business_expense: bool
    business_category: str | None
    business_notes: str | None
    items: list[ReceiptItemOut] = Field(default_factory=list)
    item_count: int = 0
    extraction: ExtractionV1 | None = None
    created_at: datetime
    updated_at: datetime


class ProcessingOutcomeOut(BaseModel):
    success: bool
    receipt: ReceiptOut | None = None
    extracted_data: dict[str, Any] | None = None
    error: str | None = None
    message: str | None = None


class ProcessingSubmittedOut(BaseModel):
    receipt_id: uuid.UUID
    task_id: str
    processing_status: ProcessingStatus


_DERIVED_FIELDS = {"items", "item_count", "extraction"}
_COLUMN_FIELDS = [name for name in ReceiptOut.model_fields if name not in _DERIVED_FIELDS]


def receipt_out(receipt: Any) -> ReceiptOut:
    items = list(receipt.items or [])
    payload = {name: getattr(receipt, name) for name in _COLUMN_FIELDS}
    payload["items"] = [ReceiptItemOut.model_validate(i, from_attributes=True) for i in items]
    payload["item_count"] = len(items)
    payload["extraction"] = parse_ocr_blob(
        receipt.ocr_data, schema_version=receipt.ocr_schema_version
    )
    return ReceiptOut.model_validate(payload)
