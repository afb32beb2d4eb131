"""Wire schema for what the vision model returns.

Keys arrive in camelCase (that is what the prompt asks for); attributes are
snake_case. Unknown keys are kept so they survive into the stored OCR blob.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

EXTRACTION_SCHEMA_VERSION = 1

MODIFIER_TYPES: tuple[str, ...] = ("fee", "deposit", "discount", "addon", "modifier")

RECEIPT_CATEGORIES: tuple[str, ...] = (
    "groceries",
    "dining",
    "transportation",
    "shopping",
    "entertainment",
    "healthcare",
    "utilities",
    "travel",
    "gas",
    "coffee",
    "pharmacy",
    "clothing",
    "electronics",
    "home",
    "other",
)


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class ExtractedModifier(_WireModel):
    name: str = ""
    price: float = 0.0
    type: str = "modifier"


class ExtractedItem(_WireModel):
    name: str | None = None
    quantity: float | None = None
    price: float | None = None
    category: str | None = None
    description: str | None = None
    modifiers: list[ExtractedModifier] = Field(default_factory=list)


class ExtractionV1(_WireModel):
    schema_version: Literal[1] = EXTRACTION_SCHEMA_VERSION

    merchant: str | None = None
    total: float | None = None
    currency: str | None = None
    date: str | None = None
    category: str | None = None

    items: list[ExtractedItem] = Field(default_factory=list)

    location: str | None = None
    subtotal: float | None = None
    tax: float | None = None
    service_charge: float | None = None
    payment_method: str | None = None
    receipt_number: str | None = None
    merchant_type: str | None = None

    tips: float | None = None
    discount: float | None = None
    loyalty_number: str | None = None
    table_number: str | None = None
    server_name: str | None = None
    order_number: str | None = None
    phone_number: str | None = None
    website: str | None = None
    vat_number: str | None = None
    time_of_day: str | None = None
    customer_count: int | None = None
    special_offers: str | None = None
    delivery_fee: float | None = None
    packaging_fee: float | None = None

    def to_blob(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ExtractionResult(BaseModel):
    data: ExtractionV1
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str | None = None


def parse_ocr_blob(
    blob: dict[str, Any] | None, *, schema_version: int | None
) -> ExtractionV1 | None:
    """Read a stored OCR blob back into its typed form.

    Returns None for blobs written under another schema version or that no
    longer validate; callers fall back to the raw columns.
    """
    if not isinstance(blob, dict):
        return None
    if schema_version != EXTRACTION_SCHEMA_VERSION:
        return None
    try:
        return ExtractionV1.model_validate(blob)
    except ValidationError:
        return None
