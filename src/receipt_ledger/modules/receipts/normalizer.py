"""Turn a validated extraction into the stored receipt representation.

The normalizer is total over valid `ExtractionV1` values: every missing field
falls back to a default and nothing here raises for absent data.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from receipt_ledger.modules.extraction.schemas import (
    EXTRACTION_SCHEMA_VERSION,
    MODIFIER_TYPES,
    ExtractionV1,
)

UNKNOWN_MERCHANT = "Unknown Merchant"
UNKNOWN_ITEM = "Unknown Item"
DEFAULT_CATEGORY = "other"

_CENTS = Decimal("0.01")
_UNIT = Decimal("0.0001")
_QTY = Decimal("0.001")
# Integer digits each Numeric column can hold.
_MONEY_DIGITS = 10
_UNIT_DIGITS = 8
_QTY_DIGITS = 9
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")

# Auxiliary fields lifted out of the raw extraction into the breakdown section of the blob.
_BREAKDOWN_FIELDS = ("tips", "discount", "delivery_fee", "packaging_fee")
_DETAIL_FIELDS = (
    "merchant_type",
    "loyalty_number",
    "table_number",
    "server_name",
    "order_number",
    "phone_number",
    "website",
    "vat_number",
    "time_of_day",
    "customer_count",
    "special_offers",
)


@dataclass(frozen=True)
class NormalizedModifier:
    name: str
    price: Decimal
    type: str

    def as_json(self) -> dict[str, Any]:
        return {"name": self.name, "price": str(self.price), "type": self.type}


@dataclass(frozen=True)
class NormalizedItem:
    name: str
    quantity: Decimal
    unit_price: Decimal
    total_price: Decimal
    category: str | None = None
    description: str | None = None
    modifiers: list[NormalizedModifier] = field(default_factory=list)


@dataclass(frozen=True)
class ReceiptFields:
    merchant_name: str
    total_amount: Decimal
    currency: str
    transaction_date: date
    category: str
    payment_method: str | None
    location: str | None
    receipt_number: str | None
    subtotal: Decimal | None
    tax: Decimal | None
    service_charge: Decimal | None
    ocr_data: dict[str, Any]
    ocr_schema_version: int


def to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    s = str(value).strip().replace(",", "")
    if not s:
        return None
    try:
        d = Decimal(s)
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


def _fit(value: Decimal, exp: Decimal, digits: int) -> Decimal | None:
    """Quantize to `exp`, or None when the value does not fit the column."""
    if value.copy_abs() >= Decimal(10) ** digits:
        return None
    try:
        return value.quantize(exp, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None


def money(value: Any) -> Decimal | None:
    d = to_decimal(value)
    return _fit(d, _CENTS, _MONEY_DIGITS) if d is not None else None


def unit_price_for(total_price: Decimal, quantity: Decimal) -> Decimal:
    if quantity > 0:
        unit = _fit(total_price / quantity, _UNIT, _UNIT_DIGITS)
        if unit is not None:
            return unit
    return total_price


def normalize_currency(*candidates: str | None) -> str | None:
    for candidate in candidates:
        if not isinstance(candidate, str):
            continue
        code = candidate.strip().upper()
        if _CURRENCY_RE.match(code):
            return code
    return None


def parse_receipt_date(raw: str | None) -> date | None:
    if not isinstance(raw, str):
        return None
    s = raw.strip()[:10]
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def normalize_modifier(raw: Any) -> NormalizedModifier:
    name = str(getattr(raw, "name", "") or "").strip()
    kind = str(getattr(raw, "type", "") or "").strip().lower()
    if kind not in MODIFIER_TYPES:
        kind = "modifier"
    price = money(getattr(raw, "price", 0)) or Decimal("0.00")
    return NormalizedModifier(name=name, price=price, type=kind)


def normalize_item(raw: Any) -> NormalizedItem:
    quantity = to_decimal(raw.quantity)
    if quantity is not None:
        quantity = _fit(quantity, _QTY, _QTY_DIGITS)
    if quantity is None:
        quantity = Decimal("1.000")
    total_price = money(raw.price) or Decimal("0.00")
    name = (raw.name or "").strip() or UNKNOWN_ITEM
    return NormalizedItem(
        name=name[:300],
        quantity=quantity,
        unit_price=unit_price_for(total_price, quantity),
        total_price=total_price,
        category=(raw.category or "").strip() or None,
        description=(raw.description or "").strip() or None,
        modifiers=[normalize_modifier(m) for m in raw.modifiers],
    )


def normalize(
    data: ExtractionV1,
    *,
    user_currency: str | None,
    default_currency: str,
    today: date,
) -> tuple[ReceiptFields, list[NormalizedItem]]:
    items = [normalize_item(raw) for raw in data.items]

    blob = data.to_blob()
    breakdown = {name: money(getattr(data, name)) for name in _BREAKDOWN_FIELDS}
    blob["breakdown"] = {name: str(v) for name, v in breakdown.items() if v is not None}
    blob["details"] = {
        name: getattr(data, name) for name in _DETAIL_FIELDS if getattr(data, name) is not None
    }

    fields = ReceiptFields(
        merchant_name=((data.merchant or "").strip() or UNKNOWN_MERCHANT)[:200],
        total_amount=money(data.total) or Decimal("0.00"),
        currency=normalize_currency(data.currency, user_currency, default_currency)
        or default_currency,
        transaction_date=parse_receipt_date(data.date) or today,
        category=(data.category or "").strip().lower() or DEFAULT_CATEGORY,
        payment_method=(data.payment_method or "").strip() or None,
        location=(data.location or "").strip() or None,
        receipt_number=(data.receipt_number or "").strip() or None,
        subtotal=money(data.subtotal),
        tax=money(data.tax),
        service_charge=money(data.service_charge),
        ocr_data=blob,
        ocr_schema_version=EXTRACTION_SCHEMA_VERSION,
    )
    return fields, items
