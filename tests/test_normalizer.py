from __future__ import annotations

from datetime import date
from decimal import Decimal

from receipt_ledger.modules.extraction.schemas import ExtractionV1
from receipt_ledger.modules.receipts.normalizer import (
    DEFAULT_CATEGORY,
    UNKNOWN_ITEM,
    UNKNOWN_MERCHANT,
    money,
    normalize,
    unit_price_for,
)

TODAY = date(2024, 6, 15)


def _normalize(payload: dict, *, user_currency: str | None = None):
    return normalize(
        ExtractionV1.model_validate(payload),
        user_currency=user_currency,
        default_currency="USD",
        today=TODAY,
    )


def test_unit_price_divides_line_total_by_quantity():
    assert unit_price_for(Decimal("9.00"), Decimal("3")) == Decimal("3.0000")
    assert unit_price_for(Decimal("10.00"), Decimal("3")) == Decimal("3.3333")


def test_unit_price_falls_back_to_total_for_zero_quantity():
    assert unit_price_for(Decimal("4.50"), Decimal("0")) == Decimal("4.50")


def test_missing_fields_get_defaults():
    fields, items = _normalize({"items": [{"price": 2}]})

    assert fields.merchant_name == UNKNOWN_MERCHANT
    assert fields.category == DEFAULT_CATEGORY
    assert fields.transaction_date == TODAY
    assert fields.total_amount == Decimal("0.00")
    assert fields.currency == "USD"

    assert len(items) == 1
    assert items[0].name == UNKNOWN_ITEM
    assert items[0].quantity == Decimal("1.000")
    assert items[0].total_price == Decimal("2.00")
    assert items[0].unit_price == Decimal("2.0000")


def test_invalid_date_falls_back_to_today():
    fields, _ = _normalize({"merchant": "Shop", "date": "31/02/2024"})
    assert fields.transaction_date == TODAY


def test_currency_precedence():
    fields, _ = _normalize({"currency": "gbp"}, user_currency="EUR")
    assert fields.currency == "GBP"

    fields, _ = _normalize({"currency": "pounds"}, user_currency="EUR")
    assert fields.currency == "EUR"

    fields, _ = _normalize({})
    assert fields.currency == "USD"


def test_money_is_rounded_half_up_to_cents():
    fields, _ = _normalize({"total": 10.005, "tax": 0.125, "subtotal": 1234.5})
    assert fields.total_amount == Decimal("10.01")
    assert fields.tax == Decimal("0.13")
    assert fields.subtotal == Decimal("1234.50")


def test_modifier_types_are_restricted():
    _, items = _normalize(
        {
            "items": [
                {
                    "name": "Burger",
                    "quantity": 2,
                    "price": 17,
                    "modifiers": [
                        {"name": "Cheese", "price": 1.5, "type": "ADDON"},
                        {"name": "Bottle", "price": 0.1, "type": "deposit"},
                        {"name": "Mystery", "price": 0, "type": "surprise"},
                    ],
                }
            ]
        }
    )

    item = items[0]
    assert item.unit_price == Decimal("8.5000")
    assert [m.type for m in item.modifiers] == ["addon", "deposit", "modifier"]
    assert item.modifiers[0].price == Decimal("1.50")
    assert item.modifiers[0].as_json() == {"name": "Cheese", "price": "1.50", "type": "addon"}


def test_auxiliary_fields_are_folded_into_ocr_blob():
    fields, _ = _normalize(
        {
            "merchant": "Trattoria",
            "tips": 5,
            "deliveryFee": 2.499,
            "tableNumber": "12",
            "customerCount": 3,
            "merchantType": "restaurant",
        }
    )

    blob = fields.ocr_data
    assert fields.ocr_schema_version == 1
    assert blob["schemaVersion"] == 1
    assert blob["merchant"] == "Trattoria"
    assert blob["breakdown"] == {"tips": "5.00", "delivery_fee": "2.50"}
    assert blob["details"]["table_number"] == "12"
    assert blob["details"]["customer_count"] == 3
    assert blob["details"]["merchant_type"] == "restaurant"


def test_amounts_too_large_for_storage_are_dropped():
    assert money(1e30) is None
    assert money(9_999_999_999.99) == Decimal("9999999999.99")

    fields, items = _normalize(
        {"total": 1e30, "tax": 1e12, "items": [{"quantity": 1e20, "price": 1e30}]}
    )

    assert fields.total_amount == Decimal("0.00")
    assert fields.tax is None
    assert items[0].quantity == Decimal("1.000")
    assert items[0].total_price == Decimal("0.00")


def test_unit_price_too_large_falls_back_to_total():
    assert unit_price_for(Decimal("5000000.00"), Decimal("0.001")) == Decimal("5000000.00")
