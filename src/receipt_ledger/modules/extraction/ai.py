from __future__ import annotations

import base64
import json
import re
import time
from typing import Any

import httpx
from pydantic import ValidationError

from receipt_ledger.core.config import settings
from receipt_ledger.core.errors import ExtractionSchemaError, ExtractionTransportError
from receipt_ledger.core.logging import get_logger, log_event, monotonic_ms
from receipt_ledger.modules.extraction.schemas import (
    RECEIPT_CATEGORIES,
    ExtractionResult,
    ExtractionV1,
    TokenUsage,
)

logger = get_logger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?(.*?)\n?```$", re.S)

RECEIPT_PROMPT = (
    "Analyze this receipt image and extract the following information in JSON format:\n\n"
    "REQUIRED FIELDS:\n"
    "- merchant: merchant/store name\n"
    "- total: total amount (number)\n"
    '- currency: currency code (e.g., "GBP", "USD", "EUR")\n'
    "- date: transaction date (format as YYYY-MM-DD, use current date if not visible)\n"
    "- category: spending category based on merchant and items (choose from: "
    + ", ".join(f'"{c}"' for c in RECEIPT_CATEGORIES)
    + ")\n\n"
    "DETAILED EXTRACTION:\n"
    "- items: array of objects with name, quantity (number), price (number - this is the "
    "TOTAL price for this line item, not unit price), category (optional), description "
    "(optional) and modifiers (optional array of {name, price, type} where type is one of "
    '"fee", "deposit", "discount", "addon", "modifier") for each item\n'
    "- location: store location/address (full address if visible)\n"
    "- subtotal: subtotal amount before tax and service charges (number, if visible)\n"
    "- tax: tax amount (number, if visible)\n"
    "- serviceCharge: service charge/fees amount (number, if visible)\n"
    "- paymentMethod: payment method used (e.g., \"Card\", \"Cash\", \"Contactless\", "
    '"Apple Pay", "Debit", "Credit")\n'
    "- receiptNumber: receipt or transaction number\n"
    "- merchantType: type of business (e.g., \"restaurant\", \"grocery_store\", "
    '"gas_station", "pharmacy", "retail", "coffee_shop", "supermarket", "other")\n\n'
    "ADDITIONAL DETAILS:\n"
    "- tips, discount, deliveryFee, packagingFee: amounts (numbers, if visible)\n"
    "- loyaltyNumber, tableNumber, serverName, orderNumber, phoneNumber, website, "
    "vatNumber, specialOffers: strings (if visible)\n"
    "- timeOfDay: time of transaction (HH:MM format)\n"
    "- customerCount: number of customers/covers (for restaurants)\n\n"
    "Return ONLY valid JSON with all numeric values as numbers (not strings), "
    "no additional text."
)


class ReceiptExtractor:
    """Single-call adapter around an OpenAI-compatible vision model."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout_seconds: float | None = None,
        max_tokens: int | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self.model = model or settings.openai_model
        self.timeout_seconds = timeout_seconds or settings.extraction_timeout_seconds
        self.max_tokens = max_tokens or settings.extraction_max_tokens
        self._transport = transport

    def extract(self, image_bytes: bytes, mime_type: str) -> ExtractionResult:
        if not self.api_key:
            raise ExtractionTransportError("Extraction model is not configured")

        start = time.monotonic()
        raw = self._post(self._build_payload(image_bytes, mime_type))
        content, usage = _read_completion(raw)
        data = parse_extraction(content)
        log_event(
            logger,
            "extraction.success",
            model=self.model,
            item_count=len(data.items),
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            duration_ms=monotonic_ms(start),
        )
        return ExtractionResult(data=data, usage=usage, model=self.model)

    def _build_payload(self, image_bytes: bytes, mime_type: str) -> dict[str, Any]:
        encoded = base64.b64encode(image_bytes).decode("ascii")
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": RECEIPT_PROMPT},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{mime_type};base64,{encoded}"},
                        },
                    ],
                }
            ],
        }

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
                resp = client.post(
                    f"{self.base_url}/chat/completions",
                    headers=headers,
                    json=payload,
                    follow_redirects=True,
                )
                resp.raise_for_status()
                return resp.json()
        except httpx.TimeoutException as e:
            raise ExtractionTransportError("Extraction request timed out") from e
        except httpx.HTTPStatusError as e:
            raise ExtractionTransportError(
                f"Extraction request failed with status {e.response.status_code}",
                status=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise ExtractionTransportError(f"Extraction request failed: {e}") from e
        except ValueError as e:
            raise ExtractionTransportError("Extraction response was not JSON") from e


def _read_completion(raw: dict[str, Any]) -> tuple[str, TokenUsage]:
    try:
        msg = raw["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as e:
        raise ExtractionTransportError("No response from extraction model") from e
    if not isinstance(msg, dict):
        raise ExtractionTransportError("No response from extraction model")
    if msg.get("refusal"):
        raise ExtractionTransportError(f"Extraction model refused: {msg['refusal']}")
    content = msg.get("content")
    if not isinstance(content, str) or not content.strip():
        raise ExtractionTransportError("No response from extraction model")

    usage_raw = raw.get("usage") if isinstance(raw.get("usage"), dict) else {}
    usage = TokenUsage(
        prompt_tokens=int(usage_raw.get("prompt_tokens") or 0),
        completion_tokens=int(usage_raw.get("completion_tokens") or 0),
        total_tokens=int(usage_raw.get("total_tokens") or 0),
    )
    return content, usage


def strip_code_fences(content: str) -> str:
    c = (content or "").strip()
    m = _FENCE_RE.match(c)
    return m.group(1).strip() if m else c


def parse_extraction(content: str) -> ExtractionV1:
    text = strip_code_fences(content)
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as e:
        raise ExtractionSchemaError(
            "Extraction response is not valid JSON",
            raw_response=content,
            issues=[{"type": "json_invalid", "msg": str(e)}],
        ) from e
    if not isinstance(obj, dict):
        raise ExtractionSchemaError(
            "Extraction response is not a JSON object",
            raw_response=content,
            issues=[{"type": "object_expected", "msg": type(obj).__name__}],
        )
    obj.pop("schemaVersion", None)
    obj.pop("schema_version", None)
    try:
        return ExtractionV1.model_validate(obj)
    except ValidationError as e:
        issues = [
            {"loc": list(err["loc"]), "type": err["type"], "msg": err["msg"]}
            for err in e.errors()
        ]
        raise ExtractionSchemaError(
            f"Extraction response failed schema validation ({len(issues)} issue(s))",
            raw_response=content,
            issues=issues,
        ) from e
