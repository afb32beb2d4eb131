"""Error taxonomy shared by services, the worker and the HTTP layer."""

from __future__ import annotations

from typing import Any


class ReceiptLedgerError(Exception):
    status_code: int = 500
    error: str = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(ReceiptLedgerError):
    """Referenced receipt/subscription/payment does not exist or is soft-deleted."""

    status_code = 404
    error = "not_found"


class InvalidStateError(ReceiptLedgerError):
    """Operation is not allowed in the entity's current state."""

    status_code = 409
    error = "invalid_state"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ReceiptLedgerError):
    status_code = 400
    error = "validation_error"


class ExtractionError(ReceiptLedgerError):
    """The extraction adapter could not produce a structured record."""

    status_code = 502
    error = "extraction_failed"


class ExtractionTransportError(ExtractionError):
    """Network failure, timeout, non-2xx or empty answer from the vision model."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ExtractionSchemaError(ExtractionError):
    """The model answered, but its payload does not match the extraction schema."""

    def __init__(
        self,
        message: str,
        *,
        raw_response: str | None = None,
        issues: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message)
        self.raw_response = raw_response
        self.issues = issues or []


class PersistenceError(ReceiptLedgerError):
    """Database write failed while committing a processing result."""

    error = "persistence_failed"
