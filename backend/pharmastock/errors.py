# Overview: Error taxonomy shared by the stock services and API routes.

"""
Stock subsystem errors.

Every error carries a stable machine-readable `code` and an HTTP status so
routes can render them uniformly:

    {"error": <message>, "code": <code>, "details": {...}}

Validation and not-found errors are raised before any mutation is attempted.
"""

from __future__ import annotations


class StockError(Exception):
    """Base class for business errors raised by the stock services."""

    code = "STOCK_ERROR"
    http_status = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "details": self.details}


class NotFoundError(StockError):
    """Lot, product or session is missing or inactive."""

    code = "NOT_FOUND"
    http_status = 404


class ValidationError(StockError, ValueError):
    """400-level input problem (bad dates, non-positive quantities, ...)."""

    code = "VALIDATION"
    http_status = 400


class ConflictError(ValidationError):
    """409-level uniqueness conflict (e.g., duplicate lot number)."""

    http_status = 409


class InsufficientStockError(StockError):
    """Reserve/confirm exceeds what the lot (or product) can supply."""

    code = "INSUFFICIENT_STOCK"
    http_status = 409


class IntegrityFailureError(StockError):
    """Offline envelope hash does not match its contents."""

    code = "INTEGRITY_FAILURE"
    http_status = 400


class DuplicateSaleError(StockError):
    """Offline sale id was already processed."""

    code = "IDEMPOTENT_DUPLICATE"
    http_status = 409


class SessionExpiredError(NotFoundError):
    """Scan session passed its TTL."""

    code = "SESSION_EXPIRED"
    http_status = 410


class StateConflictError(StockError):
    """Operation not valid in the current state (wrong scan step, wrong product, ...)."""

    code = "STATE_CONFLICT"
    http_status = 409


def error_response(exc: StockError):
    """Flask (body, status) tuple for a StockError."""
    return exc.to_dict(), exc.http_status
