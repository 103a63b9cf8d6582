"""
Error taxonomy shared by services and routes.

- ValidationError: bad input (ids, amounts, account numbers). No retry.
- NotFoundError: missing product/order/transaction.
- ConflictError: state or business-rule conflict (already paid, insufficient
  stock or balance). Caller must refetch before retrying.
- ExternalServiceError: bank/OAuth failure on a money-moving call.
- TransactionAbortError: the store gave up on a multi-entity write.
"""

from __future__ import annotations


class MarketError(Exception):
    """Base for all domain errors raised by the service layer."""

    code = "MARKET_ERROR"
    http_status = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


class ValidationError(MarketError):
    """400-level input problem."""

    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(MarketError):
    code = "NOT_FOUND"
    http_status = 404


class ConflictError(MarketError):
    """409-level business rule conflict (e.g., order already paid)."""

    code = "CONFLICT"
    http_status = 409


class ExternalServiceError(MarketError):
    code = "EXTERNAL_SERVICE_ERROR"
    http_status = 502


class TransactionAbortError(MarketError):
    code = "TRANSACTION_ABORTED"
    http_status = 503
