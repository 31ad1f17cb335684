"""Errors raised by the marketplace core.

Each error carries the HTTP status it maps to so the API layer can render
it with a single exception handler.
"""
from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, detail: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(detail)
        self.detail = detail
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code, "detail": self.detail}
        body.update(self.extra)
        return body


class NotFound(MarketplaceError):
    status_code = 404
    code = "not_found"


class InvalidState(MarketplaceError):
    status_code = 409
    code = "invalid_state"


class Forbidden(MarketplaceError):
    status_code = 403
    code = "forbidden"


class InvalidInput(MarketplaceError):
    status_code = 400
    code = "invalid_input"


class InvalidAmount(MarketplaceError):
    """Charge falls outside what the payment provider accepts."""
    status_code = 422
    code = "invalid_amount"


class ProviderError(MarketplaceError):
    """Payment provider call failed; safe to try again."""
    status_code = 502
    code = "provider_error"


class PaymentsUnavailable(MarketplaceError):
    status_code = 503
    code = "payments_unavailable"
