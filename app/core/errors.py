from __future__ import annotations


class MarketplaceError(Exception):
    """Base for errors that map onto an HTTP response."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, *, detail: dict | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class Unauthorized(MarketplaceError):
    status_code = 401
    code = "unauthorized"


class NotFound(MarketplaceError):
    status_code = 404
    code = "not_found"


class PreconditionFailed(MarketplaceError):
    status_code = 400
    code = "precondition_failed"


class InvalidOperation(MarketplaceError):
    status_code = 400
    code = "invalid_operation"


class AuthenticationFailed(MarketplaceError):
    # bad webhook signature
    status_code = 400
    code = "authentication_failed"


class PersistenceFailure(MarketplaceError):
    status_code = 500
    code = "persistence_failure"


class PaymentProcessorError(MarketplaceError):
    status_code = 502
    code = "payment_processor_error"

    def __init__(self, message: str, *, detail: dict | None = None, processor_code: str | None = None):
        super().__init__(message, detail=detail)
        self.processor_code = processor_code
