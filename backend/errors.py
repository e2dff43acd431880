"""Error taxonomy shared by services and routes.

Each error carries the HTTP status and a stable error_code. ``public_message``
is what end users see; ``str(exc)`` keeps the operator-facing detail for logs.
"""
from typing import Iterable, Optional


class AccessServiceError(Exception):
    """Base class for every error the API maps to a structured response."""

    status_code = 500
    error_code = "INTERNAL_ERROR"
    default_public_message = "Internal server error"

    def __init__(self, message: str = "", public_message: Optional[str] = None):
        super().__init__(message or self.default_public_message)
        self.public_message = public_message or self.default_public_message


class ValidationError(AccessServiceError):
    """Malformed email / URL / missing field. User-correctable."""

    status_code = 400
    error_code = "VALIDATION_FAILED"

    def __init__(self, message: str):
        super().__init__(message, public_message=message)


class ConfigurationError(AccessServiceError):
    """Missing secret or price id. Never exposes configured values."""

    status_code = 500
    error_code = "CONFIGURATION_ERROR"
    default_public_message = "Service is not configured"

    def __init__(self, message: str, missing: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.missing = list(missing or [])


class UpstreamError(AccessServiceError):
    """Stripe call failed. ``category`` decides the HTTP status."""

    INVALID_REQUEST = "invalid_request"
    AUTHENTICATION = "authentication"
    PERMISSION = "permission"
    RATE_LIMIT = "rate_limit"
    CONNECTION = "connection"
    API = "api"

    _STATUS_BY_CATEGORY = {
        INVALID_REQUEST: 400,
        AUTHENTICATION: 500,
        PERMISSION: 500,
        RATE_LIMIT: 429,
        CONNECTION: 502,
        API: 502,
    }
    _PUBLIC_BY_CATEGORY = {
        INVALID_REQUEST: "Payment provider rejected the request",
        AUTHENTICATION: "Payment provider is unavailable",
        PERMISSION: "Payment provider is unavailable",
        RATE_LIMIT: "Too many requests, please retry shortly",
        CONNECTION: "Payment provider is unreachable, please retry",
        API: "Payment provider error, please retry",
    }

    def __init__(self, message: str, category: str = API, retry_after: Optional[int] = None):
        super().__init__(message, public_message=self._PUBLIC_BY_CATEGORY.get(category))
        self.category = category
        self.retry_after = retry_after
        self.status_code = self._STATUS_BY_CATEGORY.get(category, 502)
        self.error_code = f"UPSTREAM_{category.upper()}"


class SignatureError(AccessServiceError):
    """Webhook signature missing or invalid. Always rejected before parsing."""

    status_code = 400
    error_code = "INVALID_SIGNATURE"
    default_public_message = "Invalid signature"


class StoreError(AccessServiceError):
    """Persisted store unreachable or failed."""

    status_code = 500
    error_code = "STORE_UNAVAILABLE"
    default_public_message = "Service temporarily unavailable"


class AlreadyPurchasedError(AccessServiceError):
    """Checkout requested for an email that already has lifetime access."""

    status_code = 409
    error_code = "ALREADY_PURCHASED"
    default_public_message = "This email already has lifetime access"


class DuplicatePaymentError(AccessServiceError):
    """A second purchase for an email would be marked paid."""

    error_code = "DUPLICATE_PAYMENT"
