"""Error taxonomy for the transaction core.

Every error carries a stable `code` so the HTTP layer and operator tooling can
map failures without parsing messages.
"""

from typing import Any


class PaymentError(Exception):
    """Base class for all PayLink domain errors."""

    code = "payment_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotConfigured(PaymentError):
    """Provider is unknown or not connected for the merchant."""

    code = "not_configured"


class ProviderUnavailable(PaymentError):
    """Network failure or timeout while talking to a provider."""

    code = "provider_unavailable"


class ProviderRejected(PaymentError):
    """Provider answered with a business error; `raw` keeps the response."""

    code = "provider_rejected"

    def __init__(self, message: str, raw: Any = None, **details: Any) -> None:
        super().__init__(message, **details)
        self.raw = raw


class ConflictingOutcome(PaymentError):
    """A different terminal state was claimed for an already terminal transaction."""

    code = "conflicting_outcome"


class NotFound(PaymentError):
    code = "not_found"


class StatusUnknown(PaymentError):
    """Provider status could not be classified as success or failure."""

    code = "unknown"


class NotSupported(PaymentError):
    code = "not_supported"


class LinkUnavailable(PaymentError):
    """Payment link is disabled, expired, archived or already paid."""

    code = "link_unavailable"


class MalformedPayload(PaymentError):
    """Inbound callback is missing the fields required to even record it."""

    code = "malformed_payload"


class InvalidRequest(PaymentError):
    code = "invalid_request"
