from __future__ import annotations


class OrgGuardError(Exception):
    """Base error for orgguard."""


class ConfigurationError(OrgGuardError):
    """Missing or invalid runtime configuration."""


class PaymentProcessorError(OrgGuardError):
    """Payment processor request failed or returned an unusable response."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PaymentProcessorNotConfiguredError(PaymentProcessorError):
    """Payment processor credentials are not configured."""


class InvalidSignatureError(OrgGuardError):
    """Processor event signature is missing or does not match the payload."""
