from __future__ import annotations

from typing import Any


class LegalHubError(Exception):
    """Base error for legalhub."""


class AuthDeniedError(LegalHubError):
    """Inbound request rejected by the gateway; terminal and never retried."""

    def __init__(
        self,
        reason: str,
        message: str,
        *,
        status_code: int = 401,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class VendorError(LegalHubError):
    """Outbound vendor call failure."""


class VendorConfigError(VendorError):
    """Vendor service is missing URL or credentials."""


class VendorTransientError(VendorError):
    """5xx/429 or network failure; eligible for retry."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class VendorFailureError(VendorError):
    """Non-retryable vendor failure, or retries exhausted."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class VendorDuplicateError(VendorFailureError):
    """Vendor reports the resource is already registered."""


class VendorShapeError(VendorFailureError):
    """Vendor response did not have the shape the call site expects."""


class InvalidRequestError(LegalHubError):
    """Bad input shape on the client-facing API (always HTTP 400)."""


class ProtocolViolationError(LegalHubError):
    """Client broke the batch delivery handshake."""


class RecordNotFoundError(LegalHubError):
    """Record missing or not visible to the caller."""


class DatabaseError(LegalHubError):
    """Database layer failure."""
