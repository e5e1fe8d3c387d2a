"""Fetch error taxonomy shared by every integration fetcher.

  IntegrationError          base class; every fetch failure is one of these
    NetworkError            connection refused, timeout, malformed response
    AuthError               401 / 403 (status attribute tells which)
    ApiError                any other non-2xx status
    ConfigError             integration missing, wrong type, bad base URL
    NotFoundError           404

The cache's retry policy is expressed by is_retryable(): a 401 is never
retried, everything else is.
"""

from __future__ import annotations

from typing import Any


class IntegrationError(Exception):
    """Base class for fetch failures. `status` is the HTTP status, if any."""

    kind = "IntegrationError"
    status: int | None = None

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.kind, "message": str(self)}
        if self.status is not None:
            out["status"] = self.status
        return out


class NetworkError(IntegrationError):
    kind = "NetworkError"

    def __str__(self) -> str:
        return f"Network error: {self.message}"


class AuthError(IntegrationError):
    kind = "AuthError"

    def __init__(self, message: str = "", status: int = 401) -> None:
        super().__init__(message)
        self.status = status

    def __str__(self) -> str:
        return f"Authentication error: {self.message}"


class ApiError(IntegrationError):
    kind = "ApiError"

    def __init__(self, status: int, message: str = "") -> None:
        super().__init__(message)
        self.status = status

    def __str__(self) -> str:
        return f"API error (status {self.status}): {self.message}"


class ConfigError(IntegrationError):
    kind = "ConfigError"

    def __str__(self) -> str:
        return f"Configuration error: {self.message}"


class NotFoundError(IntegrationError):
    kind = "NotFound"
    status = 404

    def __str__(self) -> str:
        return "Resource not found"


def status_to_error(status: int, message: str | None = None) -> IntegrationError:
    """Map a non-2xx HTTP status to the matching IntegrationError."""
    text = message or f"HTTP {status}"
    if status in (401, 403):
        return AuthError(text, status=status)
    if status == 404:
        return NotFoundError(text)
    return ApiError(status, text)


def is_retryable(error: BaseException) -> bool:
    """True when a failed fetch may be attempted again.

    A 401 means the credential is known-bad; retrying would only hammer it.
    """
    return getattr(error, "status", None) != 401
