"""Error taxonomy shared by every integration component.

Each class maps to one HTTP status in ``orbyt_sync.api.middleware``; the
engines raise these and never raw ``httpx`` or ``asyncpg`` exceptions.
"""

from __future__ import annotations

import re

_MAX_ERROR_TEXT = 200


class IntegrationError(Exception):
    """Base error for the calendar integration subsystem."""

    code = "INTEGRATION_ERROR"


class ConfigurationError(IntegrationError):
    """Raised when required process configuration is missing or invalid."""

    code = "CONFIGURATION_ERROR"


class PreconditionFailedError(ConfigurationError):
    """Raised when a provider is requested that this deployment has not configured."""

    code = "PRECONDITION_FAILED"


class AuthenticationError(IntegrationError):
    """Raised when a provider rejects credentials or a refresh grant."""

    code = "AUTHENTICATION_ERROR"


class ValidationError(IntegrationError):
    """Raised for malformed input or a failed OAuth state check."""

    code = "VALIDATION_ERROR"


class RateLimitedError(IntegrationError):
    """Raised when a sync is requested inside the cooldown window."""

    code = "RATE_LIMITED"


class RemoteProviderError(IntegrationError):
    """Raised when a provider API call fails at the transport or HTTP level."""

    code = "REMOTE_PROVIDER_ERROR"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        self.message = message
        if status_code is None:
            super().__init__(message)
        else:
            super().__init__(f"Provider request failed ({status_code}): {message}")


class NotFoundError(IntegrationError):
    code = "NOT_FOUND"


class ForbiddenError(IntegrationError):
    code = "FORBIDDEN"


class IntegrityError(IntegrationError):
    """Raised when a stored secret is malformed or fails authentication."""

    code = "INTEGRITY_ERROR"


def redact_secrets(message: str) -> str:
    """Redact token-like values from an error message.

    Provider error payloads sometimes echo the request; anything that looks
    like ``token=...`` or ``"client_secret": "..."`` is replaced.
    """
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token|code)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*", "Bearer [REDACTED]", redacted)
    return redacted


def safe_error_text(exc: BaseException) -> str:
    """Return a redacted, single-line, truncated description of *exc*."""
    text = " ".join(str(exc).split()) or type(exc).__name__
    return redact_secrets(text)[:_MAX_ERROR_TEXT]
