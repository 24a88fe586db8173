"""Exception hierarchy shared across weekcal.

Configuration problems, remote calendar failures and identity-store
persistence failures each have their own branch so callers can decide what
is fatal for a whole run and what only affects a single template.
"""

from __future__ import annotations

import re


class WeekcalError(Exception):
    """Base class for all weekcal errors."""


class ConfigError(WeekcalError):
    """Raised when weekcal configuration is missing, malformed, or invalid."""


class InvalidTimeOfDayError(ConfigError):
    """Raised when a template's start time cannot be parsed as ``HH:MM``."""

    def __init__(self, value: str) -> None:
        self.value = value
        super().__init__(f"Invalid time of day {value!r}; expected HH:MM (24-hour clock)")


class IdentityStoreError(WeekcalError):
    """Raised when the identity store file cannot be written."""


class GatewayError(WeekcalError):
    """Base error raised by remote calendar gateways."""


class CredentialError(GatewayError):
    """Raised when OAuth client secrets or token material is missing or invalid."""


class TokenRefreshError(GatewayError):
    """Raised when the refresh-token exchange fails."""


class GatewayRequestError(GatewayError):
    """Raised when a calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Calendar API request failed ({status_code}): {message}")


def redact_credential_values(message: str) -> str:
    """Redact credential-looking values from an error message."""
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    # key: value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*:\s*([^\s,;]+)",
        r"\1: [REDACTED]",
        redacted,
    )
    return redacted


def describe_error(exc: BaseException) -> str:
    """Render *exc* on one line, credentials redacted, at most 200 characters."""
    redacted = redact_credential_values(str(exc) or type(exc).__name__)
    return " ".join(redacted.split())[:200]
