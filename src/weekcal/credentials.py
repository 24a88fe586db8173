"""Google OAuth material for the calendar gateway.

Two files are involved:

- the OAuth client secrets downloaded from Google Cloud Console
  (``credentials.json``, either ``{"installed": {...}}``, ``{"web": {...}}``
  or a flat object), and
- the authorized token file written by ``weekcal authorize``
  (``token.json``), which holds the long-lived ``refresh_token``.

Secret material (client_secret, refresh_token, access_token) is never logged.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from weekcal.errors import CredentialError

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"
DEFAULT_REDIRECT_URI = "http://localhost"


class ClientSecrets(BaseModel):
    """OAuth client id/secret pair plus the redirect URI registered with Google."""

    model_config = ConfigDict(extra="ignore")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    redirect_uris: list[str] = Field(default_factory=list)

    @property
    def redirect_uri(self) -> str:
        return self.redirect_uris[0] if self.redirect_uris else DEFAULT_REDIRECT_URI


class OAuthCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized


def _extract_google_credential_value(payload: dict[str, Any], key: str) -> Any:
    if key in payload:
        return payload[key]

    for nested_key in ("installed", "web"):
        nested = payload.get(nested_key)
        if isinstance(nested, dict) and key in nested:
            return nested[key]
    return None


def _read_json_object(path: Path, label: str) -> dict[str, Any]:
    if not path.exists():
        raise CredentialError(f"{label} not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise CredentialError(f"Could not read {label} {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise CredentialError(f"{label} must be valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise CredentialError(f"{label} must decode to a JSON object")
    return payload


def _require_strings(values: dict[str, Any], label: str) -> None:
    missing = sorted(key for key, value in values.items() if value is None)
    if missing:
        raise CredentialError(f"{label} is missing required field(s): {', '.join(missing)}")

    invalid = sorted(
        key for key, value in values.items() if not isinstance(value, str) or not value.strip()
    )
    if invalid:
        raise CredentialError(
            f"{label} must contain non-empty string field(s): {', '.join(invalid)}"
        )


def load_client_secrets(path: Path) -> ClientSecrets:
    """Read the OAuth client secrets file."""
    payload = _read_json_object(Path(path), "Client secrets file")
    values = {
        "client_id": _extract_google_credential_value(payload, "client_id"),
        "client_secret": _extract_google_credential_value(payload, "client_secret"),
    }
    _require_strings(values, "Client secrets file")
    redirect_uris = _extract_google_credential_value(payload, "redirect_uris")
    if not isinstance(redirect_uris, list):
        redirect_uris = []
    return ClientSecrets(
        client_id=str(values["client_id"]),
        client_secret=str(values["client_secret"]),
        redirect_uris=[str(uri) for uri in redirect_uris if isinstance(uri, str) and uri.strip()],
    )


def load_credentials(client_secrets_file: Path, token_file: Path) -> OAuthCredentials:
    """Merge client secrets with the saved refresh token.

    Values in the token file win, so a google-auth ``authorized_user`` file
    (which carries its own client id/secret) works on its own.

    Raises
    ------
    CredentialError
        If either file is missing, malformed, or lacks required fields.
    """
    token_payload = _read_json_object(Path(token_file), "Token file")

    client_id = token_payload.get("client_id")
    client_secret = token_payload.get("client_secret")
    if client_id is None or client_secret is None:
        client = load_client_secrets(Path(client_secrets_file))
        client_id = client_id or client.client_id
        client_secret = client_secret or client.client_secret

    values = {
        "client_id": client_id,
        "client_secret": client_secret,
        "refresh_token": token_payload.get("refresh_token"),
    }
    _require_strings(values, "OAuth credentials")
    return OAuthCredentials(
        client_id=str(values["client_id"]),
        client_secret=str(values["client_secret"]),
        refresh_token=str(values["refresh_token"]),
    )


def build_authorization_url(
    client: ClientSecrets,
    *,
    state: str | None = None,
    scope: str = CALENDAR_SCOPE,
) -> tuple[str, str]:
    """Return ``(consent_url, state)`` for an offline-access authorization."""
    state = state or secrets.token_urlsafe(24)
    params = {
        "client_id": client.client_id,
        "redirect_uri": client.redirect_uri,
        "response_type": "code",
        "scope": scope,
        "access_type": "offline",
        "prompt": "consent",  # Force refresh token to be returned
        "state": state,
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}", state


def extract_authorization_code(value: str) -> str:
    """Accept either a bare code or the full redirected URL and return the code."""
    raw = value.strip()
    if "code=" in raw:
        query = urlparse(raw).query or raw
        codes = parse_qs(query).get("code")
        if codes and codes[0].strip():
            return codes[0].strip()
    if not raw:
        raise CredentialError("Authorization code must be a non-empty string")
    return raw


async def exchange_code_for_tokens(
    client: ClientSecrets,
    code: str,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Exchange an authorization code for OAuth tokens.

    Raises
    ------
    CredentialError
        If the exchange fails or Google does not return a refresh token.
    """
    payload = {
        "code": code,
        "client_id": client.client_id,
        "client_secret": client.client_secret,
        "redirect_uri": client.redirect_uri,
        "grant_type": "authorization_code",
    }

    owns_client = http_client is None
    http_client = http_client or httpx.AsyncClient(timeout=15.0)
    try:
        response = await http_client.post(GOOGLE_OAUTH_TOKEN_URL, data=payload)
    except httpx.HTTPError as exc:
        raise CredentialError(f"Network error during token exchange: {exc}") from exc
    finally:
        if owns_client:
            await http_client.aclose()

    if response.status_code != 200:
        # Status only; the body may echo sensitive details.
        raise CredentialError(f"Token endpoint returned HTTP {response.status_code}")

    try:
        tokens = response.json()
    except ValueError as exc:
        raise CredentialError("Token endpoint returned invalid JSON") from exc

    if not isinstance(tokens, dict) or not str(tokens.get("refresh_token") or "").strip():
        raise CredentialError(
            "Token response did not include a refresh_token; revoke the app's access "
            "and authorize again"
        )
    return tokens


def save_token(path: Path, tokens: dict[str, Any]) -> None:
    """Write the token file readable by the owner only."""
    path = Path(path)
    logger.info("Saving OAuth token to %s", path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        json.dump(tokens, handle, indent=2)
    os.chmod(path, 0o600)
