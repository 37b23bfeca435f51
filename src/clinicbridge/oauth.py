"""Summary: OAuth helper utilities for the calendar provider integration.

Importance: Generates authorization URLs, exchanges codes, and refreshes tokens without extra dependencies.
Alternatives: Use provider SDKs for OAuth flows.
"""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
import urllib.error
import urllib.parse
import urllib.request

from clinicbridge.config import AppConfig
from clinicbridge.errors import ProviderError, ReconnectRequired, ValidationError
from clinicbridge.models import utcnow


logger = logging.getLogger(__name__)

GOOGLE_PROVIDER = "google"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"


@dataclass(frozen=True)
class OAuthTokenResult:
    """Summary: Normalized OAuth token response data.

    Importance: Provides a consistent token representation for storage and refresh logic.
    Alternatives: Store the raw provider response without normalization.
    """

    access_token: str
    refresh_token: str | None
    expires_at: datetime
    scope: str | None
    token_type: str | None

    @staticmethod
    def from_response(payload: dict[str, Any], now: datetime | None = None) -> "OAuthTokenResult":
        """Summary: Build an OAuthTokenResult from a provider payload.

        Importance: Converts relative expires_in into an absolute UTC expiry.
        Alternatives: Use provider-specific token response classes.
        """

        access_token = payload.get("access_token")
        if not access_token:
            raise ProviderError("Token response did not include an access token")
        expires_in = payload.get("expires_in")
        try:
            seconds = int(expires_in) if expires_in is not None else 3600
        except (TypeError, ValueError):
            seconds = 3600
        issued_at = now or utcnow()
        return OAuthTokenResult(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or None,
            expires_at=issued_at + timedelta(seconds=seconds),
            scope=payload.get("scope"),
            token_type=payload.get("token_type"),
        )


def create_state_token() -> str:
    """Summary: Generate a CSRF state token.

    Importance: Protects OAuth flows from CSRF attacks.
    Alternatives: Use server-side session storage with pre-generated tokens.
    """

    return secrets.token_urlsafe(24)


def build_google_auth_url(config: AppConfig, state: str) -> str:
    """Summary: Build a Google OAuth authorization URL.

    Importance: Requests offline access with forced consent so a refresh token is issued.
    Alternatives: Use a different OAuth helper library.
    """

    params = {
        "client_id": config.google_client_id,
        "redirect_uri": config.oauth_redirect_uri,
        "response_type": "code",
        "access_type": "offline",
        "prompt": "consent",
        "scope": config.google_scopes,
        "state": state,
    }
    return config.google_auth_url + "?" + urllib.parse.urlencode(params)


def exchange_oauth_code(config: AppConfig, code: str) -> OAuthTokenResult:
    """Summary: Exchange an OAuth authorization code for tokens.

    Importance: Completes the connect flow by retrieving access and refresh tokens.
    Alternatives: Use provider SDKs or external auth services.
    """

    if not code:
        raise ValidationError("Missing authorization code")
    _ensure_oauth_config(config)
    payload = {
        "client_id": config.google_client_id,
        "client_secret": config.google_client_secret,
        "code": code,
        "grant_type": "authorization_code",
        "redirect_uri": config.oauth_redirect_uri,
    }
    try:
        response = _post_form(config.google_token_url, payload)
    except ProviderError as exc:
        logger.warning("Authorization code exchange failed (status %s).", exc.provider_status)
        raise
    return OAuthTokenResult.from_response(response)


def refresh_oauth_token(config: AppConfig, refresh_token: str) -> OAuthTokenResult:
    """Summary: Run the refresh grant against the token endpoint.

    Importance: A 4xx means consent was revoked and the user must reconnect;
    network failures and 5xx stay transient ProviderErrors.
    Alternatives: Treat every refresh failure as a reconnect.
    """

    _ensure_oauth_config(config)
    payload = {
        "client_id": config.google_client_id,
        "client_secret": config.google_client_secret,
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
    }
    try:
        response = _post_form(config.google_token_url, payload)
    except ProviderError as exc:
        if exc.is_client_error:
            logger.warning("Refresh grant rejected (status %s).", exc.provider_status)
            raise ReconnectRequired(
                "Calendar token refresh failed. Please reconnect your calendar."
            ) from exc
        raise
    return OAuthTokenResult.from_response(response)


def _ensure_oauth_config(config: AppConfig) -> None:
    """Summary: Validate that OAuth client credentials exist.

    Importance: Prevents confusing token exchange errors when credentials are missing.
    Alternatives: Allow requests to fail at the provider endpoint.
    """

    if not config.google_client_id or not config.google_client_secret:
        raise ProviderError("Missing OAuth client credentials for google")


def _post_form(url: str, payload: dict[str, str]) -> dict[str, Any]:
    """Summary: Send a form-encoded POST request and parse JSON.

    Importance: Avoids new dependencies while supporting OAuth exchanges.
    Alternatives: Use requests or a provider SDK.
    """

    data = urllib.parse.urlencode(payload).encode("utf-8")
    request = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=10) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        error_body = exc.read().decode("utf-8", errors="replace")
        raise ProviderError(
            f"Token endpoint returned HTTP {exc.code}", provider_status=exc.code, detail=error_body
        ) from exc
    except urllib.error.URLError as exc:
        raise ProviderError(f"Token endpoint unreachable: {exc.reason}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProviderError("Token endpoint returned invalid JSON") from exc


def fetch_account_email(access_token: str) -> str | None:
    """Summary: Look up the email of the connected calendar account.

    Importance: Shown next to the connection; a failed lookup does not block connecting.
    Alternatives: Request the email in a separate userinfo flow.
    """

    request = urllib.request.Request(
        GOOGLE_USERINFO_URL,
        headers={"Authorization": f"Bearer {access_token}"},
        method="GET",
    )
    try:
        with urllib.request.urlopen(request, timeout=10) as response:
            payload = json.loads(response.read().decode("utf-8"))
    except (urllib.error.URLError, json.JSONDecodeError) as exc:
        logger.warning("Could not fetch calendar account email: %s", exc)
        return None
    return payload.get("email")
