"""Summary: Tests for OAuth URL builders and token grants.

Importance: Ensures OAuth URL generation uses config values and refresh failures are classified.
Alternatives: Validate OAuth flows manually.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
import urllib.parse

import pytest

from clinicbridge.config import AppConfig
from clinicbridge.errors import ProviderError, ReconnectRequired, ValidationError
from clinicbridge.oauth import (
    OAuthTokenResult,
    build_google_auth_url,
    exchange_oauth_code,
    refresh_oauth_token,
)


def test_google_auth_url_requests_offline_consent(config: AppConfig) -> None:
    """Summary: Verify the authorization URL parameters.

    Importance: Offline access with forced consent is what yields a refresh token.
    Alternatives: Validate the URL manually in a browser.
    """

    url = build_google_auth_url(config, "state-123")
    parsed = urllib.parse.urlparse(url)
    params = dict(urllib.parse.parse_qsl(parsed.query))
    assert url.startswith(config.google_auth_url + "?")
    assert params["client_id"] == "google-client"
    assert params["redirect_uri"] == config.oauth_redirect_uri
    assert params["response_type"] == "code"
    assert params["access_type"] == "offline"
    assert params["prompt"] == "consent"
    assert params["scope"] == config.google_scopes
    assert params["state"] == "state-123"


def test_token_result_from_response() -> None:
    now = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
    result = OAuthTokenResult.from_response(
        {"access_token": "a", "refresh_token": "r", "expires_in": 120, "token_type": "Bearer"}, now
    )
    assert result.expires_at == now + timedelta(seconds=120)
    assert result.refresh_token == "r"
    defaulted = OAuthTokenResult.from_response({"access_token": "a"}, now)
    assert defaulted.expires_at == now + timedelta(hours=1)
    assert defaulted.refresh_token is None
    with pytest.raises(ProviderError):
        OAuthTokenResult.from_response({"error": "invalid_grant"}, now)


def test_exchange_posts_authorization_code(config: AppConfig, monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, dict[str, str]] = {}

    def fake_post(url: str, payload: dict[str, str]) -> dict[str, str]:
        captured[url] = payload
        return {"access_token": "a", "refresh_token": "r", "expires_in": "3600"}

    monkeypatch.setattr("clinicbridge.oauth._post_form", fake_post)
    result = exchange_oauth_code(config, "auth-code")
    payload = captured[config.google_token_url]
    assert payload["grant_type"] == "authorization_code"
    assert payload["code"] == "auth-code"
    assert result.refresh_token == "r"


def test_exchange_requires_code(config: AppConfig) -> None:
    with pytest.raises(ValidationError):
        exchange_oauth_code(config, "")


def test_refresh_client_error_requires_reconnect(
    config: AppConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Summary: Verify a 4xx refresh grant failure maps to ReconnectRequired.

    Importance: Revoked consent needs user action, not retries.
    Alternatives: Surface the raw provider error.
    """

    def rejected(url: str, payload: dict[str, str]) -> dict[str, str]:
        raise ProviderError("Token endpoint returned HTTP 400", provider_status=400, detail="invalid_grant")

    monkeypatch.setattr("clinicbridge.oauth._post_form", rejected)
    with pytest.raises(ReconnectRequired):
        refresh_oauth_token(config, "refresh-1")


def test_refresh_server_error_stays_transient(
    config: AppConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    def unavailable(url: str, payload: dict[str, str]) -> dict[str, str]:
        raise ProviderError("Token endpoint returned HTTP 503", provider_status=503)

    monkeypatch.setattr("clinicbridge.oauth._post_form", unavailable)
    with pytest.raises(ProviderError) as excinfo:
        refresh_oauth_token(config, "refresh-1")
    assert not isinstance(excinfo.value, ReconnectRequired)
    assert excinfo.value.provider_status == 503


def test_missing_client_credentials_raise(config: AppConfig) -> None:
    with pytest.raises(ProviderError):
        refresh_oauth_token(replace(config, google_client_secret=""), "refresh-1")
