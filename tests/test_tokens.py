"""Summary: Tests for encrypted credential storage and access-token refresh.

Importance: Ensures tokens are refreshed before expiry and never stored in plaintext.
Alternatives: Exercise refresh only against the live provider.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from clinicbridge.config import AppConfig
from clinicbridge.crypto_vault import CryptoVault, generate_master_key
from clinicbridge.errors import CryptoError, NotConnected, ProviderError, ReconnectRequired
from clinicbridge.oauth import GOOGLE_PROVIDER, OAuthTokenResult
from clinicbridge.services import CredentialStore, RefreshLocks, TokenService
from clinicbridge.storage.sqlite_store import SqliteStore


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _token_service(store: SqliteStore, config: AppConfig) -> TokenService:
    return TokenService(
        credentials=CredentialStore(store=store, vault=CryptoVault(config.google_tokens_master_key)),
        config=config,
        locks=RefreshLocks(),
        clock=lambda: NOW,
    )


def _result(access: str, refresh: str | None, expires_in: timedelta) -> OAuthTokenResult:
    return OAuthTokenResult(
        access_token=access,
        refresh_token=refresh,
        expires_at=NOW + expires_in,
        scope="https://www.googleapis.com/auth/calendar",
        token_type="Bearer",
    )


def test_connect_stores_ciphertext_only(store: SqliteStore, config: AppConfig, user_id: int) -> None:
    """Summary: Verify stored credentials are encrypted.

    Importance: Plaintext tokens must never reach the database.
    Alternatives: Inspect the SQLite file manually.
    """

    service = _token_service(store, config)
    service.connect(user_id, _result("access-1", "refresh-1", timedelta(hours=1)))
    record = store.get_credential(user_id, GOOGLE_PROVIDER)
    assert record is not None
    assert "access-1" not in record.access_token_cipher
    assert "refresh-1" not in record.refresh_token_cipher
    tokens = service.credentials.load(user_id)
    assert tokens.access_token == "access-1"
    assert tokens.refresh_token == "refresh-1"


def test_token_expiring_in_four_minutes_is_refreshed(
    store: SqliteStore, config: AppConfig, user_id: int, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Summary: Verify the five minute refresh margin.

    Importance: Tokens close to expiry are refreshed before being handed out.
    Alternatives: Refresh only after a 401.
    """

    calls: list[str] = []

    def fake_refresh(cfg: AppConfig, refresh_token: str) -> OAuthTokenResult:
        calls.append(refresh_token)
        return _result("access-2", None, timedelta(hours=1))

    monkeypatch.setattr("clinicbridge.services.refresh_oauth_token", fake_refresh)
    service = _token_service(store, config)
    service.connect(user_id, _result("access-1", "refresh-1", timedelta(minutes=4)))

    assert service.get_valid_access_token(user_id) == "access-2"
    assert calls == ["refresh-1"]
    tokens = service.credentials.load(user_id)
    assert tokens.refresh_token == "refresh-1"
    assert tokens.expires_at == NOW + timedelta(hours=1)

    assert service.get_valid_access_token(user_id) == "access-2"
    assert calls == ["refresh-1"]


def test_token_valid_for_ten_minutes_is_not_refreshed(
    store: SqliteStore, config: AppConfig, user_id: int, monkeypatch: pytest.MonkeyPatch
) -> None:
    def fail_refresh(cfg: AppConfig, refresh_token: str) -> OAuthTokenResult:
        raise AssertionError("refresh should not be called")

    monkeypatch.setattr("clinicbridge.services.refresh_oauth_token", fail_refresh)
    service = _token_service(store, config)
    service.connect(user_id, _result("access-1", "refresh-1", timedelta(minutes=10)))
    assert service.get_valid_access_token(user_id) == "access-1"


def test_rotated_refresh_token_replaces_old_one(
    store: SqliteStore, config: AppConfig, user_id: int, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(
        "clinicbridge.services.refresh_oauth_token",
        lambda cfg, refresh_token: _result("access-2", "refresh-2", timedelta(hours=1)),
    )
    service = _token_service(store, config)
    service.connect(user_id, _result("access-1", "refresh-1", timedelta(seconds=-30)))
    service.get_valid_access_token(user_id)
    assert service.credentials.load(user_id).refresh_token == "refresh-2"


def test_reconnect_required_propagates(
    store: SqliteStore, config: AppConfig, user_id: int, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Summary: Verify a rejected refresh grant surfaces as ReconnectRequired.

    Importance: The UI must prompt a reconnect instead of retrying forever.
    Alternatives: Delete the credential silently.
    """

    def rejected(cfg: AppConfig, refresh_token: str) -> OAuthTokenResult:
        raise ReconnectRequired("Calendar token refresh failed. Please reconnect your calendar.")

    monkeypatch.setattr("clinicbridge.services.refresh_oauth_token", rejected)
    service = _token_service(store, config)
    service.connect(user_id, _result("access-1", "refresh-1", timedelta(minutes=1)))
    with pytest.raises(ReconnectRequired):
        service.get_valid_access_token(user_id)
    assert service.credentials.load(user_id).access_token == "access-1"


def test_missing_credential_raises_not_connected(
    store: SqliteStore, config: AppConfig, user_id: int
) -> None:
    with pytest.raises(NotConnected):
        _token_service(store, config).get_valid_access_token(user_id)


def test_first_connect_without_refresh_token_fails(
    store: SqliteStore, config: AppConfig, user_id: int
) -> None:
    service = _token_service(store, config)
    with pytest.raises(ProviderError):
        service.connect(user_id, _result("access-1", None, timedelta(hours=1)))
    assert store.get_credential(user_id, GOOGLE_PROVIDER) is None


def test_reconnect_without_refresh_token_keeps_stored_one(
    store: SqliteStore, config: AppConfig, user_id: int
) -> None:
    service = _token_service(store, config)
    service.connect(user_id, _result("access-1", "refresh-1", timedelta(hours=1)))
    service.connect(user_id, _result("access-2", None, timedelta(hours=1)))
    tokens = service.credentials.load(user_id)
    assert tokens.access_token == "access-2"
    assert tokens.refresh_token == "refresh-1"


def test_wrong_master_key_raises_crypto_error(
    store: SqliteStore, config: AppConfig, user_id: int
) -> None:
    """Summary: Verify undecryptable credentials are not reported as disconnected.

    Importance: A key mismatch is an operator error, not a missing connection.
    Alternatives: Treat the record as absent.
    """

    _token_service(store, config).connect(
        user_id, _result("access-1", "refresh-1", timedelta(hours=1))
    )
    other = TokenService(
        credentials=CredentialStore(store=store, vault=CryptoVault(generate_master_key())),
        config=config,
        locks=RefreshLocks(),
        clock=lambda: NOW,
    )
    with pytest.raises(CryptoError):
        other.get_valid_access_token(user_id)


def test_disconnect_removes_credentials(store: SqliteStore, config: AppConfig, user_id: int) -> None:
    service = _token_service(store, config)
    service.connect(user_id, _result("access-1", "refresh-1", timedelta(hours=1)))
    assert service.credentials.connected_user_ids() == [user_id]
    assert service.disconnect(user_id) is True
    with pytest.raises(NotConnected):
        service.get_valid_access_token(user_id)
