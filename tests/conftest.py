"""Summary: Shared fixtures for ClinicBridge tests.

Importance: Keeps every test on isolated storage and fresh master keys.
Alternatives: Build AppConfig inline in each test module.
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from clinicbridge.config import AppConfig
from clinicbridge.crypto_vault import generate_master_key
from clinicbridge.errors import ProviderError
from clinicbridge.models import User
from clinicbridge.storage.sqlite_store import SqliteStore
from clinicbridge.whatsapp import GatewayReceipt, OutboundMessage, WhatsAppGateway


def build_config(db_path: str, **overrides: object) -> AppConfig:
    """Summary: Build an AppConfig for tests.

    Importance: Ensures tests use isolated storage and never start the scheduler.
    Alternatives: Load AppConfig from environment variables.
    """

    config = AppConfig(
        db_path=db_path,
        api_host="127.0.0.1",
        api_port=8000,
        log_level="INFO",
        default_user_name="Dr. Ana Ruiz",
        default_user_email="ana@clinic.test",
        token_secret="secret",
        google_client_id="google-client",
        google_client_secret="google-secret",
        oauth_redirect_uri="http://localhost:8000/oauth/callback",
        google_auth_url="https://accounts.google.com/o/oauth2/v2/auth",
        google_token_url="https://oauth2.googleapis.com/token",
        google_calendar_base_url="https://www.googleapis.com/calendar/v3",
        google_scopes="https://www.googleapis.com/auth/calendar openid email",
        google_tokens_master_key=generate_master_key(),
        gateway_account_sid="ACdefault",
        gateway_auth_token="default-token",
        gateway_master_key=generate_master_key(),
        gateway_api_base_url="https://api.twilio.test/2010-04-01",
        webhook_base_url="https://clinic.example.com",
        reminder_template_sid=None,
        reminder_poll_seconds=30,
        calendar_sync_minutes=30,
        scheduler_enabled=False,
    )
    return replace(config, **overrides)


class FakeGateway(WhatsAppGateway):
    """Records outbound messages instead of calling the provider."""

    def __init__(self, status: str = "queued", error: ProviderError | None = None) -> None:
        self.sent: list[tuple[str, OutboundMessage]] = []
        self.status = status
        self.error = error

    def send_message(self, subaccount_sid: str, message: OutboundMessage) -> GatewayReceipt:
        if self.error is not None:
            raise self.error
        self.sent.append((subaccount_sid, message))
        return GatewayReceipt(provider_message_id=f"SM{len(self.sent):04d}", provider_status=self.status)


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return build_config(str(tmp_path / "test.db"))


@pytest.fixture
def store(config: AppConfig) -> SqliteStore:
    sqlite_store = SqliteStore(config.db_path)
    sqlite_store.initialize()
    return sqlite_store


@pytest.fixture
def user_id(store: SqliteStore) -> int:
    return store.ensure_user(User(display_name="Dr. Ana Ruiz", email="ana@clinic.test"))
