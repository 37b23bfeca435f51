"""Summary: Tests for the operator CLI.

Importance: Ensures bootstrap commands create users, keys, and numbers.
Alternatives: Exercise the CLI only by hand.
"""

from __future__ import annotations

import base64

import pytest

from clinicbridge.cli import build_parser, run_cli
from clinicbridge.config import AppConfig
from clinicbridge.services import ApiKeyService
from clinicbridge.storage.sqlite_store import SqliteStore


@pytest.fixture
def cli_config(config: AppConfig, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    monkeypatch.setattr(AppConfig, "from_env", staticmethod(lambda: config))
    return config


def test_generate_key_prints_32_byte_key(capsys: pytest.CaptureFixture[str]) -> None:
    run_cli(["generate-key"])
    key = capsys.readouterr().out.strip()
    assert len(base64.b64decode(key)) == 32


def test_parser_requires_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_bootstrap_commands(cli_config: AppConfig, capsys: pytest.CaptureFixture[str]) -> None:
    """Summary: Verify user, key, number, and gateway bootstrap commands.

    Importance: These are the steps an operator runs for a new clinic.
    Alternatives: Seed the database with SQL scripts.
    """

    run_cli(["create-user", "Dr. Luis Vega", "luis@clinic.test"])
    run_cli(["create-api-key", "--email", "luis@clinic.test", "--label", "laptop"])
    run_cli(["assign-number", "+1 555 000 1111", "--email", "luis@clinic.test"])
    run_cli(["set-gateway-token", "ACsub1", "sub-token", "--email", "luis@clinic.test"])
    output = capsys.readouterr().out
    token = output.split("API key ", 1)[1].split(": ", 1)[1].splitlines()[0]

    store = SqliteStore(cli_config.db_path)
    user = store.get_user_by_email("luis@clinic.test")
    assert ApiKeyService(store=store, token_secret=cli_config.token_secret).resolve_user_id(token) == user.id
    assert store.list_assigned_numbers(user.id) == ["+15550001111"]
    assert user.provider_account_sid == "ACsub1"
    assert store.get_gateway_secret_by_account_sid("ACsub1") is not None


def test_unknown_email_exits(cli_config: AppConfig) -> None:
    with pytest.raises(SystemExit):
        run_cli(["create-api-key", "--email", "nobody@clinic.test"])


def test_domain_errors_exit(cli_config: AppConfig) -> None:
    with pytest.raises(SystemExit) as excinfo:
        run_cli(["assign-number", "not-a-number"])
    assert "InvalidPhoneFormat" in str(excinfo.value)


def test_dispatch_and_sync_without_work(cli_config: AppConfig, capsys: pytest.CaptureFixture[str]) -> None:
    run_cli(["dispatch-reminders"])
    run_cli(["sync-calendar"])
    output = capsys.readouterr().out
    assert "Reminders fired: 0, failed: 0, skipped: 0." in output
    assert "No calendars synced." in output
