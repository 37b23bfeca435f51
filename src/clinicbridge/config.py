"""Summary: Application configuration for ClinicBridge.

Importance: Centralizes environment, .env, and config defaults for consistent behavior.
Alternatives: Use a dedicated settings library like Pydantic Settings.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from dataclasses import dataclass


@dataclass(frozen=True)
class AppConfig:
    """Summary: Holds configuration values for providers, storage, and scheduling.

    Importance: Ensures all services derive settings from a single source of truth.
    Alternatives: Store settings in a shared config file and parse at startup.
    """

    db_path: str
    api_host: str
    api_port: int
    log_level: str
    default_user_name: str
    default_user_email: str
    token_secret: str
    google_client_id: str
    google_client_secret: str
    oauth_redirect_uri: str
    google_auth_url: str
    google_token_url: str
    google_calendar_base_url: str
    google_scopes: str
    google_tokens_master_key: str | None
    gateway_account_sid: str | None
    gateway_auth_token: str | None
    gateway_master_key: str | None
    gateway_api_base_url: str
    webhook_base_url: str | None
    reminder_template_sid: str | None
    reminder_poll_seconds: int
    calendar_sync_minutes: int
    scheduler_enabled: bool

    @staticmethod
    def from_env() -> "AppConfig":
        """Summary: Build configuration from defaults, .env, and environment.

        Importance: Keeps all variables defined in config defaults while allowing overrides.
        Alternatives: Parse only environment variables without a defaults file.
        """

        defaults = load_defaults(Path("config") / "defaults.json")
        load_dotenv(Path(".env"))
        return AppConfig(
            db_path=os.getenv("CLINICBRIDGE_DB_PATH", defaults["db_path"]),
            api_host=os.getenv("CLINICBRIDGE_API_HOST", defaults["api_host"]),
            api_port=int(os.getenv("CLINICBRIDGE_API_PORT", defaults["api_port"])),
            log_level=os.getenv("CLINICBRIDGE_LOG_LEVEL", defaults["log_level"]),
            default_user_name=os.getenv(
                "CLINICBRIDGE_DEFAULT_USER_NAME", defaults["default_user_name"]
            ),
            default_user_email=os.getenv(
                "CLINICBRIDGE_DEFAULT_USER_EMAIL", defaults["default_user_email"]
            ),
            token_secret=os.getenv("CLINICBRIDGE_TOKEN_SECRET", defaults["token_secret"]),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID", defaults["google_client_id"]),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET", defaults["google_client_secret"]),
            oauth_redirect_uri=os.getenv("GOOGLE_REDIRECT_URI", defaults["oauth_redirect_uri"]),
            google_auth_url=os.getenv("GOOGLE_AUTH_URL", defaults["google_auth_url"]),
            google_token_url=os.getenv("GOOGLE_TOKEN_URL", defaults["google_token_url"]),
            google_calendar_base_url=os.getenv(
                "GOOGLE_CALENDAR_BASE_URL", defaults["google_calendar_base_url"]
            ),
            google_scopes=os.getenv("GOOGLE_SCOPES", defaults["google_scopes"]),
            google_tokens_master_key=os.getenv("GOOGLE_TOKENS_MASTER_KEY")
            or defaults["google_tokens_master_key"]
            or None,
            gateway_account_sid=os.getenv("TWILIO_ACCOUNT_SID")
            or defaults["gateway_account_sid"]
            or None,
            gateway_auth_token=os.getenv("TWILIO_AUTH_TOKEN")
            or defaults["gateway_auth_token"]
            or None,
            gateway_master_key=os.getenv("TWILIO_SUBACCOUNT_AUTH_TOKEN_MASTER_KEY")
            or defaults["gateway_master_key"]
            or None,
            gateway_api_base_url=os.getenv("TWILIO_API_BASE_URL", defaults["gateway_api_base_url"]),
            webhook_base_url=os.getenv("CLINICBRIDGE_WEBHOOK_BASE_URL")
            or defaults["webhook_base_url"]
            or None,
            reminder_template_sid=os.getenv("CLINICBRIDGE_REMINDER_TEMPLATE_SID")
            or defaults["reminder_template_sid"]
            or None,
            reminder_poll_seconds=int(
                os.getenv("CLINICBRIDGE_REMINDER_POLL_SECONDS", defaults["reminder_poll_seconds"])
            ),
            calendar_sync_minutes=int(
                os.getenv("CLINICBRIDGE_CALENDAR_SYNC_MINUTES", defaults["calendar_sync_minutes"])
            ),
            scheduler_enabled=parse_bool(
                os.getenv("CLINICBRIDGE_SCHEDULER_ENABLED", defaults["scheduler_enabled"])
            ),
        )


def load_defaults(path: Path) -> dict[str, str]:
    """Summary: Load configuration defaults from JSON.

    Importance: Ensures all variables exist in a single config file.
    Alternatives: Inline defaults in the AppConfig initializer.
    """

    if not path.exists():
        raise FileNotFoundError(f"Defaults file not found: {path}")
    return json.loads(path.read_text(encoding="utf-8"))


def load_dotenv(path: Path) -> None:
    """Summary: Load key-value pairs from a .env file into the environment.

    Importance: Keeps secrets out of code while supporting local workflows.
    Alternatives: Use python-dotenv or OS-specific secret stores.
    """

    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


def parse_bool(value: str | bool) -> bool:
    """Interpret common truthy strings from env files."""

    if isinstance(value, bool):
        return value
    return value.strip().lower() in {"1", "true", "yes", "on"}
