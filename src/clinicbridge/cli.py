"""Summary: Command-line interface for ClinicBridge.

Importance: Provides operator entry points for bootstrapping users, keys, numbers, and jobs.
Alternatives: Build an admin web UI first.
"""

from __future__ import annotations

import argparse
import logging
from typing import Sequence

from clinicbridge.app import AppContext, build_context
from clinicbridge.config import AppConfig
from clinicbridge.crypto_vault import generate_master_key
from clinicbridge.errors import ClinicBridgeError
from clinicbridge.models import User


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Summary: Build the CLI argument parser.

    Importance: Defines supported commands for local operation.
    Alternatives: Use a CLI framework like Typer or Click.
    """

    parser = argparse.ArgumentParser(description="ClinicBridge CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create database tables")
    subparsers.add_parser("generate-key", help="Print a new base64 master key")

    create_user = subparsers.add_parser("create-user", help="Create a user")
    create_user.add_argument("display_name", type=str)
    create_user.add_argument("email", type=str)

    create_api_key = subparsers.add_parser("create-api-key", help="Issue an API key for a user")
    create_api_key.add_argument("--email", type=str, default=None)
    create_api_key.add_argument("--label", type=str, default=None)

    assign_number = subparsers.add_parser("assign-number", help="Assign a gateway number to a user")
    assign_number.add_argument("phone_number", type=str)
    assign_number.add_argument("--email", type=str, default=None)

    set_gateway = subparsers.add_parser(
        "set-gateway-token", help="Store a gateway sub-account SID and auth token"
    )
    set_gateway.add_argument("account_sid", type=str)
    set_gateway.add_argument("auth_token", type=str)
    set_gateway.add_argument("--email", type=str, default=None)

    sync_calendar = subparsers.add_parser("sync-calendar", help="Sync connected calendars")
    sync_calendar.add_argument("--email", type=str, default=None)

    subparsers.add_parser("dispatch-reminders", help="Fire reminders that are due now")

    serve = subparsers.add_parser("serve", help="Run the API server")
    serve.add_argument("--host", type=str, default=None)
    serve.add_argument("--port", type=int, default=None)
    return parser


def _resolve_user_id(context: AppContext, config: AppConfig, email: str | None) -> int:
    """Summary: Resolve the target user for a command.

    Importance: Falls back to the configured default user for single-clinic setups.
    Alternatives: Require an explicit user on every command.
    """

    if email:
        user = context.store.get_user_by_email(email)
        if user is None:
            raise SystemExit(f"No user with email {email}")
        return user.id
    return context.store.ensure_user(
        User(display_name=config.default_user_name, email=config.default_user_email)
    )


def run_cli(argv: Sequence[str] | None = None) -> None:
    """Summary: Execute CLI commands based on arguments.

    Importance: Drives setup and maintenance without the HTTP API.
    Alternatives: Invoke services via an HTTP API.
    """

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "generate-key":
        print(generate_master_key())
        return

    config = AppConfig.from_env()
    context = build_context(config)

    try:
        _dispatch(args, config, context)
    except ClinicBridgeError as exc:
        raise SystemExit(f"{exc.__class__.__name__}: {exc}") from exc


def _dispatch(args: argparse.Namespace, config: AppConfig, context: AppContext) -> None:
    if args.command == "init-db":
        print(f"Database ready at {config.db_path}.")
        return

    if args.command == "create-user":
        user_id = context.store.ensure_user(User(display_name=args.display_name, email=args.email))
        print(f"User {user_id}: {args.display_name} <{args.email}>")
        return

    if args.command == "create-api-key":
        user_id = _resolve_user_id(context, config, args.email)
        key_id, token = context.api_keys().create_api_key(user_id, args.label)
        print(f"API key {key_id} for user {user_id}: {token}")
        print("Store this key now; it cannot be shown again.")
        return

    if args.command == "assign-number":
        user_id = _resolve_user_id(context, config, args.email)
        number = context.services_for_user(user_id).accounts.assign_number(user_id, args.phone_number)
        print(f"Assigned {number} to user {user_id}.")
        return

    if args.command == "set-gateway-token":
        user_id = _resolve_user_id(context, config, args.email)
        context.services_for_user(user_id).accounts.set_gateway_account(
            user_id, args.account_sid, args.auth_token
        )
        print(f"Stored gateway account {args.account_sid} for user {user_id}.")
        return

    if args.command == "sync-calendar":
        if args.email:
            user_id = _resolve_user_id(context, config, args.email)
            count = context.services_for_user(user_id).calendar.sync_events()
            print(f"Synced {count} events for user {user_id}.")
            return
        results = context.sync_all_calendars()
        for user_id, count in results.items():
            print(f"Synced {count} events for user {user_id}.")
        if not results:
            print("No calendars synced.")
        return

    if args.command == "dispatch-reminders":
        report = context.reminders.dispatch_due()
        print(f"Reminders fired: {report.fired}, failed: {report.failed}, skipped: {report.skipped}.")
        return

    if args.command == "serve":
        import uvicorn

        from clinicbridge.api import create_app

        uvicorn.run(
            create_app(config, context),
            host=args.host or config.api_host,
            port=args.port or config.api_port,
        )
        return


def main() -> None:
    run_cli()


if __name__ == "__main__":
    main()
