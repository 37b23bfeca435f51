"""Summary: Application factory wiring core services.

Importance: Centralizes dependency creation for the CLI, the API, and the background dispatcher.
Alternatives: Instantiate services manually in each entrypoint.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from clinicbridge.calendar import CalendarProvider, GoogleCalendarProvider
from clinicbridge.config import AppConfig
from clinicbridge.crypto_vault import CryptoVault
from clinicbridge.errors import ClinicBridgeError
from clinicbridge.reminders import (
    LoggingReminderNotifier,
    ReminderDispatcher,
    ReminderJobQueue,
    ReminderNotifier,
    ReminderScheduler,
    WhatsAppReminderNotifier,
)
from clinicbridge.services import (
    AccountService,
    ApiKeyService,
    CalendarService,
    ChatService,
    ConversationDirectory,
    CredentialStore,
    MessageLedger,
    PresenceService,
    RefreshLocks,
    ReminderMessenger,
    TokenService,
    UserService,
)
from clinicbridge.storage.sqlite_store import SqliteStore
from clinicbridge.webhooks import WebhookIngestionService
from clinicbridge.whatsapp import TwilioWhatsAppGateway, WhatsAppGateway


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppContext:
    """Summary: Shared application context for building user services.

    Importance: Reuses storage, vaults, provider clients, and refresh locks across requests.
    Alternatives: Rebuild dependencies for every request.
    """

    store: SqliteStore
    config: AppConfig
    token_vault: CryptoVault
    gateway_vault: CryptoVault
    gateway: WhatsAppGateway
    calendar_provider: CalendarProvider
    refresh_locks: RefreshLocks
    directory: ConversationDirectory
    ledger: MessageLedger
    reminders: ReminderScheduler

    def services_for_user(self, user_id: int) -> "AppServices":
        """Summary: Build user-scoped services from shared context.

        Importance: Identity is bound once per request and passed explicitly.
        Alternatives: Use thread-local request state.
        """

        chat = ChatService(
            store=self.store,
            user_id=user_id,
            directory=self.directory,
            ledger=self.ledger,
            gateway=self.gateway,
        )
        calendar = CalendarService(
            store=self.store,
            user_id=user_id,
            config=self.config,
            tokens=self.token_service(),
            provider=self.calendar_provider,
            reminders=self.reminders,
        )
        return AppServices(
            chat=chat,
            calendar=calendar,
            accounts=AccountService(store=self.store, vault=self.gateway_vault),
            presence=PresenceService(store=self.store),
            users=UserService(store=self.store),
            api_keys=self.api_keys(),
            store=self.store,
            user_id=user_id,
        )

    def token_service(self) -> TokenService:
        return TokenService(
            credentials=CredentialStore(store=self.store, vault=self.token_vault),
            config=self.config,
            locks=self.refresh_locks,
        )

    def api_keys(self) -> ApiKeyService:
        return ApiKeyService(store=self.store, token_secret=self.config.token_secret)

    def webhooks(self) -> WebhookIngestionService:
        return WebhookIngestionService(
            store=self.store,
            directory=self.directory,
            ledger=self.ledger,
            vault=self.gateway_vault,
            default_account_sid=self.config.gateway_account_sid,
            default_auth_token=self.config.gateway_auth_token,
        )

    def sync_all_calendars(self) -> dict[int, int]:
        """Summary: Sync every connected user's calendar.

        Importance: One user's failure is logged and does not stop the others.
        Alternatives: Sync users in parallel threads.
        """

        results: dict[int, int] = {}
        for user_id in self.token_service().credentials.connected_user_ids():
            try:
                results[user_id] = self.services_for_user(user_id).calendar.sync_events()
            except ClinicBridgeError as exc:
                logger.warning("Calendar sync failed for user %s: %s", user_id, exc)
            except Exception:
                logger.exception("Calendar sync crashed for user %s.", user_id)
        return results

    def build_dispatcher(self) -> ReminderDispatcher:
        return ReminderDispatcher(
            scheduler=self.reminders,
            poll_seconds=self.config.reminder_poll_seconds,
            calendar_sync=self.sync_all_calendars,
            sync_minutes=self.config.calendar_sync_minutes,
        )


@dataclass(frozen=True)
class AppServices:
    """Summary: Bundle of user-scoped services for ClinicBridge.

    Importance: Simplifies passing dependencies to the API and CLI layers.
    Alternatives: Use a dependency injection container.
    """

    chat: ChatService
    calendar: CalendarService
    accounts: AccountService
    presence: PresenceService
    users: UserService
    api_keys: ApiKeyService
    store: SqliteStore
    user_id: int


def build_context(
    config: AppConfig,
    gateway: WhatsAppGateway | None = None,
    calendar_provider: CalendarProvider | None = None,
    notifier_factory: Callable[[SqliteStore, ReminderMessenger], ReminderNotifier] | None = None,
) -> AppContext:
    """Summary: Build shared context for user-scoped services.

    Importance: Tests and offline runs can inject a fake gateway, calendar, or notifier.
    Alternatives: Construct dependencies separately per request.
    """

    store = SqliteStore(config.db_path)
    store.initialize()
    gateway = gateway or TwilioWhatsAppGateway(
        config.gateway_api_base_url, config.gateway_account_sid, config.gateway_auth_token
    )
    calendar_provider = calendar_provider or GoogleCalendarProvider(config.google_calendar_base_url)
    directory = ConversationDirectory(store=store)
    ledger = MessageLedger(store=store)
    messenger = ReminderMessenger(store=store, directory=directory, ledger=ledger, gateway=gateway)
    if notifier_factory is not None:
        notifier = notifier_factory(store, messenger)
    elif config.reminder_template_sid:
        notifier = WhatsAppReminderNotifier(store, messenger, config.reminder_template_sid)
    else:
        notifier = LoggingReminderNotifier()
    reminders = ReminderScheduler(store=store, queue=ReminderJobQueue(store), notifier=notifier)
    return AppContext(
        store=store,
        config=config,
        token_vault=CryptoVault(config.google_tokens_master_key),
        gateway_vault=CryptoVault(config.gateway_master_key),
        gateway=gateway,
        calendar_provider=calendar_provider,
        refresh_locks=RefreshLocks(),
        directory=directory,
        ledger=ledger,
        reminders=reminders,
    )
