"""Summary: Core application services for ClinicBridge.

Importance: Orchestrates credentials, conversations, the message ledger, outbound sends, and calendar sync.
Alternatives: Build a full service layer with dependency injection framework.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import logging
import secrets
import threading
from datetime import datetime, timedelta
from typing import Callable

from clinicbridge.attachments import (
    MAX_MESSAGE_CONTENT_LENGTH,
    assert_attachments_valid,
    preview_from_content,
)
from clinicbridge.calendar import SYNC_WINDOW_DAYS, CalendarProvider, EventChanges, EventDraft
from clinicbridge.config import AppConfig
from clinicbridge.crypto_vault import CryptoVault
from clinicbridge.errors import (
    NotConnected,
    NotFound,
    ProviderError,
    Unauthorized,
    ValidationError,
)
from clinicbridge.models import (
    Attachment,
    CalendarEventData,
    ExternalContact,
    User,
    from_iso,
    to_iso,
    utcnow,
)
from clinicbridge.oauth import (
    GOOGLE_PROVIDER,
    OAuthTokenResult,
    exchange_oauth_code,
    fetch_account_email,
    refresh_oauth_token,
)
from clinicbridge.phone import normalize_e164, to_whatsapp_address
from clinicbridge.reminders import ReminderScheduler, template_variables_json
from clinicbridge.storage.sqlite_store import (
    SqliteStore,
    StoredApiKey,
    StoredCalendarEvent,
    StoredConversation,
    StoredCredential,
    StoredMessage,
    StoredUser,
)
from clinicbridge.whatsapp import OutboundMessage, WhatsAppGateway


logger = logging.getLogger(__name__)

REFRESH_MARGIN = timedelta(minutes=5)
PRESENCE_STALE_AFTER = timedelta(seconds=30)
RESCHEDULE_FLAG_RESET = timedelta(hours=1)

STATUS_RANKS = {"queued": 0, "sent": 1, "delivered": 2, "read": 3}
_PASSTHROUGH_STATUSES = {"read", "delivered", "sent", "queued"}
_FAILED_STATUSES = {"failed", "undelivered"}
_MAX_STATUS_ATTEMPTS = 6


def apply_status(current: str, new: str) -> str:
    """Summary: Merge a status update into the delivery lattice.

    Importance: Statuses only move forward by rank; failed can be entered from any
    state and absorbs every later update, so out-of-order callbacks converge.
    Alternatives: Last-write-wins by callback timestamp.
    """

    if current == "failed":
        return "failed"
    if new == "failed":
        return "failed"
    if STATUS_RANKS.get(new, -1) > STATUS_RANKS.get(current, -1):
        return new
    return current


def map_provider_status(raw: str | None) -> str:
    """Map a raw gateway status to a ledger status; unknown values count as sent."""

    value = (raw or "").strip().lower()
    if value in _PASSTHROUGH_STATUSES:
        return value
    if value in _FAILED_STATUSES:
        return "failed"
    if value:
        logger.warning("Unknown provider status %r treated as sent.", raw)
    return "sent"


@dataclass(frozen=True)
class UserService:
    """Summary: Manages clinic user records.

    Importance: Provides user creation and lookup for per-user auth.
    Alternatives: Use an external identity provider.
    """

    store: SqliteStore

    def create_user(self, display_name: str, email: str) -> int:
        """Summary: Create or ensure a user exists.

        Importance: Allows onboarding multiple users without a schema rewrite.
        Alternatives: Keep a single hardcoded user.
        """

        return self.store.ensure_user(User(display_name=display_name, email=email))

    def list_users(self) -> list[StoredUser]:
        return self.store.list_users()

    def get_user_by_email(self, email: str) -> StoredUser | None:
        """Summary: Fetch a user by email.

        Importance: Enables resolving users for API key issuance from the CLI.
        Alternatives: Use user IDs only.
        """

        return self.store.get_user_by_email(email)


@dataclass(frozen=True)
class ApiKeyService:
    """Summary: Issues and verifies API keys for users.

    Importance: Resolves the caller identity for every interactive endpoint.
    Alternatives: Use OAuth or an external auth service.
    """

    store: SqliteStore
    token_secret: str

    def create_api_key(self, user_id: int, label: str | None = None) -> tuple[int, str]:
        """Summary: Create a new API key for a user.

        Importance: Returns a one-time plaintext token for client storage.
        Alternatives: Store raw tokens in the database.
        """

        raw_token = secrets.token_urlsafe(32)
        key_id = self.store.create_api_key(
            user_id=user_id,
            token_hash=self._hash_token(raw_token),
            label=label,
            created_at=to_iso(utcnow()),
        )
        return key_id, raw_token

    def revoke_api_key(self, user_id: int, key_id: int) -> bool:
        return self.store.delete_api_key(user_id, key_id)

    def list_api_keys(self, user_id: int) -> list[StoredApiKey]:
        return self.store.list_api_keys(user_id)

    def resolve_user_id(self, token: str) -> int | None:
        """Summary: Resolve a user ID from an API key.

        Importance: Supports per-user API authentication.
        Alternatives: Validate tokens with an external service.
        """

        if not token:
            return None
        return self.store.get_user_id_by_api_key(self._hash_token(token))

    def _hash_token(self, token: str) -> str:
        """Summary: Hash an API token with a secret salt.

        Importance: Avoids storing raw API keys in the database.
        Alternatives: Use an HSM or external secrets manager.
        """

        salt = self.token_secret or "clinicbridge"
        return hashlib.sha256(f"{salt}:{token}".encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class AccountService:
    """Summary: Manages a user's gateway sub-account and assigned numbers.

    Importance: Supplies the per-account webhook secret and the sender numbers.
    Alternatives: Configure one shared gateway account for every user.
    """

    store: SqliteStore
    vault: CryptoVault

    def set_gateway_account(self, user_id: int, account_sid: str, auth_token: str | None) -> None:
        """Summary: Store the sub-account SID and its encrypted auth token.

        Importance: The auth token is the webhook signing secret and is only kept as ciphertext.
        Alternatives: Keep sub-account tokens in the environment.
        """

        if not account_sid:
            raise ValidationError("Account SID is required")
        ciphertext = iv = None
        if auth_token:
            encrypted = self.vault.encrypt(auth_token)
            ciphertext, iv = encrypted.ciphertext, encrypted.iv
        if not self.store.set_gateway_account(user_id, account_sid, ciphertext, iv):
            raise ValidationError("Gateway account is already registered to another user")
        logger.info("Stored gateway account for user %s.", user_id)

    def assign_number(self, user_id: int, phone_number: str) -> str:
        normalized = normalize_e164(phone_number)
        owner = self.store.find_owner_by_assigned_number(normalized)
        if owner is not None and owner != user_id:
            raise ValidationError("Number is already assigned to another user")
        self.store.add_assigned_number(user_id, normalized)
        return normalized

    def list_numbers(self, user_id: int) -> list[str]:
        return self.store.list_assigned_numbers(user_id)


@dataclass(frozen=True)
class CredentialTokens:
    """Decrypted credential, held in memory only."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    scope: str | None
    token_type: str | None


@dataclass(frozen=True)
class CredentialStore:
    """Summary: Encrypted storage of OAuth credentials per user and provider.

    Importance: Plaintext tokens never reach the database or the logs.
    Alternatives: Use a secrets manager or encrypted database.
    """

    store: SqliteStore
    vault: CryptoVault
    provider: str = GOOGLE_PROVIDER

    def load(self, user_id: int) -> CredentialTokens | None:
        """Decrypt the stored credential; CryptoError propagates."""

        record = self.store.get_credential(user_id, self.provider)
        if record is None:
            return None
        return CredentialTokens(
            access_token=self.vault.decrypt(record.access_token_cipher, record.access_token_iv),
            refresh_token=self.vault.decrypt(record.refresh_token_cipher, record.refresh_token_iv),
            expires_at=from_iso(record.expires_at),
            scope=record.scope,
            token_type=record.token_type,
        )

    def save(self, user_id: int, tokens: CredentialTokens) -> None:
        access = self.vault.encrypt(tokens.access_token)
        refresh = self.vault.encrypt(tokens.refresh_token)
        self.store.upsert_credential(
            StoredCredential(
                user_id=user_id,
                provider=self.provider,
                access_token_cipher=access.ciphertext,
                access_token_iv=access.iv,
                refresh_token_cipher=refresh.ciphertext,
                refresh_token_iv=refresh.iv,
                expires_at=to_iso(tokens.expires_at),
                scope=tokens.scope,
                token_type=tokens.token_type,
            ),
            updated_at=to_iso(utcnow()),
        )

    def delete(self, user_id: int) -> bool:
        return self.store.delete_credential(user_id, self.provider)

    def connected_user_ids(self) -> list[int]:
        return self.store.list_connected_user_ids(self.provider)


class RefreshLocks:
    """Summary: One lock per user id, shared by every request handler.

    Importance: Serializes refresh grants for a user so concurrent requests reuse one refresh.
    Alternatives: A single global lock for all users.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def for_user(self, user_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[user_id] = lock
            return lock


@dataclass(frozen=True)
class TokenService:
    """Summary: Access-token lifecycle for the calendar provider.

    Importance: Hands out valid tokens, refreshing them shortly before expiry.
    Alternatives: Re-run the OAuth flow whenever a token expires.
    """

    credentials: CredentialStore
    config: AppConfig
    locks: RefreshLocks
    clock: Callable[[], datetime] = utcnow

    def connect(self, user_id: int, result: OAuthTokenResult) -> None:
        """Summary: Persist the tokens from a completed authorization.

        Importance: A first connection without a refresh token fails loudly; a
        reconnection without one keeps the stored refresh token.
        Alternatives: Accept access-only connections and fail at first refresh.
        """

        existing = self.credentials.store.get_credential(user_id, self.credentials.provider)
        refresh_token = result.refresh_token
        if not refresh_token:
            if existing is None:
                raise ProviderError("No refresh token received for new connection")
            refresh_token = self.credentials.load(user_id).refresh_token
        self.credentials.save(
            user_id,
            CredentialTokens(
                access_token=result.access_token,
                refresh_token=refresh_token,
                expires_at=result.expires_at,
                scope=result.scope,
                token_type=result.token_type or "Bearer",
            ),
        )
        logger.info("Stored calendar credentials for user %s.", user_id)

    def get_valid_access_token(self, user_id: int) -> str:
        """Summary: Return an access token that stays valid for at least five minutes.

        Importance: Refreshes under a per-user lock and re-reads the record after
        acquiring it, so a refresh done by a concurrent request is reused.
        Alternatives: Always refresh tokens before use.
        """

        tokens = self.credentials.load(user_id)
        if tokens is None:
            raise NotConnected("Calendar is not connected")
        if not self._expires_soon(tokens.expires_at):
            return tokens.access_token
        with self.locks.for_user(user_id):
            tokens = self.credentials.load(user_id)
            if tokens is None:
                raise NotConnected("Calendar is not connected")
            if not self._expires_soon(tokens.expires_at):
                return tokens.access_token
            result = refresh_oauth_token(self.config, tokens.refresh_token)
            refreshed = CredentialTokens(
                access_token=result.access_token,
                refresh_token=result.refresh_token or tokens.refresh_token,
                expires_at=result.expires_at,
                scope=result.scope or tokens.scope,
                token_type=result.token_type or tokens.token_type,
            )
            self.credentials.save(user_id, refreshed)
            logger.info("Refreshed calendar access token for user %s.", user_id)
            return refreshed.access_token

    def disconnect(self, user_id: int) -> bool:
        return self.credentials.delete(user_id)

    def _expires_soon(self, expires_at: datetime | None) -> bool:
        """Summary: Check if a token is expired or near expiry.

        Importance: Avoids handing out tokens that expire mid-request.
        Alternatives: Refresh only after a 401 from the provider.
        """

        if expires_at is None:
            return True
        return expires_at <= self.clock() + REFRESH_MARGIN


@dataclass(frozen=True)
class ConversationDirectory:
    """Summary: Finds or creates the conversation for an owner and contact.

    Importance: Exactly one conversation per (owner, channel, phone) even under concurrent upserts.
    Alternatives: Create a new thread per inbound message.
    """

    store: SqliteStore

    def upsert(
        self,
        owner_id: int,
        channel: str,
        contact: ExternalContact,
        assigned_number: str | None = None,
    ) -> int:
        phone = normalize_e164(contact.phone_number)
        assigned = normalize_e164(assigned_number) if assigned_number else None
        return self.store.upsert_conversation(
            owner_id=owner_id,
            channel=channel,
            phone_number=phone,
            display_name=contact.display_name or None,
            assigned_number=assigned,
            created_at=to_iso(utcnow()),
        )

    def get_for_owner(self, owner_id: int, conversation_id: int) -> StoredConversation:
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        if conversation.owner_id != owner_id:
            raise Unauthorized("Conversation belongs to another user")
        return conversation

    def list_for_owner(self, owner_id: int, limit: int = 100) -> list[StoredConversation]:
        return self.store.list_conversations(owner_id, limit)

    def mark_read(self, owner_id: int, conversation_id: int) -> None:
        self.get_for_owner(owner_id, conversation_id)
        self.store.mark_conversation_read(conversation_id, to_iso(utcnow()))


@dataclass(frozen=True)
class MessageLedger:
    """Summary: Durable message history with idempotent ingestion and delivery states.

    Importance: Duplicate webhooks and out-of-order status callbacks leave one
    row per provider message in its furthest state.
    Alternatives: Append raw events and fold them on read.
    """

    store: SqliteStore

    def insert_inbound(
        self,
        conversation_id: int,
        provider_message_id: str,
        sender_ref: str,
        content: str | None,
        attachments: list[Attachment],
        provider_status: str | None = None,
        timestamp: datetime | None = None,
    ) -> tuple[int, bool]:
        """Summary: Insert an inbound message once.

        Importance: Returns (message_id, created); a replay returns created=False
        and leaves the unread counter untouched.
        Alternatives: Check for the provider ID before inserting.
        """

        return self.store.insert_inbound_message(
            conversation_id=conversation_id,
            provider_message_id=provider_message_id,
            sender_ref=sender_ref,
            content=content,
            attachments=attachments,
            status="delivered",
            provider_status=provider_status,
            timestamp=to_iso(timestamp or utcnow()),
            preview=preview_from_content(content),
        )

    def insert_outbound(
        self,
        conversation_id: int,
        sender_ref: str,
        content: str | None,
        attachments: list[Attachment],
        timestamp: datetime | None = None,
    ) -> int:
        return self.store.insert_outbound_message(
            conversation_id=conversation_id,
            sender_ref=sender_ref,
            content=content,
            attachments=attachments,
            timestamp=to_iso(timestamp or utcnow()),
        )

    def mark_sent(
        self, message_id: int, provider_message_id: str | None, provider_status: str | None
    ) -> StoredMessage | None:
        """Summary: Record an accepted send.

        Importance: Acceptance moves the row to sent even when the gateway still
        reports it as queued; only a failed answer marks it failed. The raw
        status is kept as provider_status.
        Alternatives: Mirror the gateway's status verbatim.
        """

        if provider_message_id:
            self.store.backfill_provider_message_id(message_id, provider_message_id)
        target = "failed" if map_provider_status(provider_status) == "failed" else "sent"
        return self._transition(message_id, target, provider_status)

    def mark_failed(self, message_id: int, provider_status: str | None) -> StoredMessage | None:
        return self._transition(message_id, "failed", provider_status)

    def touch_after_send(self, conversation_id: int, preview: str, sent_at: datetime | None = None) -> None:
        self.store.touch_conversation_after_send(conversation_id, preview, to_iso(sent_at or utcnow()))

    def update_status_by_provider_id(
        self, provider_message_id: str, raw_status: str
    ) -> StoredMessage | None:
        """Summary: Apply a delivery callback to the message it refers to.

        Importance: Unknown message IDs are a no-op returning None.
        Alternatives: Queue callbacks until the message exists.
        """

        message = self.store.get_message_by_provider_id(provider_message_id)
        if message is None:
            logger.info("Status callback for unknown message; ignoring.")
            return None
        return self._transition(message.id, map_provider_status(raw_status), raw_status)

    def soft_delete(self, message_id: int) -> StoredMessage | None:
        self.store.soft_delete_message(message_id, to_iso(utcnow()))
        return self.store.get_message(message_id)

    def get(self, message_id: int) -> StoredMessage | None:
        return self.store.get_message(message_id)

    def list_messages(
        self, conversation_id: int, limit: int = 50, before: str | None = None
    ) -> list[StoredMessage]:
        return self.store.list_messages(conversation_id, limit, before)

    def _transition(
        self, message_id: int, target: str, provider_status: str | None
    ) -> StoredMessage | None:
        for _ in range(_MAX_STATUS_ATTEMPTS):
            message = self.store.get_message(message_id)
            if message is None:
                return None
            next_status = apply_status(message.status, target)
            if next_status == message.status:
                return message
            if self.store.compare_and_set_status(message_id, message.status, next_status, provider_status):
                return self.store.get_message(message_id)
        return self.store.get_message(message_id)


@dataclass(frozen=True)
class PresenceView:
    user_id: int
    last_seen_at: str | None
    is_online: bool


@dataclass(frozen=True)
class PresenceService:
    """Summary: Heartbeat-based online indicator.

    Importance: A user is online while their last heartbeat is under 30 seconds old.
    Alternatives: Track websocket connections.
    """

    store: SqliteStore
    clock: Callable[[], datetime] = utcnow

    def heartbeat(self, user_id: int) -> PresenceView:
        now = self.clock()
        self.store.upsert_presence(user_id, to_iso(now))
        return PresenceView(user_id=user_id, last_seen_at=to_iso(now), is_online=True)

    def get(self, user_id: int) -> PresenceView:
        record = self.store.get_presence(user_id)
        if record is None:
            return PresenceView(user_id=user_id, last_seen_at=None, is_online=False)
        last_seen = from_iso(record.last_seen_at)
        is_online = last_seen is not None and self.clock() - last_seen < PRESENCE_STALE_AFTER
        return PresenceView(user_id=user_id, last_seen_at=record.last_seen_at, is_online=is_online)


@dataclass(frozen=True)
class ChatService:
    """Summary: User-scoped chat operations, including outbound WhatsApp sends.

    Importance: Every call is checked against the owning user.
    Alternatives: Pass the owner ID to each call on a shared service.
    """

    store: SqliteStore
    user_id: int
    directory: ConversationDirectory
    ledger: MessageLedger
    gateway: WhatsAppGateway

    def start_chat(
        self, phone_number: str, display_name: str | None = None, channel: str = "whatsapp"
    ) -> int:
        numbers = self.store.list_assigned_numbers(self.user_id)
        return self.directory.upsert(
            self.user_id,
            channel,
            ExternalContact(phone_number=phone_number, display_name=display_name),
            assigned_number=numbers[0] if numbers else None,
        )

    def list_conversations(self, limit: int = 100) -> list[StoredConversation]:
        return self.directory.list_for_owner(self.user_id, limit)

    def list_messages(
        self, conversation_id: int, limit: int = 50, before: str | None = None
    ) -> list[StoredMessage]:
        self.directory.get_for_owner(self.user_id, conversation_id)
        return self.ledger.list_messages(conversation_id, limit, before)

    def mark_read(self, conversation_id: int) -> None:
        self.directory.mark_read(self.user_id, conversation_id)

    def send_message(
        self,
        conversation_id: int,
        content: str | None = None,
        attachments: list[Attachment] | None = None,
        content_sid: str | None = None,
        content_variables: str | None = None,
    ) -> StoredMessage:
        """Summary: Record an outbound message and hand it to the gateway.

        Importance: The row is written as queued first, then moved to sent or
        failed from the gateway's answer; a gateway error is re-raised.
        Alternatives: Write the row only after the gateway accepts it.
        """

        conversation = self.directory.get_for_owner(self.user_id, conversation_id)
        if conversation.channel != "whatsapp":
            raise ValidationError("Conversation is not a WhatsApp conversation")
        text = (content or "").strip()
        items = list(attachments or [])
        if not text and not items and not content_sid:
            raise ValidationError("Message is empty")
        if len(text) > MAX_MESSAGE_CONTENT_LENGTH:
            raise ValidationError("Message exceeds the maximum allowed length")
        assert_attachments_valid(items)

        user = self.store.get_user(self.user_id)
        if user is None or not user.provider_account_sid:
            raise ValidationError("No gateway sub-account is configured for this user")
        from_number = conversation.assigned_number
        if not from_number:
            numbers = self.store.list_assigned_numbers(self.user_id)
            from_number = numbers[0] if numbers else None
        if not from_number:
            raise ValidationError("No assigned number to send from")

        outbound = OutboundMessage(
            from_address=to_whatsapp_address(from_number),
            to_address=to_whatsapp_address(conversation.phone_number),
            body=text or None,
            content_sid=content_sid,
            content_variables=content_variables,
            media_urls=tuple(item.url for item in items if item.url),
        )
        sent_at = utcnow()
        message_id = self.ledger.insert_outbound(
            conversation_id, f"user:{self.user_id}", text or None, items, sent_at
        )
        try:
            receipt = self.gateway.send_message(user.provider_account_sid, outbound)
        except ProviderError as exc:
            failure = f"http_{exc.provider_status}" if exc.provider_status else "error"
            self.ledger.mark_failed(message_id, failure)
            raise
        self.ledger.mark_sent(message_id, receipt.provider_message_id, receipt.provider_status)
        self.ledger.touch_after_send(conversation_id, preview_from_content(text), sent_at)
        logger.info("Sent message %s in conversation %s.", message_id, conversation_id)
        return self.ledger.get(message_id)

    def delete_message(self, message_id: int) -> StoredMessage:
        message = self.ledger.get(message_id)
        if message is None:
            raise NotFound("Message not found")
        self.directory.get_for_owner(self.user_id, message.conversation_id)
        return self.ledger.soft_delete(message_id)


@dataclass(frozen=True)
class ReminderMessenger:
    """Summary: Sends reminder templates through the regular chat send path.

    Importance: Reminders land in the patient's conversation like any other message.
    Alternatives: Call the gateway directly from the notifier.
    """

    store: SqliteStore
    directory: ConversationDirectory
    ledger: MessageLedger
    gateway: WhatsAppGateway

    def send_template(
        self, owner_id: int, phone_number: str, template_sid: str, variables: dict[str, str]
    ) -> StoredMessage:
        chat = ChatService(
            store=self.store,
            user_id=owner_id,
            directory=self.directory,
            ledger=self.ledger,
            gateway=self.gateway,
        )
        conversation_id = chat.start_chat(phone_number)
        return chat.send_message(
            conversation_id,
            content_sid=template_sid,
            content_variables=template_variables_json(variables),
        )


@dataclass(frozen=True)
class CalendarService:
    """Summary: User-scoped calendar connection, sync, and appointment writes.

    Importance: Keeps the local event mirror and its reminder jobs in step with the provider.
    Alternatives: Read events from the provider on every request.
    """

    store: SqliteStore
    user_id: int
    config: AppConfig
    tokens: TokenService
    provider: CalendarProvider
    reminders: ReminderScheduler
    clock: Callable[[], datetime] = field(default=utcnow)

    def connect(self, code: str) -> None:
        """Summary: Complete the OAuth callback for this user.

        Importance: Stores encrypted tokens and remembers the connected account email.
        Alternatives: Store tokens from the client side.
        """

        result = exchange_oauth_code(self.config, code)
        self.tokens.connect(self.user_id, result)
        email = fetch_account_email(result.access_token)
        if email:
            self.store.set_calendar_email(self.user_id, email)

    def sync_events(self) -> int:
        """Summary: Pull the next 30 days of events and reconcile reminders.

        Importance: Called from the API and from the periodic cron sync.
        Alternatives: Use provider push notifications.
        """

        access_token = self.tokens.get_valid_access_token(self.user_id)
        now = self.clock()
        events = self.provider.list_events(access_token, now, now + timedelta(days=SYNC_WINDOW_DAYS))
        for event in events:
            self.apply_event(event)
        logger.info("Synced %s calendar events for user %s.", len(events), self.user_id)
        return len(events)

    def list_events(self, limit: int = 100) -> list[StoredCalendarEvent]:
        return self.store.list_calendar_events(self.user_id, limit)

    def create_event(self, draft: EventDraft) -> StoredCalendarEvent:
        if draft.patient_phone:
            draft = EventDraft(
                title=draft.title,
                start_time=draft.start_time,
                end_time=draft.end_time,
                description=draft.description,
                attendees=draft.attendees,
                patient_ref=draft.patient_ref,
                patient_name=draft.patient_name,
                patient_phone=normalize_e164(draft.patient_phone),
            )
        access_token = self.tokens.get_valid_access_token(self.user_id)
        created = self.provider.create_event(access_token, draft)
        return self.apply_event(created)

    def update_event(self, provider_event_id: str, changes: EventChanges) -> StoredCalendarEvent:
        self._owned_event(provider_event_id)
        access_token = self.tokens.get_valid_access_token(self.user_id)
        updated = self.provider.update_event(access_token, provider_event_id, changes)
        return self.apply_event(updated)

    def delete_event(self, provider_event_id: str) -> None:
        self._owned_event(provider_event_id)
        access_token = self.tokens.get_valid_access_token(self.user_id)
        self.provider.delete_event(access_token, provider_event_id)
        self.reminders.cancel_reminders(provider_event_id)
        self.store.delete_calendar_event(provider_event_id)
        logger.info("Deleted calendar event %s.", provider_event_id)

    def apply_event(self, event: CalendarEventData) -> StoredCalendarEvent:
        """Summary: Persist one provider event and (re)schedule or cancel its reminders.

        Importance: A start moved by more than an hour clears the sent flags, a
        cancelled event loses its pending jobs, and any start change reschedules.
        Alternatives: Reschedule every event on every sync.
        """

        existing = self.store.get_calendar_event(event.provider_event_id)
        if existing is not None and existing.user_id != self.user_id:
            raise Unauthorized("Calendar event belongs to another user")
        previous_start = from_iso(existing.start_time) if existing else None
        moved_far = previous_start is not None and abs(event.start_time - previous_start) > RESCHEDULE_FLAG_RESET
        self.store.save_calendar_event(self.user_id, event, to_iso(self.clock()), moved_far)
        if event.status == "cancelled":
            self.reminders.cancel_reminders(event.provider_event_id)
        elif (
            existing is None
            or existing.status == "cancelled"
            or previous_start != event.start_time
        ):
            self.reminders.schedule_reminders(event.provider_event_id, event.start_time, event.title)
        return self.store.get_calendar_event(event.provider_event_id)

    def _owned_event(self, provider_event_id: str) -> StoredCalendarEvent:
        event = self.store.get_calendar_event(provider_event_id)
        if event is None:
            raise NotFound("Calendar event not found")
        if event.user_id != self.user_id:
            raise Unauthorized("Calendar event belongs to another user")
        return event
