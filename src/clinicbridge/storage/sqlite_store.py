"""Summary: SQLite storage implementation for ClinicBridge.

Importance: Provides the transactional record store with secondary indexes the services rely on.
Alternatives: Use an ORM or an external database immediately.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from clinicbridge.models import (
    ActiveBody,
    Attachment,
    CalendarEventData,
    DeletedBody,
    DELETED_PLACEHOLDER,
    MessageBody,
    User,
    from_iso,
    to_iso,
)


@dataclass(frozen=True)
class StoredUser:
    """Summary: User record with database identifier.

    Importance: Enables multi-user ownership of conversations and credentials.
    Alternatives: Keep only a single implicit user without records.
    """

    id: int
    display_name: str
    email: str
    provider_account_sid: str | None
    calendar_email: str | None


@dataclass(frozen=True)
class StoredApiKey:
    """API key record (hash only)."""

    id: int
    user_id: int
    token_hash: str
    label: str | None
    created_at: str


@dataclass(frozen=True)
class StoredGatewaySecret:
    """Summary: Encrypted gateway auth token for a sub-account.

    Importance: Used to resolve the per-account webhook signing secret.
    Alternatives: Share one signing secret across all accounts.
    """

    user_id: int
    account_sid: str
    ciphertext: str
    iv: str


@dataclass(frozen=True)
class StoredCredential:
    """Summary: Encrypted OAuth credential record.

    Importance: Holds only ciphertext and nonce pairs, never plaintext tokens.
    Alternatives: Store tokens in an external vault.
    """

    user_id: int
    provider: str
    access_token_cipher: str
    access_token_iv: str
    refresh_token_cipher: str
    refresh_token_iv: str
    expires_at: str
    scope: str | None
    token_type: str | None


@dataclass(frozen=True)
class StoredConversation:
    """Summary: Conversation record with database identifier.

    Importance: Unique per owner, channel, and external phone number.
    Alternatives: Derive conversations from message rows on the fly.
    """

    id: int
    owner_id: int
    channel: str
    phone_number: str
    display_name: str | None
    assigned_number: str | None
    unread_count: int
    last_message_preview: str | None
    last_message_at: str | None
    last_read_at: str | None


@dataclass(frozen=True)
class StoredMessage:
    """Summary: Message record with its payload as an active or deleted body.

    Importance: Soft-deleted rows keep ordering while exposing only a placeholder.
    Alternatives: Nullable content fields plus an is_deleted flag.
    """

    id: int
    conversation_id: int
    provider_message_id: str | None
    direction: str
    sender_ref: str
    body: MessageBody
    status: str
    provider_status: str | None
    timestamp: str

    @property
    def is_deleted(self) -> bool:
        return isinstance(self.body, DeletedBody)

    @property
    def content(self) -> str | None:
        if isinstance(self.body, ActiveBody):
            return self.body.content
        return None

    @property
    def attachments(self) -> tuple[Attachment, ...]:
        if isinstance(self.body, ActiveBody):
            return self.body.attachments
        return ()

    @property
    def display_content(self) -> str | None:
        if isinstance(self.body, DeletedBody):
            return DELETED_PLACEHOLDER
        return self.body.content


@dataclass(frozen=True)
class StoredCalendarEvent:
    """Summary: Local mirror of a provider calendar event.

    Importance: Holds reminder job references and sent flags next to the event.
    Alternatives: Keep reminder state in a separate table.
    """

    id: int
    user_id: int
    provider_event_id: str
    title: str
    description: str | None
    start_time: str
    end_time: str
    status: str
    patient_ref: str | None
    patient_name: str | None
    patient_phone: str | None
    html_link: str | None
    reminder_sent_24h: bool
    reminder_sent_2h: bool
    reminder_24h_job_ref: str | None
    reminder_2h_job_ref: str | None
    last_synced_at: str | None


@dataclass(frozen=True)
class StoredReminderJob:
    """Summary: Durable one-shot timer for a reminder horizon.

    Importance: Survives restarts and can be cancelled by reference.
    Alternatives: Keep timers in process memory only.
    """

    job_ref: str
    event_id: str
    horizon: str
    title: str
    fire_at: str
    status: str
    created_at: str
    finished_at: str | None
    error: str | None
    claimed_at: str | None = None


@dataclass(frozen=True)
class StoredPresence:
    """Last heartbeat for a user."""

    user_id: int
    last_seen_at: str


_MESSAGE_COLUMNS = (
    "id, conversation_id, provider_message_id, direction, sender_ref, content, attachments, "
    "status, provider_status, timestamp, is_deleted, deleted_at"
)
_CONVERSATION_COLUMNS = (
    "id, owner_id, channel, phone_number, display_name, assigned_number, unread_count, "
    "last_message_preview, last_message_at, last_read_at"
)
_EVENT_COLUMNS = (
    "id, user_id, provider_event_id, title, description, start_time, end_time, status, "
    "patient_ref, patient_name, patient_phone, html_link, reminder_sent_24h, reminder_sent_2h, "
    "reminder_24h_job_ref, reminder_2h_job_ref, last_synced_at"
)
_JOB_COLUMNS = (
    "job_ref, event_id, horizon, title, fire_at, status, created_at, finished_at, error, claimed_at"
)


class SqliteStore:
    """Summary: SQLite-backed storage for ClinicBridge.

    Importance: Enables local-first persistence with minimal dependencies.
    Alternatives: Use Postgres and SQLAlchemy from day one.
    """

    def __init__(self, db_path: str) -> None:
        """Summary: Initialize the storage with a database path.

        Importance: Allows configurable database location per environment.
        Alternatives: Hardcode a default path in the class.
        """

        self._db_path = Path(db_path)

    def initialize(self) -> None:
        """Summary: Create tables and indexes if they do not exist.

        Importance: Ensures the database is ready for webhooks, sync, and reminders.
        Alternatives: Run migrations using a dedicated migration tool.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    display_name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    provider_account_sid TEXT UNIQUE,
                    provider_auth_token_cipher TEXT,
                    provider_auth_token_iv TEXT,
                    calendar_email TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS assigned_numbers (
                    phone_number TEXT PRIMARY KEY,
                    user_id INTEGER NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS api_keys (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    token_hash TEXT NOT NULL UNIQUE,
                    label TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS credentials (
                    user_id INTEGER NOT NULL,
                    provider TEXT NOT NULL,
                    access_token_cipher TEXT NOT NULL,
                    access_token_iv TEXT NOT NULL,
                    refresh_token_cipher TEXT NOT NULL,
                    refresh_token_iv TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    scope TEXT,
                    token_type TEXT,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, provider)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id INTEGER NOT NULL,
                    channel TEXT NOT NULL,
                    phone_number TEXT NOT NULL,
                    display_name TEXT,
                    assigned_number TEXT,
                    unread_count INTEGER NOT NULL DEFAULT 0,
                    last_message_preview TEXT,
                    last_message_at TEXT,
                    last_read_at TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE(owner_id, channel, phone_number)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id INTEGER NOT NULL,
                    provider_message_id TEXT UNIQUE,
                    direction TEXT NOT NULL,
                    sender_ref TEXT NOT NULL,
                    content TEXT,
                    attachments TEXT NOT NULL DEFAULT '[]',
                    status TEXT NOT NULL,
                    provider_status TEXT,
                    timestamp TEXT NOT NULL,
                    is_deleted INTEGER NOT NULL DEFAULT 0,
                    deleted_at TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_messages_conversation_timestamp
                ON messages (conversation_id, timestamp)
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS calendar_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    provider_event_id TEXT NOT NULL UNIQUE,
                    title TEXT NOT NULL,
                    description TEXT,
                    start_time TEXT NOT NULL,
                    end_time TEXT NOT NULL,
                    status TEXT NOT NULL,
                    patient_ref TEXT,
                    patient_name TEXT,
                    patient_phone TEXT,
                    html_link TEXT,
                    reminder_sent_24h INTEGER NOT NULL DEFAULT 0,
                    reminder_sent_2h INTEGER NOT NULL DEFAULT 0,
                    reminder_24h_job_ref TEXT,
                    reminder_2h_job_ref TEXT,
                    last_synced_at TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS reminder_jobs (
                    job_ref TEXT PRIMARY KEY,
                    event_id TEXT NOT NULL,
                    horizon TEXT NOT NULL,
                    title TEXT NOT NULL,
                    fire_at TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    finished_at TEXT,
                    error TEXT,
                    claimed_at TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_reminder_jobs_due
                ON reminder_jobs (status, fire_at)
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS presence (
                    user_id INTEGER PRIMARY KEY,
                    last_seen_at TEXT NOT NULL
                )
                """
            )
            connection.commit()
        self._ensure_column("reminder_jobs", "claimed_at", "TEXT")

    # Users and accounts

    def ensure_user(self, user: User) -> int:
        """Summary: Ensure a user exists and return their ID.

        Importance: Provides a stable user record for data ownership.
        Alternatives: Omit user records in single-user mode.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO users (display_name, email) VALUES (?, ?)",
                (user.display_name, user.email),
            )
            if cursor.rowcount == 1:
                user_id = cursor.lastrowid
            else:
                cursor.execute("SELECT id FROM users WHERE email = ?", (user.email,))
                row = cursor.fetchone()
                user_id = int(row[0]) if row else 0
            connection.commit()
        return int(user_id)

    def get_user(self, user_id: int) -> StoredUser | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT id, display_name, email, provider_account_sid, calendar_email
                FROM users WHERE id = ?
                """,
                (user_id,),
            )
            row = cursor.fetchone()
        return StoredUser(*row) if row else None

    def get_user_by_email(self, email: str) -> StoredUser | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT id, display_name, email, provider_account_sid, calendar_email
                FROM users WHERE email = ?
                """,
                (email,),
            )
            row = cursor.fetchone()
        return StoredUser(*row) if row else None

    def list_users(self) -> list[StoredUser]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT id, display_name, email, provider_account_sid, calendar_email
                FROM users ORDER BY id
                """
            )
            rows = cursor.fetchall()
        return [StoredUser(*row) for row in rows]

    def set_calendar_email(self, user_id: int, calendar_email: str) -> None:
        with self._connection() as connection:
            connection.execute(
                "UPDATE users SET calendar_email = ? WHERE id = ?", (calendar_email, user_id)
            )
            connection.commit()

    def set_gateway_account(
        self, user_id: int, account_sid: str, ciphertext: str | None, iv: str | None
    ) -> bool:
        """Summary: Store the gateway sub-account SID and its encrypted auth token.

        Importance: Lets webhook verification look up a per-account signing secret.
        Returns False when another user already holds the SID.
        Alternatives: Keep sub-account secrets in environment variables.
        """

        with self._connection() as connection:
            try:
                connection.execute(
                    """
                    UPDATE users
                    SET provider_account_sid = ?,
                        provider_auth_token_cipher = COALESCE(?, provider_auth_token_cipher),
                        provider_auth_token_iv = COALESCE(?, provider_auth_token_iv)
                    WHERE id = ?
                    """,
                    (account_sid, ciphertext, iv, user_id),
                )
            except sqlite3.IntegrityError:
                connection.rollback()
                return False
            connection.commit()
        return True

    def get_gateway_secret_by_account_sid(self, account_sid: str) -> StoredGatewaySecret | None:
        """Summary: Fetch the encrypted signing secret for a gateway account.

        Importance: Returns None when the account is unknown or has no stored secret.
        Alternatives: Scan all users in memory.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT id, provider_account_sid, provider_auth_token_cipher, provider_auth_token_iv
                FROM users
                WHERE provider_account_sid = ?
                """,
                (account_sid,),
            )
            row = cursor.fetchone()
        if not row or not row[2] or not row[3]:
            return None
        return StoredGatewaySecret(*row)

    def add_assigned_number(self, user_id: int, phone_number: str) -> bool:
        """Summary: Assign a gateway number to a user.

        Importance: Routes inbound webhooks to the owning user; a number has one owner.
        Alternatives: Store a list of numbers on the user row.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO assigned_numbers (phone_number, user_id) VALUES (?, ?)",
                (phone_number, user_id),
            )
            created = cursor.rowcount == 1
            connection.commit()
        return created

    def list_assigned_numbers(self, user_id: int) -> list[str]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT phone_number FROM assigned_numbers WHERE user_id = ? ORDER BY rowid",
                (user_id,),
            )
            rows = cursor.fetchall()
        return [row[0] for row in rows]

    def find_owner_by_assigned_number(self, phone_number: str) -> int | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT user_id FROM assigned_numbers WHERE phone_number = ?", (phone_number,)
            )
            row = cursor.fetchone()
        return int(row[0]) if row else None

    # API keys

    def create_api_key(
        self, user_id: int, token_hash: str, label: str | None, created_at: str
    ) -> int:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO api_keys (user_id, token_hash, label, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, token_hash, label, created_at),
            )
            key_id = cursor.lastrowid
            connection.commit()
        return int(key_id)

    def list_api_keys(self, user_id: int) -> list[StoredApiKey]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT id, user_id, token_hash, label, created_at
                FROM api_keys WHERE user_id = ? ORDER BY id
                """,
                (user_id,),
            )
            rows = cursor.fetchall()
        return [StoredApiKey(*row) for row in rows]

    def delete_api_key(self, user_id: int, key_id: int) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "DELETE FROM api_keys WHERE id = ? AND user_id = ?", (key_id, user_id)
            )
            deleted = cursor.rowcount > 0
            connection.commit()
        return deleted

    def get_user_id_by_api_key(self, token_hash: str) -> int | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("SELECT user_id FROM api_keys WHERE token_hash = ?", (token_hash,))
            row = cursor.fetchone()
        return int(row[0]) if row else None

    # OAuth credentials

    def get_credential(self, user_id: int, provider: str) -> StoredCredential | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT user_id, provider, access_token_cipher, access_token_iv,
                       refresh_token_cipher, refresh_token_iv, expires_at, scope, token_type
                FROM credentials
                WHERE user_id = ? AND provider = ?
                """,
                (user_id, provider),
            )
            row = cursor.fetchone()
        return StoredCredential(*row) if row else None

    def upsert_credential(self, record: StoredCredential, updated_at: str) -> None:
        """Summary: Insert or replace the encrypted credential for a user and provider.

        Importance: One record per (user, provider), rewritten on every refresh.
        Alternatives: Append a new row per refresh and read the latest.
        """

        with self._connection() as connection:
            connection.execute(
                """
                INSERT INTO credentials (
                    user_id, provider, access_token_cipher, access_token_iv,
                    refresh_token_cipher, refresh_token_iv, expires_at, scope, token_type, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, provider) DO UPDATE SET
                    access_token_cipher = excluded.access_token_cipher,
                    access_token_iv = excluded.access_token_iv,
                    refresh_token_cipher = excluded.refresh_token_cipher,
                    refresh_token_iv = excluded.refresh_token_iv,
                    expires_at = excluded.expires_at,
                    scope = excluded.scope,
                    token_type = excluded.token_type,
                    updated_at = excluded.updated_at
                """,
                (
                    record.user_id,
                    record.provider,
                    record.access_token_cipher,
                    record.access_token_iv,
                    record.refresh_token_cipher,
                    record.refresh_token_iv,
                    record.expires_at,
                    record.scope,
                    record.token_type,
                    updated_at,
                ),
            )
            connection.commit()

    def delete_credential(self, user_id: int, provider: str) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "DELETE FROM credentials WHERE user_id = ? AND provider = ?", (user_id, provider)
            )
            deleted = cursor.rowcount > 0
            connection.commit()
        return deleted

    def list_connected_user_ids(self, provider: str) -> list[int]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT user_id FROM credentials WHERE provider = ? ORDER BY user_id", (provider,)
            )
            rows = cursor.fetchall()
        return [int(row[0]) for row in rows]

    # Conversations

    def upsert_conversation(
        self,
        owner_id: int,
        channel: str,
        phone_number: str,
        display_name: str | None,
        assigned_number: str | None,
        created_at: str,
    ) -> int:
        """Summary: Insert a conversation or patch its mutable fields in one statement.

        Importance: Concurrent upserts for the same key never produce duplicate rows.
        Alternatives: Select then insert, guarded by an application lock.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO conversations (
                    owner_id, channel, phone_number, display_name, assigned_number,
                    unread_count, last_read_at, created_at
                ) VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                ON CONFLICT(owner_id, channel, phone_number) DO UPDATE SET
                    display_name = COALESCE(excluded.display_name, conversations.display_name),
                    assigned_number = COALESCE(excluded.assigned_number, conversations.assigned_number)
                """,
                (owner_id, channel, phone_number, display_name, assigned_number, created_at, created_at),
            )
            cursor.execute(
                """
                SELECT id FROM conversations
                WHERE owner_id = ? AND channel = ? AND phone_number = ?
                """,
                (owner_id, channel, phone_number),
            )
            row = cursor.fetchone()
            connection.commit()
        return int(row[0])

    def get_conversation(self, conversation_id: int) -> StoredConversation | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",
                (conversation_id,),
            )
            row = cursor.fetchone()
        return StoredConversation(*row) if row else None

    def list_conversations(self, owner_id: int, limit: int = 100) -> list[StoredConversation]:
        """Summary: List an owner's conversations, most recent activity first.

        Importance: Powers the inbox view.
        Alternatives: Sort in the client.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {_CONVERSATION_COLUMNS}
                FROM conversations
                WHERE owner_id = ?
                ORDER BY COALESCE(last_message_at, created_at) DESC, id DESC
                LIMIT ?
                """,
                (owner_id, limit),
            )
            rows = cursor.fetchall()
        return [StoredConversation(*row) for row in rows]

    def mark_conversation_read(self, conversation_id: int, read_at: str) -> None:
        with self._connection() as connection:
            connection.execute(
                "UPDATE conversations SET unread_count = 0, last_read_at = ? WHERE id = ?",
                (read_at, conversation_id),
            )
            connection.commit()

    def touch_conversation_after_send(
        self, conversation_id: int, preview: str, sent_at: str
    ) -> None:
        """Summary: Refresh preview and reset the unread counter after an outbound send.

        Importance: The reset is an atomic SQL assignment, not a read-modify-write.
        Alternatives: Recompute unread counts from message rows.
        """

        with self._connection() as connection:
            connection.execute(
                """
                UPDATE conversations
                SET last_message_preview = ?,
                    last_message_at = CASE
                        WHEN last_message_at IS NULL OR last_message_at < ? THEN ?
                        ELSE last_message_at
                    END,
                    unread_count = 0,
                    last_read_at = ?
                WHERE id = ?
                """,
                (preview, sent_at, sent_at, sent_at, conversation_id),
            )
            connection.commit()

    # Messages

    def insert_inbound_message(
        self,
        conversation_id: int,
        provider_message_id: str,
        sender_ref: str,
        content: str | None,
        attachments: list[Attachment],
        status: str,
        provider_status: str | None,
        timestamp: str,
        preview: str,
    ) -> tuple[int, bool]:
        """Summary: Insert an inbound message once and bump the unread counter.

        Importance: The insert and the counter increment commit together, and a
        duplicate provider message ID creates nothing and increments nothing.
        Alternatives: Deduplicate at the HTTP layer with a processed-events table.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO messages (
                    conversation_id, provider_message_id, direction, sender_ref, content,
                    attachments, status, provider_status, timestamp
                ) VALUES (?, ?, 'in', ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    provider_message_id,
                    sender_ref,
                    content,
                    _dump_attachments(attachments),
                    status,
                    provider_status,
                    timestamp,
                ),
            )
            if cursor.rowcount == 1:
                message_id = int(cursor.lastrowid)
                cursor.execute(
                    """
                    UPDATE conversations
                    SET unread_count = unread_count + 1,
                        last_message_preview = ?,
                        last_message_at = CASE
                            WHEN last_message_at IS NULL OR last_message_at < ? THEN ?
                            ELSE last_message_at
                        END
                    WHERE id = ?
                    """,
                    (preview, timestamp, timestamp, conversation_id),
                )
                created = True
            else:
                cursor.execute(
                    "SELECT id FROM messages WHERE provider_message_id = ?",
                    (provider_message_id,),
                )
                message_id = int(cursor.fetchone()[0])
                created = False
            connection.commit()
        return message_id, created

    def insert_outbound_message(
        self,
        conversation_id: int,
        sender_ref: str,
        content: str | None,
        attachments: list[Attachment],
        timestamp: str,
    ) -> int:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO messages (
                    conversation_id, provider_message_id, direction, sender_ref, content,
                    attachments, status, timestamp
                ) VALUES (?, NULL, 'out', ?, ?, ?, 'queued', ?)
                """,
                (conversation_id, sender_ref, content, _dump_attachments(attachments), timestamp),
            )
            message_id = cursor.lastrowid
            connection.commit()
        return int(message_id)

    def get_message(self, message_id: int) -> StoredMessage | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,))
            row = cursor.fetchone()
        return _row_to_message(row) if row else None

    def get_message_by_provider_id(self, provider_message_id: str) -> StoredMessage | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE provider_message_id = ?",
                (provider_message_id,),
            )
            row = cursor.fetchone()
        return _row_to_message(row) if row else None

    def list_messages(
        self, conversation_id: int, limit: int, before: str | None = None
    ) -> list[StoredMessage]:
        """Summary: Return a page of messages in chronological order.

        Importance: Pages backwards from `before`, newest page first, then reverses.
        Alternatives: Offset-based pagination.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            if before is None:
                cursor.execute(
                    f"""
                    SELECT {_MESSAGE_COLUMNS} FROM messages
                    WHERE conversation_id = ?
                    ORDER BY timestamp DESC, id DESC
                    LIMIT ?
                    """,
                    (conversation_id, limit),
                )
            else:
                cursor.execute(
                    f"""
                    SELECT {_MESSAGE_COLUMNS} FROM messages
                    WHERE conversation_id = ? AND timestamp < ?
                    ORDER BY timestamp DESC, id DESC
                    LIMIT ?
                    """,
                    (conversation_id, before, limit),
                )
            rows = cursor.fetchall()
        return [_row_to_message(row) for row in reversed(rows)]

    def compare_and_set_status(
        self,
        message_id: int,
        expected_status: str,
        new_status: str,
        provider_status: str | None,
    ) -> bool:
        """Summary: Update a message status only if it still holds the expected value.

        Importance: Concurrent callbacks cannot overwrite a newer state from a stale read.
        Alternatives: Serialize status updates with a lock.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE messages
                SET status = ?, provider_status = COALESCE(?, provider_status)
                WHERE id = ? AND status = ?
                """,
                (new_status, provider_status, message_id, expected_status),
            )
            updated = cursor.rowcount == 1
            connection.commit()
        return updated

    def backfill_provider_message_id(self, message_id: int, provider_message_id: str) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE OR IGNORE messages SET provider_message_id = ?
                WHERE id = ? AND provider_message_id IS NULL
                """,
                (provider_message_id, message_id),
            )
            updated = cursor.rowcount == 1
            connection.commit()
        return updated

    def soft_delete_message(self, message_id: int, deleted_at: str) -> bool:
        """Summary: Tombstone a message, keeping the row and its timestamp.

        Importance: History and ordering survive while the payload is dropped.
        Alternatives: Hard-delete the row.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE messages
                SET is_deleted = 1, deleted_at = ?, content = NULL, attachments = '[]'
                WHERE id = ? AND is_deleted = 0
                """,
                (deleted_at, message_id),
            )
            updated = cursor.rowcount == 1
            connection.commit()
        return updated

    def count_messages(self, conversation_id: int) -> int:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT COUNT(*) FROM messages WHERE conversation_id = ?", (conversation_id,)
            )
            row = cursor.fetchone()
        return int(row[0])

    # Calendar events

    def get_calendar_event(self, provider_event_id: str) -> StoredCalendarEvent | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {_EVENT_COLUMNS} FROM calendar_events WHERE provider_event_id = ?",
                (provider_event_id,),
            )
            row = cursor.fetchone()
        return _row_to_event(row) if row else None

    def list_calendar_events(self, user_id: int, limit: int = 100) -> list[StoredCalendarEvent]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {_EVENT_COLUMNS} FROM calendar_events
                WHERE user_id = ?
                ORDER BY start_time ASC
                LIMIT ?
                """,
                (user_id, limit),
            )
            rows = cursor.fetchall()
        return [_row_to_event(row) for row in rows]

    def save_calendar_event(
        self, user_id: int, event: CalendarEventData, synced_at: str, reset_reminder_flags: bool
    ) -> None:
        """Summary: Insert or update the local mirror of a provider event.

        Importance: Patient fields are only overwritten when the sync carries them,
        and sent flags are cleared when the appointment moved.
        Alternatives: Delete and reinsert on every sync.
        """

        with self._connection() as connection:
            connection.execute(
                """
                INSERT INTO calendar_events (
                    user_id, provider_event_id, title, description, start_time, end_time, status,
                    patient_ref, patient_name, patient_phone, html_link, last_synced_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider_event_id) DO UPDATE SET
                    title = excluded.title,
                    description = excluded.description,
                    start_time = excluded.start_time,
                    end_time = excluded.end_time,
                    status = excluded.status,
                    patient_ref = COALESCE(excluded.patient_ref, calendar_events.patient_ref),
                    patient_name = COALESCE(excluded.patient_name, calendar_events.patient_name),
                    patient_phone = COALESCE(excluded.patient_phone, calendar_events.patient_phone),
                    html_link = excluded.html_link,
                    last_synced_at = excluded.last_synced_at,
                    reminder_sent_24h = CASE WHEN ? THEN 0 ELSE calendar_events.reminder_sent_24h END,
                    reminder_sent_2h = CASE WHEN ? THEN 0 ELSE calendar_events.reminder_sent_2h END
                """,
                (
                    user_id,
                    event.provider_event_id,
                    event.title,
                    event.description,
                    to_iso(event.start_time),
                    to_iso(event.end_time),
                    event.status,
                    event.patient_ref,
                    event.patient_name,
                    event.patient_phone,
                    event.html_link,
                    synced_at,
                    int(reset_reminder_flags),
                    int(reset_reminder_flags),
                ),
            )
            connection.commit()

    def set_reminder_job_refs(
        self, provider_event_id: str, job_ref_24h: str | None, job_ref_2h: str | None
    ) -> None:
        with self._connection() as connection:
            connection.execute(
                """
                UPDATE calendar_events
                SET reminder_24h_job_ref = ?, reminder_2h_job_ref = ?
                WHERE provider_event_id = ?
                """,
                (job_ref_24h, job_ref_2h, provider_event_id),
            )
            connection.commit()

    def mark_reminder_sent(self, provider_event_id: str, horizon: str) -> bool:
        column = "reminder_sent_24h" if horizon == "24h" else "reminder_sent_2h"
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"UPDATE calendar_events SET {column} = 1 WHERE provider_event_id = ?",
                (provider_event_id,),
            )
            updated = cursor.rowcount == 1
            connection.commit()
        return updated

    def delete_calendar_event(self, provider_event_id: str) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "DELETE FROM calendar_events WHERE provider_event_id = ?", (provider_event_id,)
            )
            deleted = cursor.rowcount > 0
            connection.commit()
        return deleted

    # Reminder jobs

    def insert_reminder_job(
        self, job_ref: str, event_id: str, horizon: str, title: str, fire_at: str, created_at: str
    ) -> None:
        with self._connection() as connection:
            connection.execute(
                """
                INSERT INTO reminder_jobs (
                    job_ref, event_id, horizon, title, fire_at, status, created_at
                ) VALUES (?, ?, ?, ?, ?, 'pending', ?)
                """,
                (job_ref, event_id, horizon, title, fire_at, created_at),
            )
            connection.commit()

    def get_reminder_job(self, job_ref: str) -> StoredReminderJob | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {_JOB_COLUMNS} FROM reminder_jobs WHERE job_ref = ?", (job_ref,)
            )
            row = cursor.fetchone()
        return StoredReminderJob(*row) if row else None

    def list_reminder_jobs(self, event_id: str) -> list[StoredReminderJob]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {_JOB_COLUMNS} FROM reminder_jobs
                WHERE event_id = ?
                ORDER BY created_at, fire_at
                """,
                (event_id,),
            )
            rows = cursor.fetchall()
        return [StoredReminderJob(*row) for row in rows]

    def list_due_reminder_jobs(self, now: str, limit: int) -> list[StoredReminderJob]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {_JOB_COLUMNS} FROM reminder_jobs
                WHERE status = 'pending' AND fire_at <= ?
                ORDER BY fire_at ASC
                LIMIT ?
                """,
                (now, limit),
            )
            rows = cursor.fetchall()
        return [StoredReminderJob(*row) for row in rows]

    def transition_reminder_job(
        self,
        job_ref: str,
        from_status: str,
        to_status: str,
        finished_at: str | None = None,
        error: str | None = None,
        claimed_at: str | None = None,
    ) -> bool:
        """Summary: Move a job between statuses only from the expected status.

        Importance: Makes cancel and claim races resolve to exactly one winner.
        Alternatives: Lock the job row in application code.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE reminder_jobs
                SET status = ?,
                    finished_at = COALESCE(?, finished_at),
                    error = COALESCE(?, error),
                    claimed_at = COALESCE(?, claimed_at)
                WHERE job_ref = ? AND status = ?
                """,
                (to_status, finished_at, error, claimed_at, job_ref, from_status),
            )
            updated = cursor.rowcount == 1
            connection.commit()
        return updated

    def requeue_stale_reminder_jobs(self, claimed_before: str) -> int:
        """Summary: Return running jobs whose claim is older than the cutoff to pending.

        Importance: A dispatcher that stopped between claim and finish does not lose the job.
        Alternatives: Wait for in-flight jobs on shutdown.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE reminder_jobs
                SET status = 'pending', claimed_at = NULL
                WHERE status = 'running' AND (claimed_at IS NULL OR claimed_at <= ?)
                """,
                (claimed_before,),
            )
            requeued = cursor.rowcount
            connection.commit()
        return requeued

    # Presence

    def upsert_presence(self, user_id: int, last_seen_at: str) -> None:
        with self._connection() as connection:
            connection.execute(
                """
                INSERT INTO presence (user_id, last_seen_at) VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET last_seen_at = excluded.last_seen_at
                """,
                (user_id, last_seen_at),
            )
            connection.commit()

    def get_presence(self, user_id: int) -> StoredPresence | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT user_id, last_seen_at FROM presence WHERE user_id = ?", (user_id,)
            )
            row = cursor.fetchone()
        return StoredPresence(*row) if row else None

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Summary: Context manager for SQLite connections.

        Importance: Ensures connections are closed cleanly after use.
        Alternatives: Keep a single long-lived connection.
        """

        connection = sqlite3.connect(self._db_path, timeout=10)
        try:
            yield connection
        finally:
            connection.close()

    def _ensure_column(self, table: str, column: str, column_type: str) -> None:
        """Summary: Add a column to an existing table when it is missing.

        Importance: Lets databases created before the column existed keep working.
        Alternatives: Use a migration tool to manage schema changes.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(f"PRAGMA table_info({table})")
            columns = {row[1] for row in cursor.fetchall()}
            if column in columns:
                return
            cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")
            connection.commit()


def _dump_attachments(attachments: list[Attachment]) -> str:
    return json.dumps([attachment.to_dict() for attachment in attachments])


def _row_to_message(row: tuple) -> StoredMessage:
    (
        message_id,
        conversation_id,
        provider_message_id,
        direction,
        sender_ref,
        content,
        attachments_json,
        status,
        provider_status,
        timestamp,
        is_deleted,
        deleted_at,
    ) = row
    if is_deleted:
        body: MessageBody = DeletedBody(deleted_at=from_iso(deleted_at))
    else:
        attachments = tuple(
            Attachment.from_dict(item) for item in json.loads(attachments_json or "[]")
        )
        body = ActiveBody(content=content, attachments=attachments)
    return StoredMessage(
        id=message_id,
        conversation_id=conversation_id,
        provider_message_id=provider_message_id,
        direction=direction,
        sender_ref=sender_ref,
        body=body,
        status=status,
        provider_status=provider_status,
        timestamp=timestamp,
    )


def _row_to_event(row: tuple) -> StoredCalendarEvent:
    values = list(row)
    values[12] = bool(values[12])
    values[13] = bool(values[13])
    return StoredCalendarEvent(*values)
