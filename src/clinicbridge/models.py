"""Summary: Domain model dataclasses for ClinicBridge.

Importance: Defines the core entities shared across services and storage.
Alternatives: Use Pydantic models or ORM classes directly.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Union


CHANNELS = ("whatsapp", "sms", "inapp")
ATTACHMENT_KINDS = ("image", "audio", "video", "file")
MESSAGE_STATUSES = ("queued", "sent", "delivered", "read", "failed")
REMINDER_HORIZONS = ("24h", "2h")
DELETED_PLACEHOLDER = "This message was deleted"


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""

    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Summary: Serialize a datetime as fixed-width UTC ISO text.

    Importance: Fixed width keeps lexical ordering in SQLite equal to time ordering.
    Alternatives: Store epoch milliseconds as integers.
    """

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime, treating naive input as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_iso(value: str | None) -> datetime | None:
    """Parse ISO text produced by to_iso (naive values are treated as UTC)."""

    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class User:
    """Summary: Represents a clinic user (a doctor or staff account).

    Importance: Owns conversations, credentials, and calendar events.
    Alternatives: Key all data by an external identity string only.
    """

    display_name: str
    email: str


@dataclass(frozen=True)
class Attachment:
    """Summary: Media attached to a message, embedded in the message row.

    Importance: Carries the fields needed to validate limits and render previews.
    Alternatives: Store attachments in a separate table.
    """

    kind: str
    size_bytes: int = 0
    url: str | None = None
    storage_ref: str | None = None
    mime_type: str | None = None
    duration_seconds: float | None = None
    width: int | None = None
    height: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "Attachment":
        return Attachment(
            kind=payload.get("kind", "file"),
            size_bytes=int(payload.get("size_bytes", 0)),
            url=payload.get("url"),
            storage_ref=payload.get("storage_ref"),
            mime_type=payload.get("mime_type"),
            duration_seconds=payload.get("duration_seconds"),
            width=payload.get("width"),
            height=payload.get("height"),
        )


@dataclass(frozen=True)
class ExternalContact:
    """The person on the other side of a conversation."""

    phone_number: str
    display_name: str | None = None


@dataclass(frozen=True)
class ActiveBody:
    """Summary: Payload of a message that has not been deleted.

    Importance: One variant of the message tombstone union.
    Alternatives: Nullable content fields on the message record.
    """

    content: str | None
    attachments: tuple[Attachment, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class DeletedBody:
    """Summary: Tombstone left behind by a soft delete.

    Importance: Keeps the row and its ordering while dropping the payload.
    Alternatives: Hard-delete rows and lose history.
    """

    deleted_at: datetime


MessageBody = Union[ActiveBody, DeletedBody]


@dataclass(frozen=True)
class CalendarEventData:
    """Summary: Normalized calendar event as returned by a provider.

    Importance: Decouples sync logic from provider payload shapes.
    Alternatives: Persist raw provider JSON.
    """

    provider_event_id: str
    title: str
    start_time: datetime
    end_time: datetime
    status: str
    description: str | None = None
    html_link: str | None = None
    attendees: tuple[str, ...] = field(default_factory=tuple)
    patient_ref: str | None = None
    patient_name: str | None = None
    patient_phone: str | None = None
