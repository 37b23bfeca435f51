"""Summary: Attachment limits, validation, and webhook extraction.

Importance: Rejects oversized or forbidden media before it reaches the ledger.
Alternatives: Truncate attachment lists silently.
"""

from __future__ import annotations

import logging
from typing import Iterable, Mapping

from clinicbridge.errors import ValidationError
from clinicbridge.models import Attachment


logger = logging.getLogger(__name__)


MAX_MESSAGE_CONTENT_LENGTH = 4000
MAX_ATTACHMENTS_COUNT = 5
MAX_ATTACHMENT_BYTES_SINGLE = 5 * 1024 * 1024
MAX_ATTACHMENT_BYTES_TOTAL = 10 * 1024 * 1024

ALLOWED_MIME_TYPES = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/webp",
        "audio/mpeg",
        "audio/ogg",
        "audio/wav",
        "video/mp4",
        "application/pdf",
    }
)


def assert_attachments_valid(attachments: Iterable[Attachment] | None) -> None:
    """Summary: Validate count, per-item size, total size, and mime type.

    Importance: Violations raise ValidationError; nothing is dropped silently.
    Alternatives: Validate only on the client.
    """

    items = list(attachments or [])
    if not items:
        return
    if len(items) > MAX_ATTACHMENTS_COUNT:
        raise ValidationError(f"Too many attachments (max {MAX_ATTACHMENTS_COUNT})")
    total = 0
    for attachment in items:
        if attachment.size_bytes < 0:
            raise ValidationError("Attachment size cannot be negative")
        if attachment.size_bytes > MAX_ATTACHMENT_BYTES_SINGLE:
            raise ValidationError("An attachment exceeds the maximum allowed size")
        if attachment.mime_type and attachment.mime_type not in ALLOWED_MIME_TYPES:
            raise ValidationError(f"File type not allowed: {attachment.mime_type}")
        total += attachment.size_bytes
    if total > MAX_ATTACHMENT_BYTES_TOTAL:
        raise ValidationError("Attachments exceed the total allowed size")


def kind_from_mime(mime_type: str | None) -> str:
    """Infer the attachment kind from a mime type prefix."""

    if mime_type:
        if mime_type.startswith("image/"):
            return "image"
        if mime_type.startswith("audio/"):
            return "audio"
        if mime_type.startswith("video/"):
            return "video"
    return "file"


def attachments_from_form(params: Mapping[str, str]) -> list[Attachment]:
    """Summary: Build attachments from indexed MediaUrlN/MediaContentTypeN fields.

    Importance: Inbound media arrives as flat form fields, not a list. At most
    MAX_ATTACHMENTS_COUNT items are read whatever NumMedia claims.
    Alternatives: Fetch media metadata from the gateway API.
    """

    try:
        count = int(params.get("NumMedia", "0") or "0")
    except ValueError:
        count = 0
    if count > MAX_ATTACHMENTS_COUNT:
        logger.warning("Inbound message carried %s attachments; keeping the first %s.", count, MAX_ATTACHMENTS_COUNT)
    attachments: list[Attachment] = []
    for index in range(max(min(count, MAX_ATTACHMENTS_COUNT), 0)):
        url = params.get(f"MediaUrl{index}")
        mime_type = params.get(f"MediaContentType{index}")
        attachments.append(
            Attachment(kind=kind_from_mime(mime_type), url=url, mime_type=mime_type, size_bytes=0)
        )
    return attachments


def preview_from_content(content: str | None) -> str:
    """Summary: Build the conversation list preview line.

    Importance: Keeps previews short and gives attachment-only messages a label.
    Alternatives: Store the full body as the preview.
    """

    trimmed = (content or "").strip()
    if not trimmed:
        return "Attachment"
    if len(trimmed) <= 140:
        return trimmed
    return f"{trimmed[:140]}…"
