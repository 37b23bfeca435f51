"""Summary: Ingestion of gateway webhooks for inbound messages and delivery status.

Importance: Verifies signatures before touching state, routes messages to the owning
user, and applies status callbacks to the ledger.
Alternatives: Poll the gateway API for new messages.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Mapping

from clinicbridge.attachments import attachments_from_form
from clinicbridge.crypto_vault import CryptoVault
from clinicbridge.errors import CryptoError, InvalidPhoneFormat
from clinicbridge.models import ExternalContact
from clinicbridge.phone import normalize_e164
from clinicbridge.services import ConversationDirectory, MessageLedger
from clinicbridge.signature import verify_signature
from clinicbridge.storage.sqlite_store import SqliteStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookOutcome:
    """HTTP status to answer the gateway with; the body is always empty."""

    status_code: int


ACCEPTED = WebhookOutcome(204)
BAD_REQUEST = WebhookOutcome(400)
FORBIDDEN = WebhookOutcome(403)
NOT_FOUND = WebhookOutcome(404)


@dataclass(frozen=True)
class WebhookIngestionService:
    """Summary: Handles inbound-message and status callbacks from the gateway.

    Importance: A rejected signature returns 403 before anything is written.
    Alternatives: Verify signatures in an HTTP middleware.
    """

    store: SqliteStore
    directory: ConversationDirectory
    ledger: MessageLedger
    vault: CryptoVault
    default_account_sid: str | None = None
    default_auth_token: str | None = None

    def handle_inbound(
        self, url: str, params: Mapping[str, str], signature: str | None
    ) -> WebhookOutcome:
        """Summary: Ingest one inbound message.

        Importance: Replays of the same MessageSid create nothing and return 204.
        Alternatives: Reject duplicates with 409.
        """

        if not self._is_authentic(url, params, signature):
            return FORBIDDEN
        try:
            assigned_number = normalize_e164(params.get("To", ""))
            sender = normalize_e164(params.get("From", ""))
        except InvalidPhoneFormat:
            logger.warning("Inbound webhook with an invalid phone number.")
            return BAD_REQUEST
        owner_id = self.store.find_owner_by_assigned_number(assigned_number)
        if owner_id is None:
            logger.warning("Inbound webhook for an unassigned number.")
            return NOT_FOUND
        if not self._holds_account(owner_id, params.get("AccountSid")):
            logger.warning("Inbound webhook rejected: account does not own the number.")
            return FORBIDDEN
        conversation_id = self.directory.upsert(
            owner_id,
            "whatsapp",
            ExternalContact(phone_number=sender, display_name=params.get("ProfileName") or None),
            assigned_number=assigned_number,
        )
        attachments = attachments_from_form(params)
        provider_message_id = params.get("MessageSid") or params.get("SmsMessageSid") or uuid.uuid4().hex
        message_id, created = self.ledger.insert_inbound(
            conversation_id=conversation_id,
            provider_message_id=provider_message_id,
            sender_ref=sender,
            content=params.get("Body") or None,
            attachments=attachments,
            provider_status=params.get("SmsStatus") or None,
        )
        if created:
            logger.info("Stored inbound message %s in conversation %s.", message_id, conversation_id)
        else:
            logger.info("Duplicate inbound delivery for message %s ignored.", message_id)
        return ACCEPTED

    def handle_status(
        self, url: str, params: Mapping[str, str], signature: str | None
    ) -> WebhookOutcome:
        """Summary: Apply a delivery status callback.

        Importance: Unknown message IDs are accepted and ignored.
        Alternatives: Return 404 so the gateway retries.
        """

        if not self._is_authentic(url, params, signature):
            return FORBIDDEN
        provider_message_id = params.get("MessageSid") or params.get("SmsSid")
        raw_status = params.get("MessageStatus") or params.get("SmsStatus")
        if not provider_message_id or not raw_status:
            return BAD_REQUEST
        message = self.store.get_message_by_provider_id(provider_message_id)
        if message is not None:
            conversation = self.store.get_conversation(message.conversation_id)
            if conversation is None or not self._holds_account(conversation.owner_id, params.get("AccountSid")):
                logger.warning("Status callback rejected: account does not own the message.")
                return FORBIDDEN
        self.ledger.update_status_by_provider_id(provider_message_id, raw_status)
        return ACCEPTED

    def resolve_secret(self, account_sid: str | None) -> str | None:
        """Summary: Find the signing secret for the account that sent the webhook.

        Importance: The configured master account always signs with the configured
        token; other accounts use their stored token. A token that fails to decrypt
        resolves to None.
        Alternatives: One global signing secret.
        """

        if not account_sid:
            return None
        if self.default_account_sid and account_sid == self.default_account_sid:
            return self.default_auth_token or None
        stored = self.store.get_gateway_secret_by_account_sid(account_sid)
        if stored is not None:
            try:
                return self.vault.decrypt(stored.ciphertext, stored.iv)
            except CryptoError:
                logger.error("Could not decrypt the gateway token for a stored account.")
                return None
        return None

    def _holds_account(self, owner_id: int, account_sid: str | None) -> bool:
        """The master account may act for any owner; a sub-account only for its holder."""

        if not account_sid:
            return False
        if self.default_account_sid and account_sid == self.default_account_sid:
            return True
        owner = self.store.get_user(owner_id)
        return owner is not None and owner.provider_account_sid == account_sid

    def _is_authentic(self, url: str, params: Mapping[str, str], signature: str | None) -> bool:
        secret = self.resolve_secret(params.get("AccountSid"))
        if not secret:
            logger.warning("Webhook rejected: no signing secret for the account.")
            return False
        if not verify_signature(secret, url, params, signature):
            logger.warning("Webhook rejected: signature mismatch.")
            return False
        return True
