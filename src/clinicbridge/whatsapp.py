"""Summary: Outbound WhatsApp gateway interfaces and implementations.

Importance: Isolates the messaging provider's REST API from the message ledger.
Alternatives: Use the provider's official SDK.
"""

from __future__ import annotations

import base64
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import urllib.error
import urllib.parse
import urllib.request

from clinicbridge.errors import ProviderError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboundMessage:
    """Summary: A message ready to hand to the gateway.

    Importance: Addresses are already in gateway form (whatsapp:+E164).
    Alternatives: Pass loose keyword arguments to the gateway.
    """

    from_address: str
    to_address: str
    body: str | None = None
    content_sid: str | None = None
    content_variables: str | None = None
    media_urls: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class GatewayReceipt:
    """Provider message ID and raw status returned by a successful send."""

    provider_message_id: str | None
    provider_status: str


class WhatsAppGateway(ABC):
    """Summary: Abstract interface for sending WhatsApp messages.

    Importance: Lets tests and offline runs swap in a fake gateway.
    Alternatives: Call the HTTP API from the chat service directly.
    """

    @abstractmethod
    def send_message(self, subaccount_sid: str, message: OutboundMessage) -> GatewayReceipt:
        """Summary: Send a message through the given sub-account.

        Importance: Raises ProviderError on any non-2xx response.
        Alternatives: Return an error object instead of raising.
        """


class TwilioWhatsAppGateway(WhatsAppGateway):
    """Summary: Gateway client for the Twilio-style Messages REST endpoint.

    Importance: Authenticates with the master account and sends on behalf of a sub-account.
    Alternatives: Use the twilio package.
    """

    def __init__(self, base_url: str, account_sid: str | None, auth_token: str | None) -> None:
        self._base_url = base_url.rstrip("/")
        self._account_sid = account_sid
        self._auth_token = auth_token

    def send_message(self, subaccount_sid: str, message: OutboundMessage) -> GatewayReceipt:
        if not self._account_sid or not self._auth_token:
            raise ProviderError("Gateway account SID and auth token are not configured")
        fields: list[tuple[str, str]] = [("From", message.from_address), ("To", message.to_address)]
        if message.content_sid:
            fields.append(("ContentSid", message.content_sid))
            if message.content_variables:
                fields.append(("ContentVariables", message.content_variables))
        elif message.body:
            fields.append(("Body", message.body))
        for media_url in message.media_urls:
            fields.append(("MediaUrl", media_url))
        url = f"{self._base_url}/Accounts/{urllib.parse.quote(subaccount_sid, safe='')}/Messages.json"
        credentials = base64.b64encode(
            f"{self._account_sid}:{self._auth_token}".encode("utf-8")
        ).decode("ascii")
        request = urllib.request.Request(
            url,
            data=urllib.parse.urlencode(fields).encode("utf-8"),
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Authorization": f"Basic {credentials}",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=10) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            error_body = exc.read().decode("utf-8", errors="replace")
            logger.warning("Gateway rejected outbound message (status %s).", exc.code)
            raise ProviderError(
                f"Gateway returned HTTP {exc.code}", provider_status=exc.code, detail=error_body
            ) from exc
        except urllib.error.URLError as exc:
            raise ProviderError(f"Gateway unreachable: {exc.reason}") from exc
        payload = json.loads(raw) if raw else {}
        return GatewayReceipt(
            provider_message_id=payload.get("sid"),
            provider_status=payload.get("status") or "sent",
        )
