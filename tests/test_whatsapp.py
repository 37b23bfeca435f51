"""Summary: Tests for the WhatsApp gateway client.

Importance: Ensures outbound requests carry the right form fields and errors map to ProviderError.
Alternatives: Test against the provider sandbox.
"""

from __future__ import annotations

import base64
import io
import json
import urllib.error
import urllib.parse

import pytest

from clinicbridge.errors import ProviderError
from clinicbridge.whatsapp import OutboundMessage, TwilioWhatsAppGateway


class FakeResponse:
    def __init__(self, payload: dict[str, str]) -> None:
        self._raw = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._raw

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None


def _gateway() -> TwilioWhatsAppGateway:
    return TwilioWhatsAppGateway("https://api.twilio.test/2010-04-01", "ACmaster", "master-token")


def test_send_message_posts_form_fields(monkeypatch: pytest.MonkeyPatch) -> None:
    """Summary: Verify URL, basic auth, and repeated media fields.

    Importance: The sub-account path and master credentials must both be used.
    Alternatives: Inspect requests with a recording proxy.
    """

    captured = {}

    def fake_urlopen(request, timeout):
        captured["request"] = request
        captured["timeout"] = timeout
        return FakeResponse({"sid": "SM123", "status": "queued"})

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    receipt = _gateway().send_message(
        "ACsub1",
        OutboundMessage(
            from_address="whatsapp:+15550001111",
            to_address="whatsapp:+15552223333",
            body="Hola",
            media_urls=("https://media/0", "https://media/1"),
        ),
    )
    assert receipt.provider_message_id == "SM123"
    assert receipt.provider_status == "queued"

    request = captured["request"]
    assert captured["timeout"] == 10
    assert request.full_url == "https://api.twilio.test/2010-04-01/Accounts/ACsub1/Messages.json"
    expected_auth = base64.b64encode(b"ACmaster:master-token").decode("ascii")
    assert request.get_header("Authorization") == f"Basic {expected_auth}"
    fields = urllib.parse.parse_qsl(request.data.decode("utf-8"))
    assert ("Body", "Hola") in fields
    assert [value for key, value in fields if key == "MediaUrl"] == ["https://media/0", "https://media/1"]


def test_template_send_uses_content_sid(monkeypatch: pytest.MonkeyPatch) -> None:
    captured = {}

    def fake_urlopen(request, timeout):
        captured["fields"] = dict(urllib.parse.parse_qsl(request.data.decode("utf-8")))
        return FakeResponse({"sid": "SM124"})

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    receipt = _gateway().send_message(
        "ACsub1",
        OutboundMessage(
            from_address="whatsapp:+15550001111",
            to_address="whatsapp:+15552223333",
            body="ignored",
            content_sid="HXtemplate",
            content_variables='{"1": "María"}',
        ),
    )
    assert captured["fields"]["ContentSid"] == "HXtemplate"
    assert captured["fields"]["ContentVariables"] == '{"1": "María"}'
    assert "Body" not in captured["fields"]
    assert receipt.provider_status == "sent"


def test_http_error_maps_to_provider_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_urlopen(request, timeout):
        raise urllib.error.HTTPError(
            request.full_url, 400, "Bad Request", {}, io.BytesIO(b'{"code": 63016}')
        )

    monkeypatch.setattr("urllib.request.urlopen", failing_urlopen)
    with pytest.raises(ProviderError) as excinfo:
        _gateway().send_message(
            "ACsub1", OutboundMessage(from_address="whatsapp:+1", to_address="whatsapp:+2", body="x")
        )
    assert excinfo.value.provider_status == 400
    assert "63016" in excinfo.value.detail


def test_unconfigured_gateway_raises() -> None:
    gateway = TwilioWhatsAppGateway("https://api.twilio.test/2010-04-01", None, None)
    with pytest.raises(ProviderError):
        gateway.send_message(
            "ACsub1", OutboundMessage(from_address="whatsapp:+1", to_address="whatsapp:+2", body="x")
        )
