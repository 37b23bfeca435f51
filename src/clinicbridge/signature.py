"""Summary: Webhook request signature verification.

Importance: Authenticates gateway callbacks before any state is touched.
Alternatives: Use the provider SDK request validator.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Mapping


def canonical_string(url: str, params: Mapping[str, str]) -> str:
    """Summary: Build the string the gateway signs.

    Importance: The URL followed by each key and value in sorted key order, no separators.
    Alternatives: Sign the raw request body.
    """

    parts = [url]
    for key in sorted(params):
        parts.append(key)
        parts.append(params[key])
    return "".join(parts)


def compute_signature(secret: str, url: str, params: Mapping[str, str]) -> str:
    """Summary: Compute the base64 HMAC-SHA1 signature for a request.

    Importance: Shared by verification and by tests that sign fixtures.
    Alternatives: Use HMAC-SHA256 with a hex digest.
    """

    digest = hmac.new(
        secret.encode("utf-8"),
        canonical_string(url, params).encode("utf-8"),
        hashlib.sha1,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(
    secret: str, url: str, params: Mapping[str, str], signature_header: str | None
) -> bool:
    """Summary: Check a provider signature header in constant time.

    Importance: A mismatch is an ordinary unauthorized outcome, so this never raises.
    Alternatives: Raise SignatureVerificationError on mismatch.
    """

    if not signature_header or not secret:
        return False
    expected = compute_signature(secret, url, params)
    return hmac.compare_digest(expected.encode("ascii"), signature_header.encode("utf-8"))
