"""Summary: Error taxonomy for ClinicBridge integrations.

Importance: Lets HTTP handlers, the CLI, and reminder jobs react to failures by kind.
Alternatives: Raise ValueError/RuntimeError and match on message text.
"""

from __future__ import annotations


class ClinicBridgeError(Exception):
    """Summary: Base class for all ClinicBridge errors.

    Importance: Allows a single exception handler to map errors to HTTP statuses.
    Alternatives: Catch each error type separately in every endpoint.
    """

    status_code = 500


class Unauthenticated(ClinicBridgeError):
    """No caller identity was supplied or it could not be resolved."""

    status_code = 401


class Unauthorized(ClinicBridgeError):
    """Signature mismatch or cross-tenant access."""

    status_code = 403


class NotFound(ClinicBridgeError):
    """Referenced record does not exist for the caller."""

    status_code = 404


class NotConnected(ClinicBridgeError):
    """Summary: No OAuth credential record exists for the user.

    Importance: Tells the UI to start the connect flow instead of retrying.
    Alternatives: Return an empty result when the provider is not connected.
    """

    status_code = 409


class ReconnectRequired(ClinicBridgeError):
    """Summary: The provider rejected the refresh grant.

    Importance: Distinguishes revoked consent from transient network failures.
    Alternatives: Retry the refresh silently on every request.
    """

    status_code = 409


class ValidationError(ClinicBridgeError):
    """Input failed validation (phone format, attachments, empty message)."""

    status_code = 400


class InvalidPhoneFormat(ValidationError):
    """Phone number could not be normalized to E.164."""


class ProviderError(ClinicBridgeError):
    """Summary: A remote provider returned a non-2xx response or was unreachable.

    Importance: Carries enough context for callers to decide whether to retry.
    Alternatives: Propagate raw urllib errors to callers.
    """

    status_code = 502

    def __init__(self, message: str, provider_status: int | None = None, detail: str = "") -> None:
        super().__init__(message)
        self.provider_status = provider_status
        self.detail = detail

    @property
    def is_client_error(self) -> bool:
        return self.provider_status is not None and 400 <= self.provider_status < 500


class CryptoError(ClinicBridgeError):
    """Summary: Encryption key missing/malformed or ciphertext failed authentication.

    Importance: Always fatal for the affected credential, never masked as not connected.
    Alternatives: Treat undecryptable records as absent.
    """

    status_code = 500
