"""
Error taxonomy for the passkey ceremonies.

Every flow step converts internal failures into one of these exceptions. The
HTTP layer renders them as ``{"error": message, "code": code}`` with the
status code carried by the exception. ``code`` values are a stable contract:
clients match on them (for example ``credential_not_found`` to fall back to
registration) rather than on the message text.
"""

from typing import Any, Dict, Optional


class PasskeyError(Exception):
    """Base class for errors surfaced to API callers."""

    code: str = "passkey_error"
    status_code: int = 400
    default_message: str = "Request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_response(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class ValidationError(PasskeyError):
    """A required input field is missing or malformed. Raised before any side effect."""

    code = "validation_error"
    default_message = "Invalid request"


class NotFoundError(PasskeyError):
    """
    The referenced challenge does not exist.

    Covers expired, already consumed, bogus, and wrong-ceremony ids with one
    message so callers cannot probe which case applied.
    """

    code = "not_found"
    default_message = "Challenge not found or expired"


class VerificationError(PasskeyError):
    """The authenticator response did not verify."""

    code = "verification_failed"
    default_message = "Verification failed"


class CloneDetectedError(VerificationError):
    """The signature counter did not advance; the authenticator may be cloned."""

    code = "clone_detected"
    default_message = "Authenticator counter did not advance"


class CredentialNotFoundError(PasskeyError):
    """The user has no registered passkey (or it was removed mid-ceremony)."""

    code = "credential_not_found"
    default_message = "No credentials found for this user"


class StoreError(PasskeyError):
    """The document store is unavailable or failed."""

    code = "store_unavailable"
    status_code = 500
    default_message = "Storage unavailable"


class ProviderError(PasskeyError):
    """The identity provider is unavailable or failed."""

    code = "provider_unavailable"
    status_code = 500
    default_message = "Identity provider unavailable"
