"""
WebAuthn verification backed by the `webauthn` (py_webauthn) library.

This module is the only place that talks to the library. It produces the
JSON form of creation/request options for the browser together with the
base64url challenge token to store, and turns verification results into
small verdict objects. Every library or parsing failure becomes a
`VerificationError`.

The sign counter is deliberately not checked here: the authentication flow
compares the reported counter with the stored one and persists it.
"""

from dataclasses import dataclass, field
import json
from typing import Any, Dict, Iterable, List, Optional, Tuple

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import (
    base64url_to_bytes,
    bytes_to_base64url,
    parse_authentication_credential_json,
    parse_registration_credential_json,
)
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from passkey_auth.config import RelyingParty
from passkey_auth.errors import VerificationError
from passkey_auth.managers.logging_manager import get_logger

logger = get_logger(prefix="[WebAuthn Verifier]")

# Authenticator-selection policy for registration: platform passkeys,
# discoverable if possible, user verification when available.
AUTHENTICATOR_SELECTION = AuthenticatorSelectionCriteria(
    authenticator_attachment=AuthenticatorAttachment.PLATFORM,
    resident_key=ResidentKeyRequirement.PREFERRED,
    user_verification=UserVerificationRequirement.PREFERRED,
)
USER_VERIFICATION = UserVerificationRequirement.PREFERRED
ALLOW_TRANSPORTS = [AuthenticatorTransport.INTERNAL, AuthenticatorTransport.HYBRID]
CEREMONY_TIMEOUT_MS = 60000

# Raised by the library's parsers and base64url decoding on malformed input.
_PARSE_ERRORS = (WebAuthnException, ValueError, KeyError, TypeError)


@dataclass
class RegistrationVerdict:
    """Outcome of a registration verification."""

    verified: bool
    credential_id: bytes = b""
    public_key: bytes = b""
    sign_count: int = 0
    aaguid: Optional[str] = None
    device_type: Optional[str] = None
    backed_up: bool = False
    transports: List[str] = field(default_factory=list)


@dataclass
class AuthenticationVerdict:
    """Outcome of an authentication verification."""

    verified: bool
    credential_id: bytes = b""
    new_sign_count: int = 0


def _transports(values: Iterable[str]) -> List[AuthenticatorTransport]:
    transports = []
    for value in values or ():
        try:
            transports.append(AuthenticatorTransport(value))
        except ValueError:
            logger.debug("Ignoring unknown transport %r", value)
    return transports


def _enum_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", str(value))


def assertion_credential_id(assertion: Dict[str, Any]) -> Optional[bytes]:
    """
    Return the raw credential id named by a browser response, if any.

    Raises:
        VerificationError: If the id is present but not valid base64url
    """
    raw = assertion.get("rawId") or assertion.get("id")
    if not raw:
        return None
    try:
        return base64url_to_bytes(raw)
    except (ValueError, TypeError) as e:
        raise VerificationError("Malformed credential id") from e


class WebAuthnVerifier:
    """Generates ceremony options and verifies browser responses."""

    def registration_options(
        self,
        relying_party: RelyingParty,
        user_id: str,
        user_name: str,
        existing: Iterable[Dict[str, Any]] = (),
    ) -> Tuple[Dict[str, Any], str]:
        """
        Build PublicKeyCredentialCreationOptions for a user.

        Args:
            relying_party: RP identity the credential is bound to
            user_id: Stable user id, used as the WebAuthn user handle
            user_name: Name shown by the authenticator (the email)
            existing: Already registered credential documents to exclude

        Returns:
            Tuple[Dict[str, Any], str]: JSON options and the challenge token
        """
        options = generate_registration_options(
            rp_id=relying_party.id,
            rp_name=relying_party.name,
            user_id=user_id.encode("utf-8"),
            user_name=user_name,
            user_display_name=user_name,
            timeout=CEREMONY_TIMEOUT_MS,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AUTHENTICATOR_SELECTION,
            exclude_credentials=[
                PublicKeyCredentialDescriptor(
                    id=credential["credential_id"], transports=_transports(credential.get("transports"))
                )
                for credential in existing
            ],
        )
        return json.loads(options_to_json(options)), bytes_to_base64url(options.challenge)

    def authentication_options(
        self, relying_party: RelyingParty, credential_ids: Iterable[bytes]
    ) -> Tuple[Dict[str, Any], str]:
        """
        Build PublicKeyCredentialRequestOptions allowing the given credentials.

        Returns:
            Tuple[Dict[str, Any], str]: JSON options and the challenge token
        """
        options = generate_authentication_options(
            rp_id=relying_party.id,
            timeout=CEREMONY_TIMEOUT_MS,
            allow_credentials=[
                PublicKeyCredentialDescriptor(id=credential_id, transports=list(ALLOW_TRANSPORTS))
                for credential_id in credential_ids
            ],
            user_verification=USER_VERIFICATION,
        )
        return json.loads(options_to_json(options)), bytes_to_base64url(options.challenge)

    def verify_registration(
        self, registration: Dict[str, Any], expected_challenge: str, relying_party: RelyingParty
    ) -> RegistrationVerdict:
        """
        Verify a RegistrationResponseJSON against the stored challenge token.

        Raises:
            VerificationError: If the response is malformed or does not verify
        """
        try:
            credential = parse_registration_credential_json(registration)
            verified = verify_registration_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_rp_id=relying_party.id,
                expected_origin=relying_party.origin,
                require_user_verification=False,
            )
        except _PARSE_ERRORS as e:
            logger.warning("Registration response rejected: %s", e)
            raise VerificationError() from e

        return RegistrationVerdict(
            verified=True,
            credential_id=verified.credential_id,
            public_key=verified.credential_public_key,
            sign_count=verified.sign_count,
            aaguid=verified.aaguid,
            device_type=_enum_value(verified.credential_device_type),
            backed_up=bool(verified.credential_backed_up),
            transports=[_enum_value(t) for t in (credential.response.transports or [])],
        )

    def verify_authentication(
        self,
        authentication: Dict[str, Any],
        expected_challenge: str,
        relying_party: RelyingParty,
        credential: Dict[str, Any],
    ) -> AuthenticationVerdict:
        """
        Verify an AuthenticationResponseJSON with a stored credential's public key.

        Raises:
            VerificationError: If the response is malformed or does not verify
        """
        try:
            parsed = parse_authentication_credential_json(authentication)
            verified = verify_authentication_response(
                credential=parsed,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_rp_id=relying_party.id,
                expected_origin=relying_party.origin,
                credential_public_key=credential["public_key"],
                # Counter regression is judged by the caller against the stored value.
                credential_current_sign_count=0,
                require_user_verification=False,
            )
        except _PARSE_ERRORS as e:
            logger.warning("Authentication response rejected: %s", e)
            raise VerificationError() from e

        return AuthenticationVerdict(
            verified=True,
            credential_id=verified.credential_id,
            new_sign_count=verified.new_sign_count,
        )


webauthn_verifier = WebAuthnVerifier()
