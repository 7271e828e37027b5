"""
Passkey authentication ceremony.

Start resolves the user for an email and issues request options that allow
every credential the user has registered. A user without credentials gets
`CredentialNotFoundError`, which clients use to fall back to registration.

Finish consumes the challenge, picks the credential the browser answered
with, verifies the assertion, enforces the signature counter, and hands back
a short-lived session secret.
"""

from typing import Any, Dict, Optional

from passkey_auth.config import RelyingParty, build_relying_party, settings
from passkey_auth.errors import (
    CloneDetectedError,
    CredentialNotFoundError,
    PasskeyError,
    ValidationError,
    VerificationError,
)
from passkey_auth.managers.identity_manager import IdentityManager, identity_manager
from passkey_auth.managers.logging_manager import get_logger
from passkey_auth.routes.passkeys.services.challenge import ChallengeLifecycle
from passkey_auth.routes.passkeys.services.credentials import CredentialRepository
from passkey_auth.routes.passkeys.services.verifier import (
    WebAuthnVerifier,
    assertion_credential_id,
    webauthn_verifier,
)
from passkey_auth.utils.logging_utils import log_performance, log_security_event

logger = get_logger(prefix="[Passkey Authentication]")

CEREMONY = "authentication"


def counter_regressed(stored: int, reported: int) -> bool:
    """
    Whether a reported signature counter indicates a cloned authenticator.

    Authenticators that do not implement a counter always report 0; a pair of
    zeros is accepted. Otherwise the counter must strictly increase.
    """
    if stored == 0 and reported == 0:
        return False
    return reported <= stored


class AuthenticationFlow:
    """Orchestrates authentication start and finish."""

    def __init__(
        self,
        challenges: Optional[ChallengeLifecycle] = None,
        credentials: Optional[CredentialRepository] = None,
        identity: Optional[IdentityManager] = None,
        verifier: Optional[WebAuthnVerifier] = None,
        relying_party: Optional[RelyingParty] = None,
    ):
        self.challenges = challenges or ChallengeLifecycle()
        self.credentials = credentials or CredentialRepository()
        self.identity = identity or identity_manager
        self.verifier = verifier or webauthn_verifier
        self.relying_party = relying_party or build_relying_party(settings)

    @log_performance("passkey_authentication_start")
    async def start(self, email: str, ip_address: Optional[str] = None) -> Dict[str, Any]:
        """
        Begin authentication for an email.

        The user is created if absent so that one "continue with passkey"
        entry point can serve both new and returning users.

        Returns:
            Dict[str, Any]: {"options": request options, "challengeId": id}

        Raises:
            ValidationError: If the email is missing (nothing is written)
            CredentialNotFoundError: If the user has no passkey; no challenge is stored
            ProviderError: If the user cannot be resolved
            StoreError: If the store is unavailable
        """
        if not email or not email.strip():
            raise ValidationError("email is required")

        user = await self.identity.resolve(email)
        user_id = user["id"]
        credentials = await self.credentials.list_for_user(user_id)
        if not credentials:
            logger.info("No passkeys registered for user %s", user_id)
            log_security_event(
                event_type="passkey_authentication_no_credentials",
                user_id=user_id,
                ip_address=ip_address,
                success=False,
            )
            raise CredentialNotFoundError()

        options, token = self.verifier.authentication_options(
            self.relying_party, [credential["credential_id"] for credential in credentials]
        )
        challenge_id = await self.challenges.create(user_id, token, CEREMONY)

        logger.info("Authentication started for user %s with %d allowed credentials", user_id, len(credentials))
        log_security_event(
            event_type="passkey_authentication_started",
            user_id=user_id,
            ip_address=ip_address,
            success=True,
            details={"challenge_id": challenge_id, "allowed_count": len(credentials)},
        )
        return {"options": options, "challengeId": challenge_id}

    @log_performance("passkey_authentication_finish")
    async def finish(
        self, challenge_id: str, authentication: Dict[str, Any], ip_address: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Complete authentication with the browser's assertion.

        The challenge is spent whether or not verification succeeds. No
        session secret is issued unless the assertion verifies and the
        signature counter advances.

        Returns:
            Dict[str, Any]: {"userId": id, "secret": session secret}

        Raises:
            ValidationError: If an input is missing
            NotFoundError: If the challenge is unknown, spent, expired, or
                belongs to a registration ceremony
            CredentialNotFoundError: If the credential is not (or no longer)
                registered to the challenge's user
            VerificationError: If the assertion does not verify
            CloneDetectedError: If the signature counter did not advance
            ProviderError: If the session secret cannot be issued
        """
        if not challenge_id:
            raise ValidationError("challengeId is required")
        if not authentication:
            raise ValidationError("authentication is required")

        user_id = None
        try:
            async with self.challenges.consume(challenge_id, CEREMONY) as challenge:
                user_id = challenge["user_id"]
                credential = await self.credentials.find_for_user(user_id, assertion_credential_id(authentication))
                if credential is None:
                    raise CredentialNotFoundError()

                verdict = self.verifier.verify_authentication(
                    authentication, challenge["token"], self.relying_party, credential
                )
                if not verdict.verified:
                    raise VerificationError()

                stored_count = credential.get("sign_count", 0)
                if counter_regressed(stored_count, verdict.new_sign_count):
                    logger.error(
                        "Signature counter for credential %s did not advance (stored=%d, reported=%d)",
                        credential["id"],
                        stored_count,
                        verdict.new_sign_count,
                    )
                    raise CloneDetectedError()

                await self.credentials.record_use(credential["id"], verdict.new_sign_count)
                session = await self.identity.issue_session_secret(user_id)
        except PasskeyError as e:
            logger.warning("Authentication finish rejected for challenge %s: %s", challenge_id, e.code)
            log_security_event(
                event_type="passkey_clone_detected"
                if isinstance(e, CloneDetectedError)
                else "passkey_authentication_failed",
                user_id=user_id,
                ip_address=ip_address,
                success=False,
                details={"challenge_id": challenge_id, "reason": e.code},
            )
            raise

        logger.info("User %s authenticated with credential %s", user_id, credential["id"])
        log_security_event(
            event_type="passkey_authentication_completed",
            user_id=user_id,
            ip_address=ip_address,
            success=True,
            details={"challenge_id": challenge_id, "sign_count": verdict.new_sign_count},
        )
        return {"userId": user_id, "secret": session["secret"]}
