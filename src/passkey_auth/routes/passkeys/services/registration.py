"""
Passkey registration ceremony.

Start resolves (or creates) the user for an email, asks the verifier for
creation options and stores the challenge behind them. Finish consumes that
challenge, verifies the authenticator's attestation and stores the new
credential. Registration never authenticates a session, so finish only
acknowledges success.
"""

from typing import Any, Dict, Optional

from passkey_auth.config import RelyingParty, build_relying_party, settings
from passkey_auth.database import DuplicateDocument
from passkey_auth.errors import PasskeyError, ValidationError, VerificationError
from passkey_auth.managers.identity_manager import IdentityManager, identity_manager
from passkey_auth.managers.logging_manager import get_logger
from passkey_auth.routes.passkeys.services.challenge import ChallengeLifecycle
from passkey_auth.routes.passkeys.services.credentials import CredentialRepository
from passkey_auth.routes.passkeys.services.verifier import WebAuthnVerifier, webauthn_verifier
from passkey_auth.utils.logging_utils import log_performance, log_security_event

logger = get_logger(prefix="[Passkey Registration]")

CEREMONY = "registration"


class RegistrationFlow:
    """Orchestrates registration start and finish."""

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

    @log_performance("passkey_registration_start")
    async def start(self, email: str, ip_address: Optional[str] = None) -> Dict[str, Any]:
        """
        Begin registration for an email.

        Args:
            email (str): Email of the user registering a passkey
            ip_address (Optional[str]): Client address, for the security log

        Returns:
            Dict[str, Any]: {"options": creation options, "challengeId": id}

        Raises:
            ValidationError: If the email is missing (nothing is written)
            ProviderError: If the user cannot be resolved
            StoreError: If the challenge cannot be stored
        """
        if not email or not email.strip():
            raise ValidationError("email is required")

        user = await self.identity.resolve(email)
        user_id = user["id"]
        existing = await self.credentials.list_for_user(user_id)

        options, token = self.verifier.registration_options(
            self.relying_party, user_id=user_id, user_name=user["email"], existing=existing
        )
        challenge_id = await self.challenges.create(user_id, token, CEREMONY)

        logger.info("Registration started for user %s (%d existing credentials)", user_id, len(existing))
        log_security_event(
            event_type="passkey_registration_started",
            user_id=user_id,
            ip_address=ip_address,
            success=True,
            details={"challenge_id": challenge_id, "existing_count": len(existing)},
        )
        return {"options": options, "challengeId": challenge_id}

    @log_performance("passkey_registration_finish")
    async def finish(
        self, challenge_id: str, registration: Dict[str, Any], ip_address: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Complete registration with the browser's attestation response.

        The challenge is spent whether or not verification succeeds.

        Returns:
            Dict[str, Any]: {"success": True}

        Raises:
            ValidationError: If an input is missing
            NotFoundError: If the challenge is unknown, spent, expired, or
                belongs to an authentication ceremony
            VerificationError: If the response does not verify or the
                credential is already registered
            StoreError: If the credential cannot be stored
        """
        if not challenge_id:
            raise ValidationError("challengeId is required")
        if not registration:
            raise ValidationError("registration is required")

        user_id = None
        try:
            async with self.challenges.consume(challenge_id, CEREMONY) as challenge:
                user_id = challenge["user_id"]
                verdict = self.verifier.verify_registration(registration, challenge["token"], self.relying_party)
                if not verdict.verified:
                    raise VerificationError()

                if await self.credentials.exists(verdict.credential_id):
                    raise VerificationError("Credential already registered")
                try:
                    credential = await self.credentials.add(user_id, verdict)
                except DuplicateDocument as e:
                    raise VerificationError("Credential already registered") from e
        except PasskeyError as e:
            logger.warning("Registration finish rejected for challenge %s: %s", challenge_id, e.code)
            log_security_event(
                event_type="passkey_registration_failed",
                user_id=user_id,
                ip_address=ip_address,
                success=False,
                details={"challenge_id": challenge_id, "reason": e.code},
            )
            raise

        logger.info("Registered credential %s for user %s", credential["id"], user_id)
        log_security_event(
            event_type="passkey_registration_completed",
            user_id=user_id,
            ip_address=ip_address,
            success=True,
            details={
                "challenge_id": challenge_id,
                "device_type": verdict.device_type,
                "backed_up": verdict.backed_up,
            },
        )
        return {"success": True}
