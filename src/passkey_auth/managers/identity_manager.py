"""
Identity manager for resolving users by email and minting session secrets.

Users live in the users collection, keyed by a unique email. Session secrets
are short-lived random strings handed back after a verified passkey
authentication; only their SHA-256 hash is persisted. Exchanging a secret for
an application session belongs to the caller.
"""

from datetime import datetime, timedelta, timezone
import hashlib
import secrets
from typing import Any, Dict, Optional

from passkey_auth.config import Settings, settings
from passkey_auth.database import DocumentStore, DuplicateDocument, document_store
from passkey_auth.errors import ProviderError, StoreError
from passkey_auth.managers.logging_manager import get_logger
from passkey_auth.utils.logging_utils import log_performance, log_security_event

logger = get_logger(prefix="[IdentityManager]")


def normalize_email(email: str) -> str:
    """Lowercase and trim an email so lookups match regardless of input casing."""
    return email.strip().lower()


def hash_secret(secret: str) -> str:
    """
    Create SHA-256 hash of a session secret for storage.

    Args:
        secret (str): The plaintext secret

    Returns:
        str: SHA-256 hash of the secret (hex encoded)
    """
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


class IdentityManager:
    """
    Resolves users by email and issues session secrets.

    Every store failure is surfaced as ProviderError so the flows can tell an
    identity outage apart from a challenge/credential store outage.
    """

    def __init__(self, store: Optional[DocumentStore] = None, config: Settings = settings):
        self.store = store or document_store
        self.config = config
        self.logger = logger

    async def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """Return the user with this exact (normalized) email, or None."""
        try:
            users = await self.store.query(self.config.USERS_COLLECTION, {"email": normalize_email(email)}, limit=1)
        except StoreError as e:
            self.logger.error("User lookup failed: %s", e)
            raise ProviderError() from e
        return users[0] if users else None

    async def create(self, email: str) -> Dict[str, Any]:
        """
        Create a user for this email.

        Raises:
            DuplicateDocument: If another request created the same email first
            ProviderError: If the store is unavailable
        """
        try:
            user = await self.store.create(self.config.USERS_COLLECTION, {"email": normalize_email(email)})
        except DuplicateDocument:
            raise
        except StoreError as e:
            self.logger.error("User creation failed: %s", e)
            raise ProviderError() from e
        self.logger.info("Created user %s", user["id"])
        log_security_event(event_type="user_created", user_id=user["id"], success=True)
        return user

    @log_performance("resolve_user")
    async def resolve(self, email: str) -> Dict[str, Any]:
        """
        Find the user for an email, creating it on first sight.

        A concurrent create of the same email loses on the unique index; the
        loser re-reads and returns the winner's record.
        """
        user = await self.find_by_email(email)
        if user is not None:
            return user
        try:
            return await self.create(email)
        except DuplicateDocument:
            self.logger.info("Concurrent user creation detected, re-reading user")
            user = await self.find_by_email(email)
            if user is None:
                raise ProviderError()
            return user

    @log_performance("issue_session_secret")
    async def issue_session_secret(self, user_id: str) -> Dict[str, Any]:
        """
        Mint a short-lived session secret for a user.

        Args:
            user_id (str): The authenticated user's id

        Returns:
            Dict[str, Any]: {"user_id", "secret", "expires_at"}
        """
        secret = secrets.token_hex(self.config.SESSION_SECRET_LENGTH // 2 + 1)[: self.config.SESSION_SECRET_LENGTH]
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.config.SESSION_SECRET_TTL_SECONDS)
        try:
            await self.store.create(
                self.config.SESSION_TOKENS_COLLECTION,
                {"user_id": user_id, "secret_hash": hash_secret(secret), "expires_at": expires_at},
            )
        except StoreError as e:
            self.logger.error("Session secret persistence failed for user %s: %s", user_id, e)
            raise ProviderError() from e

        log_security_event(
            event_type="session_secret_issued",
            user_id=user_id,
            success=True,
            details={"expires_at": expires_at.isoformat()},
        )
        return {"user_id": user_id, "secret": secret, "expires_at": expires_at}


identity_manager = IdentityManager()
