"""
Challenge lifecycle for passkey ceremonies.

A challenge is issued at the start of a registration or authentication
ceremony and spent by the matching finish step. Finish steps go through
`ChallengeLifecycle.consume`, which atomically removes the row before
verification starts and invalidates it again on the way out, so a challenge
can never be verified twice, whatever the outcome of the first attempt.

Expired, consumed, unknown and wrong-ceremony ids all surface as the same
`NotFoundError` to avoid leaking which case applied.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, Optional

from passkey_auth.config import Settings, settings
from passkey_auth.database import DocumentNotFound, DocumentStore, document_store
from passkey_auth.errors import NotFoundError, StoreError
from passkey_auth.managers.logging_manager import get_logger
from passkey_auth.routes.passkeys.models import Ceremony, ChallengeDocument
from passkey_auth.utils.logging_utils import log_performance, log_security_event

logger = get_logger(prefix="[Challenge Lifecycle]")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ChallengeLifecycle:
    """Creates, fetches, consumes and invalidates one-time challenges."""

    def __init__(self, store: Optional[DocumentStore] = None, config: Settings = settings):
        self.store = store or document_store
        self.config = config
        self.collection = config.CHALLENGES_COLLECTION
        self.ttl = timedelta(seconds=config.CHALLENGE_TTL_SECONDS)

    @log_performance("create_challenge")
    async def create(self, user_id: str, token: str, ceremony: Ceremony = "registration") -> str:
        """
        Persist a new challenge for a user.

        Args:
            user_id (str): Owner of the ceremony
            token (str): Base64url challenge value issued to the browser
            ceremony (str): "registration" or "authentication"

        Returns:
            str: The id of the stored challenge

        Raises:
            StoreError: If the store is unavailable
        """
        now = datetime.now(timezone.utc)
        document = ChallengeDocument(
            user_id=user_id,
            token=token,
            ceremony=ceremony,
            created_at=now,
            expires_at=now + self.ttl,
        )
        created = await self.store.create(self.collection, document.model_dump())
        logger.info("Issued %s challenge %s for user %s", ceremony, created["id"], user_id)
        log_security_event(
            event_type="passkey_challenge_created",
            user_id=user_id,
            success=True,
            details={"ceremony": ceremony, "challenge_id": created["id"], "expires_at": document.expires_at.isoformat()},
        )
        return created["id"]

    def is_expired(self, challenge: Dict[str, Any], now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        expires_at = challenge.get("expires_at")
        if expires_at is None:
            expires_at = _as_utc(challenge["created_at"]) + self.ttl
        return _as_utc(expires_at) <= now

    async def fetch(self, challenge_id: str) -> Dict[str, Any]:
        """
        Return a stored challenge without consuming it.

        Raises:
            NotFoundError: If the id is unknown, already consumed or expired
            StoreError: If the store is unavailable
        """
        try:
            challenge = await self.store.get(self.collection, challenge_id)
        except DocumentNotFound:
            logger.info("Challenge %s not found", challenge_id)
            raise NotFoundError()

        if self.is_expired(challenge):
            logger.info("Challenge %s expired, removing", challenge_id)
            await self.invalidate(challenge_id)
            raise NotFoundError()
        return challenge

    async def invalidate(self, challenge_id: str) -> None:
        """Delete a challenge. Deleting an already deleted id is a no-op."""
        try:
            await self.store.delete(self.collection, challenge_id)
        except DocumentNotFound:
            logger.debug("Challenge %s already gone", challenge_id)
            return
        logger.debug("Challenge %s invalidated", challenge_id)

    @asynccontextmanager
    async def consume(self, challenge_id: str, ceremony: Ceremony) -> AsyncIterator[Dict[str, Any]]:
        """
        Atomically take a challenge for a finish step.

        The row is removed before the body runs, so of two concurrent finish
        calls only one ever sees it. `invalidate` runs on exit whatever the
        body does, and a store failure during that cleanup is logged, not raised.

        Usage:
            async with lifecycle.consume(challenge_id, "registration") as challenge:
                ...

        Raises:
            NotFoundError: If the id is unknown, consumed, expired, or was
                issued for the other ceremony
        """
        try:
            challenge = await self.store.take(self.collection, challenge_id)
        except DocumentNotFound:
            logger.info("Challenge %s not found or already consumed", challenge_id)
            log_security_event(
                event_type="passkey_challenge_rejected",
                success=False,
                details={"challenge_id": challenge_id, "reason": "not_found", "ceremony": ceremony},
            )
            raise NotFoundError()

        try:
            if self.is_expired(challenge):
                logger.info("Challenge %s expired", challenge_id)
                reason = "expired"
            elif challenge.get("ceremony") != ceremony:
                logger.warning(
                    "Challenge %s issued for %s presented to %s finish",
                    challenge_id,
                    challenge.get("ceremony"),
                    ceremony,
                )
                reason = "ceremony_mismatch"
            else:
                reason = None

            if reason is not None:
                log_security_event(
                    event_type="passkey_challenge_rejected",
                    user_id=challenge.get("user_id"),
                    success=False,
                    details={"challenge_id": challenge_id, "reason": reason, "ceremony": ceremony},
                )
                raise NotFoundError()

            log_security_event(
                event_type="passkey_challenge_consumed",
                user_id=challenge.get("user_id"),
                success=True,
                details={"challenge_id": challenge_id, "ceremony": ceremony},
            )
            yield challenge
        finally:
            # The row was already taken; a failed cleanup must not mask the body's outcome.
            try:
                await self.invalidate(challenge_id)
            except StoreError:
                logger.warning("Could not re-invalidate challenge %s after consumption", challenge_id)
