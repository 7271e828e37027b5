"""Credential repository: registered passkeys per user, on top of the document store."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from passkey_auth.config import Settings, settings
from passkey_auth.database import DocumentNotFound, DocumentStore, document_store
from passkey_auth.errors import CredentialNotFoundError
from passkey_auth.managers.logging_manager import get_logger
from passkey_auth.routes.passkeys.models import CredentialDocument
from passkey_auth.routes.passkeys.services.verifier import RegistrationVerdict

logger = get_logger(prefix="[Passkey Credentials]")


class CredentialRepository:
    """Reads and writes credential documents. `credential_id` and `public_key` are stored as raw bytes."""

    def __init__(self, store: Optional[DocumentStore] = None, config: Settings = settings):
        self.store = store or document_store
        self.collection = config.CREDENTIALS_COLLECTION
        self.max_per_user = config.MAX_CREDENTIALS_PER_USER

    async def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return await self.store.query(self.collection, {"user_id": user_id}, limit=self.max_per_user)

    async def find_for_user(self, user_id: str, credential_id: Optional[bytes] = None) -> Optional[Dict[str, Any]]:
        """
        Return one of the user's credentials.

        With a credential id, only that credential matches (and only if it
        belongs to the user). Without one, the oldest credential is returned.
        """
        filters: Dict[str, Any] = {"user_id": user_id}
        if credential_id is not None:
            filters["credential_id"] = credential_id
        matches = await self.store.query(self.collection, filters, limit=1)
        return matches[0] if matches else None

    async def exists(self, credential_id: bytes) -> bool:
        return bool(await self.store.query(self.collection, {"credential_id": credential_id}, limit=1))

    async def add(self, user_id: str, verdict: RegistrationVerdict) -> Dict[str, Any]:
        """
        Persist a freshly verified credential.

        Raises:
            DuplicateDocument: If the credential id is already registered
            StoreError: If the store is unavailable
        """
        document = CredentialDocument(
            user_id=user_id,
            credential_id=verdict.credential_id,
            public_key=verdict.public_key,
            sign_count=verdict.sign_count,
            transports=list(verdict.transports),
            aaguid=verdict.aaguid,
            device_type=verdict.device_type,
            backed_up=verdict.backed_up,
            created_at=datetime.now(timezone.utc),
        )
        created = await self.store.create(self.collection, document.model_dump())
        logger.info("Stored credential %s for user %s", created["id"], user_id)
        return created

    async def record_use(self, document_id: str, sign_count: int) -> Dict[str, Any]:
        """
        Persist the verified counter and the last-use timestamp.

        Raises:
            CredentialNotFoundError: If the credential was removed after it was looked up
            StoreError: If the store is unavailable
        """
        try:
            return await self.store.update(
                self.collection,
                document_id,
                {"sign_count": sign_count, "last_used_at": datetime.now(timezone.utc)},
            )
        except DocumentNotFound as e:
            logger.warning("Credential %s was removed before its use could be recorded", document_id)
            raise CredentialNotFoundError() from e
