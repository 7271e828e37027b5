"""
Pytest configuration for the passkey service tests.

Provides an in-memory document store with the same async interface and
failure semantics as `passkey_auth.database.DocumentStore`, a scripted
WebAuthn verifier, and fully wired flows and HTTP client built on them.
"""

from copy import deepcopy
from datetime import datetime, timezone
import os
import sys
from typing import Any, Dict, List

from bson import ObjectId
import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from webauthn.helpers import base64url_to_bytes, bytes_to_base64url  # noqa: E402

from passkey_auth.config import RelyingParty, Settings  # noqa: E402
from passkey_auth.database import DocumentNotFound, DuplicateDocument  # noqa: E402
from passkey_auth.errors import StoreError, VerificationError  # noqa: E402
from passkey_auth.managers.identity_manager import IdentityManager  # noqa: E402
from passkey_auth.routes.passkeys.services.authentication import AuthenticationFlow  # noqa: E402
from passkey_auth.routes.passkeys.services.challenge import ChallengeLifecycle  # noqa: E402
from passkey_auth.routes.passkeys.services.credentials import CredentialRepository  # noqa: E402
from passkey_auth.routes.passkeys.services.registration import RegistrationFlow  # noqa: E402
from passkey_auth.routes.passkeys.services.verifier import (  # noqa: E402
    AuthenticationVerdict,
    RegistrationVerdict,
)

UNIQUE_FIELDS = {"users": "email", "passkey_credentials": "credential_id"}


class InMemoryDocumentStore:
    """Dict-backed stand-in for DocumentStore, including unique indexes and atomic take."""

    def __init__(self):
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.unavailable = False
        self.calls: List[tuple] = []

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        if self.unavailable:
            raise StoreError()
        return self.collections.setdefault(name, {})

    def documents(self, name: str) -> List[Dict[str, Any]]:
        return [deepcopy(doc) for doc in self.collections.get(name, {}).values()]

    async def create(self, collection: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(("create", collection))
        docs = self._collection(collection)
        unique = UNIQUE_FIELDS.get(collection)
        if unique and any(doc.get(unique) == fields.get(unique) for doc in docs.values()):
            raise DuplicateDocument()
        document = {"created_at": datetime.now(timezone.utc), **deepcopy(fields)}
        document["id"] = str(ObjectId())
        docs[document["id"]] = document
        return deepcopy(document)

    async def get(self, collection: str, document_id: str) -> Dict[str, Any]:
        docs = self._collection(collection)
        if document_id not in docs:
            raise DocumentNotFound(document_id)
        return deepcopy(docs[document_id])

    async def take(self, collection: str, document_id: str) -> Dict[str, Any]:
        self.calls.append(("take", collection))
        docs = self._collection(collection)
        if document_id not in docs:
            raise DocumentNotFound(document_id)
        return docs.pop(document_id)

    async def delete(self, collection: str, document_id: str) -> None:
        self.calls.append(("delete", collection))
        docs = self._collection(collection)
        if docs.pop(document_id, None) is None:
            raise DocumentNotFound(document_id)

    async def update(self, collection: str, document_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        docs = self._collection(collection)
        if document_id not in docs:
            raise DocumentNotFound(document_id)
        docs[document_id].update(deepcopy(fields))
        return deepcopy(docs[document_id])

    async def query(self, collection: str, filters: Dict[str, Any], limit: int = 1) -> List[Dict[str, Any]]:
        docs = self._collection(collection)
        matches = [doc for doc in docs.values() if all(doc.get(k) == v for k, v in filters.items())]
        matches.sort(key=lambda doc: doc["created_at"])
        return [deepcopy(doc) for doc in matches[:limit]]


class ScriptedVerifier:
    """
    Deterministic WebAuthn verifier.

    Challenges are issued as "c1", "c2", ... Browser payloads are plain dicts:
    a registration carries {"rawId", "challenge"}; an authentication carries
    {"rawId", "challenge", "signCount"}. A payload verifies when its challenge
    matches the stored token and it is not marked "tampered".
    """

    def __init__(self):
        self.issued = 0
        self.registration_calls = []
        self.authentication_calls = []

    def _next_token(self) -> str:
        self.issued += 1
        return f"c{self.issued}"

    def registration_options(self, relying_party, user_id, user_name, existing=()):
        token = self._next_token()
        options = {
            "challenge": token,
            "rp": {"id": relying_party.id, "name": relying_party.name},
            "user": {"id": bytes_to_base64url(user_id.encode("utf-8")), "name": user_name},
            "excludeCredentials": [{"id": bytes_to_base64url(c["credential_id"])} for c in existing],
        }
        self.registration_calls.append(list(existing))
        return options, token

    def authentication_options(self, relying_party, credential_ids):
        token = self._next_token()
        credential_ids = list(credential_ids)
        self.authentication_calls.append(credential_ids)
        options = {
            "challenge": token,
            "rpId": relying_party.id,
            "allowCredentials": [
                {"id": bytes_to_base64url(c), "type": "public-key", "transports": ["internal", "hybrid"]}
                for c in credential_ids
            ],
            "userVerification": "preferred",
        }
        return options, token

    def verify_registration(self, registration, expected_challenge, relying_party):
        if registration.get("tampered") or registration.get("challenge") != expected_challenge:
            raise VerificationError()
        credential_id = base64url_to_bytes(registration["rawId"])
        return RegistrationVerdict(
            verified=True,
            credential_id=credential_id,
            public_key=b"pk-" + credential_id,
            sign_count=registration.get("signCount", 0),
            device_type="multi_device",
            backed_up=True,
            transports=["internal"],
        )

    def verify_authentication(self, authentication, expected_challenge, relying_party, credential):
        if authentication.get("tampered") or authentication.get("challenge") != expected_challenge:
            raise VerificationError()
        if credential["public_key"] != b"pk-" + credential["credential_id"]:
            raise VerificationError()
        return AuthenticationVerdict(
            verified=True,
            credential_id=credential["credential_id"],
            new_sign_count=authentication.get("signCount", 0),
        )


def registration_payload(challenge: str, credential_id: bytes = b"cred-1", **extra) -> Dict[str, Any]:
    encoded = bytes_to_base64url(credential_id)
    return {"id": encoded, "rawId": encoded, "type": "public-key", "challenge": challenge, **extra}


def authentication_payload(challenge: str, credential_id: bytes = b"cred-1", sign_count: int = 0, **extra):
    encoded = bytes_to_base64url(credential_id)
    return {
        "id": encoded,
        "rawId": encoded,
        "type": "public-key",
        "challenge": challenge,
        "signCount": sign_count,
        **extra,
    }


@pytest.fixture
def test_settings():
    """Settings with the default collection names and policies."""
    return Settings(MONGODB_URL="mongodb://localhost:27017", CHALLENGE_TTL_SECONDS=300)


@pytest.fixture
def relying_party():
    return RelyingParty(id="localhost", name="Passkey Demo", origin="http://localhost:8000")


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def verifier():
    return ScriptedVerifier()


@pytest.fixture
def challenges(store, test_settings):
    return ChallengeLifecycle(store=store, config=test_settings)


@pytest.fixture
def credentials(store, test_settings):
    return CredentialRepository(store=store, config=test_settings)


@pytest.fixture
def identity(store, test_settings):
    return IdentityManager(store=store, config=test_settings)


@pytest.fixture
def registration_flow(challenges, credentials, identity, verifier, relying_party):
    return RegistrationFlow(
        challenges=challenges,
        credentials=credentials,
        identity=identity,
        verifier=verifier,
        relying_party=relying_party,
    )


@pytest.fixture
def authentication_flow(challenges, credentials, identity, verifier, relying_party):
    return AuthenticationFlow(
        challenges=challenges,
        credentials=credentials,
        identity=identity,
        verifier=verifier,
        relying_party=relying_party,
    )


@pytest.fixture
def client(registration_flow, authentication_flow):
    """TestClient with both flows wired to the in-memory store. The lifespan (MongoDB) is not run."""
    from fastapi.testclient import TestClient

    from passkey_auth.main import app
    from passkey_auth.routes.passkeys.routes import get_authentication_flow, get_registration_flow

    app.dependency_overrides[get_registration_flow] = lambda: registration_flow
    app.dependency_overrides[get_authentication_flow] = lambda: authentication_flow
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
